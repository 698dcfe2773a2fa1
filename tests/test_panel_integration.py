"""
Integration tests for the panel driving loop against the orchestrator.

**Feature: place-harvester, Property 5: Every job reaches a terminal state**
**Feature: place-harvester, Property 6: Panel restarts resume the in-flight job**
"""

import asyncio
import csv
import dataclasses

import pytest

from place_harvester.crawlers.capture import CaptureListener
from place_harvester.data.models import JobStatus, SessionSnapshot
from place_harvester.data.session import Session
from place_harvester.messaging import messages
from place_harvester.messaging.bus import MessageBus
from place_harvester.services.orchestrator import Orchestrator
from place_harvester.services.panel import PanelController
from place_harvester.services.state_manager import StateManager

from fakes import (
    URL_A, URL_B, URL_C,
    FakeExtractor, RecordingSleep, ScriptedNavigator, ScriptedOrchestrator, make_record,
)


def build_system(orchestrator_config, panel_config, table=None, fires=None, on_update=None, **kwargs):
    bus = MessageBus()
    capture = CaptureListener(orchestrator_config.capture_url_patterns)
    navigator = ScriptedNavigator(capture, fires=fires)
    orchestrator = Orchestrator(
        bus, navigator, capture, FakeExtractor(table),
        config=orchestrator_config, sleep=RecordingSleep(), **kwargs
    )
    panel = PanelController(bus, panel_config, on_update=on_update)
    return orchestrator, panel


async def shutdown(panel, orchestrator=None):
    await panel.stop()
    if orchestrator is not None:
        await orchestrator.shutdown()
    await panel.bus.drain()


async def until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


class TestFullRun:
    """The panel drives every collected URL to completion."""

    def test_all_jobs_complete_in_order(self, fast_orchestrator_config, fast_panel_config):
        """
        Property 5: Every job reaches a terminal state
        Three healthy pages are dispatched once each, in collected order.
        """
        updates = []

        async def scenario():
            orchestrator, panel = build_system(
                fast_orchestrator_config, fast_panel_config, on_update=lambda p: updates.append(p.outstanding)
            )
            await asyncio.wait_for(panel.run([URL_A, URL_B, URL_C, URL_A]), timeout=5)
            await shutdown(panel, orchestrator)
            return orchestrator, panel

        orchestrator, panel = asyncio.run(scenario())

        assert orchestrator.navigator.calls == [URL_A, URL_B, URL_C]
        assert panel.session.queue.counts()["completed"] == 3
        assert panel.session.session_complete is True
        assert orchestrator.session.session_complete is True
        assert [url for url, _ in panel.export_records()] == [URL_A, URL_B, URL_C]
        assert panel.notices == []
        assert updates

    def test_terminal_failure_does_not_block_queue(self, fast_orchestrator_config, fast_panel_config):
        async def scenario():
            orchestrator, panel = build_system(
                fast_orchestrator_config, fast_panel_config,
                fires=lambda url, attempt: 0 if url == URL_B else 1,
            )
            await asyncio.wait_for(panel.run([URL_A, URL_B, URL_C]), timeout=5)
            await shutdown(panel, orchestrator)
            return orchestrator, panel

        orchestrator, panel = asyncio.run(scenario())

        counts = panel.session.queue.counts()
        assert counts["completed"] == 2
        assert counts["failed"] == 1
        assert orchestrator.dispatch_counts[URL_B] == 4

        rows = {row["url"]: row for row in panel.rows()}
        assert rows[URL_B]["status"] == "failed"
        assert rows[URL_B]["error"].startswith("Failed after 4 attempts")
        assert rows[URL_C]["record"]["name"] == "Desert Oasis"
        assert any(URL_B in notice for notice in panel.notices)

    def test_stalled_dispatches_use_up_panel_budget(self, fast_panel_config):
        config = dataclasses.replace(fast_panel_config, stall_timeout=0.05)

        async def scenario():
            bus = MessageBus()
            remote = ScriptedOrchestrator(bus)
            panel = PanelController(bus, config)
            await asyncio.wait_for(panel.run([URL_A]), timeout=5)
            await shutdown(panel)
            return remote, panel

        remote, panel = asyncio.run(scenario())

        assert len(remote.of_type("process_url")) == 3
        job = panel.session.queue.get(URL_A)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert len(remote.of_type("processing_complete")) == 1

    def test_busy_reply_requeues_without_retry(self, fast_panel_config):
        async def scenario():
            bus = MessageBus()
            remote = ScriptedOrchestrator(
                bus,
                process_replies=[{"success": False, "busy": True, "currentUrl": URL_C}, {"success": True}],
                emit_results=True,
            )
            panel = PanelController(bus, fast_panel_config)
            await asyncio.wait_for(panel.run([URL_A]), timeout=5)
            await shutdown(panel)
            return remote, panel

        remote, panel = asyncio.run(scenario())

        assert len(remote.of_type("process_url")) == 2
        job = panel.session.queue.get(URL_A)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 0

    def test_website_hints_fill_export(self, fast_orchestrator_config, fast_panel_config, tmp_path):
        table = {URL_A: make_record(URL_A, website="")}

        async def scenario():
            orchestrator, panel = build_system(fast_orchestrator_config, fast_panel_config, table=table)
            await asyncio.wait_for(
                panel.run([URL_A, URL_B], websites={URL_A: "https://pinegrove.example"}), timeout=5
            )
            await shutdown(panel, orchestrator)
            return panel

        panel = asyncio.run(scenario())

        exported = dict(panel.export_records())
        assert exported[URL_A].website == "https://pinegrove.example"
        assert panel.session.record_for(URL_A).website == ""

        path = panel.export_csv(tmp_path)
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert len(rows) == 3
        assert rows[1][rows[0].index("Website URL")] == "https://pinegrove.example"


class TestPanelRestart:
    """A recreated panel picks up where the previous one left off."""

    def test_new_panel_adopts_in_flight_job(self, fast_orchestrator_config, fast_panel_config):
        """
        Property 6: Panel restarts resume the in-flight job
        The replacement panel waits for the running job instead of dispatching again.
        """
        holder = {}

        async def extract(url):
            await holder["gate"].wait()
            return make_record(url)

        async def scenario():
            holder["gate"] = asyncio.Event()
            orchestrator, first = build_system(
                fast_orchestrator_config, fast_panel_config, table={URL_A: extract}
            )
            driving = asyncio.get_running_loop().create_task(first.run([URL_A, URL_B]))
            await until(lambda: orchestrator.extractor.calls)
            await first.stop()
            driving.cancel()
            with pytest.raises(asyncio.CancelledError):
                await driving

            second = PanelController(first.bus, fast_panel_config)
            await second.start()
            adopted = (second.outstanding, second.request_id == first.request_id)

            holder["gate"].set()
            await asyncio.wait_for(second.completed.wait(), timeout=5)
            await shutdown(second, orchestrator)
            return orchestrator, second, adopted

        orchestrator, second, adopted = asyncio.run(scenario())

        assert adopted == (URL_A, True)
        assert orchestrator.navigator.calls == [URL_A, URL_B]
        assert second.session.queue.counts()["completed"] == 2

    def test_job_restored_from_disk_is_dispatched_again(self, fast_orchestrator_config,
                                                        fast_panel_config, temp_state_path):
        """A job saved mid-flight has nothing running it, so the panel must not wait on it."""
        saved = Session()
        saved.replace_jobs([URL_A, URL_B])
        saved.queue.mark_in_flight(URL_A)
        saved.active_job = URL_A
        StateManager(temp_state_path).save_session(saved)

        manager = StateManager(temp_state_path)
        restored = manager.load_session()

        async def scenario():
            orchestrator, panel = build_system(
                fast_orchestrator_config, fast_panel_config,
                session=restored, state_manager=manager,
            )
            # Well under max_job_wait: an adopted orphan would stall first
            await asyncio.wait_for(panel.run(), timeout=0.5)
            await shutdown(panel, orchestrator)
            return orchestrator, panel

        orchestrator, panel = asyncio.run(scenario())

        assert orchestrator.navigator.calls == [URL_A, URL_B]
        assert panel.notices == []
        assert panel.session.queue.get(URL_A).retry_count == 0
        assert panel.session.queue.counts()["completed"] == 2
        assert orchestrator.recovery_lock is False
        assert manager.is_recovery_mode() is False


class TestPanelEvents:
    """Event handling in isolation."""

    def _panel(self, config):
        bus = MessageBus()
        panel = PanelController(bus, config)
        panel.session.replace_jobs([URL_A, URL_B])
        panel.session.queue.mark_in_flight(URL_A)
        panel.outstanding = URL_A
        panel.request_id = "current"
        return panel

    def test_result_for_superseded_request_is_discarded(self, fast_panel_config):
        panel = self._panel(fast_panel_config)
        event = messages.xhr_captured(URL_A, make_record(URL_A), SessionSnapshot(), "previous")

        asyncio.run(panel.handle_event(event))

        assert panel.session.record_for(URL_A) is None
        assert panel.outstanding == URL_A

    def test_matching_result_is_recorded(self, fast_panel_config):
        panel = self._panel(fast_panel_config)
        event = messages.xhr_captured(URL_A, make_record(URL_A), SessionSnapshot(), "current")

        async def scenario():
            await panel.handle_event(event)
            await panel.stop()

        asyncio.run(scenario())

        assert panel.session.queue.get(URL_A).status == JobStatus.COMPLETED
        assert panel.outstanding is None

    def test_result_without_place_id_is_not_dispatched_again(self, fast_panel_config):
        panel = self._panel(fast_panel_config)
        event = messages.xhr_captured(URL_A, make_record(URL_A, place_id=""), SessionSnapshot(), "current")

        async def scenario():
            await panel.handle_event(event)
            await panel.stop()

        asyncio.run(scenario())

        assert panel.session.record_for(URL_A) is None
        assert panel.session.queue.is_processed(URL_A)
        assert panel.outstanding is None
        assert panel.session.queue.next_pending().url == URL_B

    def test_auth_failed_is_terminal(self, fast_panel_config):
        panel = self._panel(fast_panel_config)

        async def scenario():
            await panel.handle_event(messages.auth_failed(URL_A, "Failed after 4 attempts: timeout", "current"))
            await panel.stop()

        asyncio.run(scenario())

        job = panel.session.queue.get(URL_A)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 1
        assert panel.outstanding is None
        assert panel.notices == [f"{URL_A}: Failed after 4 attempts: timeout"]

    def test_retry_processing_requeues_outstanding_job(self, fast_panel_config):
        panel = self._panel(fast_panel_config)

        async def scenario():
            await panel.handle_event(messages.retry_processing(URL_A))
            await panel.stop()

        asyncio.run(scenario())

        job = panel.session.queue.get(URL_A)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert panel.outstanding is None

    def test_unreachable_orchestrator_counts_failure(self, fast_panel_config):
        async def scenario():
            panel = PanelController(MessageBus(), fast_panel_config)
            panel.running = True
            await panel.collect([URL_A])
            await panel.advance()
            await panel.stop()
            return panel

        panel = asyncio.run(scenario())

        job = panel.session.queue.get(URL_A)
        assert job.retry_count == 1
        assert job.status == JobStatus.PENDING
        assert panel.outstanding is None
        assert len(panel.notices) == 1

    def test_retry_job_gives_fresh_budget(self, fast_panel_config):
        panel = PanelController(MessageBus(), fast_panel_config)
        panel.session.replace_jobs([URL_A])
        for _ in range(3):
            panel.session.queue.increment_retry(URL_A, "timeout")

        asyncio.run(panel.retry_job(URL_A))

        job = panel.session.queue.get(URL_A)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert panel.rows()[0]["error"] is None
