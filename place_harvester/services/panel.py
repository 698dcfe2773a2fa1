"""
Panel controller: the driving loop that feeds jobs to the orchestrator.

The panel keeps its own copy of the session, asks the orchestrator to
process one URL at a time and folds every snapshot the orchestrator sends
back into its copy. It may be stopped and recreated at any point; a fresh
panel resynchronises with ``get_state`` before it dispatches anything.
"""

import asyncio
import dataclasses
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from config import PanelConfig
from place_harvester.data.export import write_csv
from place_harvester.data.models import Job, JobStatus, PlaceRecord, SessionSnapshot
from place_harvester.data.session import Session
from place_harvester.messaging import messages
from place_harvester.messaging.messages import EventType
from place_harvester.utils.errors import MessageDeliveryError, ValidationError
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('panel')


class PanelController:
    """
    Advances the job queue one dispatch at a time.

    Args:
        bus: Message bus shared with the orchestrator
        config: Panel timings and retry budget
        on_update: Called with the panel after every visible change
    """

    def __init__(self, bus, config: Optional[PanelConfig] = None,
                 on_update: Optional[Callable[['PanelController'], None]] = None):
        self.bus = bus
        self.config = config or PanelConfig()
        self.on_update = on_update

        self.session = Session(max_retries=self.config.max_retries)
        self.outstanding: Optional[str] = None
        self.request_id: Optional[str] = None
        self.dispatched_at: Optional[float] = None
        self.notices: List[str] = []
        self.websites: Dict[str, str] = {}
        self.completed = asyncio.Event()
        self.running = False

        self._stall_handle: Optional[asyncio.TimerHandle] = None
        self._advance_handle: Optional[asyncio.TimerHandle] = None
        self._tasks = set()

    # Lifecycle

    async def start(self) -> None:
        """Attach to the bus, resync with the orchestrator, then advance."""
        self.bus.attach_panel(self.handle_event)
        self.running = True
        await self.resync()
        if self.outstanding is None:
            await self.advance()

    async def stop(self) -> None:
        """Detach from the bus; the orchestrator keeps running."""
        self.running = False
        self._cancel_stall()
        self._cancel_advance()
        self.bus.detach_panel()
        for task in list(self._tasks):
            task.cancel()

    async def run(self, urls: Optional[Iterable[str]] = None,
                  websites: Optional[Dict[str, str]] = None) -> None:
        """Collect ``urls`` (when given), drive the queue and wait for the end."""
        self.completed.clear()
        self.bus.attach_panel(self.handle_event)
        self.running = True
        await self.resync()
        if urls is not None:
            await self.collect(urls, websites)
        if self.outstanding is None:
            await self.advance()
        await self.completed.wait()

    async def resync(self) -> bool:
        """
        Merge the orchestrator's state into ours.

        When the orchestrator reports a job in flight that we know about, it
        becomes our outstanding job.

        Returns:
            False when the orchestrator could not be reached
        """
        try:
            response = await self.bus.send_command(messages.get_state())
        except MessageDeliveryError as e:
            logger.warning(f"State resync failed: {e.message}")
            return False

        try:
            snapshot = SessionSnapshot.from_wire(response.get("state"))
        except ValidationError as e:
            logger.warning(f"Orchestrator sent a malformed snapshot: {e.message}")
            return False

        self.session.apply_snapshot(snapshot)
        self._adopt_job_states(response.get("jobs") or [])

        if snapshot.is_processing and snapshot.current_url in self.session.queue \
                and self.outstanding is None:
            job = self.session.queue.get(snapshot.current_url)
            if job.status != JobStatus.COMPLETED:
                self.session.queue.mark_in_flight(job.url)
                self._set_outstanding(job.url, response.get("activeRequestId"))
                self._arm_stall(job.url, self.request_id)
                logger.info(f"Adopted in-flight job {job.url} from orchestrator")

        self._notify()
        return True

    def _adopt_job_states(self, jobs: List[Dict[str, Any]]) -> None:
        """Take over jobs the orchestrator has already given up on."""
        for data in jobs:
            try:
                remote = Job.from_dict(data)
            except (KeyError, ValueError):
                continue
            local = self.session.queue.get(remote.url)
            if local is None or local.status == JobStatus.COMPLETED:
                continue
            if remote.status == JobStatus.FAILED and local.status == JobStatus.PENDING:
                self.session.queue.mark_failed(remote.url, remote.last_error)

    # Operator actions

    async def collect(self, urls: Iterable[str], websites: Optional[Dict[str, str]] = None) -> List[str]:
        """Start a session over a freshly collected URL list."""
        ordered = self.session.replace_jobs(urls)
        self.completed.clear()
        if websites:
            self.websites.update(websites)
        try:
            await self.bus.send_command(messages.set_collected_urls(ordered))
        except MessageDeliveryError as e:
            logger.warning(f"Could not share collected URLs: {e.message}")
        logger.info(f"Collected {len(ordered)} URLs")
        self._notify()
        return ordered

    async def clear(self) -> None:
        """Reset the session here and in the orchestrator."""
        self._cancel_stall()
        self._cancel_advance()
        self.session.reset()
        self.outstanding = None
        self.request_id = None
        self.notices.clear()
        self.websites.clear()
        try:
            await self.bus.send_command(messages.clear_captured_data())
        except MessageDeliveryError as e:
            logger.warning(f"Orchestrator not reached for clear: {e.message}")
        self._notify()

    async def retry_job(self, url: str) -> None:
        """Give a failed row a fresh retry budget and resume."""
        self.session.queue.reopen(url)
        self.session.session_complete = False
        self.completed.clear()
        logger.info(f"Operator retry for {url}")
        self._notify()
        if self.outstanding is None:
            await self.advance()

    def rows(self) -> List[Dict[str, Any]]:
        """One row per job: status, retries, last error and the record when done."""
        rows = []
        for job in self.session.queue.jobs():
            record = self.session.record_for(job.url)
            rows.append({
                "url": job.url,
                "status": job.status.value,
                "retryCount": job.retry_count,
                "error": job.last_error,
                "record": record.to_dict() if record else None,
            })
        return rows

    def export_records(self) -> List:
        """Completed (url, record) pairs, website filled from the results page when missing."""
        pairs = []
        for url, record in self.session.completed_records():
            if not record.website and self.websites.get(url):
                record = dataclasses.replace(record, website=self.websites[url])
            pairs.append((url, record))
        return pairs

    def export_csv(self, path: Union[str, Path]) -> Path:
        return write_csv(self.export_records(), path)

    # Driving loop

    async def advance(self) -> None:
        """Dispatch the next pending job unless one is already outstanding."""
        if not self.running or self.outstanding is not None:
            return

        job = self.session.queue.next_pending()
        if job is None:
            await self._finish()
            return

        url = job.url
        request_id = uuid.uuid4().hex
        self.session.queue.mark_in_flight(url)
        self._set_outstanding(url, request_id)
        self._arm_stall(url, request_id)
        self._notify()

        try:
            response = await self.bus.send_command(
                messages.process_url(url, self.session.snapshot(), request_id)
            )
        except MessageDeliveryError as e:
            logger.warning(f"process_url for {url} not delivered: {e.message}")
            self._on_failure(url, f"Orchestrator unreachable: {e.message}", terminal=False)
            return

        if response.get("success"):
            logger.info(f"Dispatched {url}")
            return

        if response.get("busy"):
            self._recover_from_busy(url)
        else:
            self._on_failure(url, response.get("error") or "Rejected by orchestrator", terminal=False)

    async def handle_event(self, message: Dict[str, Any]) -> None:
        """Entry point for every orchestrator event."""
        kind = messages.message_type(message)
        if kind == EventType.XHR_CAPTURED.value:
            self._on_result(message)
        elif kind == EventType.AUTH_FAILED.value:
            self._on_auth_failed(message)
        elif kind == EventType.RETRY_PROCESSING.value:
            self._on_retry_processing(message.get("url"))
        else:
            logger.warning(f"Unknown event: {kind}")

    def _is_stale(self, message: Dict[str, Any]) -> bool:
        tag = message.get("requestId")
        return tag is not None and tag != self.request_id

    def _on_result(self, message: Dict[str, Any]) -> None:
        url = message.get("url")
        if self._is_stale(message):
            logger.info(f"Discarding result for superseded request ({url})")
            return

        try:
            snapshot = SessionSnapshot.from_wire(message.get("currentState"))
            record = PlaceRecord.from_dict(message.get("data"))
        except ValidationError as e:
            logger.warning(f"Malformed result event for {url}: {e.message}")
            return

        self.session.apply_snapshot(snapshot)
        if url:
            self.session.queue.note_processed(url)
        if url and record.place_id:
            if url not in self.session.queue:
                self.session.queue.extend([url])
            self.session.record_result(url, record)

        logger.info(f"Result for {url}: {record.name or record.place_id}")
        if url == self.outstanding:
            self._clear_outstanding()
            self._schedule_advance(self.config.success_cooldown)
        self._notify()

    def _on_auth_failed(self, message: Dict[str, Any]) -> None:
        url = message.get("url")
        if self._is_stale(message):
            logger.info(f"Discarding failure for superseded request ({url})")
            return
        self._on_failure(url, message.get("error") or "Failed to process location data", terminal=True)

    def _on_failure(self, url: str, reason: str, terminal: bool) -> None:
        """
        Count one failed dispatch of ``url``.

        ``terminal`` failures (the orchestrator gave up) mark the job failed
        outright; otherwise it is requeued until the panel's budget runs out.
        """
        queue = self.session.queue
        if url in queue and queue.get(url).status != JobStatus.COMPLETED:
            count = queue.increment_retry(url, reason)
            if terminal:
                queue.mark_failed(url, reason)
            logger.warning(f"{url} failed (retry {count}): {reason}")
            self.notices.append(f"{url}: {reason}")

        if url == self.outstanding:
            self._clear_outstanding()
        self._schedule_advance(self.config.failure_cooldown)
        self._notify()

    def _on_retry_processing(self, url: Optional[str]) -> None:
        if url is None or url != self.outstanding:
            return
        logger.info(f"Orchestrator asked to retry {url}")
        self.session.queue.revert_to_pending(url)
        self._clear_outstanding()
        self._schedule_recovery()
        self._notify()

    def _recover_from_busy(self, url: str) -> None:
        logger.info(f"Orchestrator busy, {url} goes back to pending")
        self.session.queue.revert_to_pending(url)
        self._clear_outstanding()
        self._schedule_recovery()

    async def _on_stall(self, url: str, request_id: Optional[str]) -> None:
        """
        Stall timer fired for ``url``.

        While the orchestrator still reports the job as its active one (and
        ``max_job_wait`` has not passed) the timer is re-armed; otherwise the
        stall counts as a failure.
        """
        if url != self.outstanding or request_id != self.request_id:
            return

        try:
            response = await self.bus.send_command(messages.get_state())
            state = response.get("state") or {}
        except MessageDeliveryError:
            state = {}

        if url != self.outstanding or request_id != self.request_id:
            return
        waited = asyncio.get_running_loop().time() - (self.dispatched_at or 0.0)
        if state.get("isProcessing") and state.get("currentUrl") == url \
                and waited < self.config.max_job_wait:
            logger.info(f"{url} still in progress, extending stall timer")
            self._arm_stall(url, request_id)
            return

        logger.warning(f"No response for {url} within {self.config.stall_timeout}s")
        self._on_failure(url, "Stalled: no response from orchestrator", terminal=False)

    async def _finish(self) -> None:
        if self.session.session_complete and self.completed.is_set():
            return
        self.session.session_complete = True
        counts = self.session.queue.counts()
        logger.info(f"All jobs handled: {counts}")
        try:
            await self.bus.send_command(messages.processing_complete())
        except MessageDeliveryError as e:
            logger.warning(f"processing_complete not delivered: {e.message}")
        self.completed.set()
        self._notify()

    # Timers

    def _set_outstanding(self, url: str, request_id: Optional[str]) -> None:
        self.outstanding = url
        self.request_id = request_id
        self.dispatched_at = asyncio.get_running_loop().time()
        self.session.active_job = url

    def _clear_outstanding(self) -> None:
        self._cancel_stall()
        self.outstanding = None
        self.request_id = None
        self.dispatched_at = None
        self.session.active_job = None

    def _arm_stall(self, url: str, request_id: Optional[str]) -> None:
        self._cancel_stall()
        loop = asyncio.get_running_loop()
        self._stall_handle = loop.call_later(
            self.config.stall_timeout,
            lambda: self._spawn(self._on_stall(url, request_id)),
        )

    def _cancel_stall(self) -> None:
        if self._stall_handle is not None:
            self._stall_handle.cancel()
            self._stall_handle = None

    def _schedule_advance(self, delay: float) -> None:
        self._cancel_advance()
        loop = asyncio.get_running_loop()
        self._advance_handle = loop.call_later(delay, lambda: self._spawn(self.advance()))

    def _schedule_recovery(self) -> None:
        self._cancel_advance()
        loop = asyncio.get_running_loop()
        self._advance_handle = loop.call_later(
            self.config.recovery_delay, lambda: self._spawn(self._resync_and_advance())
        )

    async def _resync_and_advance(self) -> None:
        await self.resync()
        await self.advance()

    def _cancel_advance(self) -> None:
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)
