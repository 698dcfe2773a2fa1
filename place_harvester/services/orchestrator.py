"""
Page-by-page extraction orchestrator.

Sequences one job at a time: navigate the tab, wait for the capture signal,
extract, check the place id against the dispatched URL, then record the
result or retry with backoff. At most one job is in flight; a second
``process_url`` is answered with ``busy``.
"""

import asyncio
import time
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import OrchestratorConfig
from place_harvester.crawlers.capture import CaptureEvent
from place_harvester.data.models import JobStatus, SessionSnapshot
from place_harvester.data.place_keys import extract_key_from_url, extract_place_slug, keys_match
from place_harvester.data.session import Session
from place_harvester.messaging import messages
from place_harvester.messaging.messages import CommandType
from place_harvester.services.retry_policy import RetryPolicy
from place_harvester.utils.errors import (
    CaptureTimeoutError, ExtractionError, KeyMismatchError, MessageDeliveryError,
    NavigationError, PlaceHarvesterError, StateManagementError, ValidationError
)
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('orchestrator')


class OrchestratorState(Enum):
    """Where the active job is in its lifecycle."""
    IDLE = "idle"
    AWAITING_CAPTURE = "awaiting_capture"
    EXTRACTING = "extracting"
    RECORDING = "recording"
    RETRYING = "retrying"
    FAILING = "failing"


class Orchestrator:
    """
    Owns the authoritative session and drives the browser for one job at a time.

    Collaborators are injected so the state machine runs the same against a
    real Playwright tab or test doubles:

    * ``navigator``: ``await navigate(url, ready) -> bool`` and ``active_page``
    * ``capture``: ``arm(url, attempt_id) -> Future`` and ``disarm()``
    * ``extractor``: ``await extract(page) -> PlaceRecord | None``
    * ``enrichment``: optional ``summarize(record) -> EnrichmentResult``
    * ``state_manager``: optional ``save_session(session)``
    """

    def __init__(
        self,
        bus,
        navigator,
        capture,
        extractor,
        config: Optional[OrchestratorConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        enrichment=None,
        state_manager=None,
        session: Optional[Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.bus = bus
        self.navigator = navigator
        self.capture = capture
        self.extractor = extractor
        self.config = config or OrchestratorConfig()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.enrichment = enrichment
        self.state_manager = state_manager
        self.clock = clock
        self.sleep = sleep

        self.session = session or Session(max_retries=self.retry_policy.max_retries)
        self.state = OrchestratorState.IDLE

        # A session restored mid-job has no task behind it; the first
        # get_state or process_url force-unlocks it
        self.recovery_lock = self.session.is_processing

        self.request_id: Optional[str] = None
        self.dispatched_url: Optional[str] = None
        self.started_at: Optional[float] = None
        self.has_processed_signal = False
        self.dispatch_counts: Dict[str, int] = defaultdict(int)
        self.undelivered: List[Dict[str, Any]] = []

        self._attempt_seq = 0
        self._current_attempt: Optional[int] = None
        self._job_task: Optional[asyncio.Task] = None
        self._tasks = set()

        bus.bind_orchestrator(self.handle_command)

    @property
    def active_url(self) -> Optional[str]:
        return self.session.active_job

    # Command channel

    async def handle_command(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Entry point for every panel command."""
        kind = messages.message_type(message)
        try:
            if kind == CommandType.GET_STATE.value:
                return await self._get_state()
            if kind == CommandType.SET_COLLECTED_URLS.value:
                return self._set_collected_urls(message.get("urls") or [])
            if kind == CommandType.PROCESS_URL.value:
                return await self.process_url(
                    message.get("url") or "",
                    message.get("state"),
                    message.get("requestId"),
                )
            if kind == CommandType.CLEAR_CAPTURED_DATA.value:
                return self.clear()
            if kind == CommandType.PROCESSING_COMPLETE.value:
                return self._processing_complete()
        except PlaceHarvesterError as e:
            logger.error(f"Command {kind} failed: {e.message}")
            return {"success": False, "error": e.message}

        logger.warning(f"Unknown command: {kind}")
        return {"success": False, "error": f"Unknown command: {kind}"}

    async def _get_state(self) -> Dict[str, Any]:
        if self.recovery_lock:
            self._unlock_recovered()
            self._persist()
        response = {
            "success": True,
            "state": self.session.snapshot().to_wire(),
            "jobs": [job.to_dict() for job in self.session.queue.jobs()],
            "sessionComplete": self.session.session_complete,
            "activeRequestId": self.request_id,
        }
        await self._flush_undelivered()
        return response

    def _set_collected_urls(self, urls) -> Dict[str, Any]:
        ordered = self.session.replace_jobs(urls)
        active = self.active_url
        if active is not None and active not in self.session.queue:
            self.session.queue.extend([active])
        logger.info(f"Collected URL list replaced ({len(ordered)} jobs)")
        self._persist()
        return {"success": True, "count": len(ordered)}

    def _processing_complete(self) -> Dict[str, Any]:
        self.session.session_complete = True
        counts = self.session.queue.counts()
        logger.info(f"Session complete: {counts}")
        self._persist()
        return {"success": True, "counts": counts}

    def clear(self) -> Dict[str, Any]:
        """
        Drop all session state at once.

        A job still running in the background is superseded, not aborted:
        whatever it produces afterwards is discarded.
        """
        self.capture.disarm()
        self._release()
        self.session.reset()
        self.undelivered.clear()
        self.recovery_lock = False
        self.dispatch_counts.clear()
        logger.info("Captured data cleared")
        self._persist()
        return {"success": True}

    async def process_url(self, url: str, state: Optional[Dict[str, Any]] = None,
                          request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Accept one job for processing.

        Args:
            url: Place URL to process
            state: Panel snapshot (wire form) to merge before starting
            request_id: Panel's identifier for this dispatch, echoed in events

        Returns:
            ``{"success": True}`` when accepted, ``{"success": False, "busy": True}``
            while another dispatch is in flight
        """
        url = (url or "").strip()
        if not url:
            return {"success": False, "error": "No URL provided"}

        if self.recovery_lock:
            self._unlock_recovered()
        elif self.active_url is not None and self._is_stuck():
            superseded = self._force_reset()
            logger.warning(f"Job {superseded} stuck past {self.config.stuck_after}s, superseded by {url}")
            await self._emit(messages.retry_processing(superseded))

        if self.active_url is not None:
            logger.info(f"Busy with {self.active_url}, rejecting {url}")
            return {"success": False, "busy": True, "currentUrl": self.active_url}

        if state:
            try:
                self.session.apply_snapshot(SessionSnapshot.from_wire(state))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed panel snapshot: {e.message}")

        queue = self.session.queue
        if url not in queue:
            queue.extend([url])

        record = self.session.record_for(url)
        if record is not None:
            logger.info(f"{url} already processed as {record.place_id}")
            await self._emit(messages.xhr_captured(url, record, self.session.snapshot(), request_id))
            return {"success": True, "alreadyProcessed": True}

        job = queue.get(url)
        if job.status == JobStatus.FAILED:
            queue.reopen(url)

        queue.mark_in_flight(url)
        self.session.active_job = url
        self.request_id = request_id
        self.started_at = self.clock()
        self.state = OrchestratorState.AWAITING_CAPTURE
        self._persist()

        self._job_task = self._spawn(self._run_job(url))
        return {"success": True}

    # Job lifecycle

    async def _run_job(self, url: str) -> None:
        while True:
            attempt_id = self._next_attempt()
            try:
                ok, reason = await self._attempt(url, attempt_id)
            except PlaceHarvesterError as e:
                ok, reason = False, e.message
            if ok or not self._is_current(attempt_id):
                return

            job = self.session.queue.get(url)
            retries = job.retry_count
            if not self.retry_policy.can_retry(retries):
                await self._fail(url, reason)
                return

            delay = self.retry_policy.delay_for(retries)
            self.session.queue.increment_retry(url, reason, requeue=False)
            self.state = OrchestratorState.RETRYING
            logger.warning(f"Retry {retries + 1}/{self.retry_policy.max_retries} for {url} "
                           f"in {delay}s: {reason}")
            self._persist()

            await self.sleep(delay)
            if not self._is_current(attempt_id):
                return

    async def _attempt(self, url: str, attempt_id: int) -> Tuple[bool, Optional[str]]:
        """
        One navigation plus capture wait plus extraction.

        Raises:
            NavigationError: If no tab could be pointed at the URL
            CaptureTimeoutError: If no matching response arrived in time
            ExtractionError: If the page yielded no usable record
        """
        loop = asyncio.get_running_loop()
        ready = self.capture.arm(url, attempt_id)
        self.has_processed_signal = False
        self.dispatched_url = url
        self.state = OrchestratorState.AWAITING_CAPTURE
        self.dispatch_counts[url] += 1
        deadline = loop.time() + self.config.capture_timeout

        navigated = await self.navigator.navigate(url, ready=ready)
        if not self._is_current(attempt_id):
            return False, "superseded"
        if not navigated:
            self.capture.disarm()
            raise NavigationError("Navigation failed", {"url": url})

        remaining = deadline - loop.time()
        if not ready.done() and remaining > 0:
            await asyncio.wait({ready}, timeout=remaining)
        if not self._is_current(attempt_id):
            return False, "superseded"

        if not ready.done() or ready.cancelled():
            self.capture.disarm()
            raise CaptureTimeoutError(f"No data response within {self.config.capture_timeout}s", {"url": url})

        return await self.on_capture(ready.result())

    async def on_capture(self, event: CaptureEvent) -> Tuple[bool, Optional[str]]:
        """
        Extract and record after a capture signal.

        Signals for another attempt, for a URL other than the one last
        dispatched, or repeated for the same attempt are ignored.

        Returns:
            ``(True, None)`` once recorded, ``(False, reason)`` when ignored

        Raises:
            ExtractionError: If the page yielded no record
            KeyMismatchError: If the captured response or the record belongs to another place
            ValidationError: If no place id could be derived
        """
        if not self._is_current(event.attempt_id) or event.job_url != self.dispatched_url \
                or event.job_url != self.active_url:
            logger.info(f"Discarding stale capture for {event.job_url}")
            return False, "superseded"
        if self.has_processed_signal:
            logger.debug(f"Duplicate capture for {event.job_url} ignored")
            return False, "duplicate"
        self.has_processed_signal = True

        url = event.job_url
        self.state = OrchestratorState.EXTRACTING
        try:
            record = await self.extractor.extract(self.navigator.active_page)
        except Exception as e:
            logger.warning(f"Extraction raised for {url}: {e}")
            record = None

        if not self._is_current(event.attempt_id):
            logger.info(f"Discarding extraction result for superseded job {url}")
            return False, "superseded"
        if record is None:
            raise ExtractionError("Extraction returned no data", {"url": url})

        payload_key = event.payload_key
        if not record.place_id:
            record.place_id = payload_key or extract_key_from_url(url) or extract_place_slug(url) or ""
        record.validate()

        # The captured response is checked first, then the page's own key
        url_key = extract_key_from_url(url)
        for record_key in (payload_key, record.place_id):
            if keys_match(url_key, record_key) is False:
                logger.warning(f"Place id mismatch for {url}: expected {url_key}, got {record_key}")
                raise KeyMismatchError(f"Place id mismatch: {record_key}",
                                       {"url": url, "expected": url_key})

        if self.enrichment is not None and self.config.enrich:
            result = await asyncio.to_thread(self.enrichment.summarize, record)
            if not self._is_current(event.attempt_id):
                return False, "superseded"
            if result.processed:
                record.summary = result.summary
            else:
                logger.info(f"No summary for {url}: {result.error}")

        self.state = OrchestratorState.RECORDING
        if not record.url:
            record.url = url
        self.session.record_result(url, record)
        request_id = self.request_id
        self._release()
        self._persist()
        logger.info(f"Recorded {url} as {record.place_id}")

        await self._emit(messages.xhr_captured(url, record, self.session.snapshot(), request_id))
        return True, None

    async def _fail(self, url: str, reason: Optional[str]) -> None:
        self.state = OrchestratorState.FAILING
        attempts = self.dispatch_counts[url]
        error = f"Failed after {attempts} attempts: {reason}"
        self.session.queue.mark_failed(url, error)
        request_id = self.request_id
        self._release()
        self._persist()
        logger.error(f"Giving up on {url}: {error}")

        await self._emit(messages.auth_failed(url, error, request_id))

    # Locks and bookkeeping

    def _next_attempt(self) -> int:
        self._attempt_seq += 1
        self._current_attempt = self._attempt_seq
        return self._attempt_seq

    def _is_current(self, attempt_id: int) -> bool:
        return self.active_url is not None and attempt_id == self._current_attempt

    def _is_stuck(self) -> bool:
        return self.started_at is not None and self.clock() - self.started_at > self.config.stuck_after

    def _release(self) -> None:
        """Clear the in-flight lock and return to idle."""
        self.session.active_job = None
        self._current_attempt = None
        self.request_id = None
        self.dispatched_url = None
        self.started_at = None
        self.has_processed_signal = False
        self.state = OrchestratorState.IDLE

    def _unlock_recovered(self) -> None:
        """Release a job restored from disk mid-flight; nothing is running it."""
        logger.warning(f"Recovered session was locked on {self.active_url}, force-unlocking")
        self._force_reset()
        self.recovery_lock = False
        if self.state_manager is not None:
            self.state_manager.clear_recovery_mode()

    def _force_reset(self) -> Optional[str]:
        """Drop the in-flight job back to pending; returns its URL."""
        superseded = self.active_url
        self.capture.disarm()
        if superseded is not None:
            self.session.queue.revert_to_pending(superseded)
        self._release()
        return superseded

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        logger.error(f"Job task failed: {type(error).__name__}: {error}")
        if task is self._job_task and self.active_url is not None:
            self._force_reset()

    async def _emit(self, event: Dict[str, Any]) -> None:
        try:
            await self.bus.publish_event(event)
        except MessageDeliveryError as e:
            logger.warning(f"Could not deliver {event.get('type')}, buffering: {e.message}")
            self.undelivered.append(event)

    async def _flush_undelivered(self) -> None:
        pending, self.undelivered = self.undelivered, []
        for event in pending:
            await self._emit(event)

    def _persist(self) -> None:
        if self.state_manager is None:
            return
        try:
            self.state_manager.save_session(self.session)
        except StateManagementError as e:
            logger.error(f"State not saved: {e.message}")

    async def wait_idle(self) -> None:
        """Wait until no job task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
        self._persist()
