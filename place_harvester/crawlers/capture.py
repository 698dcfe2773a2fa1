"""
Capture listener: recognises the network response that means a place page
has its data.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from place_harvester.data.place_keys import extract_key
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('capture')


@dataclass
class CaptureEvent:
    """A matching network completion for an armed job."""
    job_url: str
    attempt_id: int
    response_url: str
    payload: Any = None

    @property
    def payload_key(self) -> Optional[str]:
        return extract_key(self.payload) if self.payload is not None else None


class CaptureListener:
    """
    Resolves one future per dispatched attempt.

    ``arm()`` is called by the orchestrator right before navigation; the
    first matching response after that resolves the returned future. Later
    matches for the same attempt are ignored.
    """

    def __init__(self, patterns: Iterable[str], page_filter: Optional[Callable[[], Any]] = None):
        self.patterns: List[re.Pattern] = [re.compile(pattern) for pattern in patterns]
        self.page_filter = page_filter
        self._future: Optional[asyncio.Future] = None
        self._job_url: Optional[str] = None
        self._attempt_id: Optional[int] = None
        self._signalled = False

    def matches(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self.patterns)

    @property
    def armed(self) -> bool:
        return self._future is not None and not self._future.done()

    @property
    def has_processed_signal(self) -> bool:
        return self._signalled

    def arm(self, job_url: str, attempt_id: int) -> asyncio.Future:
        """Start waiting for the capture of ``job_url`` under ``attempt_id``."""
        self.disarm()
        self._future = asyncio.get_running_loop().create_future()
        self._job_url = job_url
        self._attempt_id = attempt_id
        self._signalled = False
        return self._future

    def disarm(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._future = None
        self._job_url = None
        self._attempt_id = None

    def signal(self, response_url: str, payload: Any = None) -> bool:
        """
        Feed one completed response.

        Returns:
            True when the response resolved the armed attempt
        """
        if not self.matches(response_url):
            return False
        if self._signalled or not self.armed:
            logger.debug(f"Ignoring capture signal for {response_url}")
            return False

        self._signalled = True
        self._future.set_result(CaptureEvent(
            job_url=self._job_url,
            attempt_id=self._attempt_id,
            response_url=response_url,
            payload=payload,
        ))
        logger.info(f"Captured data response for {self._job_url}")
        return True

    async def on_request_finished(self, request) -> None:
        """Playwright ``requestfinished`` handler."""
        url = request.url
        if not self.matches(url) or self._signalled or not self.armed:
            return

        if self.page_filter is not None:
            try:
                page = request.frame.page
            except Exception:
                # Service worker requests have no frame
                return
            if page is not self.page_filter():
                return

        payload = None
        try:
            response = await request.response()
            if response is not None:
                payload = await response.text()
        except Exception as e:
            logger.debug(f"Could not read captured body for {url}: {e}")

        self.signal(url, payload)

    def attach(self, context) -> None:
        """Listen to every tab of a browser context."""
        context.on("requestfinished", self.on_request_finished)
