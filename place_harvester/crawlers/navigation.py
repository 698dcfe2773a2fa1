"""
Navigation controller: owns the tab the harvester drives.
"""

import asyncio
from typing import Any, List, Optional, Sequence

from config import NavigationConfig
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('navigation')


DEVTOOLS_PREFIXES = ('devtools://', 'chrome-devtools://')


class NavigationController:
    """
    Points one tab of the mapping application at a target URL.

    ``browser`` is anything exposing a ``pages`` list and an awaitable
    ``new_page()``; in production that is a ``BrowserSession``.
    """

    def __init__(self, browser, config: Optional[NavigationConfig] = None):
        self.browser = browser
        self.config = config or NavigationConfig()
        self.settle_delays: List[float] = list(self.config.settle_delays)
        self._active_page = None

    @property
    def active_page(self):
        """The tab last navigated or brought to front, if still open."""
        if self._active_page is not None and self._active_page.is_closed():
            self._active_page = None
        return self._active_page

    def is_target_page(self, page) -> bool:
        url = page.url or ''
        if url.startswith(DEVTOOLS_PREFIXES):
            return False
        return self.config.target_app_pattern in url

    def find_target_page(self):
        """
        Pick the tab to reuse.

        Preference: the active tab when it is on the mapping application,
        then any open tab on the mapping application. ``None`` means a new
        tab is needed.
        """
        active = self.active_page
        if active is not None and self.is_target_page(active):
            return active

        for page in self.browser.pages:
            if not page.is_closed() and self.is_target_page(page):
                return page
        return None

    async def navigate(self, url: str, ready: Optional[asyncio.Future] = None) -> bool:
        """
        Load ``url`` in the target tab and wait for it to settle.

        Args:
            url: Place page to open
            ready: Optional future (the capture signal); when it completes the
                settle wait ends early

        Returns:
            False only when neither updating an existing tab nor opening a new
            one worked
        """
        page = self.find_target_page()

        if page is not None:
            if await self._goto(page, url):
                await self._settle(ready)
                return True
            logger.warning(f"Updating existing tab failed, opening a new one for {url}")

        try:
            page = await self.browser.new_page()
        except Exception as e:
            logger.error(f"Could not open a new tab for {url}: {e}")
            return False

        if not await self._goto(page, url):
            logger.error(f"Navigation failed in both existing and new tab: {url}")
            return False

        await self._settle(ready)
        return True

    async def _goto(self, page, url: str) -> bool:
        try:
            await page.bring_to_front()
            await page.goto(url, wait_until='commit')
        except Exception as e:
            logger.warning(f"Navigation to {url} failed: {e}")
            return False

        self._active_page = page
        logger.info(f"Navigated to {url}")
        return True

    async def _settle(self, ready: Optional[asyncio.Future]) -> None:
        """Sleep through the settle delays; a completed ``ready`` cuts them short."""
        for delay in self.settle_delays:
            if ready is None:
                await asyncio.sleep(delay)
                continue
            if ready.done():
                return
            await asyncio.wait({ready}, timeout=delay)

    async def open_home(self) -> Any:
        """Make sure a tab on the mapping application exists and return it."""
        page = self.find_target_page()
        if page is None:
            page = await self.browser.new_page()
            await page.goto(self.config.home_url, wait_until='domcontentloaded')
        self._active_page = page
        return page
