"""
Playwright browser bootstrap for the harvester tab(s).
"""

from typing import List, Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Page
from playwright_stealth import stealth_async

from config import BrowserConfig
from place_harvester.utils.errors import NavigationError
from place_harvester.utils.logging import get_business_logger


logger = get_business_logger('navigation')


BROWSER_ARGS = [
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
    '--no-first-run',
    '--disable-default-apps',
    '--disable-background-timer-throttling',
    '--disable-backgrounding-occluded-windows',
    '--disable-renderer-backgrounding',
]

INIT_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', {
        get: () => undefined
    });
    if (!window.chrome) {
        window.chrome = { runtime: {} };
    }
"""


class BrowserSession:
    """
    One browser context whose pages are the tabs the harvester may drive.

    Usable as an async context manager::

        async with BrowserSession(config.browser) as browser:
            page = await browser.new_page()
    """

    def __init__(self, config: Optional[BrowserConfig] = None):
        self.config = config or BrowserConfig()
        self.playwright = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None

    async def start(self) -> BrowserContext:
        """
        Launch the browser and open the context.

        Raises:
            NavigationError: If the browser cannot be launched
        """
        if self.context is not None:
            return self.context

        try:
            self.playwright = await async_playwright().start()
            launcher = getattr(self.playwright, self.config.browser_type)
            viewport = {'width': self.config.viewport_width, 'height': self.config.viewport_height}
            args = BROWSER_ARGS if self.config.browser_type == 'chromium' else []

            if self.config.user_data_dir:
                # Persistent profile keeps the mapping site's cookies between runs
                self.context = await launcher.launch_persistent_context(
                    self.config.user_data_dir,
                    headless=self.config.headless,
                    args=args,
                    viewport=viewport,
                    locale=self.config.locale,
                )
            else:
                self.browser = await launcher.launch(headless=self.config.headless, args=args)
                self.context = await self.browser.new_context(
                    viewport=viewport,
                    locale=self.config.locale,
                )

            self.context.set_default_timeout(self.config.page_timeout)
            await self.context.add_init_script(INIT_SCRIPT)

            logger.info(f"Browser started ({self.config.browser_type}, headless={self.config.headless})")
            return self.context

        except Exception as e:
            await self.close()
            raise NavigationError(
                "Failed to start browser",
                {"error": str(e), "browser_type": self.config.browser_type}
            )

    @property
    def pages(self) -> List[Page]:
        if self.context is None:
            return []
        return [page for page in self.context.pages if not page.is_closed()]

    async def new_page(self) -> Page:
        """Open a new tab with stealth patches applied."""
        if self.context is None:
            await self.start()

        page = await self.context.new_page()
        if self.config.stealth:
            await stealth_async(page)
        return page

    async def close(self) -> None:
        """Close context, browser and driver, ignoring ones never opened."""
        try:
            if self.context is not None:
                await self.context.close()
            if self.browser is not None:
                await self.browser.close()
            if self.playwright is not None:
                await self.playwright.stop()
        except Exception as e:
            logger.warning(f"Error while closing browser: {e}")
        finally:
            self.context = None
            self.browser = None
            self.playwright = None

    async def __aenter__(self) -> 'BrowserSession':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
