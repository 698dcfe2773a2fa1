"""
Main application entry point for the place harvester.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import config
from config import ConfigManager, HarvesterConfig
from place_harvester.crawlers.capture import CaptureListener
from place_harvester.crawlers.extraction import PlaceExtractor, collect_place_urls
from place_harvester.crawlers.navigation import NavigationController
from place_harvester.data.job_queue import dedupe_urls
from place_harvester.messaging.bus import MessageBus
from place_harvester.services.enrichment import SummaryService
from place_harvester.services.orchestrator import Orchestrator
from place_harvester.services.panel import PanelController
from place_harvester.services.retry_policy import RetryPolicy
from place_harvester.services.state_manager import StateManager
from place_harvester.utils.errors import ConfigurationError, NavigationError, StateManagementError
from place_harvester.utils.logging import get_log_statistics, get_logger, setup_logging


logger = get_logger(__name__)


def read_urls_file(path: str) -> List[str]:
    """One URL per line; blank lines and ``#`` comments are skipped."""
    lines = Path(path).read_text(encoding='utf-8').splitlines()
    return dedupe_urls(line for line in lines if line.strip() and not line.strip().startswith('#'))


class HarvesterApp:
    """Wires the orchestrator and the panel around one browser session."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the application.

        Args:
            config_path: Optional path to configuration file
        """
        self.config_path = config_path
        self.config_manager: Optional[ConfigManager] = None
        self.config: Optional[HarvesterConfig] = None

        self.state_manager: Optional[StateManager] = None
        self.bus: Optional[MessageBus] = None
        self.browser = None
        self.orchestrator: Optional[Orchestrator] = None
        self.panel: Optional[PanelController] = None

    def initialize(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        """Load configuration, apply CLI overrides and set up logging."""
        if self.config_path:
            self.config_manager = ConfigManager(self.config_path)
            self.config = self.config_manager.load_config()
        else:
            self.config_manager = config.config_manager
            self.config = config.get_config()

        overrides = overrides or {}
        if overrides.get('headless') is not None:
            self.config.browser.headless = overrides['headless']
        if overrides.get('state_file'):
            self.config.storage.state_file = overrides['state_file']
        if overrides.get('log_level'):
            self.config.log_level = overrides['log_level']
        if overrides.get('enrich'):
            self.config.orchestrator.enrich = True

        setup_logging(self.config.log_level, self.config.log_file)
        self.state_manager = StateManager(
            self.config.storage.state_file,
            max_retries=self.config.orchestrator.max_retries,
        )
        logger.info("Place harvester initialized", state_file=self.config.storage.state_file)

    async def _start_browser(self) -> None:
        # Playwright is imported here so the rest of the package works without a driver
        from place_harvester.crawlers.browser import BrowserSession

        self.browser = BrowserSession(self.config.browser)
        context = await self.browser.start()

        navigator = NavigationController(self.browser, self.config.navigation)
        capture = CaptureListener(
            self.config.orchestrator.capture_url_patterns,
            page_filter=lambda: navigator.active_page,
        )
        capture.attach(context)

        enrichment = SummaryService(self.config.enrichment) if self.config.orchestrator.enrich else None

        self.bus = MessageBus()
        self.orchestrator = Orchestrator(
            self.bus,
            navigator,
            capture,
            PlaceExtractor(),
            config=self.config.orchestrator,
            retry_policy=RetryPolicy.from_config(self.config.orchestrator),
            enrichment=enrichment,
            state_manager=self.state_manager,
            session=self.state_manager.load_session(),
        )
        self.panel = PanelController(self.bus, self.config.panel)

    async def collect_from_search(self, search_url: str) -> Dict[str, Any]:
        """Open a results page and gather its place links."""
        navigator = self.orchestrator.navigator
        page = await navigator.open_home()
        await page.goto(search_url, wait_until='domcontentloaded')
        await asyncio.sleep(max(self.config.navigation.settle_delays or [0]))
        links = await collect_place_urls(page)
        return {'urls': links.urls, 'websites': links.websites}

    async def run(self, urls: Optional[List[str]] = None, search_url: Optional[str] = None,
                  output: Optional[str] = None) -> Dict[str, Any]:
        """
        Process ``urls`` (or the links found at ``search_url``) and export a CSV.

        With neither, the saved session is resumed.

        Returns:
            Job counts and the export path
        """
        await self._start_browser()
        try:
            websites = {}
            if search_url:
                collected = await self.collect_from_search(search_url)
                urls = collected['urls']
                websites = collected['websites']

            await self.panel.run(urls or None, websites)

            export_path = self.panel.export_csv(output or self.config.storage.export_dir)
            return {
                'counts': self.panel.session.queue.counts(),
                'export': str(export_path),
                'notices': list(self.panel.notices),
            }
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self.panel is not None:
            await self.panel.stop()
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        if self.browser is not None:
            await self.browser.close()

    def get_status(self) -> Dict[str, Any]:
        """Summary of the saved session without starting a browser."""
        session = self.state_manager.load_session()
        if session is None:
            return {'saved_session': False}
        return {
            'saved_session': True,
            'jobs': session.queue.counts(),
            'records': len(session.results_by_place_id),
            'active_job': session.active_job,
            'session_complete': session.session_complete,
        }


def create_cli_parser() -> argparse.ArgumentParser:
    """Create command-line interface parser."""
    parser = argparse.ArgumentParser(
        description='Place Harvester - extract business listings from place pages',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --urls-file places.txt             # Process URLs listed in a file
  %(prog)s --search-url "https://..."         # Collect place links from a results page
  %(prog)s                                    # Resume the saved session
  %(prog)s --status                           # Show saved session status
  %(prog)s --log-stats                        # Show log file statistics
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        help='Path to configuration file (default: config.json)'
    )

    source_group = parser.add_mutually_exclusive_group()
    source_group.add_argument(
        '--urls-file',
        type=str,
        help='File with one place URL per line'
    )
    source_group.add_argument(
        '--search-url',
        type=str,
        help='Results page to collect place URLs from'
    )
    source_group.add_argument(
        '--status',
        action='store_true',
        help='Show saved session status and exit'
    )
    source_group.add_argument(
        '--log-stats',
        action='store_true',
        help='Show log file statistics per area and exit'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        help='CSV file or directory for the export (default: storage.export_dir)'
    )
    parser.add_argument(
        '--state-file',
        type=str,
        help='Override the session state file'
    )

    headless_group = parser.add_mutually_exclusive_group()
    headless_group.add_argument(
        '--headless',
        dest='headless',
        action='store_true',
        default=None,
        help='Run the browser without a window'
    )
    headless_group.add_argument(
        '--headed',
        dest='headless',
        action='store_false',
        help='Show the browser window'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Override log level from configuration'
    )
    parser.add_argument(
        '--enrich',
        action='store_true',
        help='Summarize about text through the configured API'
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with command-line interface."""
    parser = create_cli_parser()
    args = parser.parse_args(argv)

    exit_code = 0
    try:
        app = HarvesterApp(config_path=args.config)
        app.initialize({
            'headless': args.headless,
            'state_file': args.state_file,
            'log_level': args.log_level,
            'enrich': args.enrich,
        })

        if args.status:
            print(json.dumps(app.get_status(), indent=2, ensure_ascii=False))
            return 0

        if args.log_stats:
            print(json.dumps(get_log_statistics(), indent=2, ensure_ascii=False))
            return 0

        urls = read_urls_file(args.urls_file) if args.urls_file else None
        result = asyncio.run(app.run(urls=urls, search_url=args.search_url, output=args.output))
        print(json.dumps(result, indent=2, ensure_ascii=False))

        if result['counts'].get('failed'):
            exit_code = 1

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
        exit_code = 0
    except (ConfigurationError, NavigationError, StateManagementError) as e:
        logger.error(f"Application error: {e}")
        exit_code = 1
    except OSError as e:
        logger.error(f"I/O error: {e}")
        exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
