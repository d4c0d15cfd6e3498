#!/usr/bin/env python3
"""
Main entry point for the crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from crawlkeep import __version__
from crawlkeep.crawler.scheduler import CrawlerScheduler
from crawlkeep.crawler.worker import StopSignal
from crawlkeep.storage.database import DatabaseError
from crawlkeep.utils.config import Config, ConfigValidationError, load_config
from crawlkeep.utils.logger import setup_logging, log_system_info
from crawlkeep.utils.monitoring import create_monitor


def read_urls_file(path: str) -> List[str]:
    """One URL per line; blank lines and ``#`` comments are ignored."""
    urls = []
    with open(path, 'r', encoding='utf-8') as file:
        for line in file:
            line = line.strip()
            if line and not line.startswith('#'):
                urls.append(line)
    return urls


class CrawlerApp:
    """Main application class for the crawler."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.logger = logging.getLogger(__name__)

    def setup_signal_handlers(self):
        """Turn SIGINT/SIGTERM into a cooperative stop request."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, asking workers to stop...")
            if self.scheduler:
                self.scheduler.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def run(self, config: Config, urls: Optional[List[str]] = None,
                  force: bool = False, dry_run: bool = False) -> int:
        """Run one crawl pass for the configured project."""
        setup_logging(config.logging, config.log_file)
        log_system_info()

        self.logger.info("=== CRAWLER STARTING ===")
        self.logger.info(f"Project: {config.project} ({config.project_dir})")
        self.logger.info(f"Workers: {config.session.workers}")
        self.logger.info(f"Snapshot every: {config.session.snapshot_every} URLs")
        self.logger.info(f"Fetcher: {'browser session' if config.session.use_browser else 'http'}")
        self.logger.info(f"Robots check: {config.robots.check}")

        monitor = create_monitor(config.monitoring.metrics_enabled, config.monitoring.prometheus_port)

        try:
            self.scheduler = CrawlerScheduler(config, monitor=monitor)
            await self.scheduler.initialize()
            self.setup_signal_handlers()

            if urls is not None:
                self.scheduler.update_urls(urls, force=force)

            if dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                await self._dry_run()
                return 0

            await self.scheduler.scrape()
            self.logger.info(f"Run statistics: {self.scheduler.get_stats()}")

        except (DatabaseError, OSError) as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.scheduler:
                await self.scheduler.close()
            self.logger.info("=== CRAWLER FINISHED ===")

        return 0

    async def _dry_run(self):
        """Report what a run would do and try a single fetch."""
        remaining = self.scheduler.remaining_urls
        self.logger.info(f"URLs to scrape: {len(remaining)}")
        self.logger.info(f"Database stats: {self.scheduler.database.get_stats()}")

        if not remaining:
            return

        self.logger.info("Testing fetcher configuration...")
        async with self.scheduler.fetcher_factory(self.scheduler.config) as fetcher:
            result = await fetcher.fetch(remaining[0])
            if result.status:
                self.logger.info(f"Test fetch successful: {result.status_code}")
            else:
                self.logger.warning(f"Test fetch failed: {result.error}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Resumable web crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --config config.yaml                      # Scrape the configured URLs
  python main.py --config config.yaml --urls-file urls.txt # Scrape URLs from a file
  python main.py --config config.yaml --force              # Scrape known URLs again
  python main.py --config config.yaml --stop               # Ask a running crawl to stop
  python main.py --config config.yaml --clear-stop         # Allow the next run to start
  python main.py --config config.yaml --dry-run            # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        help='Path to a YAML configuration file (defaults are used otherwise)'
    )

    parser.add_argument(
        '--urls-file',
        help='File with one URL per line; replaces the configured URLs'
    )

    parser.add_argument(
        '--force',
        action='store_true',
        help='Scrape URLs again even if they are already in the database'
    )

    parser.add_argument(
        '--stop',
        action='store_true',
        help='Create the stop file so that a running crawl stops cooperatively'
    )

    parser.add_argument(
        '--clear-stop',
        action='store_true',
        help='Remove the stop file left by an earlier stop request'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without actually crawling'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'crawlkeep {__version__}'
    )

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigValidationError) as e:
        print(f"Error: {e}")
        return 1

    if args.stop or args.clear_stop:
        stop_signal = StopSignal(config.stop_file)
        if args.stop:
            stop_signal.set()
            print(f"Stop file created: {config.stop_file}")
        else:
            stop_signal.clear()
            print(f"Stop file removed: {config.stop_file}")
        return 0

    urls = None
    if args.urls_file:
        if not Path(args.urls_file).exists():
            print(f"Error: URLs file '{args.urls_file}' not found.")
            return 1
        urls = read_urls_file(args.urls_file)
    elif args.force:
        urls = list(config.urls)

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(config, urls=urls, force=args.force, dry_run=args.dry_run))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
