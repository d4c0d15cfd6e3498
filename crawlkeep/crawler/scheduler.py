"""
Crawler scheduler that owns a crawl project: the store, the frontier, the
worker pool and the read-only query surface.
"""

import asyncio
import logging
import re
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .fetcher import FetchError, PageFetcher, create_fetcher
from .parser import ContentParser
from .robots import RobotsCache
from .url_frontier import FilterResult, URLFrontier, split_into_chunks
from .worker import CrawlWorker, StopSignal, WorkerReport, utc_timestamp
from ..storage.database import DatabaseManager
from ..storage.snapshots import LogReconciler, ReconcileResult, SnapshotReconciler
from ..utils.config import Config
from ..utils.monitoring import CrawlerMonitor, ProgressTracker


@dataclass
class CrawlStats:
    """Statistics for crawl operations."""
    start_time: float
    runs: int = 0
    urls_processed: int = 0
    pages_failed: int = 0
    snapshots_written: int = 0
    snapshots_merged: int = 0
    snapshots_kept: int = 0
    worker_errors: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.urls_processed / elapsed_minutes if elapsed_minutes > 0 else 0


class CrawlerScheduler:
    """
    Main scheduler that coordinates all crawler components.

    A run computes the remaining frontier, warms the robots cache, splits the
    frontier round-robin over the workers and runs them concurrently. After
    the pool finished, whatever the outcome, all pending snapshot and progress
    files are reconciled into the store and the frontier is recomputed.
    """

    def __init__(self, config: Config, monitor: Optional[CrawlerMonitor] = None,
                 fetcher_factory: Callable[[Config], PageFetcher] = create_fetcher):
        self.config = config
        self.monitor = monitor
        self.fetcher_factory = fetcher_factory
        self.logger = logging.getLogger(__name__)

        # Components
        self.database = DatabaseManager(config.db_file)
        self.frontier = URLFrontier()
        self.robots = RobotsCache(config.robots, self.database)
        self.parser = ContentParser()
        self.snapshots = SnapshotReconciler(self.database, config.snapshot_dir)
        self.progress_logs = LogReconciler(self.database, config.progress_dir)
        self.stop_signal = StopSignal(config.stop_file)

        # Crawl state
        self.stats = CrawlStats(start_time=time.time())
        self.is_running = False
        self.initialized = False
        self._forced_since: Optional[str] = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """
        Prepare the project directory and store, merge leftovers from earlier
        runs and compute the frontier from the configured URLs.
        """
        if self.initialized:
            return
        try:
            for directory in (self.config.project_dir, self.config.snapshot_dir,
                              self.config.progress_dir):
                directory.mkdir(parents=True, exist_ok=True)

            self.database.initialize()
            self.reconcile()

            self.initialized = True
            if self.config.urls:
                self.update_urls(list(self.config.urls))

            self.logger.info(f"Crawler scheduler initialized for project '{self.config.project}'")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawler scheduler: {e}")
            raise

    def _require_initialized(self):
        if not self.initialized:
            raise RuntimeError("CrawlerScheduler.initialize() has not been called")

    # --- frontier ------------------------------------------------------------

    def update_urls(self, urls: Iterable[str], force: bool = False) -> FilterResult:
        """
        Replace the URLs to crawl.

        Args:
            urls: URLs to crawl
            force: Also keep URLs already in the store; they are scraped again
                as new rows

        Returns:
            FilterResult with the kept URLs and the dropped positions
        """
        self._require_initialized()
        known = None if force else self.database.known_urls()
        result = self.frontier.set_urls(list(urls), known, force=force)
        self._forced_since = None
        if self.monitor:
            self.monitor.update_frontier_size(len(self.frontier))
        return result

    @property
    def remaining_urls(self) -> List[str]:
        return self.frontier.pending

    def discovered_urls(self, max_level: Optional[int] = None) -> List[str]:
        """Link targets found so far that have not been scraped yet."""
        self._require_initialized()
        return self.database.discovered_urls(max_level)

    # --- stop signal ---------------------------------------------------------

    def stop(self):
        """Ask running workers to stop after their current URL."""
        self.stop_signal.set()
        self.logger.info(f"Stop requested ({self.stop_signal.path})")

    def clear_stop(self):
        """Remove the stop file so that the next run can start."""
        self.stop_signal.clear()
        self.logger.info("Stop file removed")

    # --- crawling ------------------------------------------------------------

    async def scrape(self) -> List[WorkerReport]:
        """
        Crawl all remaining URLs once.

        Returns:
            Reports of the workers that finished
        """
        self._require_initialized()

        if self.stop_signal.is_set():
            self.logger.warning(
                f"Stop file {self.stop_signal.path} exists; remove it with clear_stop() "
                f"before scraping"
            )
            return []

        if self.is_running:
            self.logger.warning("Crawler is already running")
            return []

        # Progress files of a crashed run
        self.progress_logs.merge()

        if self.frontier.is_empty():
            self.logger.info("No URLs left to scrape")
            return []
        remaining = self.frontier.pending

        run_start = utc_timestamp()
        if self.frontier.forced and self._forced_since is None:
            self._forced_since = run_start

        await self.robots.ensure_cached(remaining)

        effective_workers = min(self.config.session.workers, len(remaining))
        chunks = split_into_chunks(remaining, effective_workers)
        progress = ProgressTracker(total=len(remaining), monitor=self.monitor)

        self.is_running = True
        self.stats.runs += 1
        reports: List[WorkerReport] = []
        stats_task = asyncio.create_task(self._stats_reporter())
        self.logger.info(f"Scraping {len(remaining)} URLs with {len(chunks)} workers")

        try:
            async with AsyncExitStack() as stack:
                workers = []
                for chunk_id, chunk in enumerate(chunks, start=1):
                    fetcher = await stack.enter_async_context(self.fetcher_factory(self.config))
                    workers.append(CrawlWorker(
                        chunk_id, chunk, fetcher, self.robots, self.parser, self.config,
                        progress=progress, monitor=self.monitor
                    ))

                if self.monitor:
                    self.monitor.update_active_workers(len(workers))

                results = await asyncio.gather(*(w.run() for w in workers), return_exceptions=True)

            for worker, result in zip(workers, results):
                if isinstance(result, BaseException):
                    self.stats.worker_errors += 1
                    self.logger.error(f"Worker for chunk {worker.chunk_id} failed: {result!r}")
                    if self.monitor:
                        self.monitor.record_error('worker_crash')
                    continue
                reports.append(result)

        except FetchError as e:
            self.logger.error(f"Could not open fetch sessions: {e}")

        finally:
            self.is_running = False
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)
            if self.monitor:
                self.monitor.update_active_workers(0)

            self.reconcile()
            self._refresh_frontier()
            progress.finish()

        for report in reports:
            self.stats.urls_processed += report.processed
            self.stats.pages_failed += report.failed
            self.stats.snapshots_written += report.snapshots

        self._log_final_stats(reports)
        return reports

    def reconcile(self) -> ReconcileResult:
        """Merge all pending snapshot and progress files into the store."""
        result = self.snapshots.merge()
        self.stats.snapshots_merged += len(result.merged_files)
        self.stats.snapshots_kept = len(result.failed_files)
        self.progress_logs.merge()
        return result

    def _refresh_frontier(self):
        since = self._forced_since if self.frontier.forced else None
        remaining = self.frontier.refresh(self.database.known_urls(since=since))
        if not self.frontier.forced:
            self._forced_since = None
        if self.monitor:
            self.monitor.update_frontier_size(len(remaining))
        self.logger.info(f"{len(remaining)} URLs remaining")

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        interval = self.config.monitoring.report_interval
        if interval <= 0:
            return
        while self.is_running:
            await asyncio.sleep(interval)
            self._log_current_stats()

    def _log_current_stats(self):
        summary = self.monitor.get_summary() if self.monitor else {}
        self.logger.info(
            f"Crawl Progress: "
            f"Remaining={len(self.frontier)}, "
            f"Snapshots pending={len(self.snapshots.pending_files())}, "
            f"Metrics={summary.get('metrics', {})}"
        )

    def _log_final_stats(self, reports: List[WorkerReport]):
        processed = sum(r.processed for r in reports)
        failed = sum(r.failed for r in reports)
        stopped = any(r.stopped for r in reports)

        self.logger.info("=== SCRAPE FINISHED ===" if not stopped else "=== SCRAPE STOPPED ===")
        self.logger.info(f"URLs processed: {processed}")
        self.logger.info(f"Failed or disallowed: {failed}")
        self.logger.info(f"Frontier stats: {self.frontier.get_stats()}")
        self.logger.info(f"Robots stats: {self.robots.get_stats()}")
        self.logger.info(f"Database stats: {self.database.get_stats()}")

    # --- read-only query surface -----------------------------------------------

    def pages(self, filter: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        """Scraped pages, optionally restricted by a SQL WHERE predicate."""
        return self.database.extract('pages', filter)

    def logs(self, filter: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        """Progress log rows, optionally restricted by a SQL WHERE predicate."""
        return self.database.extract('logs', filter)

    def links(self, filter: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        """Discovered links, optionally restricted by a SQL WHERE predicate."""
        return self.database.extract('links', filter)

    def query(self, sql: str) -> Optional[List[Dict[str, Any]]]:
        """Run a read-only SQL query on the store."""
        return self.database.query(sql)

    def regex_extract(self, pattern: str, group: Union[str, int, None] = None,
                      filter_links: Union[str, Iterable[str], None] = None,
                      ignore_case: bool = True) -> Optional[List[Dict[str, Optional[str]]]]:
        """
        Apply a regular expression to the visible text of scraped pages.

        Args:
            pattern: Regular expression
            group: Capture group name or index; None for the whole match
            filter_links: Keyword pattern(s), joined with ``|`` and matched
                case-insensitively; only pages reached through a link whose
                href or label matches are searched
            ignore_case: Match case-insensitively

        Returns:
            Rows ``{"url": ..., <group or "pattern">: value}``, or None if the
            pattern or group is invalid
        """
        if isinstance(filter_links, str):
            keywords = [filter_links]
        else:
            keywords = list(filter_links or [])

        try:
            keyword_regex = re.compile("|".join(keywords), re.IGNORECASE) if keywords else None

            links = self.database.extract('links') or []
            hrefs = set()
            for link in links:
                if keyword_regex is None or any(
                    keyword_regex.search(text or '') for text in (link['href'], link['label'])
                ):
                    hrefs.add(link['href'])

            pages = self.database.extract('pages', 'status = 1') or []
            documents = [(page['url'], page['content']) for page in pages if page['url'] in hrefs]

            return self.parser.extract_regex(documents, pattern, group, ignore_case)
        except (re.error, IndexError) as e:
            self.logger.error(f"Regex extraction was not successful: {e}")
            return None

    # --- lifecycle -------------------------------------------------------------

    async def close(self):
        """Merge leftovers, remove empty snapshot directories and close the store."""
        if not self.initialized:
            return
        try:
            self.reconcile()
            self.snapshots.remove_empty_dirs()
        except OSError as e:
            self.logger.error(f"Error during cleanup: {e}")
        finally:
            self.database.close()
            self.initialized = False
            self.logger.info("Crawler scheduler closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get current crawl statistics."""
        return {
            'runs': self.stats.runs,
            'urls_processed': self.stats.urls_processed,
            'pages_failed': self.stats.pages_failed,
            'snapshots_written': self.stats.snapshots_written,
            'snapshots_merged': self.stats.snapshots_merged,
            'snapshots_kept': self.stats.snapshots_kept,
            'worker_errors': self.stats.worker_errors,
            'elapsed_time': self.stats.elapsed_time,
            'pages_per_minute': self.stats.pages_per_minute,
            'frontier': self.frontier.get_stats(),
            'is_running': self.is_running,
        }
