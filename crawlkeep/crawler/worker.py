"""
Crawl worker: processes one chunk of the frontier with its own fetch session.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from .fetcher import PageFetcher
from .parser import ContentParser
from .robots import DISALLOWED_CONTENT, RobotsCache
from ..storage.database import LinkEdge, PageRecord
from ..storage.snapshots import ProgressLog, SnapshotWriter
from ..utils.config import Config
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor, ProgressTracker


class WorkerState(Enum):
    """Lifecycle of a worker."""
    RUNNING = "running"
    STOPPING = "stopping"
    DONE = "done"


@dataclass
class WorkerReport:
    """What a worker did before it finished."""
    chunk_id: int
    state: WorkerState
    processed: int
    snapshots: int
    failed: int = 0
    stopped: bool = False


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


class StopSignal:
    """Cooperative stop request, signalled by the existence of a file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def is_set(self) -> bool:
        return self.path.exists()

    def set(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch()

    def clear(self):
        self.path.unlink(missing_ok=True)


class CrawlWorker:
    """
    Processes the URLs of one chunk sequentially.

    For every URL the worker checks the stop signal, records the attempt,
    checks robots rules, fetches the page and extracts its links. Results are
    buffered and written to a snapshot every ``session.snapshot_every`` URLs
    and once more on exit.
    """

    def __init__(self, chunk_id: int, urls: List[str], fetcher: PageFetcher,
                 robots: RobotsCache, parser: ContentParser, config: Config,
                 progress: Optional[ProgressTracker] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.chunk_id = chunk_id
        self.urls = list(urls)
        self.fetcher = fetcher
        self.robots = robots
        self.parser = parser
        self.config = config
        self.progress = progress
        self.monitor = monitor

        self.state = WorkerState.RUNNING
        self.stop_signal = StopSignal(config.stop_file)
        self.progress_log = ProgressLog(config.progress_dir, chunk_id)
        self.writer = SnapshotWriter(config.snapshot_dir, chunk_id)
        self.logger = get_crawler_logger(__name__, chunk_id=chunk_id)

        self._pages: List[PageRecord] = []
        self._links: List[LinkEdge] = []
        self.processed = 0
        self.failed = 0

    async def run(self) -> WorkerReport:
        """Process the chunk until it is exhausted or a stop is requested."""
        self.logger.info(f"Worker started with {len(self.urls)} URLs")
        snapshot_every = self.config.session.snapshot_every
        stopped = False

        try:
            for url in self.urls:
                if self.stop_signal.is_set():
                    self.state = WorkerState.STOPPING
                    stopped = True
                    self.logger.info("Stop file detected, stopping")
                    break

                self.progress_log.append(url)
                page, links = await self.process_url(url)
                self._pages.append(page)
                self._links.extend(links)
                self.processed += 1

                if self.processed % snapshot_every == 0:
                    await self.flush()
        finally:
            # Whatever is still buffered becomes the final snapshot
            await self.flush()
            self.state = WorkerState.DONE

        self.logger.info(
            f"Worker finished: {self.processed} processed, {self.failed} failed, "
            f"{self.writer.written} snapshots"
        )
        return WorkerReport(
            chunk_id=self.chunk_id,
            state=self.state,
            processed=self.processed,
            snapshots=self.writer.written,
            failed=self.failed,
            stopped=stopped,
        )

    async def process_url(self, url: str) -> Tuple[PageRecord, List[LinkEdge]]:
        """Produce the page record and outgoing links of a single URL."""
        scraped_at = utc_timestamp()

        if not self.robots.is_allowed(url):
            self.failed += 1
            self.logger.log_url_event(logging.INFO, url, f"Robots.txt blocks access to: {url}")
            if self.monitor:
                self.monitor.record_error('robots_disallowed')
            return PageRecord(
                url=url,
                url_redirect=None,
                status=False,
                content=DISALLOWED_CONTENT,
                scraped_at=scraped_at
            ), []

        start_time = time.time()
        result = await self.fetcher.fetch(url)
        if self.monitor:
            self.monitor.record_page(result.status, time.time() - start_time)

        page = PageRecord(
            url=result.final_url,
            url_redirect=result.redirected_from,
            status=result.status,
            content=result.content if result.status else None,
            scraped_at=scraped_at
        )

        if not result.status:
            self.failed += 1
            self.logger.log_url_event(logging.WARNING, url, f"Failed to fetch {url}: {result.error}")
            if self.monitor:
                self.monitor.record_error('fetch_failed')
            return page, []

        try:
            extracted = await asyncio.to_thread(
                self.parser.extract_links, result.content or "", page.url
            )
        except Exception as e:
            self.logger.log_url_event(logging.WARNING, url, f"Link extraction failed for {url}: {e}")
            extracted = []

        links = [
            LinkEdge(href=link.href, label=link.label, source_url=page.url, scraped_at=scraped_at)
            for link in extracted
        ]
        self.logger.log_url_event(logging.DEBUG, url, f"Processed {url}: {len(links)} links")
        return page, links

    async def flush(self):
        """Write buffered results to a new snapshot and report progress."""
        if not self._pages:
            return

        pages, links = self._pages, self._links
        self._pages, self._links = [], []
        await asyncio.to_thread(self.writer.write, pages, links)

        if self.progress:
            self.progress.advance(len(pages), f"Adding {len(pages)} pages from chunk {self.chunk_id}")
        if self.monitor:
            self.monitor.record_snapshot(len(pages))
