"""
Page fetchers.

Two implementations share one contract: a stateless HTTP client
(:class:`HttpFetcher`) and a remote browser session (:class:`SessionFetcher`)
that follows client-side redirects. Neither raises from :meth:`fetch`; every
failure is reported through the returned :class:`FetchResult`.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from urllib3.exceptions import HTTPError as TransportError

from .url_frontier import same_url
from ..utils.config import Config, SessionConfig


class FetchError(Exception):
    """A single page could not be fetched."""
    pass


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    final_url: str
    status: bool
    redirected_from: Optional[str] = None
    content: Optional[str] = None
    status_code: int = 0
    error: Optional[str] = None
    fetch_time: float = 0.0


class PageFetcher(ABC):
    """Common interface of the fetch session a worker owns."""

    def __init__(self, config: SessionConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'redirects': 0,
            'total_bytes_downloaded': 0,
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    @abstractmethod
    async def start(self):
        """Open the underlying session."""

    @abstractmethod
    async def close(self):
        """Release the underlying session."""

    @abstractmethod
    async def _get(self, url: str) -> FetchResult:
        """Fetch ``url``; raise :class:`FetchError` on failure."""

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult; ``status`` is False and ``content`` None on any error
        """
        start_time = time.time()
        self.stats['total_requests'] += 1

        try:
            result = await self._get(url)
        except FetchError as e:
            self.stats['failed_requests'] += 1
            self.logger.warning(f"Failed to fetch {url}: {e}")
            return FetchResult(
                final_url=url,
                status=False,
                error=str(e),
                fetch_time=time.time() - start_time
            )
        except Exception as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"Unexpected error fetching {url}: {e}")
            return FetchResult(
                final_url=url,
                status=False,
                error=f"Unexpected error: {e}",
                fetch_time=time.time() - start_time
            )

        result.fetch_time = time.time() - start_time
        self.stats['successful_requests'] += 1
        if result.redirected_from:
            self.stats['redirects'] += 1
        if result.content:
            self.stats['total_bytes_downloaded'] += len(result.content)

        self.logger.debug(
            f"Fetched {url}: {result.status_code} "
            f"({len(result.content) if result.content else 0} chars)"
        )
        return result

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()


class HttpFetcher(PageFetcher):
    """
    Plain HTTP fetcher using the configured header map.

    It does not report redirects. A 4xx/5xx response still counts as a
    completed fetch whose body is the page content.
    """

    def __init__(self, config: SessionConfig):
        super().__init__(config)
        self.session: Optional[ClientSession] = None

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.config.timeout),
                headers=dict(self.config.headers),
                connector=aiohttp.TCPConnector(
                    limit=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("HTTP fetch session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("HTTP fetch session closed")

    async def _get(self, url: str) -> FetchResult:
        if self.session is None:
            raise FetchError("Session not started")

        try:
            async with self.session.get(url) as response:
                content = await self._read_content_safely(response)
                return FetchResult(
                    final_url=url,
                    status=True,
                    content=content,
                    status_code=response.status
                )
        except asyncio.TimeoutError:
            raise FetchError("Request timeout")
        except ClientError as e:
            raise FetchError(f"Client error: {e}")
        except (ValueError, UnicodeError) as e:
            raise FetchError(f"Invalid request or response: {e}")

    async def _read_content_safely(self, response) -> str:
        """
        Read response content with the configured size limit.

        Raises:
            FetchError: If the body is larger than ``max_content_bytes``
        """
        max_size = self.config.max_content_bytes
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > max_size:
            raise FetchError(f"Content too large ({content_length} bytes)")

        # Read content in chunks to respect size limit
        content_bytes = b''
        async for chunk in response.content.iter_chunked(8192):
            content_bytes += chunk
            if len(content_bytes) > max_size:
                raise FetchError("Content exceeded size limit during reading")

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue
            # latin-1 never fails
            return content_bytes.decode('latin-1')


class SessionFetcher(PageFetcher):
    """
    Fetcher driving a remote browser through Selenium.

    The page URL after navigation is taken as the final URL; if it differs from
    the requested one the request is recorded as a redirect.
    """

    def __init__(self, config: SessionConfig):
        super().__init__(config)
        self.driver: Optional[webdriver.Remote] = None

    @property
    def command_executor(self) -> str:
        return f"http://{self.config.host}:{self.config.port}"

    def build_options(self) -> webdriver.ChromeOptions:
        """Browser options from the session configuration."""
        options = webdriver.ChromeOptions()
        for arg in self.config.args:
            options.add_argument(arg)
        if self.config.prefs:
            options.add_experimental_option("prefs", dict(self.config.prefs))
        if self.config.exclude_switches:
            options.add_experimental_option("excludeSwitches", list(self.config.exclude_switches))
        return options

    def _open(self) -> webdriver.Remote:
        driver = webdriver.Remote(
            command_executor=self.command_executor,
            options=self.build_options()
        )
        driver.set_page_load_timeout(self.config.timeout)
        return driver

    async def start(self):
        """Open the browser session."""
        if self.driver is None:
            try:
                self.driver = await asyncio.to_thread(self._open)
            except (WebDriverException, TransportError, OSError) as e:
                raise FetchError(f"Could not open browser session at {self.command_executor}: {e}")
            self.logger.info(f"Browser session started at {self.command_executor}")

    async def close(self):
        """Quit the browser session."""
        if self.driver:
            driver, self.driver = self.driver, None
            try:
                await asyncio.to_thread(driver.quit)
            except WebDriverException as e:
                self.logger.warning(f"Error closing browser session: {e}")
            self.logger.info("Browser session closed")

    def _navigate(self, url: str):
        self.driver.get(url)
        return self.driver.current_url, self.driver.page_source

    async def _get(self, url: str) -> FetchResult:
        if self.driver is None:
            raise FetchError("Session not started")

        try:
            current_url, page_source = await asyncio.to_thread(self._navigate, url)
        except WebDriverException as e:
            raise FetchError(f"Browser error: {e.msg or e.__class__.__name__}")

        redirected_from = None
        if current_url and not same_url(url, current_url):
            redirected_from = url
        else:
            current_url = url

        return FetchResult(
            final_url=current_url,
            status=True,
            redirected_from=redirected_from,
            content=page_source,
            status_code=200
        )


def create_fetcher(config: Config) -> PageFetcher:
    """Choose the fetcher implementation from ``session.use_browser``."""
    if config.session.use_browser:
        return SessionFetcher(config.session)
    return HttpFetcher(config.session)
