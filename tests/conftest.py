"""Shared fixtures for the crawler test suite."""

from typing import Callable, Dict, List, Optional

import pytest

from crawlkeep.crawler.fetcher import FetchError, FetchResult, PageFetcher
from crawlkeep.storage.database import DatabaseManager
from crawlkeep.utils.config import Config, load_config


SITE = {
    "https://example.com/a": """
        <html><head><title>A</title></head><body>
          <a href="/b">Page B</a>
          <a href="/c">Page C</a>
          <a href="/d">Page D</a>
          <p>Contact: info@example.com</p>
        </body></html>
    """,
    "https://example.com/b": """
        <html><body>
          <a href="/a">Back to A</a>
          <a href="https://example.com/c">C again</a>
          <p>Sales: SALES@example.com</p>
        </body></html>
    """,
    "https://example.com/c": """
        <html><body><p>No links here.</p></body></html>
    """,
}


class FakeFetcher(PageFetcher):
    """Serves pages from a dict; unknown URLs fail like a network error."""

    def __init__(self, config, pages: Optional[Dict[str, str]] = None,
                 redirects: Optional[Dict[str, str]] = None,
                 on_fetch: Optional[Callable[[str], None]] = None):
        super().__init__(config)
        self.pages = dict(SITE if pages is None else pages)
        self.redirects = redirects or {}
        self.on_fetch = on_fetch
        self.requested: List[str] = []
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def _get(self, url: str) -> FetchResult:
        self.requested.append(url)
        if self.on_fetch:
            self.on_fetch(url)

        target = self.redirects.get(url, url)
        if target not in self.pages:
            raise FetchError(f"Cannot reach {url}")
        return FetchResult(
            final_url=target,
            status=True,
            redirected_from=url if target != url else None,
            content=self.pages[target],
            status_code=200
        )


@pytest.fixture
def make_config(tmp_path) -> Callable[..., Config]:
    """Build a Config rooted in the test's temporary directory."""
    def _make(**overrides) -> Config:
        settings = {
            'project': 'testproject',
            'base_dir': str(tmp_path),
            'robots': {'check': False},
            'session': {'workers': 1, 'snapshot_every': 2, 'timeout': 5},
            'monitoring': {'report_interval': 0},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(settings.get(key), dict):
                settings[key] = {**settings[key], **value}
            else:
                settings[key] = value
        return load_config(**settings)
    return _make


@pytest.fixture
def config(make_config) -> Config:
    return make_config()


@pytest.fixture
def database(tmp_path):
    db = DatabaseManager(tmp_path / "store" / "results.sqlite")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def fake_fetcher():
    """The FakeFetcher class, for tests that build their own instances."""
    return FakeFetcher


@pytest.fixture
def site():
    return dict(SITE)
