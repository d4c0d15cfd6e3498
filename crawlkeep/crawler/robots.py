"""
robots.txt compliance cache.

robots.txt text is fetched once per scheme-qualified domain and stored in the
``robots`` table. Before workers start, the stored rules are parsed into
memory so that workers never touch the store.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.robotparser import RobotFileParser

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from .url_frontier import get_domain
from ..storage.database import DatabaseManager
from ..utils.config import RobotsConfig


DISALLOWED_CONTENT = "disallowed due to robots.txt"


class RobotsCache:
    """Fetches, stores and evaluates robots.txt rules per domain."""

    def __init__(self, config: RobotsConfig, database: DatabaseManager):
        self.config = config
        self.database = database
        self.logger = logging.getLogger(__name__)

        # domain -> parsed rules; None for an empty (permissive) entry
        self.rules: Dict[str, Optional[RobotFileParser]] = {}

        self.stats = {
            'fetched': 0,
            'failed': 0,
            'blocked': 0,
        }

    @staticmethod
    def domains_for(urls: Iterable[str]) -> List[str]:
        """Scheme-qualified domains of ``urls`` in first-seen order."""
        domains = []
        seen = set()
        for url in urls:
            domain = get_domain(url, include_scheme=True)
            if '://' not in domain or domain in seen:
                continue
            seen.add(domain)
            domains.append(domain)
        return domains

    async def ensure_cached(self, urls: Iterable[str]) -> int:
        """
        Make sure the store has robots data for every domain of ``urls``.

        Missing domains are fetched concurrently, at most ``workers`` at a time,
        and inserted in chunks of ``snapshot_every``. Failures are stored as an
        empty entry so they are never retried.

        Returns:
            Number of domains newly stored
        """
        if not self.config.check:
            return 0

        domains = self.domains_for(urls)
        known = self.database.get_robots_domains()
        if known:
            self.logger.info(f"Found robots data for {len(known)} domains")

        missing = [domain for domain in domains if domain not in known]
        if not missing:
            self.logger.info("Robots data already available")
            self.load()
            return 0

        self.logger.info(f"Retrieving robots data for {len(missing)} domains")
        semaphore = asyncio.Semaphore(self.config.workers)
        chunk_size = self.config.snapshot_every
        stored = 0

        timeout = ClientTimeout(total=self.config.timeout)
        headers = {'User-Agent': self.config.user_agent}
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            for start in range(0, len(missing), chunk_size):
                chunk = missing[start:start + chunk_size]
                texts = await asyncio.gather(
                    *(self._fetch_bounded(session, semaphore, domain) for domain in chunk)
                )
                entries: List[Tuple[str, str]] = list(zip(chunk, texts))
                stored += self.database.insert_robots(entries)
                self.logger.info(f"Added {len(entries)} robots data entries")

        self.logger.info("Required robots data successfully retrieved")
        self.load()
        return stored

    async def _fetch_bounded(self, session: ClientSession, semaphore: asyncio.Semaphore,
                             domain: str) -> str:
        async with semaphore:
            return await self.fetch_robots_txt(session, domain)

    async def fetch_robots_txt(self, session: ClientSession, domain: str) -> str:
        """
        Download ``<domain>/robots.txt``.

        Returns:
            The file text, or an empty string for a non-200 response or any error
        """
        robots_url = f"{domain}/robots.txt"
        try:
            async with session.get(robots_url) as response:
                if response.status != 200:
                    self.logger.debug(f"No robots.txt at {robots_url} (HTTP {response.status})")
                    return ""
                text = await response.text(errors='replace')
                self.stats['fetched'] += 1
                return text
        except (ClientError, asyncio.TimeoutError, UnicodeError, ValueError) as e:
            self.stats['failed'] += 1
            self.logger.warning(f"Could not fetch robots.txt for {domain}: {e}")
            return ""

    def load(self, domains: Optional[Iterable[str]] = None):
        """Parse stored robots data into memory."""
        for domain, text in self.database.get_robots(domains).items():
            self.rules[domain] = self._parse(text)
        self.logger.debug(f"Loaded robots rules for {len(self.rules)} domains")

    @staticmethod
    def _parse(text: str) -> Optional[RobotFileParser]:
        if not text or not text.strip():
            return None
        parser = RobotFileParser()
        parser.parse(text.splitlines())
        return parser

    def is_allowed(self, url: str) -> bool:
        """
        Check ``url`` against the loaded rules for user agent ``*``.

        A domain without rules, or with an empty entry, is permissive.
        """
        if not self.config.check:
            return True

        parser = self.rules.get(get_domain(url, include_scheme=True))
        if parser is None:
            return True

        allowed = parser.can_fetch("*", url)
        if not allowed:
            self.stats['blocked'] += 1
        return allowed

    def get_stats(self) -> Dict[str, int]:
        stats = self.stats.copy()
        stats['domains'] = len(self.rules)
        return stats
