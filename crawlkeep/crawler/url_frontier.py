"""
URL frontier: canonical URL keys, deduplication and the set of URLs still to
crawl.

The frontier itself is never persisted. It is recomputed from the store at
the start of every run as {known URLs} - {URLs already recorded as pages}.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import urlparse, ParseResult


_WWW_PREFIX = re.compile(r'^www\.')


@dataclass(frozen=True)
class URLKey:
    """Scheme-less canonical form of a URL used for comparisons."""
    host: str
    port: Optional[int]
    path: str
    params: str
    query: str
    fragment: str
    domain: str


@dataclass
class FilterResult:
    """Outcome of filtering new URLs against known ones.

    Indices refer to positions in the input list. A position may appear in
    both index lists; neither list is folded into the other.
    """
    remaining: List[str] = field(default_factory=list)
    index_known: List[int] = field(default_factory=list)
    index_duplicate: List[int] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return len(set(self.index_known) | set(self.index_duplicate))


def _parse(url: str) -> ParseResult:
    url = url.strip()
    if '://' not in url and not url.startswith('//'):
        url = '//' + url
    return urlparse(url)


def normalize_url(url: str) -> Optional[URLKey]:
    """
    Build the canonical comparison key of a URL.

    The scheme is dropped, the host lowercased, and leading/trailing slashes
    are stripped from the path, so ``http://Example.com/a/`` and
    ``https://example.com/a`` compare equal. The derived domain (host without
    ``www.``) is attached.

    Returns:
        URLKey, or None if the URL cannot be parsed
    """
    if not isinstance(url, str) or not url.strip():
        return None
    try:
        parsed = _parse(url)
        port = parsed.port
    except ValueError:
        return None

    host = (parsed.hostname or '').lower()
    if not host:
        return None

    return URLKey(
        host=host,
        port=port,
        path=parsed.path.strip('/'),
        params=parsed.params,
        query=parsed.query,
        fragment=parsed.fragment,
        domain=_WWW_PREFIX.sub('', host),
    )


def get_domain(url: str, include_scheme: bool = False) -> str:
    """
    Extract the domain of a URL, dropping a leading ``www.``.

    With ``include_scheme`` the scheme is prefixed (``https://example.com``),
    which is the form robots.txt data is keyed by. A URL that cannot be parsed
    is returned unchanged.
    """
    try:
        parsed = _parse(url)
    except (ValueError, AttributeError):
        return url

    host = parsed.hostname
    if not host:
        return url

    domain = _WWW_PREFIX.sub('', host.lower())
    if include_scheme and parsed.scheme:
        domain = f"{parsed.scheme.lower()}://{domain}"
    return domain


def same_url(first: str, second: str) -> bool:
    """Compare two URLs by their canonical keys."""
    first_key = normalize_url(first)
    second_key = normalize_url(second)
    if first_key is None or second_key is None:
        return first == second
    return first_key == second_key


def dedupe(urls: Iterable[str]) -> List[str]:
    """Remove URLs whose canonical key repeats, keeping first occurrences."""
    seen = set()
    result = []
    for url in urls:
        key = normalize_url(url)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        result.append(url)
    return result


def exclude_known(new_urls: List[str], known_urls: Optional[Iterable[Optional[str]]] = None) -> FilterResult:
    """
    Filter ``new_urls`` against ``known_urls`` and against themselves.

    Unparseable URLs never match anything and are always kept.

    Args:
        new_urls: Candidate URLs
        known_urls: URLs already processed; None to only drop duplicates

    Returns:
        FilterResult with the kept URLs and the dropped positions
    """
    result = FilterResult()
    keys = [normalize_url(url) for url in new_urls]

    seen = set()
    for index, key in enumerate(keys):
        if key is None:
            continue
        if key in seen:
            result.index_duplicate.append(index)
        seen.add(key)

    if known_urls is not None:
        known_keys = {normalize_url(url) for url in known_urls if url}
        known_keys.discard(None)
        result.index_known = [i for i, key in enumerate(keys) if key is not None and key in known_keys]

    dropped = set(result.index_known) | set(result.index_duplicate)
    result.remaining = [url for i, url in enumerate(new_urls) if i not in dropped]
    return result


def split_into_chunks(urls: List[str], k: int) -> List[List[str]]:
    """
    Partition URLs round-robin into ``k`` chunks.

    URL ``i`` (1-based) goes to chunk ``((i - 1) mod k) + 1``, which spreads
    consecutive URLs of the same site over all workers.
    """
    if not urls:
        return []
    k = max(1, min(k, len(urls)))
    chunks: List[List[str]] = [[] for _ in range(k)]
    for index, url in enumerate(urls):
        chunks[index % k].append(url)
    return chunks


class URLFrontier:
    """
    Holds the URLs still to crawl for the current job.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._pending: List[str] = []
        self.forced = False

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def is_empty(self) -> bool:
        return not self._pending

    def set_urls(self, urls: List[str], known_urls: Optional[Iterable[Optional[str]]] = None,
                 force: bool = False) -> FilterResult:
        """
        Replace the pending URLs.

        Without ``force``, URLs matching ``known_urls`` are dropped as well as
        duplicates within ``urls``; with ``force`` only the duplicates are.
        """
        result = exclude_known(list(urls), None if force else known_urls)
        self._pending = result.remaining
        self.forced = force

        self.logger.info(f"{len(result.remaining)} URLs were added")
        if result.index_known:
            self.logger.info(f"Number of URLs already in the database: {len(result.index_known)}")
        if result.index_duplicate:
            self.logger.info(f"Number of duplicated URLs in the input: {len(result.index_duplicate)}")
        return result

    def refresh(self, known_urls: Iterable[Optional[str]]) -> List[str]:
        """Drop every pending URL that is now known and return the rest."""
        self._pending = exclude_known(self._pending, known_urls).remaining
        if not self._pending:
            self.forced = False
        return self.pending

    def get_stats(self):
        return {
            'total_pending': len(self._pending),
            'domains_pending': len({get_domain(url) for url in self._pending}),
            'forced': self.forced,
        }
