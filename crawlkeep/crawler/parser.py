"""
HTML parsing: link extraction, visible-text cleaning and regex extraction.
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Comment
from bs4.element import Declaration, Doctype, ProcessingInstruction

from .url_frontier import get_domain


# Paths ending in one of these are never followed.
SKIP_EXTENSIONS = (
    '.ics', '.mng', '.pct', '.bmp', '.gif', '.jpg', '.jpeg', '.png', '.pst', '.psp',
    '.tif', '.tiff', '.ai', '.drw', '.dxf', '.eps', '.ps', '.woff2', '.svg', '.mp3',
    '.wma', '.ogg', '.wav', '.ra', '.aac', '.mid', '.au', '.aiff', '.3gp', '.asf',
    '.asx', '.avi', '.mov', '.mp4', '.woff', '.mpg', '.qt', '.rm', '.swf', '.wmv',
    '.m4a', '.css', '.pdf', '.doc', '.docx', '.exe', '.bin', '.rss', '.zip', '.rar',
    '.msu', '.flv', '.dmg', '.xls', '.xlsx', '.ico', '.js',
)

LINK_TAGS = ['a', 'area', 'base', 'link']
NON_TEXT_TAGS = ['script', 'style', 'noscript']


@dataclass
class ExtractedLink:
    """A hyperlink kept by the extractor."""
    href: str
    label: str


class ContentParser:
    """
    Parses HTML content to extract links and visible text.
    """

    def __init__(self, skip_extensions: Iterable[str] = SKIP_EXTENSIONS):
        self.skip_extensions = tuple(ext.lower() for ext in skip_extensions)
        self.logger = logging.getLogger(__name__)

        self.whitespace_pattern = re.compile(r'\s+')

    def _soup(self, html_content: str) -> BeautifulSoup:
        return BeautifulSoup(html_content, 'lxml')

    def extract_links(self, html_content: str, source_url: str) -> List[ExtractedLink]:
        """
        Extract followable links from the body of a page.

        Relative URLs are resolved against ``source_url`` and every link is
        rewritten to https. Only links on the same domain that point to a
        different document of a text type are kept, each href once.

        Args:
            html_content: Raw HTML content
            source_url: URL the content was fetched from

        Returns:
            Kept links in document order
        """
        if not html_content:
            return []

        soup = self._soup(html_content)
        body = soup.body
        if body is None:
            return []

        links: List[ExtractedLink] = []
        seen = set()
        for element in body.find_all(LINK_TAGS, href=True):
            href = self._resolve(element['href'], source_url)
            if href is None or href in seen:
                continue
            if not self.check_link(href, source_url):
                continue

            seen.add(href)
            label = self.whitespace_pattern.sub(' ', element.get_text()).strip()
            links.append(ExtractedLink(href=href, label=label))

        return links

    def _resolve(self, href: str, source_url: str) -> Optional[str]:
        href = href.strip()
        try:
            absolute_url = urljoin(source_url, href)
        except ValueError:
            return None

        if absolute_url.startswith('http://'):
            absolute_url = 'https://' + absolute_url[len('http://'):]
        if not absolute_url.startswith('https://'):
            return None
        return absolute_url

    @staticmethod
    def _path_query(parsed) -> Tuple[str, str]:
        return parsed.path.strip('/'), parsed.query

    def check_link(self, href: str, source_url: str) -> bool:
        """
        Decide whether an absolute ``href`` found on ``source_url`` is kept.

        A link is kept if it is on the same domain as the source, its path
        does not end in a skipped file extension, it is not a fragment of the
        source page itself, and its path and query differ from the source's.
        """
        try:
            link = urlparse(href)
            source = urlparse(source_url)
        except ValueError:
            return False

        if not link.hostname or get_domain(href) != get_domain(source_url):
            return False

        if link.path.lower().endswith(self.skip_extensions):
            return False

        same_document = self._path_query(link) == self._path_query(source)
        if link.fragment and same_document:
            return False

        return not same_document

    def clean_text(self, html_content: Optional[str]) -> str:
        """
        Return the visible text of a page.

        Script, style and noscript nodes as well as comments are dropped; the
        remaining text nodes are stripped and joined one per line.
        """
        if not html_content:
            return ""

        soup = self._soup(html_content)
        for node in soup(NON_TEXT_TAGS):
            node.decompose()

        lines = []
        for text in soup.find_all(string=True):
            if isinstance(text, (Comment, Declaration, Doctype, ProcessingInstruction)):
                continue
            text = text.strip()
            if text:
                lines.append(text)
        return "\n".join(lines)

    def extract_regex(self, documents: Iterable[Tuple[str, Optional[str]]], pattern: str,
                      group: Union[str, int, None] = None,
                      ignore_case: bool = True) -> List[Dict[str, Optional[str]]]:
        """
        Apply a regular expression to the visible text of pages.

        Args:
            documents: ``(url, html)`` pairs
            pattern: Regular expression
            group: Capture group name or index; None for the whole match
            ignore_case: Match case-insensitively

        Returns:
            One row per unique match and page, keyed ``url`` and the group name
            (``pattern`` when ``group`` is None or an index). A page without a
            match yields a single row with value None.

        Raises:
            re.error: If the pattern is invalid
            IndexError: If the group does not exist in the pattern
        """
        regex = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
        column = group if isinstance(group, str) else 'pattern'
        selector = 0 if group is None else group

        if isinstance(selector, str) and selector not in regex.groupindex:
            raise IndexError(f"No group named {selector!r} in pattern")
        if isinstance(selector, int) and selector > regex.groups:
            raise IndexError(f"Pattern has no group {selector}")

        rows: List[Dict[str, Optional[str]]] = []
        for url, html_content in documents:
            text = self.clean_text(html_content)
            values: List[str] = []
            for match in regex.finditer(text):
                value = match.group(selector)
                if value is not None and value not in values:
                    values.append(value)

            if not values:
                rows.append({'url': url, column: None})
            for value in values:
                rows.append({'url': url, column: value})

        return rows
