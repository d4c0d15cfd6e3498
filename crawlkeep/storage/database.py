"""
Persistent store for crawl results.

A single SQLite file holds four relations:

* ``pages``  - one row per scrape of a URL, keyed by (url, scraped_at)
* ``links``  - discovered hyperlinks with their discovery level, keyed by (href, scraped_at)
* ``logs``   - per-URL attempt trace written by workers, keyed by (progress_time, url)
* ``robots`` - raw robots.txt text per scheme-qualified domain, keyed by domain

Only the scheduler writes to the store, and only outside the parallel crawl
phase, so no locking between writers is needed.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class PersistenceError(DatabaseError):
    """A write transaction failed and was rolled back."""
    pass


class QueryError(DatabaseError):
    """A read query on the store could not be executed."""
    pass


TABLES = ('pages', 'links', 'logs', 'robots')

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS pages (
        url TEXT NOT NULL,
        url_redirect TEXT,
        status BOOLEAN NOT NULL,
        content TEXT,
        scraped_at TIMESTAMP NOT NULL,
        PRIMARY KEY (url, scraped_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS links (
        href TEXT NOT NULL,
        label TEXT,
        source_url TEXT,
        level INTEGER NOT NULL,
        scraped_at TIMESTAMP NOT NULL,
        PRIMARY KEY (href, scraped_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS logs (
        progress_time TIMESTAMP NOT NULL,
        chunk_id INTEGER,
        url TEXT NOT NULL,
        PRIMARY KEY (progress_time, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS robots (
        domain TEXT PRIMARY KEY,
        permissions TEXT NOT NULL DEFAULT ''
    )
    """,
)

# Shortest path wins: an existing row is only rewritten for a smaller level.
UPSERT_LINK_SQL = """
    INSERT INTO links (href, label, source_url, level, scraped_at)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT (href, scraped_at) DO UPDATE SET
        level = excluded.level,
        source_url = excluded.source_url,
        scraped_at = excluded.scraped_at
    WHERE excluded.level < links.level
"""


@dataclass
class PageRecord:
    """One scrape of one URL."""
    url: str
    url_redirect: Optional[str]
    status: bool
    content: Optional[str]
    scraped_at: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'PageRecord':
        return cls(
            url=data['url'],
            url_redirect=data.get('url_redirect'),
            status=bool(data['status']),
            content=data.get('content'),
            scraped_at=data['scraped_at'],
        )

    def as_row(self) -> Tuple:
        return (self.url, self.url_redirect, self.status, self.content, self.scraped_at)


@dataclass
class LinkEdge:
    """A hyperlink found on ``source_url``.

    ``level`` is 0 until the edge is merged into the store, where it is set to
    the discovery depth.
    """
    href: str
    label: str
    source_url: str
    scraped_at: str
    level: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'LinkEdge':
        return cls(
            href=data['href'],
            label=data.get('label') or '',
            source_url=data['source_url'],
            scraped_at=data['scraped_at'],
            level=int(data.get('level') or 0),
        )


@dataclass
class MergeStats:
    """Row counts written by one merge transaction."""
    pages: int = 0
    links: int = 0
    roots: int = 0


class DatabaseManager:
    """
    Owns the SQLite store: schema, writes for reconciliation and robots data,
    and the read-only query surface.
    """

    def __init__(self, db_file: Path):
        self.db_file = Path(db_file)
        self.logger = logging.getLogger(__name__)
        self._conn: Optional[sqlite3.Connection] = None

    def initialize(self):
        """Open the store, creating the file and schema if needed."""
        if self._conn is not None:
            return
        try:
            self.db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_file), isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            with self.transaction() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
        except (sqlite3.Error, OSError) as e:
            raise DatabaseError(f"Failed to initialize store at {self.db_file}: {e}")
        self.logger.info(f"Store initialized at {self.db_file}")

    def close(self):
        """Close the store connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self.logger.info("Store connection closed")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise DatabaseError("Database not initialized")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of writes atomically.

        Raises:
            PersistenceError: If any statement fails; nothing is committed
        """
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception as e:
            self._rollback(conn)
            if isinstance(e, sqlite3.Error):
                raise PersistenceError(f"Transaction rolled back: {e}") from e
            raise

    def _rollback(self, conn: sqlite3.Connection):
        # A failed COMMIT leaves the transaction open
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            self.logger.error(f"Rollback failed: {e}")

    # --- frontier ------------------------------------------------------------

    def get_scraped_urls(self, since: Optional[str] = None) -> List[Dict[str, Optional[str]]]:
        """Return ``url``/``url_redirect`` of every page row, optionally only newer ones."""
        sql = "SELECT url, url_redirect FROM pages"
        params: Tuple = ()
        if since is not None:
            sql += " WHERE scraped_at >= ?"
            params = (since,)
        return [dict(row) for row in self.conn.execute(sql, params)]

    def known_urls(self, since: Optional[str] = None) -> List[str]:
        """Every URL that has a recorded outcome, including redirect origins."""
        known = []
        for row in self.get_scraped_urls(since):
            known.append(row['url'])
            if row['url_redirect']:
                known.append(row['url_redirect'])
        return known

    def discovered_urls(self, max_level: Optional[int] = None) -> List[str]:
        """Link targets that have no page row yet, shallowest first."""
        sql = """
            SELECT href, MIN(level) AS level FROM links
            WHERE href NOT IN (SELECT url FROM pages)
              AND href NOT IN (SELECT url_redirect FROM pages WHERE url_redirect IS NOT NULL)
            GROUP BY href
        """
        params: Tuple = ()
        if max_level is not None:
            sql += " HAVING MIN(level) <= ?"
            params = (max_level,)
        sql += " ORDER BY level, href"
        return [row['href'] for row in self.conn.execute(sql, params)]

    # --- robots --------------------------------------------------------------

    def get_robots_domains(self) -> Set[str]:
        return {row['domain'] for row in self.conn.execute("SELECT domain FROM robots")}

    def get_robots(self, domains: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """Return stored permissions, for all domains or the given ones."""
        rows = self.conn.execute("SELECT domain, permissions FROM robots").fetchall()
        entries = {row['domain']: row['permissions'] or '' for row in rows}
        if domains is None:
            return entries
        wanted = set(domains)
        return {domain: text for domain, text in entries.items() if domain in wanted}

    def insert_robots(self, entries: Sequence[Tuple[str, str]]) -> int:
        """Insert robots entries; existing domains are never overwritten."""
        if not entries:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany(
                "INSERT OR IGNORE INTO robots (domain, permissions) VALUES (?, ?)",
                entries
            )
        return cursor.rowcount

    # --- reconciliation --------------------------------------------------------

    def insert_logs(self, rows: Sequence[Tuple[str, Optional[int], str]]) -> int:
        """Insert progress rows; rows already present are ignored."""
        if not rows:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany(
                "INSERT OR IGNORE INTO logs (progress_time, chunk_id, url) VALUES (?, ?, ?)",
                rows
            )
        return cursor.rowcount

    def merge_batch(self, pages: List[PageRecord], links: List[LinkEdge]) -> MergeStats:
        """
        Merge one snapshot batch in a single transaction.

        Pages are inserted or replaced. Links are grouped by the page they
        were found on. A source page without any inbound link row gets a
        synthetic level-1 root row and its links level 2; otherwise its links
        get one more than the deepest row recorded for the source.

        Raises:
            PersistenceError: If the transaction fails; nothing is written
        """
        stats = MergeStats()
        groups: Dict[str, List[LinkEdge]] = {}
        for link in links:
            groups.setdefault(link.source_url, []).append(link)

        with self.transaction() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO pages (url, url_redirect, status, content, scraped_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [page.as_row() for page in pages]
            )
            stats.pages = len(pages)

            for source_url, children in groups.items():
                depth = conn.execute(
                    "SELECT MAX(level) FROM links WHERE href = ?", (source_url,)
                ).fetchone()[0]

                if depth is None:
                    self._insert_root(conn, source_url, min(c.scraped_at for c in children))
                    stats.roots += 1
                    depth = 1

                level = depth + 1
                for child in children:
                    child.level = level
                conn.executemany(
                    UPSERT_LINK_SQL,
                    [(c.href, c.label, c.source_url, c.level, c.scraped_at) for c in children]
                )
                stats.links += len(children)

        return stats

    def _insert_root(self, conn: sqlite3.Connection, url: str, scraped_at: str):
        row = conn.execute(
            "SELECT url_redirect FROM pages WHERE url = ? AND url_redirect IS NOT NULL "
            "ORDER BY scraped_at LIMIT 1",
            (url,)
        ).fetchone()
        if row is not None:
            reference, label = row['url_redirect'], f"{url} - Redirected_Baseurl"
        else:
            reference, label = url, f"{url} - Baseurl"

        conn.execute(
            "INSERT INTO links (href, label, source_url, level, scraped_at) VALUES (?, ?, ?, 1, ?) "
            "ON CONFLICT (href, scraped_at) DO NOTHING",
            (url, label, reference, scraped_at)
        )

    def min_link_level(self, href: str) -> Optional[int]:
        """Authoritative (shortest known) level of ``href``."""
        return self.conn.execute(
            "SELECT MIN(level) FROM links WHERE href = ?", (href,)
        ).fetchone()[0]

    # --- read-only query surface ----------------------------------------------

    @contextmanager
    def read_only(self) -> Iterator[sqlite3.Connection]:
        """Open a separate connection that cannot write to the store."""
        if not self.db_file.exists():
            raise DatabaseError(f"Store file {self.db_file} does not exist")
        conn = sqlite3.connect(f"{self.db_file.resolve().as_uri()}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def read(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        """
        Execute a read query.

        Raises:
            DatabaseError: If the store file is missing
            QueryError: If the statement is malformed or tries to write
        """
        with self.read_only() as conn:
            try:
                return [dict(row) for row in conn.execute(sql, params)]
            except sqlite3.Error as e:
                raise QueryError(f"{e} (query: {sql!r})") from e

    def extract(self, table: str, filter: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        """
        Return all rows of a table, optionally restricted by a WHERE predicate.

        Returns None and logs the problem if the predicate is invalid.
        """
        if table not in TABLES:
            raise ValueError(f"Unknown table {table!r}; expected one of {', '.join(TABLES)}")

        sql = f"SELECT * FROM {table}"
        if filter:
            sql += f" WHERE {filter}"
        try:
            rows = self.read(sql)
        except QueryError as e:
            self.logger.error(f"DB-Query was not successful (check your filter?): {e}")
            return None

        if table == 'pages':
            for row in rows:
                row['status'] = bool(row['status'])
        return rows

    def query(self, sql: str) -> Optional[List[Dict[str, Any]]]:
        """Run an arbitrary read-only query; None if it fails."""
        try:
            return self.read(sql)
        except QueryError as e:
            self.logger.error(f"DB-Query was not successful, check your query: {e}")
            return None

    def get_stats(self) -> Dict[str, int]:
        """Row counts per relation."""
        stats = {}
        for table in TABLES:
            stats[table] = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        stats['pages_ok'] = self.conn.execute(
            "SELECT COUNT(*) FROM pages WHERE status = 1"
        ).fetchone()[0]
        return stats
