"""
On-disk batches written by workers and their reconciliation into the store.

Workers never write to the database. Each worker appends one line per URL
attempt to ``progress/<chunk_id>/progress.log`` and periodically dumps its
buffered results to ``snapshots/<chunk_id>/snap_chunkNN_<timestamp>.json``.
After the parallel phase the scheduler merges these files into the store and
deletes every file it merged successfully; a file that is still on disk has
not been committed.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .database import DatabaseManager, LinkEdge, PageRecord, PersistenceError


SNAPSHOT_PATTERN = "snap_*.json"
PROGRESS_FILENAME = "progress.log"
PROGRESS_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class SnapshotWriter:
    """Writes the snapshot files of one worker chunk."""

    def __init__(self, snapshot_dir: Path, chunk_id: int):
        self.chunk_id = chunk_id
        self.directory = Path(snapshot_dir) / str(chunk_id)
        self.written = 0
        self.logger = logging.getLogger(__name__)

    def write(self, pages: List[PageRecord], links: List[LinkEdge]) -> Path:
        """
        Write one batch atomically.

        The file only appears under its final name once it is complete, so a
        crash mid-write never leaves a truncated snapshot behind.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        path = self.directory / f"snap_chunk{self.chunk_id:02d}_{timestamp}_{self.written:04d}.json"

        payload = {
            'content': [page.to_dict() for page in pages],
            'links': [link.to_dict() for link in links],
        }
        tmp_path = path.with_suffix('.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as file:
            json.dump(payload, file, ensure_ascii=False)
        os.replace(tmp_path, path)

        self.written += 1
        self.logger.debug(f"Wrote snapshot {path.name} ({len(pages)} pages, {len(links)} links)")
        return path


def read_snapshot(path: Path) -> Tuple[List[PageRecord], List[LinkEdge]]:
    """
    Load a snapshot file.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the content is not a valid snapshot
    """
    with open(path, 'r', encoding='utf-8') as file:
        payload = json.load(file)

    if not isinstance(payload, dict):
        raise ValueError(f"Snapshot {path} does not contain an object")
    try:
        pages = [PageRecord.from_dict(item) for item in payload.get('content') or []]
        links = [LinkEdge.from_dict(item) for item in payload.get('links') or []]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Snapshot {path} has a malformed record: {e}")
    return pages, links


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""
    merged_files: List[Path] = field(default_factory=list)
    failed_files: List[Path] = field(default_factory=list)
    empty_files: List[Path] = field(default_factory=list)
    pages: int = 0
    links: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed_files


class SnapshotReconciler:
    """Merges pending snapshot files into the store."""

    def __init__(self, database: DatabaseManager, snapshot_dir: Path):
        self.database = database
        self.snapshot_dir = Path(snapshot_dir)
        self.logger = logging.getLogger(__name__)

    def pending_files(self) -> List[Path]:
        if not self.snapshot_dir.exists():
            return []
        return sorted(self.snapshot_dir.rglob(SNAPSHOT_PATTERN))

    def merge(self) -> ReconcileResult:
        """
        Merge every pending snapshot, each file in its own transaction.

        A file is deleted only after its transaction committed. Files that
        cannot be read or committed stay on disk for the next pass.
        """
        result = ReconcileResult()
        files = self.pending_files()
        if not files:
            return result

        self.logger.info(f"Reconciling {len(files)} snapshot files")
        for path in files:
            try:
                pages, links = read_snapshot(path)
            except (OSError, ValueError) as e:
                self.logger.error(f"Could not read snapshot {path}: {e}")
                result.failed_files.append(path)
                continue

            if not pages:
                path.unlink(missing_ok=True)
                result.empty_files.append(path)
                continue

            try:
                stats = self.database.merge_batch(pages, links)
            except PersistenceError as e:
                self.logger.error(f"Snapshot {path.name} was not merged and is kept: {e}")
                result.failed_files.append(path)
                continue

            path.unlink(missing_ok=True)
            result.merged_files.append(path)
            result.pages += stats.pages
            result.links += stats.links

        self.logger.info(
            f"Merged {len(result.merged_files)} snapshots "
            f"({result.pages} pages, {result.links} links), "
            f"{len(result.failed_files)} kept for retry"
        )
        return result

    def remove_empty_dirs(self):
        """Remove chunk directories that no longer hold any file."""
        if not self.snapshot_dir.exists():
            return
        for directory in sorted(self.snapshot_dir.iterdir(), reverse=True):
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()


class ProgressLog:
    """Append-only per-chunk trace of URL attempts."""

    def __init__(self, progress_dir: Path, chunk_id: int):
        self.chunk_id = chunk_id
        self.path = Path(progress_dir) / str(chunk_id) / PROGRESS_FILENAME

    def append(self, url: str):
        """Record that ``url`` is about to be fetched."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = f"{datetime.now().strftime(PROGRESS_TIME_FORMAT)}\t{self.chunk_id}\t{url}\n"
        with open(self.path, 'a', encoding='utf-8') as file:
            file.write(line)


def parse_progress_line(line: str) -> Optional[Tuple[str, Optional[int], str]]:
    """
    Parse one progress line into ``(progress_time, chunk_id, url)``.

    Two fields are read as ``time<TAB>url``. A chunk id that is not an
    integer becomes None. Lines without a URL give None.
    """
    parts = line.rstrip('\r\n').split('\t')
    if len(parts) >= 3:
        progress_time, raw_chunk, url = parts[0], parts[1], '\t'.join(parts[2:])
        try:
            chunk_id: Optional[int] = int(raw_chunk)
        except ValueError:
            chunk_id = None
    elif len(parts) == 2:
        progress_time, url = parts
        chunk_id = None
    else:
        return None

    progress_time, url = progress_time.strip(), url.strip()
    if not url or not progress_time:
        return None
    return progress_time, chunk_id, url


class LogReconciler:
    """Merges pending progress logs into the ``logs`` table."""

    def __init__(self, database: DatabaseManager, progress_dir: Path):
        self.database = database
        self.progress_dir = Path(progress_dir)
        self.logger = logging.getLogger(__name__)

    def pending_files(self) -> List[Path]:
        if not self.progress_dir.exists():
            return []
        return sorted(path for path in self.progress_dir.rglob(PROGRESS_FILENAME) if path.is_file())

    def merge(self) -> int:
        """
        Insert all pending progress lines in one transaction.

        Empty or unreadable files are deleted right away; the others only
        after the transaction committed.

        Returns:
            Number of rows read from the files
        """
        rows: List[Tuple[str, Optional[int], str]] = []
        to_delete: List[Path] = []

        for path in self.pending_files():
            try:
                with open(path, 'r', encoding='utf-8', errors='replace') as file:
                    parsed = [parse_progress_line(line) for line in file]
            except OSError as e:
                self.logger.warning(f"Dropping unreadable progress file {path}: {e}")
                path.unlink(missing_ok=True)
                continue

            parsed = [row for row in parsed if row is not None]
            if not parsed:
                path.unlink(missing_ok=True)
                continue
            rows.extend(parsed)
            to_delete.append(path)

        if not rows:
            return 0

        try:
            inserted = self.database.insert_logs(rows)
        except PersistenceError as e:
            self.logger.error(f"Progress logs were not merged and are kept: {e}")
            return 0

        for path in to_delete:
            path.unlink(missing_ok=True)
        self.logger.info(f"Merged {len(rows)} progress lines ({inserted} new)")
        return len(rows)
