"""Tests for progress logs and their reconciliation."""

import re

import pytest

from crawlkeep.storage.database import PersistenceError
from crawlkeep.storage.snapshots import LogReconciler, ProgressLog, parse_progress_line


class TestParseProgressLine:
    """Tests for reading a single progress line."""

    def test_three_fields(self):
        assert parse_progress_line("2024-05-01 10:00:00\t2\thttps://example.com/a\n") == (
            "2024-05-01 10:00:00", 2, "https://example.com/a"
        )

    def test_malformed_chunk_id(self):
        assert parse_progress_line("2024-05-01 10:00:00\tx\thttps://example.com/a") == (
            "2024-05-01 10:00:00", None, "https://example.com/a"
        )

    def test_two_fields(self):
        assert parse_progress_line("2024-05-01 10:00:00\thttps://example.com/a") == (
            "2024-05-01 10:00:00", None, "https://example.com/a"
        )

    @pytest.mark.parametrize("line", ["", "\n", "2024-05-01 10:00:00", "2024-05-01 10:00:00\t1\t\n"])
    def test_lines_without_url(self, line):
        assert parse_progress_line(line) is None


class TestProgressLog:
    def test_append_format(self, tmp_path):
        log = ProgressLog(tmp_path / "progress", chunk_id=4)
        log.append("https://example.com/a")
        log.append("https://example.com/b")

        assert log.path == tmp_path / "progress" / "4" / "progress.log"
        lines = log.path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\t4\thttps://example\.com/a", lines[0])


class TestLogReconciler:
    """Tests for merging progress files into the logs table."""

    @pytest.fixture
    def progress_dir(self, tmp_path):
        return tmp_path / "progress"

    def _write(self, progress_dir, chunk_id, text):
        path = progress_dir / str(chunk_id) / "progress.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def test_merge_inserts_and_deletes(self, database, progress_dir):
        first = self._write(progress_dir, 1, "2024-05-01 10:00:00\t1\thttps://example.com/a\n"
                                             "2024-05-01 10:00:01\t1\thttps://example.com/b\n")
        second = self._write(progress_dir, 2, "2024-05-01 10:00:00\t2\thttps://example.com/c\n")

        assert LogReconciler(database, progress_dir).merge() == 3

        assert not first.exists()
        assert not second.exists()
        rows = database.read("SELECT progress_time, chunk_id, url FROM logs ORDER BY url")
        assert rows == [
            {'progress_time': "2024-05-01 10:00:00", 'chunk_id': 1, 'url': "https://example.com/a"},
            {'progress_time': "2024-05-01 10:00:01", 'chunk_id': 1, 'url': "https://example.com/b"},
            {'progress_time': "2024-05-01 10:00:00", 'chunk_id': 2, 'url': "https://example.com/c"},
        ]

    def test_duplicates_are_ignored(self, database, progress_dir):
        line = "2024-05-01 10:00:00\t1\thttps://example.com/a\n"
        self._write(progress_dir, 1, line)
        LogReconciler(database, progress_dir).merge()
        self._write(progress_dir, 1, line + line)
        LogReconciler(database, progress_dir).merge()

        assert database.get_stats()['logs'] == 1

    def test_empty_file_is_deleted(self, database, progress_dir):
        empty = self._write(progress_dir, 1, "")
        assert LogReconciler(database, progress_dir).merge() == 0
        assert not empty.exists()

    def test_no_pending_files(self, database, progress_dir):
        assert LogReconciler(database, progress_dir).merge() == 0

    def test_failed_insert_keeps_files(self, database, progress_dir, monkeypatch):
        path = self._write(progress_dir, 1, "2024-05-01 10:00:00\t1\thttps://example.com/a\n")

        def fail(rows):
            raise PersistenceError("locked")

        monkeypatch.setattr(database, 'insert_logs', fail)
        LogReconciler(database, progress_dir).merge()

        assert path.exists()
