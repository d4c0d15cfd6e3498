"""End-to-end tests for the crawl scheduler."""

from unittest.mock import MagicMock, patch

import pytest
from urllib3.exceptions import MaxRetryError

from crawlkeep.crawler.scheduler import CrawlerScheduler
from crawlkeep.storage.database import LinkEdge, PageRecord
from crawlkeep.storage.snapshots import SnapshotWriter


A, B, C, D = (f"https://example.com/{name}" for name in "abcd")


@pytest.fixture
def fetchers():
    """Every fetcher the scheduler opens, in order."""
    return []


@pytest.fixture
def factory(fake_fetcher, fetchers):
    def _factory(config, **kwargs):
        fetcher = fake_fetcher(config.session, **kwargs)
        fetchers.append(fetcher)
        return fetcher
    return _factory


def pending_snapshots(config):
    return sorted(config.snapshot_dir.rglob("snap_*.json"))


class TestScrape:
    """Tests for a complete crawl pass."""

    @pytest.mark.asyncio
    async def test_three_urls_end_to_end(self, make_config, factory, fetchers):
        config = make_config(urls=[A, B, C])

        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            reports = await scheduler.scrape()

            assert [r.processed for r in reports] == [3]
            assert sorted(p['url'] for p in scheduler.pages()) == [A, B, C]
            assert all(p['status'] for p in scheduler.pages())
            assert scheduler.remaining_urls == []
            assert pending_snapshots(config) == []
            assert len(scheduler.logs()) == 3

            levels = {row['href']: row['level'] for row in
                      scheduler.query("SELECT href, MIN(level) AS level FROM links GROUP BY href")}
            assert levels == {A: 1, B: 2, C: 2, D: 2}

        assert fetchers[0].started and fetchers[0].closed

    @pytest.mark.asyncio
    async def test_second_run_is_a_noop(self, make_config, factory, fetchers):
        config = make_config(urls=[A, B, C])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            assert await scheduler.scrape() == []
        assert len(fetchers) == 1

    @pytest.mark.asyncio
    async def test_resume_in_new_process(self, make_config, factory):
        """A fresh scheduler excludes URLs already in the store."""
        config = make_config(urls=[A, B])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()

        config = make_config(urls=[A, B, C])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            assert scheduler.remaining_urls == [C]

    @pytest.mark.asyncio
    async def test_workers_partition_round_robin(self, make_config, factory, fetchers):
        config = make_config(urls=[A, B, C], session={'workers': 2})

        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            reports = await scheduler.scrape()
            assert len(scheduler.pages()) == 3

        assert [f.requested for f in fetchers] == [[A, C], [B]]
        assert sorted(r.chunk_id for r in reports) == [1, 2]
        assert all(f.closed for f in fetchers)

    @pytest.mark.asyncio
    async def test_workers_capped_by_urls(self, make_config, factory, fetchers):
        config = make_config(urls=[A], session={'workers': 4})
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
        assert len(fetchers) == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_is_done_too(self, make_config, factory):
        """A failed page is recorded and not retried on the next run."""
        config = make_config(urls=[A, "https://example.com/missing"])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            failed = scheduler.pages("status = 0")
            assert [p['url'] for p in failed] == ["https://example.com/missing"]
            assert failed[0]['content'] is None
            assert scheduler.remaining_urls == []

    @pytest.mark.asyncio
    async def test_redirect_origin_counts_as_known(self, make_config, fake_fetcher):
        old = "https://example.com/old"

        def factory(config):
            return fake_fetcher(config.session, redirects={old: A})

        config = make_config(urls=[old])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            assert scheduler.pages()[0]['url_redirect'] == old
            root = scheduler.links(f"href = '{A}'")[0]
            assert root['source_url'] == old
            assert root['label'] == f"{A} - Redirected_Baseurl"

            scheduler.update_urls([old, A])
            assert scheduler.remaining_urls == []


class TestStopAndCrashes:
    """Tests for cooperative stop and crash tolerance."""

    @pytest.mark.asyncio
    async def test_stop_file_blocks_the_run(self, config):
        factory = MagicMock()
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            scheduler.update_urls([A])
            scheduler.stop()

            assert await scheduler.scrape() == []
            factory.assert_not_called()
            assert scheduler.remaining_urls == [A]

    @pytest.mark.asyncio
    async def test_stop_mid_run_and_resume(self, make_config, fake_fetcher):
        config = make_config(urls=[A, B, C], session={'snapshot_every': 1})
        holder = {}

        def stopping_factory(config):
            return fake_fetcher(config.session, on_fetch=lambda url: holder['scheduler'].stop())

        async with CrawlerScheduler(config, fetcher_factory=stopping_factory) as scheduler:
            holder['scheduler'] = scheduler
            reports = await scheduler.scrape()

            assert reports[0].stopped
            assert [p['url'] for p in scheduler.pages()] == [A]
            assert scheduler.remaining_urls == [B, C]
            assert scheduler.get_stats()['frontier'] == {
                'total_pending': 2, 'domains_pending': 1, 'forced': False
            }

            scheduler.clear_stop()
            scheduler.fetcher_factory = lambda config: fake_fetcher(config.session)
            await scheduler.scrape()

            assert sorted(p['url'] for p in scheduler.pages()) == [A, B, C]
            assert scheduler.remaining_urls == []

    @pytest.mark.asyncio
    async def test_leftover_snapshots_are_merged_on_start(self, make_config, factory):
        config = make_config(urls=[A, B])
        leftover = SnapshotWriter(config.snapshot_dir, chunk_id=1).write(
            [PageRecord(url=A, url_redirect=None, status=True, content="<html></html>",
                        scraped_at="2024-01-01T00:00:00.000000+00:00")],
            [LinkEdge(href=D, label="D", source_url=A,
                      scraped_at="2024-01-01T00:00:00.000000+00:00")],
        )

        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            assert not leftover.exists()
            assert scheduler.remaining_urls == [B]

    @pytest.mark.asyncio
    async def test_crashed_worker_does_not_lose_other_chunks(self, make_config, factory):
        config = make_config(urls=[A, B, C], session={'workers': 2, 'snapshot_every': 5})

        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            original = scheduler.robots.is_allowed

            def is_allowed(url):
                if url == B:
                    raise RuntimeError("worker crashed")
                return original(url)

            scheduler.robots.is_allowed = is_allowed
            reports = await scheduler.scrape()

            assert [r.chunk_id for r in reports] == [1]
            assert scheduler.get_stats()['worker_errors'] == 1
            assert sorted(p['url'] for p in scheduler.pages()) == [A, C]
            assert scheduler.remaining_urls == [B]

    @pytest.mark.asyncio
    async def test_unreachable_browser_session(self, make_config):
        """A session that cannot be opened ends the run without losing the frontier."""
        config = make_config(urls=[A, B], session={'use_browser': True, 'port': 1})
        with patch("crawlkeep.crawler.fetcher.webdriver.Remote",
                   side_effect=MaxRetryError(None, "/session")):
            async with CrawlerScheduler(config) as scheduler:
                assert await scheduler.scrape() == []
                assert scheduler.remaining_urls == [A, B]
                assert scheduler.pages() == []

    @pytest.mark.asyncio
    async def test_close_removes_empty_snapshot_dirs(self, make_config, factory):
        config = make_config(urls=[A, B, C], session={'workers': 2})
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
        assert list(config.snapshot_dir.iterdir()) == []


class TestUpdateUrls:
    """Tests for replacing the frontier."""

    @pytest.mark.asyncio
    async def test_known_urls_are_dropped(self, make_config, factory):
        config = make_config(urls=[A])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            result = scheduler.update_urls([A, B, B])

            assert scheduler.remaining_urls == [B]
            assert result.index_known == [0]
            assert result.index_duplicate == [2]

    @pytest.mark.asyncio
    async def test_force_scrapes_again(self, make_config, factory):
        config = make_config(urls=[A])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            scheduler.update_urls([A], force=True)
            assert scheduler.remaining_urls == [A]

            await scheduler.scrape()

            assert len(scheduler.pages(f"url = '{A}'")) == 2
            assert scheduler.remaining_urls == []

    @pytest.mark.asyncio
    async def test_discovered_urls_can_be_fed_back(self, make_config, factory):
        config = make_config(urls=[A])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            discovered = scheduler.discovered_urls()
            assert discovered == [B, C, D]

            scheduler.update_urls(discovered)
            await scheduler.scrape()

            # D is not served by the fake site and is recorded as failed
            assert [p['url'] for p in scheduler.pages("status = 0")] == [D]
            assert scheduler.discovered_urls() == []


class TestQuerySurface:
    """Tests for the read-only query methods."""

    @pytest.mark.asyncio
    async def test_invalid_filter_and_query(self, make_config, factory):
        config = make_config(urls=[A])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            assert scheduler.pages("no_such_column = 1") is None
            assert scheduler.query("SELEC nonsense") is None
            assert scheduler.query("DROP TABLE pages") is None
            assert len(scheduler.pages()) == 1

    @pytest.mark.asyncio
    async def test_regex_extract(self, make_config, factory):
        config = make_config(urls=[A, B, C])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()

            rows = scheduler.regex_extract(r"(?P<user>[a-z]+)@example\.com", group="user")
            by_url = {}
            for row in rows:
                by_url.setdefault(row['url'], []).append(row['user'])

            assert by_url == {A: ["info"], B: ["SALES"], C: [None]}

    @pytest.mark.asyncio
    async def test_regex_extract_filter_links(self, make_config, factory):
        config = make_config(urls=[A, B, C])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()

            rows = scheduler.regex_extract(r"\S+@example\.com", filter_links=["page b"])
            assert rows == [{'url': B, 'pattern': "SALES@example.com"}]

    @pytest.mark.asyncio
    async def test_regex_extract_bad_pattern(self, make_config, factory):
        config = make_config(urls=[A])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            assert scheduler.regex_extract(r"([unclosed") is None

    @pytest.mark.asyncio
    async def test_regex_extract_filter_links_alternation(self, make_config, factory):
        """Keywords are regular expressions joined with ``|``, matched ignoring case."""
        config = make_config(urls=[A, B, C])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()

            rows = scheduler.regex_extract(r"\S+@example\.com", filter_links="PAGE B|page c")
            assert sorted((r['url'], r['pattern']) for r in rows if r['pattern']) == [
                (B, "SALES@example.com")
            ]
            assert {r['url'] for r in rows} == {B, C}

            rows = scheduler.regex_extract(r"\S+@example\.com", filter_links=["back", "^page b$"])
            assert {r['url'] for r in rows} == {A, B}

    @pytest.mark.asyncio
    async def test_regex_extract_bad_filter(self, make_config, factory):
        config = make_config(urls=[A])
        async with CrawlerScheduler(config, fetcher_factory=factory) as scheduler:
            await scheduler.scrape()
            assert scheduler.regex_extract(r"\S+", filter_links="(unclosed") is None
