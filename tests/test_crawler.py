"""Tests for the crawl loop."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from config.database import session_scope
from indexer.embeddings import EmbeddingProvider
from indexer.models import Embedding, Page, Summary
from pipelines.crawler import CrawlStats, main, validate_start_url
from pipelines.errors import StartUrlMismatch

from tests.conftest import PRICING_HTML

START = "https://example.com/"


class FailingProvider(EmbeddingProvider):
    model_name = "always-down"

    async def embed(self, text):
        raise ConnectionError("provider unavailable")


def crawl(crawler, site_id, **kwargs):
    events = []
    stats = asyncio.run(crawler.crawl(site_id, START, on_event=events.append, **kwargs))
    return stats, events


def page_events(events):
    return [e for e in events if e["type"] == "page"]


def table_count(model):
    with session_scope() as session:
        return session.execute(select(func.count(model.id))).scalar_one()


class TestSiteCrawler:

    def test_crawls_same_origin_pages(self, make_crawler, site_id):
        crawler, fetcher = make_crawler()
        stats, events = crawl(crawler, site_id)

        assert fetcher.fetched == [START, "https://example.com/pricing", "https://example.com/contact"]
        assert stats.pages_ok == 3
        assert stats.pages_failed == 0
        assert events[-1] == {"type": "done"}
        pages = page_events(events)
        assert [p["url"] for p in pages] == fetcher.fetched
        assert all(p["ok"] and p["pageId"] for p in pages)
        assert pages[0]["title"] == "Acme Widgets Home"
        assert pages[0]["summary"]

    def test_cyclic_site_stays_within_budget(self, make_crawler, site_id):
        links = "".join(f'<a href="/page/{i}">{i}</a>' for i in range(50))
        pages = {START: f"<html><body>{links}</body></html>"}
        pages.update({f"https://example.com/page/{i}": f"<html><body>{links}</body></html>" for i in range(50)})
        crawler, fetcher = make_crawler(pages=pages)

        stats, _ = crawl(crawler, site_id, max_pages=5)

        assert stats.pages_attempted == 5
        assert len(fetcher.fetched) == 5
        assert len(set(fetcher.fetched)) == 5

    def test_fetch_failure_does_not_stop_crawl(self, make_crawler, site_id):
        pages = {
            START: '<html><body><a href="/missing">Gone</a><a href="/pricing">Pricing</a></body></html>',
            "https://example.com/pricing": PRICING_HTML,
        }
        crawler, _ = make_crawler(pages=pages)
        stats, events = crawl(crawler, site_id)

        assert stats.pages_failed == 1
        assert stats.pages_ok == 2
        failed = [p for p in page_events(events) if not p["ok"]]
        assert failed == [{"type": "page", "url": "https://example.com/missing", "ok": False,
                           "reason": "fetch failed: 404"}]
        assert events[-1]["type"] == "done"

    def test_robots_disallowed_pages_are_skipped(self, make_crawler, site_id):
        crawler, fetcher = make_crawler(robots="User-agent: *\nDisallow: /contact\n")
        stats, events = crawl(crawler, site_id)

        assert "https://example.com/contact" not in fetcher.fetched
        assert stats.robots_skipped == 1
        assert stats.pages_ok == 2
        assert any("disallowed by robots.txt" in e.get("message", "") for e in events)
        assert all(p["url"] != "https://example.com/contact" for p in page_events(events))

    def test_robots_group_for_own_user_agent(self, make_crawler, site_id):
        robots = "User-agent: PathfinderBot\nDisallow: /contact\n\nUser-agent: *\nDisallow:\n"
        crawler, fetcher = make_crawler(robots=robots)
        stats, _ = crawl(crawler, site_id)

        assert fetcher.fetched == [START, "https://example.com/pricing"]
        assert stats.robots_skipped == 1

    def test_embedding_failures_are_reported_not_fatal(self, make_crawler, site_id):
        crawler, _ = make_crawler(embedder=FailingProvider())
        stats, events = crawl(crawler, site_id)

        assert stats.pages_ok == 3
        assert stats.embedding_errors == 3
        assert any(e.get("message", "").startswith("embedding failed") for e in events)
        assert table_count(Embedding) == 0

    def test_recrawl_reuses_summaries(self, make_crawler, site_id):
        crawler, _ = make_crawler()
        crawl(crawler, site_id)
        crawl(crawler, site_id)

        assert table_count(Page) == 3
        assert table_count(Summary) == 3
        assert table_count(Embedding) == 3

    def test_cancel_before_first_page(self, make_crawler, site_id):
        crawler, fetcher = make_crawler()
        token = asyncio.Event()
        token.set()

        stats, events = crawl(crawler, site_id, cancel=token)

        assert stats.cancelled
        assert fetcher.fetched == []
        assert {"type": "status", "message": "crawl cancelled"} in events

    def test_async_event_callback(self, make_crawler, site_id):
        crawler, _ = make_crawler()
        seen = []

        async def on_event(event):
            seen.append(event["type"])

        asyncio.run(crawler.crawl(site_id, START, on_event=on_event))
        assert seen.count("page") == 3
        assert seen[-1] == "done"

    def test_screenshots_in_page_events(self, make_crawler, site_id):
        crawler, _ = make_crawler(screenshot=b"\xff\xd8jpeg")
        _, events = crawl(crawler, site_id)
        assert all(p["screenshotUrl"].startswith("/snapshots/") for p in page_events(events))

    def test_stream_yields_events_until_done(self, make_crawler, site_id):
        crawler, _ = make_crawler()

        async def collect():
            return [event async for event in crawler.stream(site_id, START)]

        events = asyncio.run(collect())
        assert len(page_events(events)) == 3
        assert events[-1] == {"type": "done"}


class TestValidateStartUrl:

    def test_accepts_same_domain(self):
        assert validate_start_url("example.com", "HTTPS://Example.com/docs/") == "https://example.com/docs"
        assert validate_start_url("example.com", "http://example.com") == "http://example.com/"

    def test_rejects_other_origin(self):
        with pytest.raises(StartUrlMismatch) as exc_info:
            validate_start_url("example.com", "https://evil.com/")
        assert exc_info.value.error_code == "DISALLOWED_DOMAIN"

    def test_rejects_subdomain(self):
        with pytest.raises(StartUrlMismatch):
            validate_start_url("example.com", "https://docs.example.com/")


class TestCrawlerCli:

    def test_main_crawls_domain(self, settings):
        with patch("pipelines.crawler.crawl_domain", new=AsyncMock(return_value=CrawlStats(pages_ok=2))) as crawl_domain, \
                patch("config.database.init_db"), \
                patch("observability.logging.setup_logging_from_settings"):
            assert main(["--domain", "Example.com", "--max-pages", "5", "--no-browser"]) == 0

        domain, start_url, used_settings, _ = crawl_domain.await_args.args
        assert domain == "example.com"
        assert start_url is None
        assert used_settings.max_pages == 5
        assert not used_settings.browser_enabled

    def test_main_reports_start_url_mismatch(self, settings):
        failing = AsyncMock(side_effect=StartUrlMismatch("startUrl must be on example.com"))
        with patch("pipelines.crawler.crawl_domain", new=failing), \
                patch("config.database.init_db"), \
                patch("observability.logging.setup_logging_from_settings"):
            assert main(["--domain", "example.com", "--start-url", "https://evil.com/"]) == 2
