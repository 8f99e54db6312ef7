"""Shared fixtures: an isolated SQLite database, settings and an in-memory site."""

from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import pytest

from config.database import close_database, init_db, session_scope
from config.settings import Settings, override_settings
from indexer.embeddings import HashedEmbeddingProvider
from indexer.llm import ExtractiveModel
from indexer.store import PathfinderStore
from pipelines.crawler import SiteCrawler
from pipelines.errors import FetchError
from pipelines.fetcher import FetchedPage, PageFetcher, extract_links
from pipelines.indexer import PageIndexer
from server.security.rate_limiting import limiter

HOME_HTML = """<html><head>
<title>Acme Widgets Home</title>
<meta name="description" content="Acme builds durable widgets for industrial customers.">
</head><body>
<h1>Welcome to Acme</h1>
<p>Acme builds durable widgets for industrial customers around the world since 1990.</p>
<a href="/pricing">Pricing</a>
<a href="/contact">Contact</a>
<a href="https://other.example.org/">Partner site</a>
</body></html>"""

PRICING_HTML = """<html><head><title>Pricing plans</title></head><body>
<h1>Pricing</h1>
<p>Our pricing plans start at ten dollars per month for the basic widget subscription.</p>
<a href="/">Home</a>
</body></html>"""

CONTACT_HTML = """<html><head><title>Contact support</title></head><body>
<h1>Contact support</h1>
<p>Email our support team at any time and we will reply within one business day.</p>
<a href="/pricing">Pricing</a>
</body></html>"""

SITE_PAGES = {
    "https://example.com/": HOME_HTML,
    "https://example.com/pricing": PRICING_HTML,
    "https://example.com/contact": CONTACT_HTML,
}


class FakeFetcher(PageFetcher):
    """Serves pages from a dict; unknown URLs fail like a 404."""

    name = "fake"

    def __init__(self, settings: Settings, pages: Dict[str, str], robots: Optional[str] = None,
                 screenshot: Optional[bytes] = None):
        super().__init__(settings)
        self.pages = pages
        self.robots = robots
        self.screenshot = screenshot
        self.fetched: List[str] = []

    async def fetch(self, url: str) -> FetchedPage:
        self.fetched.append(url)
        html = self.pages.get(url)
        if html is None:
            raise FetchError("fetch failed: 404", status=404)
        return FetchedPage(url=url, html=html, final_url=url,
                           links=extract_links(html, url), screenshot=self.screenshot)

    async def fetch_text(self, url: str) -> Optional[str]:
        if url.endswith("/robots.txt"):
            return self.robots
        return self.pages.get(url)


def fetcher_factory(fetcher: PageFetcher):
    @asynccontextmanager
    async def factory(settings, on_status=None):
        yield fetcher
    return factory


@pytest.fixture
def settings(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'pathfinder.db'}",
        snapshot_dir=str(tmp_path / "snapshots"),
        browser_enabled=False,
        max_pages=20,
        analyze_rate_limit="1000/minute",
        reaper_interval_seconds=3600,
    )
    override_settings(settings)
    yield settings
    override_settings(None)


@pytest.fixture
def db(settings):
    init_db(settings.database_url)
    limiter.reset()
    yield
    close_database()


@pytest.fixture
def make_crawler(settings):
    """Build a crawler over a fake site; returns ``(crawler, fetcher)``."""
    def build(pages=None, robots=None, screenshot=None, embedder=None):
        fetcher = FakeFetcher(settings, SITE_PAGES if pages is None else pages, robots, screenshot)
        indexer = PageIndexer(settings, embedder or HashedEmbeddingProvider(), ExtractiveModel())
        return SiteCrawler(settings, indexer, fetcher_factory=fetcher_factory(fetcher)), fetcher
    return build


@pytest.fixture
def site_id(db):
    with session_scope() as session:
        return PathfinderStore(session).upsert_site("example.com", "https://example.com/").id
