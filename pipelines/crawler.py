"""Site crawler for Pathfinder.

Runs one bounded, sequential crawl of a site: frontier, fetch, extract and
index, reporting progress as a stream of event dicts.
"""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from config.settings import Settings, get_settings
from observability.metrics import pages_crawled, robots_skipped
from .errors import FetchError, MalformedURL, StartUrlMismatch
from .extract import extract_main_content
from .fetcher import open_fetcher
from .frontier import Frontier
from .indexer import IndexResult, PageIndexer
from .policy import RobotsPolicy
from .urls import normalize_url, same_origin

logger = logging.getLogger(__name__)

CrawlEvent = Dict[str, Any]
EventCallback = Callable[[CrawlEvent], Union[None, Awaitable[None]]]


def status_event(message: str) -> CrawlEvent:
    return {"type": "status", "message": message}


def page_ok_event(url: str, result: IndexResult) -> CrawlEvent:
    return {
        "type": "page",
        "url": url,
        "ok": True,
        "pageId": result.page_id,
        "title": result.title,
        "summary": result.summary,
        "screenshotUrl": result.screenshot_url,
    }


def page_failed_event(url: str, reason: str) -> CrawlEvent:
    return {"type": "page", "url": url, "ok": False, "reason": reason}


def done_event() -> CrawlEvent:
    return {"type": "done"}


@dataclass
class CrawlStats:
    """Statistics for a crawl run."""
    pages_attempted: int = 0
    pages_ok: int = 0
    pages_failed: int = 0
    robots_skipped: int = 0
    embedding_errors: int = 0
    cancelled: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def __post_init__(self):
        if self.start_time is None:
            self.start_time = datetime.utcnow()

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = datetime.utcnow()


def validate_start_url(domain: str, start_url: str) -> str:
    """Normalized ``start_url`` if it is on ``domain`` over http or https.

    Raises:
        MalformedURL: if ``start_url`` cannot be parsed.
        StartUrlMismatch: if it belongs to another origin.
    """
    normalized = normalize_url(start_url)
    if not (same_origin(normalized, f"https://{domain}") or same_origin(normalized, f"http://{domain}")):
        raise StartUrlMismatch(f"startUrl must be on {domain}")
    return normalized


class SiteCrawler:
    """Sequential crawler bounded by a page budget and robots.txt."""

    def __init__(self, settings: Settings, indexer: PageIndexer,
                 fetcher_factory=open_fetcher):
        self.settings = settings
        self.indexer = indexer
        self.fetcher_factory = fetcher_factory

    async def crawl(self, site_id: str, start_url: str,
                    on_event: Optional[EventCallback] = None,
                    cancel: Optional[asyncio.Event] = None,
                    max_pages: Optional[int] = None) -> CrawlStats:
        """Crawl from ``start_url`` and index every fetched page under ``site_id``.

        Per-page failures become failed ``page`` events; the run continues.
        ``cancel`` is checked before each page. A ``done`` event is emitted
        when the loop ends normally.
        """
        start = normalize_url(start_url)
        stats = CrawlStats()
        budget = max_pages or self.settings.max_pages

        async def emit(event: CrawlEvent):
            if on_event is None:
                return
            result = on_event(event)
            if inspect.isawaitable(result):
                await result

        pending_status: List[str] = []
        async with self.fetcher_factory(self.settings, on_status=pending_status.append) as fetcher:
            for message in pending_status:
                await emit(status_event(message))

            robots = await RobotsPolicy.load(start, fetcher.fetch_text,
                                            user_agent=self.settings.user_agent)
            frontier = Frontier(budget=budget, robots=robots)
            frontier.enqueue(start)
            logger.info(f"Crawling {start} with {fetcher.name} fetcher (budget {budget})")

            while not frontier.done:
                if cancel is not None and cancel.is_set():
                    stats.cancelled = True
                    await emit(status_event("crawl cancelled"))
                    break

                url = frontier.next()
                if not frontier.is_allowed(url):
                    stats.robots_skipped += 1
                    robots_skipped.inc()
                    await emit(status_event(f"skipped {url} (disallowed by robots.txt)"))
                    continue

                frontier.record_fetch()
                stats.pages_attempted += 1
                await emit(status_event(f"crawling {url}"))

                try:
                    fetched = await fetcher.fetch(url)
                    for link in fetched.links:
                        if same_origin(link, start):
                            frontier.enqueue(link)
                    extracted = extract_main_content(fetched.html)
                    result = await self.indexer.index_page(site_id, url, fetched, extracted)
                except FetchError as e:
                    stats.pages_failed += 1
                    pages_crawled.labels(outcome="failed").inc()
                    logger.info(f"Fetch failed for {url}: {e.message}")
                    await emit(page_failed_event(url, e.message))
                    continue
                except Exception as e:
                    stats.pages_failed += 1
                    pages_crawled.labels(outcome="failed").inc()
                    logger.error(f"Failed to index {url}: {e}", exc_info=True)
                    await emit(page_failed_event(url, str(e) or e.__class__.__name__))
                    continue

                stats.pages_ok += 1
                pages_crawled.labels(outcome="ok").inc()
                if result.embedding_error:
                    stats.embedding_errors += 1
                    await emit(status_event(f"embedding failed for {url}: {result.embedding_error}"))
                await emit(status_event(f"saved {url}"))
                await emit(page_ok_event(url, result))

        stats.finish()
        logger.info(
            f"Crawl of {start} finished: {stats.pages_ok} ok, {stats.pages_failed} failed, "
            f"{stats.robots_skipped} skipped by robots.txt in {stats.duration}"
        )
        await emit(done_event())
        return stats

    async def stream(self, site_id: str, start_url: str,
                     cancel: Optional[asyncio.Event] = None) -> AsyncIterator[CrawlEvent]:
        """Yield crawl events as they happen.

        A crawl-level failure is reported as a status event followed by
        ``done``. Closing the generator cancels the crawl.
        """
        queue: asyncio.Queue = asyncio.Queue()
        cancel = cancel or asyncio.Event()

        async def run():
            try:
                await self.crawl(site_id, start_url, on_event=queue.put_nowait, cancel=cancel)
            except Exception as e:
                logger.error(f"Crawl of {start_url} failed: {e}", exc_info=True)
                queue.put_nowait(status_event(f"crawl failed: {e}"))
                queue.put_nowait(done_event())

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                yield event
                if event["type"] == "done":
                    break
            await task
        finally:
            if not task.done():
                cancel.set()
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass


def build_crawler(settings: Settings) -> SiteCrawler:
    """Crawler wired with the providers selected by ``settings``."""
    from indexer.embeddings import build_embedding_provider
    from indexer.llm import build_language_model

    indexer = PageIndexer(settings, build_embedding_provider(settings), build_language_model(settings))
    return SiteCrawler(settings, indexer)


async def crawl_domain(domain: str, start_url: Optional[str], settings: Settings,
                       on_event: Optional[EventCallback] = None) -> CrawlStats:
    """Create the site row if missing and crawl it."""
    from config.database import session_scope
    from indexer.store import PathfinderStore

    start = validate_start_url(domain, start_url or f"https://{domain}/")
    with session_scope() as session:
        site_id = PathfinderStore(session).upsert_site(domain, start).id
    return await build_crawler(settings).crawl(site_id, start, on_event=on_event)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Crawl and index a site")
    parser.add_argument("--domain", required=True, help="Site domain, e.g. example.com")
    parser.add_argument("--start-url", help="First URL to crawl (defaults to https://<domain>/)")
    parser.add_argument("--max-pages", type=int, help="Page budget for this run")
    parser.add_argument("--no-browser", action="store_true", help="Use plain HTTP fetches only")
    args = parser.parse_args(argv)

    from config.database import init_db
    from observability.logging import setup_logging_from_settings

    settings = get_settings()
    updates = {}
    if args.max_pages:
        updates["max_pages"] = args.max_pages
    if args.no_browser:
        updates["browser_enabled"] = False
    settings = settings.model_copy(update=updates)

    setup_logging_from_settings(settings, service_name="pathfinder-crawler")
    init_db(settings.database_url)

    def print_event(event: CrawlEvent):
        print(json.dumps(event))

    try:
        stats = asyncio.run(crawl_domain(args.domain.lower(), args.start_url, settings, print_event))
    except (MalformedURL, StartUrlMismatch) as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 2
    return 0 if stats.pages_ok else 1


if __name__ == "__main__":
    sys.exit(main())
