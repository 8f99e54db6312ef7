"""Page fetchers for the crawl loop.

Two strategies share one interface: a Playwright-rendered fetch that also
captures a screenshot, and a plain aiohttp fetch parsed with BeautifulSoup.
``open_fetcher`` picks one per crawl run and guarantees it is released.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional
from urllib.parse import urljoin

import aiohttp
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from config.settings import Settings
from .errors import FetchError

logger = logging.getLogger(__name__)

BROWSER_UNAVAILABLE_MESSAGE = "Playwright unavailable. Falling back to fetch-only crawl."
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class FetchedPage:
    """Raw result of fetching one URL."""
    url: str
    html: str
    final_url: Optional[str] = None
    status_code: int = 200
    links: List[str] = field(default_factory=list)
    screenshot: Optional[bytes] = None


def extract_links(html: str, base_url: str) -> List[str]:
    """Absolute ``a[href]`` targets of ``html`` resolved against ``base_url``."""
    soup = BeautifulSoup(html, "html.parser")
    base = soup.find("base", href=True)
    if base is not None:
        base_url = urljoin(base_url, base["href"])
    links = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("javascript:", "mailto:", "tel:")):
            continue
        links.append(urljoin(base_url, href))
    return links


class PageFetcher:
    """Interface for fetch strategies. Use as an async context manager."""

    name = "base"
    produces_screenshots = False

    def __init__(self, settings: Settings):
        self.settings = settings

    async def start(self):
        pass

    async def close(self):
        pass

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def fetch(self, url: str) -> FetchedPage:
        raise NotImplementedError

    async def fetch_text(self, url: str) -> Optional[str]:
        """Body of ``url`` for a 2xx response, ``None`` otherwise."""
        raise NotImplementedError


class HttpFetcher(PageFetcher):
    """Plain HTTP fetch; no JavaScript, no screenshots."""

    name = "http"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.settings.navigation_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': self.settings.user_agent}
            )

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def fetch(self, url: str) -> FetchedPage:
        await self.start()
        try:
            async with self.session.get(url, allow_redirects=True) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(f"fetch failed: {response.status}", status=response.status)
                content_type = response.headers.get("Content-Type")
                if content_type and content_type.split(";")[0].strip().lower() not in HTML_CONTENT_TYPES:
                    raise FetchError(f"not an HTML page: {content_type}", status=response.status)
                html = await response.text(errors="replace")
                final_url = str(response.url)
                status = response.status
        except asyncio.TimeoutError as e:
            raise FetchError(f"timeout fetching {url}", status=408) from e
        except aiohttp.ClientError as e:
            raise FetchError(f"client error fetching {url}: {e}") from e

        return FetchedPage(
            url=url,
            html=html,
            final_url=final_url,
            status_code=status,
            links=extract_links(html, final_url),
        )

    async def fetch_text(self, url: str) -> Optional[str]:
        await self.start()
        timeout = aiohttp.ClientTimeout(total=self.settings.robots_timeout)
        async with self.session.get(url, allow_redirects=True, timeout=timeout) as response:
            if not 200 <= response.status < 300:
                return None
            return await response.text(errors="replace")


class BrowserFetcher(PageFetcher):
    """Headless Chromium fetch with best-effort JPEG screenshots."""

    name = "browser"
    produces_screenshots = True

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def start(self):
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch()
        self._context = await self._browser.new_context(
            viewport={"width": 1280, "height": 720},
            user_agent=self.settings.user_agent,
        )
        self._page = await self._context.new_page()

    async def close(self):
        try:
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            self._browser = None
            self._context = None
            self._page = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def fetch(self, url: str) -> FetchedPage:
        timeout_ms = self.settings.navigation_timeout * 1000
        try:
            response = await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise FetchError(f"timeout navigating to {url}", status=408) from e
        except PlaywrightError as e:
            raise FetchError(f"navigation failed for {url}: {e}") from e

        status = response.status if response is not None else 200
        if response is not None and not response.ok:
            raise FetchError(f"fetch failed: {status}", status=status)

        html = await self._page.content()

        screenshot = None
        try:
            screenshot = await self._page.screenshot(type="jpeg", quality=70)
        except PlaywrightError as e:
            logger.debug(f"Screenshot failed for {url}: {e}")

        try:
            links = await self._page.eval_on_selector_all(
                "a[href]", "anchors => anchors.map(a => a.href)"
            )
        except PlaywrightError as e:
            logger.debug(f"Link extraction from DOM failed for {url}, parsing HTML instead: {e}")
            links = extract_links(html, self._page.url)

        return FetchedPage(
            url=url,
            html=html,
            final_url=self._page.url,
            status_code=status,
            links=list(links),
            screenshot=screenshot,
        )

    async def fetch_text(self, url: str) -> Optional[str]:
        response = await self._context.request.get(url, timeout=self.settings.robots_timeout * 1000)
        try:
            if not response.ok:
                return None
            return await response.text()
        finally:
            await response.dispose()


@asynccontextmanager
async def open_fetcher(settings: Settings,
                       on_status: Optional[Callable[[str], None]] = None) -> AsyncIterator[PageFetcher]:
    """Yield a started fetcher for one crawl run and close it on every exit path.

    The browser is preferred; if it cannot be launched the run falls back to
    plain HTTP and ``on_status`` is told about it.
    """
    fetcher: Optional[PageFetcher] = None
    if settings.browser_enabled:
        browser = BrowserFetcher(settings)
        try:
            await browser.start()
            fetcher = browser
            logger.info("Using headless browser fetcher")
        except Exception as e:
            logger.warning(f"Browser launch failed: {e}")
            await browser.close()
            if on_status:
                on_status(BROWSER_UNAVAILABLE_MESSAGE)

    if fetcher is None:
        fetcher = HttpFetcher(settings)
        await fetcher.start()
        logger.info("Using plain HTTP fetcher")

    try:
        yield fetcher
    finally:
        await fetcher.close()
