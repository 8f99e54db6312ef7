"""Heuristic ranking of the pages crawled by an analyze job."""

from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from .errors import MalformedURL
from .urls import normalize_url

MAX_REASONS = 3


def calculate_page_score(url: str, title: Optional[str], content: Optional[str],
                         is_home_page: bool) -> float:
    """Score in [0, 1] from home-page status, title, content length and path depth."""
    score = 0.0
    if is_home_page:
        score += 0.4
    if title and len(title) > 10:
        score += 0.2

    content_length = len(content or "")
    if content_length > 1000:
        score += 0.2
    elif content_length > 500:
        score += 0.1

    path = urlsplit(url).path or "/"
    if path.count("/") <= 2:
        score += 0.1

    return min(max(round(score, 4), 0.0), 1.0)


def generate_reasons(score: float, url: str, title: Optional[str]) -> List[str]:
    """Up to three human-readable reasons for a score."""
    reasons = []
    if score >= 0.8:
        reasons.append("High-quality content")
    if title and len(title) > 10:
        reasons.append("Clear page title")
    if url.endswith("/") or len(url.split("/")) <= 3:
        reasons.append("Main section page")
    if not reasons:
        reasons.append("Standard page")
    return reasons[:MAX_REASONS]


def rank_pages(pages: Iterable[dict], home_url: str) -> List[dict]:
    """Score ``{url, title, content}`` dicts and order them best first.

    Ties keep crawl order. ``home_url`` must already be normalized.
    """
    scored = []
    for page in pages:
        try:
            is_home = normalize_url(page["url"]) == home_url
        except MalformedURL:
            is_home = False
        score = calculate_page_score(page["url"], page.get("title"), page.get("content"), is_home)
        scored.append({
            "url": page["url"],
            "title": (page.get("title") or "Untitled")[:512],
            "score": score,
            "reasons": generate_reasons(score, page["url"], page.get("title")),
        })
    return sorted(scored, key=lambda item: item["score"], reverse=True)
