"""Content extraction from raw HTML.

Derives the signals the indexer needs from one page: title, meta
description, main readable text, headings, a small metadata record and a
bounded set of diverse text clips. Main text comes from trafilatura's
content-scoring extraction, with a BeautifulSoup fallback.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bs4 import BeautifulSoup
from trafilatura import extract

logger = logging.getLogger(__name__)

MAX_CLIPS = 20
CLIP_SELECTORS = [
    "main", "article", "section",
    ".content", ".main-content", ".post-content", ".entry-content",
    "p", "div", "span",
]
LIST_ITEM_SELECTOR = "ul li, ol li, dl dt, dl dd"
NOISE_TAGS = ["script", "style", "noscript", "template", "nav"]

SUMMARY_WORDS = 60
LOCAL_SUMMARY_WORDS = 45

_WS = re.compile(r"\s+")


def _clean(text: Optional[str]) -> str:
    return _WS.sub(" ", text or "").strip()


@dataclass
class ExtractedContent:
    """Signals extracted from one HTML document."""
    title: Optional[str] = None
    description: Optional[str] = None
    text: Optional[str] = None
    headers: List[str] = field(default_factory=list)
    metadata: Dict[str, object] = field(default_factory=dict)
    diverse_clips: List[str] = field(default_factory=list)

    @property
    def has_signal(self) -> bool:
        """True when any structured signal (not just body text) was found."""
        return bool(self.title or self.description or self.headers or self.diverse_clips)


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    return _clean(tag.get("content")) or None


def _texts(soup: BeautifulSoup, name: str) -> List[str]:
    return [t for t in (_clean(el.get_text(" ")) for el in soup.find_all(name)) if t]


def _collect_clips(soup: BeautifulSoup) -> List[str]:
    clips: List[str] = []

    def add(text: str, low: int, high: int):
        if not low < len(text) < high:
            return
        if any(text in clip or clip in text for clip in clips):
            return
        clips.append(text)

    for selector in CLIP_SELECTORS:
        for el in soup.select(selector):
            add(_clean(el.get_text(" ")), 50, 500)

    for item in soup.select(LIST_ITEM_SELECTOR):
        add(_clean(item.get_text(" ")), 20, 300)

    return clips[:MAX_CLIPS]


def _body_text(soup: BeautifulSoup) -> str:
    body = soup.body or soup
    return _clean(body.get_text(" "))


def extract_main_content(html: str) -> ExtractedContent:
    """Extract title, description, main text, headings, metadata and clips from ``html``."""
    soup = BeautifulSoup(html or "", "html.parser")

    title_tag = soup.find("title")
    og_title = _meta_content(soup, property="og:title")
    h1 = _texts(soup, "h1")
    title = _clean(title_tag.get_text()) if title_tag else ""
    title = title or og_title or (h1[0] if h1 else None)

    metadata = {
        "h1": h1,
        "h2": _texts(soup, "h2"),
        "h3": _texts(soup, "h3"),
        "meta_keywords": _meta_content(soup, name="keywords"),
        "og_title": og_title,
        "og_description": _meta_content(soup, property="og:description"),
    }

    headers = [t for t in (_clean(el.get_text(" ")) for el in
                           soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])) if t]

    for tag in soup.find_all(NOISE_TAGS):
        tag.decompose()

    text = None
    if html:
        try:
            text = extract(html, include_comments=False, include_tables=True)
        except Exception as e:
            logger.debug(f"trafilatura extraction failed: {e}")
    if not text or len(text.strip()) < 40:
        text = _body_text(soup) or text

    return ExtractedContent(
        title=title or None,
        description=_meta_content(soup, name="description"),
        text=text or None,
        headers=headers,
        metadata=metadata,
        diverse_clips=_collect_clips(soup),
    )


def _first_words(text: str, count: int) -> str:
    return " ".join(_clean(text).split(" ")[:count])


def _sentence(part: str) -> str:
    part = _clean(part)
    return part if part.endswith((".", "!", "?")) else f"{part}."


def build_summary(content: ExtractedContent) -> str:
    """Short human-readable summary, empty when the page carries nothing."""
    parts = [content.title, content.description]
    parts.extend(content.headers[:5])
    parts.extend(content.diverse_clips[:8])
    parts = [p for p in parts if p and _clean(p)]

    if not parts:
        return _first_words(content.text or "", LOCAL_SUMMARY_WORDS)

    combined = " ".join(_sentence(p) for p in parts)
    return _first_words(combined, SUMMARY_WORDS)


def build_embedding_text(content: ExtractedContent) -> str:
    """Labeled composite text with metadata and headings ahead of prose."""
    if not content.has_signal:
        return content.text or ""

    lines = []
    if content.title:
        lines.append(f"Title: {content.title}")
    if content.description:
        lines.append(f"Description: {content.description}")
    h1 = content.metadata.get("h1") or []
    if h1:
        lines.append(f"H1: {' | '.join(h1)}")
    if content.headers:
        lines.append(f"Headers: {' | '.join(content.headers[:10])}")
    body = " ".join(content.diverse_clips) if content.diverse_clips else (content.text or "")
    if body:
        lines.append(f"Content: {body}")
    return "\n".join(lines)
