"""Page indexing for the crawl pipeline.

Persists one fetched page together with its snapshot, cached summary and
embedding. Each call runs in its own transaction so a failure on one page
never loses pages indexed before it.
"""

import hashlib
import logging
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.database import session_scope
from config.settings import Settings
from indexer.embeddings import EmbeddingProvider
from indexer.llm import LanguageModel
from indexer.store import PathfinderStore
from observability.metrics import summary_cache
from .extract import ExtractedContent, build_embedding_text, build_summary
from .fetcher import FetchedPage
from .urls import normalize_url

logger = logging.getLogger(__name__)

LOCAL_SUMMARY_MODEL = "local-structured"


def content_hash(text: Optional[str]) -> str:
    """SHA-256 hex digest of the extracted main text."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


@dataclass
class IndexResult:
    """Outcome of indexing one page."""
    page_id: str
    url: str
    title: Optional[str] = None
    summary: Optional[str] = None
    screenshot_url: Optional[str] = None
    embedding_stored: bool = False
    embedding_model: Optional[str] = None
    embedding_error: Optional[str] = None
    summary_cache_hit: bool = False


class PageIndexer:
    """Writes pages and their derived records to storage."""

    def __init__(self, settings: Settings, embedder: EmbeddingProvider,
                 llm: Optional[LanguageModel] = None,
                 session_factory: Callable[[], AbstractContextManager] = session_scope):
        self.settings = settings
        self.embedder = embedder
        self.llm = llm
        self.session_factory = session_factory

    async def index_page(self, site_id: str, url: str, fetched: FetchedPage,
                         extracted: ExtractedContent) -> IndexResult:
        digest = content_hash(extracted.text)

        with self.session_factory() as session:
            store = PathfinderStore(session)
            page = store.upsert_page(
                site_id, url, normalize_url(url),
                title=extracted.title,
                meta_description=extracted.description,
                content=extracted.text,
                content_hash=digest,
            )
            result = IndexResult(page_id=page.id, url=url, title=extracted.title)

            if fetched.screenshot:
                result.screenshot_url = self._store_snapshot(session, store, page.id, fetched.screenshot)

            await self._ensure_summary(store, page.id, digest, extracted, result)
            await self._store_embedding(session, store, page.id, extracted, result)

        return result

    def _store_snapshot(self, session: Session, store: PathfinderStore, page_id: str,
                        screenshot: bytes) -> Optional[str]:
        name = f"{page_id}-{int(time.time() * 1000)}.jpg"
        public_path = f"{self.settings.snapshot_url_prefix.rstrip('/')}/{name}"
        try:
            directory = Path(self.settings.snapshot_dir)
            directory.mkdir(parents=True, exist_ok=True)
            (directory / name).write_bytes(screenshot)
            with session.begin_nested():
                store.add_snapshot(page_id, public_path)
        except (OSError, SQLAlchemyError) as e:
            logger.warning(f"Failed to store snapshot for page {page_id}: {e}")
            return None
        return public_path

    async def _ensure_summary(self, store: PathfinderStore, page_id: str, digest: str,
                              extracted: ExtractedContent, result: IndexResult):
        existing = store.find_summary(page_id, digest)
        if existing is not None:
            summary_cache.labels(result="hit").inc()
            result.summary = existing.text
            result.summary_cache_hit = True
            return

        summary_cache.labels(result="miss").inc()
        text = build_summary(extracted)
        if not text:
            return
        model = LOCAL_SUMMARY_MODEL
        if self.llm is not None and self.settings.llm_summaries and extracted.text:
            refined, refined_model = await self.llm.summarize_with_model(extracted.text)
            if refined:
                text, model = refined, refined_model

        result.summary = store.add_summary(page_id, digest, text, model).text

    async def _store_embedding(self, session: Session, store: PathfinderStore, page_id: str,
                               extracted: ExtractedContent, result: IndexResult):
        text = build_embedding_text(extracted)[:self.settings.embedding_input_chars]
        if not text.strip():
            return
        try:
            vector, model = await self.embedder.embed_with_model(text)
            with session.begin_nested():
                store.replace_embedding(page_id, text, vector, model)
        except Exception as e:
            logger.warning(f"Embedding failed for page {page_id}: {e}")
            result.embedding_error = str(e) or e.__class__.__name__
            return
        result.embedding_stored = True
        result.embedding_model = model
