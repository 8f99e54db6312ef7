"""Retrieval and answer pipeline.

Given a site and a question: rewrite the query, rank the site's pages by
embedding similarity (or by recency when no vectors exist), optionally
rerank by token overlap, pick a best page and answer from its content.
Every provider step degrades to a deterministic fallback.
"""

import logging
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

from config.database import session_scope
from observability.metrics import record_query
from .embeddings import EmbeddingProvider, cosine_distances, tokenize
from .llm import ANSWER_CONTEXT_CHARS, CHOICE_EXCERPT_CHARS, MAX_CHOICES, LanguageModel
from .models import Page
from .store import PathfinderStore

logger = logging.getLogger(__name__)

MODE_VECTOR = "vector"
MODE_RECENCY = "recency"

RERANK_BONUS_PER_TOKEN = 0.03
RERANK_MAX_BONUS = 0.15


@dataclass
class Source:
    """One ranked candidate page."""
    url: str
    page_id: str
    title: Optional[str] = None
    snippet: Optional[str] = None
    screenshot_url: Optional[str] = None
    similarity: float = 0.0
    distance: Optional[float] = None
    content: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "screenshotUrl": self.screenshot_url,
            "similarity": self.similarity,
            "distance": self.distance,
        }


@dataclass
class QueryResult:
    answer: Optional[str]
    sources: List[Source]
    best: Optional[Source] = None
    mode: str = MODE_RECENCY
    rewritten_query: Optional[str] = None


def fallback_answer(source: Source) -> str:
    """Cached summary of the page, else a sentence naming it."""
    if source.snippet:
        return source.snippet
    return f'This page, "{source.title or source.url}", is the closest match on the site.'


def rerank_by_overlap(question: str, sources: List[Source]) -> List[Source]:
    """Add a bounded token-overlap bonus against each summary and re-sort."""
    terms = set(tokenize(question))
    for source in sources:
        overlap = len(terms & set(tokenize(source.snippet or "")))
        source.similarity += min(RERANK_MAX_BONUS, RERANK_BONUS_PER_TOKEN * overlap)
    return sorted(sources, key=lambda s: s.similarity, reverse=True)


class RetrievalPipeline:
    """Answers questions about one site from its indexed pages."""

    def __init__(self, embedder: EmbeddingProvider, llm: Optional[LanguageModel] = None,
                 top_n: int = 10,
                 session_factory: Callable[[], AbstractContextManager] = session_scope):
        self.embedder = embedder
        self.llm = llm
        self.top_n = top_n
        self.session_factory = session_factory

    async def query(self, site_id: str, question: str, rerank: bool = False,
                    synthesize: bool = True) -> QueryResult:
        """Run the full pipeline.

        Raises:
            SiteNotFound: if ``site_id`` does not exist.
        """
        start_time = time.time()
        rewritten = await self._rewrite(question)
        query_vector, query_model = await self._embed_query(rewritten)

        with self.session_factory() as session:
            store = PathfinderStore(session)
            store.get_site(site_id)
            sources, mode = self._candidates(store, site_id, query_vector, query_model)

        if rerank and sources:
            sources = rerank_by_overlap(question, sources)

        best = await self._choose_best(question, sources) if sources else None
        answer = None
        if synthesize and best is not None:
            answer = await self._answer(question, best)

        record_query(mode, time.time() - start_time)
        logger.info(f"Query on site {site_id} returned {len(sources)} sources ({mode})")
        return QueryResult(answer=answer, sources=sources, best=best, mode=mode, rewritten_query=rewritten)

    async def _rewrite(self, question: str) -> str:
        if self.llm is None:
            return question
        try:
            return (await self.llm.rewrite_query(question)) or question
        except Exception as e:
            logger.warning(f"Query rewrite failed: {e}")
            return question

    async def _embed_query(self, text: str) -> Tuple[Optional[np.ndarray], Optional[str]]:
        try:
            return await self.embedder.embed_with_model(text)
        except Exception as e:
            logger.warning(f"Query embedding failed, falling back to recency: {e}")
            return None, None

    def _source(self, store: PathfinderStore, page: Page, similarity: float = 0.0,
                distance: Optional[float] = None) -> Source:
        summary = store.current_summary(page)
        snapshot = store.latest_snapshot(page.id)
        return Source(
            url=page.url,
            page_id=page.id,
            title=page.title,
            snippet=summary.text if summary else None,
            screenshot_url=snapshot.screenshot_path if snapshot else None,
            similarity=similarity,
            distance=distance,
            content=page.content,
        )

    def _candidates(self, store: PathfinderStore, site_id: str,
                    query_vector: Optional[np.ndarray],
                    query_model: Optional[str] = None) -> Tuple[List[Source], str]:
        if query_vector is not None:
            try:
                ranked = self._rank_by_vector(store, site_id, query_vector, query_model)
            except ValueError as e:
                logger.warning(f"Vector ranking failed for site {site_id}: {e}")
                ranked = []
            if ranked:
                return ranked, MODE_VECTOR

        pages = store.list_pages(site_id, limit=self.top_n)
        return [self._source(store, page) for page in pages], MODE_RECENCY

    def _rank_by_vector(self, store: PathfinderStore, site_id: str,
                        query_vector: np.ndarray, query_model: Optional[str] = None) -> List[Source]:
        """Cosine-rank pages embedded by the same model as the query."""
        rows = [(page, emb.as_array()) for page, emb in store.vector_candidates(site_id)
                if query_model is None or emb.model == query_model]
        rows = [(page, vec) for page, vec in rows if vec.shape == query_vector.shape]
        if not rows:
            return []
        distances = cosine_distances(query_vector, np.vstack([vec for _, vec in rows]))
        order = np.argsort(distances, kind="stable")[:self.top_n]
        return [
            self._source(store, rows[i][0], similarity=float(1.0 - distances[i]), distance=float(distances[i]))
            for i in order
        ]

    async def _choose_best(self, question: str, sources: List[Source]) -> Source:
        if self.llm is None or len(sources) == 1:
            return sources[0]
        shown = sources[:MAX_CHOICES]
        pairs = [(s.title or s.url, (s.content or s.snippet or "")[:CHOICE_EXCERPT_CHARS]) for s in shown]
        try:
            index = await self.llm.choose_best(question, pairs)
        except Exception as e:
            logger.warning(f"Best page selection failed: {e}")
            index = None
        if index is None or not 0 <= index < len(shown):
            return sources[0]
        return shown[index]

    async def _answer(self, question: str, best: Source) -> str:
        answer = None
        content = best.content or best.snippet or ""
        if self.llm is not None and content:
            try:
                answer = await self.llm.answer(question, best.title or best.url, content[:ANSWER_CONTEXT_CHARS])
            except Exception as e:
                logger.warning(f"Answer synthesis failed: {e}")
        return answer or fallback_answer(best)
