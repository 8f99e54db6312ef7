"""Tests for the retrieval and answer pipeline."""

import asyncio

import pytest

from config.database import session_scope
from indexer.embeddings import EmbeddingProvider, HashedEmbeddingProvider
from indexer.llm import ExtractiveModel, LanguageModel
from indexer.retrieval import (
    MODE_RECENCY,
    MODE_VECTOR,
    RetrievalPipeline,
    Source,
    fallback_answer,
    rerank_by_overlap,
)
from indexer.store import PathfinderStore
from pipelines.errors import SiteNotFound

from tests.conftest import HOME_HTML, PRICING_HTML

START = "https://example.com/"


class FailingProvider(EmbeddingProvider):
    model_name = "always-down"

    async def embed(self, text):
        raise ConnectionError("provider unavailable")


class OtherModelProvider(HashedEmbeddingProvider):
    """Same vector shape as the indexed pages, different model."""

    model_name = "other-model"


class SilentModel(ExtractiveModel):
    """Never produces an answer, forcing the summary fallback."""

    async def answer(self, question, title, content, max_sentences=3):
        return None


class PickSecondModel(ExtractiveModel):

    async def choose_best(self, question, candidates):
        return 1


class BrokenModel(LanguageModel):

    async def rewrite_query(self, question):
        raise TimeoutError("timed out")

    async def choose_best(self, question, candidates):
        raise TimeoutError("timed out")

    async def answer(self, question, title, content):
        raise TimeoutError("timed out")


@pytest.fixture
def crawled_site(make_crawler, site_id):
    pages = {START: HOME_HTML.replace('<a href="/contact">Contact</a>', ""),
             "https://example.com/pricing": PRICING_HTML}
    crawler, _ = make_crawler(pages=pages)
    asyncio.run(crawler.crawl(site_id, START))
    return site_id


def query(pipeline, site_id, question, **kwargs):
    return asyncio.run(pipeline.query(site_id, question, **kwargs))


class TestRetrievalPipeline:

    def test_two_page_site_end_to_end(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel())
        result = query(pipeline, crawled_site, "pricing plans per month")

        assert result.mode == MODE_VECTOR
        assert len(result.sources) == 2
        assert result.sources[0].url == "https://example.com/pricing"
        assert result.sources[0].similarity >= result.sources[1].similarity
        assert result.best is result.sources[0]
        assert result.answer is not None
        assert "pricing plans" in result.answer

    def test_sources_carry_summary_and_distance(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel())
        source = query(pipeline, crawled_site, "pricing plans").sources[0]

        assert source.snippet.startswith("Pricing plans.")
        assert source.distance == pytest.approx(1.0 - source.similarity)
        assert set(source.to_dict()) == {"url", "title", "snippet", "screenshotUrl", "similarity", "distance"}

    def test_top_n_limits_sources(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel(), top_n=1)
        assert len(query(pipeline, crawled_site, "widgets").sources) == 1

    def test_recency_fallback_without_embeddings(self, site_id):
        with session_scope() as session:
            store = PathfinderStore(session)
            for path, title in (("a", "Alpha"), ("b", "Beta")):
                store.upsert_page(site_id, f"https://example.com/{path}", f"https://example.com/{path}",
                                  title=title, meta_description=None,
                                  content="Nothing relevant lives here.", content_hash=path)

        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel())
        result = query(pipeline, site_id, "quantum chromodynamics")

        assert result.mode == MODE_RECENCY
        assert {s.title for s in result.sources} == {"Alpha", "Beta"}
        assert all(s.similarity == 0.0 and s.distance is None for s in result.sources)
        assert result.answer == f'This page, "{result.best.title}", is the closest match on the site.'

    def test_recency_fallback_when_query_embedding_fails(self, crawled_site):
        pipeline = RetrievalPipeline(FailingProvider(), ExtractiveModel())
        result = query(pipeline, crawled_site, "pricing")
        assert result.mode == MODE_RECENCY
        assert len(result.sources) == 2

    def test_vectors_from_another_model_are_not_compared(self, crawled_site):
        pipeline = RetrievalPipeline(OtherModelProvider(), ExtractiveModel())
        result = query(pipeline, crawled_site, "pricing plans per month")
        assert result.mode == MODE_RECENCY
        assert len(result.sources) == 2
        assert all(s.distance is None for s in result.sources)

    def test_empty_site(self, site_id):
        result = query(RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel()), site_id, "anything")
        assert result.sources == []
        assert result.answer is None
        assert result.best is None

    def test_unknown_site(self, db):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel())
        with pytest.raises(SiteNotFound):
            query(pipeline, "no-such-site", "pricing")

    def test_answer_falls_back_to_summary(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), SilentModel())
        result = query(pipeline, crawled_site, "pricing plans")
        assert result.answer == result.best.snippet

    def test_model_chooses_best_page(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), PickSecondModel())
        result = query(pipeline, crawled_site, "pricing plans")
        assert result.best is result.sources[1]

    def test_provider_failures_degrade(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), BrokenModel())
        result = query(pipeline, crawled_site, "pricing plans")
        assert result.rewritten_query == "pricing plans"
        assert result.best is result.sources[0]
        assert result.answer == result.best.snippet

    def test_without_synthesis(self, crawled_site):
        pipeline = RetrievalPipeline(HashedEmbeddingProvider(), ExtractiveModel())
        assert query(pipeline, crawled_site, "pricing", synthesize=False).answer is None


class TestRerank:

    def test_overlap_bonus_reorders(self):
        sources = [
            Source(url="https://example.com/a", page_id="a", snippet="Company history", similarity=0.50),
            Source(url="https://example.com/b", page_id="b", snippet="Pricing plans and billing", similarity=0.45),
        ]
        reranked = rerank_by_overlap("pricing plans billing", sources)
        assert [s.page_id for s in reranked] == ["b", "a"]
        assert reranked[0].similarity == pytest.approx(0.54)

    def test_bonus_is_capped(self):
        snippet = " ".join(f"t{i}" for i in range(10))
        source = Source(url="https://example.com/", page_id="p", snippet=snippet, similarity=0.2)
        rerank_by_overlap(snippet, [source])
        assert source.similarity == pytest.approx(0.35)


class TestFallbackAnswer:

    def test_prefers_snippet(self):
        assert fallback_answer(Source(url="u", page_id="p", title="T", snippet="Summary.")) == "Summary."

    def test_template_names_page(self):
        source = Source(url="https://example.com/", page_id="p")
        assert fallback_answer(source) == 'This page, "https://example.com/", is the closest match on the site.'
