"""Tests for the language model providers."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from config.settings import Settings
from indexer.llm import (
    ExtractiveModel,
    FallbackLanguageModel,
    LanguageModel,
    OpenAIChatModel,
    build_language_model,
)
from observability.metrics import pathfinder_registry

CONTENT = ("Acme was founded in 1990. Our pricing plans start at ten dollars per month. "
           "Support is available by email. Annual pricing includes two free months.")


def chat_client(reply):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=reply))]
    ))
    return client


class BrokenModel(LanguageModel):
    model_name = "broken"

    async def summarize(self, text):
        raise TimeoutError("timed out")

    async def rewrite_query(self, question):
        raise TimeoutError("timed out")

    async def choose_best(self, question, candidates):
        raise TimeoutError("timed out")

    async def answer(self, question, title, content):
        raise TimeoutError("timed out")


class TestExtractiveModel:

    def test_answer_keeps_page_order(self):
        answer = asyncio.run(ExtractiveModel().answer("what do pricing plans cost", "Pricing", CONTENT))
        assert answer == ("Our pricing plans start at ten dollars per month. "
                          "Annual pricing includes two free months.")

    def test_answer_none_without_overlap(self):
        assert asyncio.run(ExtractiveModel().answer("zebra habitats", "Pricing", CONTENT)) is None
        assert asyncio.run(ExtractiveModel().answer("pricing", "Pricing", "")) is None

    def test_summarize_and_rewrite(self):
        model = ExtractiveModel()
        text = " ".join(f"w{i}" for i in range(60))
        assert asyncio.run(model.summarize(text)).split() == [f"w{i}" for i in range(45)]
        assert asyncio.run(model.rewrite_query("how to login")) == "how to login"

    def test_choose_best(self):
        model = ExtractiveModel()
        assert asyncio.run(model.choose_best("q", [("a", "x"), ("b", "y")])) == 0
        assert asyncio.run(model.choose_best("q", [])) is None


class TestOpenAIChatModel:

    def test_choose_best_parses_one_based_index(self):
        model = OpenAIChatModel("sk-test", client=chat_client("2"))
        assert asyncio.run(model.choose_best("q", [("a", "x"), ("b", "y")])) == 1

    def test_choose_best_none_for_zero_or_garbage(self):
        candidates = [("a", "x"), ("b", "y")]
        assert asyncio.run(OpenAIChatModel("sk-test", client=chat_client("0")).choose_best("q", candidates)) is None
        assert asyncio.run(OpenAIChatModel("sk-test", client=chat_client("none")).choose_best("q", candidates)) is None
        assert asyncio.run(OpenAIChatModel("sk-test", client=chat_client("7")).choose_best("q", candidates)) is None

    def test_rewrite_keeps_question_on_empty_reply(self):
        model = OpenAIChatModel("sk-test", client=chat_client(""))
        assert asyncio.run(model.rewrite_query("pricing")) == "pricing"

    def test_answer_sends_question_and_page(self):
        client = chat_client("It costs ten dollars.")
        model = OpenAIChatModel("sk-test", "gpt-4o-mini", client=client)
        assert asyncio.run(model.answer("cost?", "Pricing", CONTENT)) == "It costs ten dollars."
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert "Page: Pricing" in kwargs["messages"][1]["content"]


class TestFallbackLanguageModel:

    def test_falls_back_per_call(self):
        before = pathfinder_registry.get_sample_value(
            "pathfinder_llm_fallbacks_total", {"operation": "answer"}) or 0
        model = FallbackLanguageModel(BrokenModel())
        answer = asyncio.run(model.answer("pricing plans", "Pricing", CONTENT))
        assert "pricing plans" in answer
        after = pathfinder_registry.get_sample_value("pathfinder_llm_fallbacks_total", {"operation": "answer"})
        assert after == before + 1

    def test_summary_reports_fallback_model(self):
        model = FallbackLanguageModel(BrokenModel())
        summary, used = asyncio.run(model.summarize_with_model(CONTENT))
        assert used == "local-extractive"
        assert summary.startswith("Acme was founded")

    def test_rewrite_and_choose(self):
        model = FallbackLanguageModel(BrokenModel())
        assert asyncio.run(model.rewrite_query("pricing")) == "pricing"
        assert asyncio.run(model.choose_best("q", [("a", "x")])) == 0


class TestBuildLanguageModel:

    def test_extractive_without_key(self):
        assert isinstance(build_language_model(Settings()), ExtractiveModel)

    def test_openai_with_key(self):
        model = build_language_model(Settings(openai_api_key="sk-test"))
        assert isinstance(model, FallbackLanguageModel)
        assert isinstance(model.primary, OpenAIChatModel)
