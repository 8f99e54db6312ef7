"""Language model providers for summaries, query rewriting, page selection and answers.

``OpenAIChatModel`` talks to the chat completions API. ``ExtractiveModel`` is
the deterministic stand-in used when no provider is configured, and
``FallbackLanguageModel`` degrades from the first to the second per call.
"""

import logging
import re
from typing import Optional, Sequence, Tuple

from openai import AsyncOpenAI

from observability.metrics import llm_fallbacks
from .embeddings import tokenize

logger = logging.getLogger(__name__)

LOCAL_SUMMARY_WORDS = 45
MAX_CHOICES = 10
CHOICE_EXCERPT_CHARS = 1000
ANSWER_CONTEXT_CHARS = 4000
SUMMARY_INPUT_CHARS = 8000

REWRITE_SYSTEM_PROMPT = """You are a search query optimizer. Rewrite user queries to be more effective for vector similarity search.

Your goal is to:
1. Expand the query with relevant synonyms and related terms
2. Include both specific and general terms that might appear in web content
3. Add context that helps match against page titles, headings, and content
4. Keep the rewritten query concise but comprehensive
5. Preserve the original intent while making it more searchable

Examples:
- "how to login" -> "login authentication sign in access account credentials"
- "pricing plans" -> "pricing plans costs subscription fees rates billing"
- "contact support" -> "contact support help customer service assistance reach out\""""

CHOOSE_SYSTEM_PROMPT = """You are a search result analyzer. Given a user query and a list of search results, determine which result best answers the query.

Analyze each result and return the index number (1-based) of the best match. Consider:
- Relevance to the original query
- Completeness of information
- Quality and clarity of content
- Whether the result directly answers the question

If no result adequately answers the query, return "0".

Respond with only the index number, nothing else."""

ANSWER_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on web page content.

Guidelines:
- Answer the user's question directly and comprehensively
- Use only information from the provided page content
- If the page doesn't contain enough information to answer the question, say so
- Keep answers concise but informative
- Cite the page title when relevant"""

SUMMARY_SYSTEM_PROMPT = "You summarize web pages concisely."

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def first_words(text: str, count: int = LOCAL_SUMMARY_WORDS) -> str:
    return " ".join((text or "").split()[:count])


class LanguageModel:
    """Interface for the text generation steps of indexing and retrieval."""

    model_name = "unknown"

    async def summarize(self, text: str) -> str:
        raise NotImplementedError

    async def summarize_with_model(self, text: str) -> Tuple[str, str]:
        """Summary plus the name of the model that actually produced it."""
        return await self.summarize(text), self.model_name

    async def rewrite_query(self, question: str) -> str:
        raise NotImplementedError

    async def choose_best(self, question: str, candidates: Sequence[Tuple[str, str]]) -> Optional[int]:
        """0-based index of the best ``(title, excerpt)`` candidate, ``None`` when none fits."""
        raise NotImplementedError

    async def answer(self, question: str, title: str, content: str) -> Optional[str]:
        """Answer grounded in ``content``; ``None`` when nothing usable can be produced."""
        raise NotImplementedError


class ExtractiveModel(LanguageModel):
    """Deterministic model with no network dependency."""

    model_name = "local-extractive"

    async def summarize(self, text: str) -> str:
        return first_words(text)

    async def rewrite_query(self, question: str) -> str:
        return question

    async def choose_best(self, question: str, candidates: Sequence[Tuple[str, str]]) -> Optional[int]:
        return 0 if candidates else None

    async def answer(self, question: str, title: str, content: str, max_sentences: int = 3) -> Optional[str]:
        """Sentences of ``content`` sharing the most tokens with the question, in page order."""
        terms = set(tokenize(question))
        if not terms or not content:
            return None
        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(" ".join(content.split())) if s.strip()]
        scored = []
        for position, sentence in enumerate(sentences):
            overlap = len(terms & set(tokenize(sentence)))
            if overlap:
                scored.append((overlap, position, sentence))
        if not scored:
            return None
        best = sorted(scored, key=lambda item: (-item[0], item[1]))[:max_sentences]
        return " ".join(sentence for _, _, sentence in sorted(best, key=lambda item: item[1]))


class OpenAIChatModel(LanguageModel):
    """Chat completions backed implementation."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model_name = model

    async def _complete(self, system: str, user: str, temperature: float, max_tokens: int) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if not completion.choices:
            return ""
        return (completion.choices[0].message.content or "").strip()

    async def summarize(self, text: str) -> str:
        prompt = ("Summarize the following page in <= 45 words. Imperative mood, no fluff, no preamble."
                  f"\n\n{text[:SUMMARY_INPUT_CHARS]}")
        return await self._complete(SUMMARY_SYSTEM_PROMPT, prompt, temperature=0.2, max_tokens=120)

    async def rewrite_query(self, question: str) -> str:
        rewritten = await self._complete(
            REWRITE_SYSTEM_PROMPT,
            f'Original query: "{question}"\n\nRewritten query for vector search:',
            temperature=0.3,
            max_tokens=150,
        )
        return rewritten or question

    async def choose_best(self, question: str, candidates: Sequence[Tuple[str, str]]) -> Optional[int]:
        shown = list(candidates)[:MAX_CHOICES]
        if not shown:
            return None
        context = "\n\n".join(
            f"[{i}] {title}\nContent: {excerpt[:CHOICE_EXCERPT_CHARS]}..."
            for i, (title, excerpt) in enumerate(shown, start=1)
        )
        reply = await self._complete(
            CHOOSE_SYSTEM_PROMPT,
            f'Query: "{question}"\n\nSearch Results:\n{context}\n\n'
            "Which result best answers the query? (Return only the index number):",
            temperature=0.1,
            max_tokens=10,
        )
        match = re.search(r"\d+", reply)
        if not match:
            return None
        index = int(match.group()) - 1
        return index if 0 <= index < len(shown) else None

    async def answer(self, question: str, title: str, content: str) -> Optional[str]:
        reply = await self._complete(
            ANSWER_SYSTEM_PROMPT,
            f'Question: "{question}"\n\nPage: {title}\nContent: {content[:ANSWER_CONTEXT_CHARS]}\n\nAnswer:',
            temperature=0.2,
            max_tokens=500,
        )
        return reply or None


class FallbackLanguageModel(LanguageModel):
    """Calls ``primary`` and answers from ``fallback`` whenever it raises."""

    def __init__(self, primary: LanguageModel, fallback: Optional[LanguageModel] = None):
        self.primary = primary
        self.fallback = fallback or ExtractiveModel()
        self.model_name = primary.model_name

    async def _call(self, operation: str, *args):
        try:
            return await getattr(self.primary, operation)(*args), self.primary.model_name
        except Exception as e:
            logger.warning(f"Language model {operation} failed, using {self.fallback.model_name}: {e}")
            llm_fallbacks.labels(operation=operation).inc()
            return await getattr(self.fallback, operation)(*args), self.fallback.model_name

    async def summarize(self, text: str) -> str:
        result, _ = await self._call("summarize", text)
        return result

    async def summarize_with_model(self, text: str) -> Tuple[str, str]:
        return await self._call("summarize", text)

    async def rewrite_query(self, question: str) -> str:
        result, _ = await self._call("rewrite_query", question)
        return result or question

    async def choose_best(self, question: str, candidates: Sequence[Tuple[str, str]]) -> Optional[int]:
        result, _ = await self._call("choose_best", question, candidates)
        return result

    async def answer(self, question: str, title: str, content: str) -> Optional[str]:
        result, _ = await self._call("answer", question, title, content)
        return result


def build_language_model(settings) -> LanguageModel:
    """OpenAI chat model with extractive fallback when a key is configured, extractive alone otherwise."""
    if settings.openai_api_key:
        logger.info(f"Using OpenAI chat model {settings.chat_model} with extractive fallback")
        return FallbackLanguageModel(OpenAIChatModel(settings.openai_api_key, settings.chat_model))
    return ExtractiveModel()

