# Pathfinder Embeddings Module
# Fixed-dimension page and query vectors with a deterministic local fallback

import logging
import re
from typing import List, Optional, Tuple

import numpy as np
from openai import AsyncOpenAI

from observability.metrics import embedding_fallbacks

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 384
HASHED_MODEL_NAME = "hashed-bow-384"

_TOKEN = re.compile(r"[^a-z0-9]+")
_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def tokenize(text: str) -> List[str]:
    """Lowercased alphanumeric tokens."""
    return [t for t in _TOKEN.split((text or "").lower()) if t]


def fnv1a_32(token: str) -> int:
    """32-bit FNV-1a hash of the UTF-8 bytes of ``token``."""
    h = _FNV_OFFSET
    for byte in token.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Calculate cosine similarity between two vectors"""
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine distance of ``query`` to every row of ``matrix``; zero vectors are at distance 1."""
    query = np.asarray(query, dtype=np.float32)
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
    return 1.0 - sims


class ApproximateProjector:
    """Down-projects a vector by averaging contiguous buckets.

    Element ``i`` of an ``n``-vector lands in bucket ``floor(i / n * target)``.
    Not a learned projection; cosine similarity is only approximately kept.
    """

    def __init__(self, target: int = EMBEDDING_DIM):
        self.target = target

    def project(self, vector) -> np.ndarray:
        vec = np.asarray(vector, dtype=np.float64)
        n = len(vec)
        if n == self.target:
            return vec.astype(np.float32)
        if n == 0:
            return np.zeros(self.target, dtype=np.float32)
        idx = (np.arange(n) * self.target) // n
        sums = np.bincount(idx, weights=vec, minlength=self.target)
        counts = np.bincount(idx, minlength=self.target)
        out = np.divide(sums, counts, out=np.zeros(self.target), where=counts > 0)
        return out.astype(np.float32)


class EmbeddingProvider:
    """Interface: ``embed`` returns a ``(384,)`` float32 vector."""

    model_name = "unknown"
    dimension = EMBEDDING_DIM

    async def embed(self, text: str) -> np.ndarray:
        raise NotImplementedError

    async def embed_with_model(self, text: str) -> Tuple[np.ndarray, str]:
        """Vector plus the name of the model that actually produced it."""
        return await self.embed(text), self.model_name


class HashedEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words hashing embedder; needs no network."""

    model_name = HASHED_MODEL_NAME

    async def embed(self, text: str) -> np.ndarray:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        for token in tokenize(text):
            vec[fnv1a_32(token) % self.dimension] += 1.0
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings down-projected to 384 dimensions."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small",
                 client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.projector = ApproximateProjector(EMBEDDING_DIM)
        self.model_name = f"{model}->{EMBEDDING_DIM}"

    async def embed(self, text: str) -> np.ndarray:
        response = await self.client.embeddings.create(model=self.model, input=text)
        if not response.data:
            raise ValueError("Embedding response contained no data")
        return self.projector.project(response.data[0].embedding)


class FallbackEmbeddingProvider(EmbeddingProvider):
    """Uses ``primary`` and degrades to ``fallback`` on any failure."""

    def __init__(self, primary: EmbeddingProvider, fallback: Optional[EmbeddingProvider] = None):
        self.primary = primary
        self.fallback = fallback or HashedEmbeddingProvider()
        self.model_name = primary.model_name

    async def embed(self, text: str) -> np.ndarray:
        vector, _ = await self.embed_with_model(text)
        return vector

    async def embed_with_model(self, text: str) -> Tuple[np.ndarray, str]:
        try:
            vector = await self.primary.embed(text)
            return vector, self.primary.model_name
        except Exception as e:
            logger.warning(f"Embedding provider {self.primary.model_name} failed, using {self.fallback.model_name}: {e}")
            embedding_fallbacks.inc()
            return await self.fallback.embed(text), self.fallback.model_name


def build_embedding_provider(settings) -> EmbeddingProvider:
    """OpenAI-backed provider with hashed fallback when a key is configured, hashed alone otherwise."""
    if settings.openai_api_key:
        logger.info(f"Using OpenAI embeddings ({settings.embedding_model}) with hashed fallback")
        primary = OpenAIEmbeddingProvider(settings.openai_api_key, settings.embedding_model)
        return FallbackEmbeddingProvider(primary, HashedEmbeddingProvider())
    logger.info("No embedding provider configured, using hashed embeddings")
    return HashedEmbeddingProvider()
