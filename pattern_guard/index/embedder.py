"""
Embedder boundary — ``embed(text) -> vector`` of a fixed dimension.

The model itself is external.  Providers:

  - ``lexical``            offline hashed token-frequency signature
  - ``ollama``             Ollama ``/api/embed`` over HTTP
  - ``openai_compatible``  any ``/v1/embeddings`` endpoint (LM Studio, vLLM…)
  - ``openai``             hosted OpenAI embeddings (``pip install 'pattern_guard[openai]'``)

The lexical signature doubles as the degraded fallback vector used by the
embedding cache when the configured embedder is unavailable.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from abc import ABC, abstractmethod
from collections import Counter
from typing import Optional

import numpy as np
import requests

from ..errors import EmbeddingFailure

logger = logging.getLogger(__name__)

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
# camelCase / PascalCase / snake_case → words
_CAMEL_SPLIT = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?=[A-Z][a-z]|\d|\b)|[0-9]+")


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------

def normalize(vector) -> np.ndarray:
    """Return *vector* as float32 scaled to unit length (zero stays zero)."""
    arr = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not math.isfinite(norm):
        return np.zeros_like(arr)
    return arr / norm


def tokenize(text: str) -> list[str]:
    """Split code text into lowercase word tokens (identifiers are split)."""
    tokens: list[str] = []
    for ident in _IDENT.findall(text):
        for part in ident.split("_"):
            if not part:
                continue
            words = _CAMEL_SPLIT.findall(part)
            if words:
                tokens.extend(w.lower() for w in words)
            else:
                tokens.append(part.lower())
    return tokens


def _bucket(token: str, dimension: int) -> tuple[int, float]:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    sign = 1.0 if (value >> 63) & 1 else -1.0
    return value % dimension, sign


def lexical_vector(text: str, dimension: int) -> np.ndarray:
    """
    Hashed token-frequency signature of *text*.

    Each token is hashed into one of *dimension* buckets with a hash-derived
    sign; counts are damped with ``1 + log(tf)``.  Returns a unit vector.
    """
    vec = np.zeros(dimension, dtype=np.float32)
    for token, count in Counter(tokenize(text)).items():
        idx, sign = _bucket(token, dimension)
        vec[idx] += sign * (1.0 + math.log(count))
    return normalize(vec)


# ---------------------------------------------------------------------------
# Embedder interface
# ---------------------------------------------------------------------------

class Embedder(ABC):
    """External embedding model boundary."""

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts; raise :class:`EmbeddingFailure` on error."""

    def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = self.embed_batch([text])
        if not vectors:
            raise EmbeddingFailure("embedder returned no vector")
        return vectors[0]

    def _check(self, vectors: list[list[float]], expected: int) -> list[list[float]]:
        if len(vectors) != expected:
            raise EmbeddingFailure(
                f"embedder returned {len(vectors)} vectors for {expected} inputs"
            )
        for vec in vectors:
            if len(vec) != self.dimension:
                raise EmbeddingFailure(
                    f"embedder returned dimension {len(vec)}, expected {self.dimension}"
                )
        return vectors


class LexicalEmbedder(Embedder):
    """Deterministic offline embedder (hashed token signature)."""

    def embed_batch(self, texts):
        return [lexical_vector(t, self.dimension).tolist() for t in texts]


class OllamaEmbedder(Embedder):
    """Embeddings from a local Ollama server."""

    def __init__(self, base_url: str, model: str, dimension: int, timeout: float = 30.0) -> None:
        super().__init__(dimension)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def embed_batch(self, texts):
        if not texts:
            return []
        try:
            response = requests.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": texts},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
            vectors = data["embeddings"]
        except requests.exceptions.RequestException as exc:
            raise EmbeddingFailure(f"Ollama request failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingFailure(f"Ollama returned an unexpected payload: {exc}") from exc
        return self._check(vectors, len(texts))


class OpenAICompatibleEmbedder(Embedder):
    """Embeddings from any OpenAI-style ``/embeddings`` endpoint (LM Studio…)."""

    def __init__(
        self,
        base_url: str,
        model: str,
        dimension: int,
        timeout: float = 30.0,
        api_key: str = "",
    ) -> None:
        super().__init__(dimension)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.api_key = api_key

    def embed_batch(self, texts):
        if not texts:
            return []
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.post(
                f"{self.base_url}/embeddings",
                headers=headers,
                json={"model": self.model, "input": texts},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [item["embedding"] for item in items]
        except requests.exceptions.RequestException as exc:
            raise EmbeddingFailure(f"Embedding endpoint request failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingFailure(f"Embedding endpoint returned an unexpected payload: {exc}") from exc
        return self._check(vectors, len(texts))


class OpenAIEmbedder(Embedder):
    """Hosted OpenAI embeddings via the ``openai`` package."""

    def __init__(self, model: str, dimension: int, api_key: str = "") -> None:
        super().__init__(dimension)
        self.model = model
        self.api_key = api_key
        self._client = None  # lazy init

    def _get_client(self):
        if self._client is not None:
            return self._client
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise ImportError(
                "openai package is required for the 'openai' embedder. "
                "Install it with: pip install 'pattern_guard[openai]'"
            ) from exc
        if not self.api_key:
            raise EnvironmentError("OPENAI_API_KEY environment variable is not set.")
        self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def embed_batch(self, texts):
        if not texts:
            return []
        client = self._get_client()
        try:
            response = client.embeddings.create(model=self.model, input=texts)
        except Exception as exc:
            raise EmbeddingFailure(f"OpenAI embeddings failed: {exc}") from exc
        return self._check([item.embedding for item in response.data], len(texts))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_embedder(config, provider: Optional[str] = None) -> Embedder:
    """Build the embedder selected by ``config.EMBEDDER_PROVIDER``."""
    provider = (provider or config.EMBEDDER_PROVIDER).lower()
    dim = config.EMBEDDING_DIMENSION
    if provider == "lexical":
        return LexicalEmbedder(dim)
    if provider == "ollama":
        return OllamaEmbedder(config.EMBEDDER_BASE_URL, config.EMBEDDER_MODEL, dim,
                              timeout=config.EMBEDDER_TIMEOUT)
    if provider in ("openai_compatible", "lm_studio"):
        return OpenAICompatibleEmbedder(config.EMBEDDER_BASE_URL, config.EMBEDDER_MODEL, dim,
                                        timeout=config.EMBEDDER_TIMEOUT,
                                        api_key=config.OPENAI_API_KEY)
    if provider == "openai":
        return OpenAIEmbedder(config.EMBEDDER_MODEL, dim, api_key=config.OPENAI_API_KEY)
    raise ValueError(f"Unknown embedder provider: {provider!r}")
