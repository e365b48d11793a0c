"""
Embedding provider abstraction.

The provider is chosen once from ``RAGConfig.embedding_model``:

* ``openai:<model>`` uses the OpenAI embeddings endpoint.
* anything else is loaded as a sentence-transformers model.

Providers report their dimensionality so the vector store can refuse vectors
from a different model.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import openai

from .config import RAGConfig
from .errors import (
    EmbeddingTimeout,
    InvalidConfig,
    InvalidResponse,
    ProviderUnavailable,
)
from .llm import translate_openai_error

LOG = logging.getLogger(__name__)

OPENAI_PREFIX = "openai:"

OPENAI_EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingProvider(ABC):
    """Abstract interface for text -> embedding vector conversion."""

    def __init__(self, model_id: str, timeout: float = 60.0) -> None:
        self.model_id = model_id
        self.timeout = timeout

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Embedding dimensionality; valid after start()."""

    @abstractmethod
    async def _embed(self, texts: List[str]) -> List[List[float]]:
        ...

    async def start(self) -> None:
        """Load models / open clients. Override if needed."""

    async def close(self) -> None:
        """Release resources. Override if needed."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Convert a batch of texts into embedding vectors.

        Bounded by ``timeout``; the result is checked for one vector per
        input and for the advertised dimensionality.
        """
        if not texts:
            return []
        try:
            vectors = await asyncio.wait_for(self._embed(texts), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeout(
                f"Embedding {len(texts)} texts exceeded {self.timeout:.0f}s", self.model_id
            ) from exc

        if len(vectors) != len(texts):
            raise InvalidResponse(
                f"Expected {len(texts)} embeddings, got {len(vectors)}", self.model_id
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise InvalidResponse(
                    f"Embedding has dimension {len(vector)}, expected {self.dimension}",
                    self.model_id,
                )
        return vectors

    async def embed_one(self, text: str) -> List[float]:
        return (await self.embed([text]))[0]


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Model loading and encoding are CPU-heavy, so both run in a worker thread
    to keep the event loop responsive.
    """

    def __init__(self, model_name: str, batch_size: int = 32, timeout: float = 60.0) -> None:
        super().__init__(model_name, timeout=timeout)
        self._batch_size = batch_size
        self._model = None
        self._dim: Optional[int] = None

    @property
    def dimension(self) -> int:
        if self._dim is None:
            raise RuntimeError("Embedding model not loaded; call start() first")
        return self._dim

    def _load(self):
        from sentence_transformers import SentenceTransformer

        LOG.info("Loading embedding model: %s", self.model_id)
        return SentenceTransformer(self.model_id)

    async def start(self) -> None:
        if self._model is not None:
            return
        try:
            self._model = await asyncio.to_thread(self._load)
        except OSError as exc:
            raise ProviderUnavailable(
                f"Could not load embedding model {self.model_id!r}: {exc}", self.model_id
            ) from exc
        self._dim = int(self._model.get_sentence_embedding_dimension())

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        if self._model is None:
            await self.start()
        embeddings = await asyncio.to_thread(
            self._model.encode,
            texts,
            batch_size=self._batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return [e.astype("float32").tolist() for e in embeddings]

    async def close(self) -> None:
        self._model = None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Hosted embeddings through the OpenAI SDK."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        client=None,
    ) -> None:
        super().__init__(f"{OPENAI_PREFIX}{model}", timeout=timeout)
        if model not in OPENAI_EMBEDDING_DIMENSIONS:
            raise InvalidConfig(
                f"Unknown OpenAI embedding model {model!r}. "
                f"Supported: {sorted(OPENAI_EMBEDDING_DIMENSIONS)}"
            )
        self._model = model
        self._dim = OPENAI_EMBEDDING_DIMENSIONS[model]
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise InvalidConfig("OPENAI_API_KEY is not set. Put it in a .env file or environment variable.")
            client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self._client = client

    @property
    def dimension(self) -> int:
        return self._dim

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        try:
            response = await self._client.embeddings.create(
                model=self._model, input=texts, encoding_format="float"
            )
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc, "openai-embeddings", EmbeddingTimeout) from exc
        data = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in data]

    async def close(self) -> None:
        await self._client.close()


def build_embedding_provider(cfg: RAGConfig) -> EmbeddingProvider:
    """Factory: create the EmbeddingProvider named by ``cfg.embedding_model``."""
    name = cfg.embedding_model.strip()
    if not name:
        raise InvalidConfig("embedding_model must not be empty")
    if name.startswith(OPENAI_PREFIX):
        return OpenAIEmbeddingProvider(
            name[len(OPENAI_PREFIX) :],
            api_key=cfg.api_key if cfg.llm_provider == "openai" else None,
            timeout=cfg.request_timeout,
        )
    return SentenceTransformerEmbeddingProvider(name, timeout=cfg.request_timeout)


__all__ = [
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SentenceTransformerEmbeddingProvider",
    "build_embedding_provider",
]
