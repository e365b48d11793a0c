"""
Shared fakes for the engine's tests.

KeywordEmbeddingProvider: bag-of-words over a fixed vocabulary, so a query
    made of one vocabulary word scores highest against chunks that use it.
ScriptedGenerator: deterministic generation backend; ``stream_generate``
    yields the same text ``generate`` returns, split into word pieces.
"""

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from notes_rag.config import build_config
from notes_rag.embeddings import EmbeddingProvider
from notes_rag.errors import InvalidResponse, ProviderUnavailable, RateLimited
from notes_rag.ingest import InMemoryNoteSource
from notes_rag.llm import GenerationOptions, GenerationProvider
from notes_rag.models import Note
from notes_rag.system import RAGSystem

VOCABULARY = [
    "apples",
    "oranges",
    "pears",
    "quantum",
    "mechanics",
    "garden",
    "recipe",
    "python",
    "cache",
    "design",
    "poison",
    "river",
]

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

_WORD = re.compile(r"[a-z]+")


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def make_note(note_id: str, content: str, title: Optional[str] = None, minutes: int = 0, **kwargs) -> Note:
    return Note(
        id=note_id,
        title=title if title is not None else f"Note {note_id}",
        content=content,
        updated_at=at(minutes),
        **kwargs,
    )


class KeywordEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        vocabulary: List[str] = VOCABULARY,
        model_id: str = "keyword-test",
        fail_on: str = "",
    ) -> None:
        super().__init__(model_id, timeout=5.0)
        self.vocabulary = list(vocabulary)
        self.fail_on = fail_on
        self.unavailable = False
        self.calls: List[List[str]] = []
        self.started = False
        self.closed = False

    @property
    def dimension(self) -> int:
        return len(self.vocabulary)

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    def vector(self, text: str) -> List[float]:
        words = _WORD.findall(text.lower())
        return [float(words.count(term)) for term in self.vocabulary]

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.unavailable:
            raise ProviderUnavailable("embedding backend down", self.model_id)
        if self.fail_on and any(self.fail_on in t.lower() for t in texts):
            raise InvalidResponse("refused to embed", self.model_id)
        return [self.vector(t) for t in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(batch) for batch in self.calls)


class ScriptedGenerator(GenerationProvider):
    name = "scripted"

    def __init__(
        self,
        reply: str = "Apples show up in two notes, next to oranges and pears.",
        replies: Optional[Dict[str, str]] = None,
        delay: float = 0.0,
        hang_after: Optional[int] = None,
        timeout: float = 5.0,
        fail_on: str = "",
    ) -> None:
        super().__init__("scripted-model", timeout=timeout)
        self.reply = reply
        self.replies = replies or {}
        self.delay = delay
        self.hang_after = hang_after
        self.fail_on = fail_on
        self.prompts: List[str] = []
        self.streams_opened = 0
        self.streams_closed = 0
        self.closed = False

    def answer_for(self, prompt: str) -> str:
        for marker, text in self.replies.items():
            if marker in prompt:
                return text
        return self.reply

    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        self.prompts.append(prompt)
        if self.fail_on and self.fail_on in prompt:
            raise RateLimited("quota exhausted", self.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.answer_for(prompt)

    async def _stream(self, prompt: str, options: GenerationOptions):
        self.prompts.append(prompt)
        self.streams_opened += 1
        try:
            for i, piece in enumerate(re.findall(r"\S+\s*", self.answer_for(prompt))):
                if self.hang_after is not None and i >= self.hang_after:
                    await asyncio.Event().wait()
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield piece
        finally:
            self.streams_closed += 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def embedder() -> KeywordEmbeddingProvider:
    return KeywordEmbeddingProvider()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def fruit_notes() -> List[Note]:
    return [
        make_note("A", "apples and oranges", minutes=1),
        make_note("B", "quantum mechanics", minutes=2),
        make_note("C", "apples and pears", minutes=3),
    ]


@pytest.fixture
def make_system(tmp_path) -> Callable[..., RAGSystem]:
    """Factory for systems persisting under tmp_path/index."""

    def factory(
        notes=(),
        embedder: Optional[EmbeddingProvider] = None,
        generator: Optional[GenerationProvider] = None,
        source: Optional[InMemoryNoteSource] = None,
        **overrides,
    ) -> RAGSystem:
        options = {"index_dir": tmp_path / "index", "min_score": 0.1, "llm_provider": "none"}
        options.update(overrides)
        cfg = build_config(**options)
        return RAGSystem(
            cfg,
            source if source is not None else InMemoryNoteSource(notes),
            embedder=embedder or KeywordEmbeddingProvider(),
            generator=generator,
        )

    return factory
