from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Note:
    """A note as handed to the engine by the host. Read-only."""

    id: str
    title: str
    content: str
    tags: Tuple[str, ...] = ()
    notebook: str = ""
    updated_at: datetime = field(default_factory=utcnow)
    is_trashed: bool = False

    def __post_init__(self) -> None:
        # Accept any iterable of tags from callers but keep the record hashable.
        object.__setattr__(self, "tags", tuple(self.tags))


@dataclass(frozen=True)
class Chunk:
    note_id: str
    chunk_id: str
    index: int
    text: str
    offset: int
    length: int


@dataclass(frozen=True)
class Embedding:
    chunk_id: str
    note_id: str
    vector: List[float]
    model_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RetrievalResult:
    chunk_id: str
    note_id: str
    note_title: str
    snippet: str
    score: float


@dataclass
class RAGResponse:
    answer: str
    sources: List[RetrievalResult] = field(default_factory=list)
    model: str = ""
    latency_ms: float = 0.0


@dataclass
class NoteSummary:
    note_id: str
    style: str
    summary: str
    key_points: List[str]
    word_count: int
    reading_time: int
    generated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TagSuggestion:
    """
    A proposed tag.

    ``confidence`` lies in [0, 1]; higher means more certain. Which threshold
    a host treats as "auto-select" is the host's decision.
    """

    tag: str
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class SimilarNote:
    note_id: str
    title: str
    score: float


@dataclass
class QueryRequest:
    query: str
    note_ids: Optional[List[str]] = None
    limit: Optional[int] = None
    include_metadata: bool = False


class NoteEventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class NoteEvent:
    kind: NoteEventKind
    note_id: str
    note: Optional[Note] = None


@dataclass(frozen=True)
class VectorStoreStats:
    total_embeddings: int
    unique_notes: int
    cache_size_bytes: int


@dataclass
class ReindexReport:
    indexed: int = 0
    skipped: int = 0
    removed: int = 0
    failed_chunks: int = 0


@dataclass
class SystemStats:
    total_embeddings: int
    cache_size: int
    unique_notes: int
    features: Dict[str, bool] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        """Host-facing shape used by the diagnostics panel."""
        return {
            "embeddingStats": {
                "totalEmbeddings": self.total_embeddings,
                "cacheSize": self.cache_size,
            },
            "vectorStats": {"uniqueNotes": self.unique_notes},
            "features": dict(self.features),
        }


__all__ = [
    "Chunk",
    "Embedding",
    "Note",
    "NoteEvent",
    "NoteEventKind",
    "NoteSummary",
    "QueryRequest",
    "RAGResponse",
    "ReindexReport",
    "RetrievalResult",
    "SimilarNote",
    "SystemStats",
    "TagSuggestion",
    "VectorStoreStats",
    "utcnow",
]
