"""
notes-rag.

Local retrieval-augmented generation over a personal note collection:
incremental indexing, semantic retrieval, streamed answers, summaries,
tag suggestions and similar-note discovery.
"""

from .config import RAGConfig, build_config, load_config
from .errors import (
    EmbeddingTimeout,
    FeatureDisabled,
    GenerationTimeout,
    IndexCorruption,
    InvalidConfig,
    InvalidResponse,
    ProviderError,
    ProviderUnavailable,
    RAGError,
    RateLimited,
)
from .ingest import InMemoryNoteSource, MarkdownDirectorySource, NoteSource
from .models import (
    Chunk,
    Note,
    NoteEvent,
    NoteEventKind,
    NoteSummary,
    QueryRequest,
    RAGResponse,
    RetrievalResult,
    SimilarNote,
    SystemStats,
    TagSuggestion,
)
from .streaming import QueryStream, StreamState
from .system import RAGSystem

__all__ = [
    "Chunk",
    "EmbeddingTimeout",
    "FeatureDisabled",
    "GenerationTimeout",
    "InMemoryNoteSource",
    "IndexCorruption",
    "InvalidConfig",
    "InvalidResponse",
    "MarkdownDirectorySource",
    "Note",
    "NoteEvent",
    "NoteEventKind",
    "NoteSource",
    "NoteSummary",
    "ProviderError",
    "ProviderUnavailable",
    "QueryRequest",
    "QueryStream",
    "RAGConfig",
    "RAGError",
    "RAGResponse",
    "RateLimited",
    "RetrievalResult",
    "SimilarNote",
    "StreamState",
    "SystemStats",
    "TagSuggestion",
    "build_config",
    "load_config",
]
