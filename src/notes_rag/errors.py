"""
Error taxonomy shared by every component of the engine.

Provider-specific failures (HTTP status codes, SDK exceptions, worker thread
errors) are translated into these types at the provider boundary so callers
only ever handle one set of exceptions.
"""

from __future__ import annotations


class RAGError(Exception):
    """Base class for all engine errors."""


class InvalidConfig(RAGError):
    """Configuration is unusable; raised at construction/startup, never mid-query."""


class FeatureDisabled(RAGError):
    """The requested operation is switched off by a feature toggle."""


class IndexCorruption(RAGError):
    """Persisted vectors failed an integrity check."""


class ProviderError(RAGError):
    """A model backend (embedding or generation) failed."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Backend unreachable, refusing connections, or failing server-side."""


class RateLimited(ProviderError):
    """Backend rejected the call because of a quota or rate limit."""


class InvalidResponse(ProviderError):
    """Backend answered, but with something that could not be used."""


class ProviderTimeout(ProviderError):
    """A bounded provider call ran past its deadline."""


class GenerationTimeout(ProviderTimeout):
    pass


class EmbeddingTimeout(ProviderTimeout):
    pass


# Failures that say nothing about the backend as a whole; the indexer skips
# the offending chunk instead of aborting a reindex.
LOCAL_FAILURES = (InvalidResponse, ValueError)


__all__ = [
    "EmbeddingTimeout",
    "FeatureDisabled",
    "GenerationTimeout",
    "IndexCorruption",
    "InvalidConfig",
    "InvalidResponse",
    "LOCAL_FAILURES",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RAGError",
    "RateLimited",
]
