from __future__ import annotations

import logging
import re
from collections import OrderedDict
from typing import Iterable, List, Optional

from .embeddings import EmbeddingProvider
from .index import FaissVectorStore, VectorSearchResult
from .ingest import NoteSource
from .models import RetrievalResult

LOG = logging.getLogger(__name__)

SNIPPET_CHARS = 240
_TERM_RE = re.compile(r"\w+", re.UNICODE)


def query_terms(query: str) -> List[str]:
    """Lowercased word tokens of the query, longest first."""
    terms = {t.lower() for t in _TERM_RE.findall(query) if len(t) > 1}
    return sorted(terms, key=lambda t: (-len(t), t))


def extract_snippet(text: str, terms: Iterable[str], width: int = SNIPPET_CHARS) -> str:
    """
    A window of ``text`` around the first occurrence of any query term.

    Without a match the window starts at the beginning of the text. Elided
    ends are marked with "...".
    """
    if len(text) <= width:
        return text.strip()

    lowered = text.lower()
    hits = [pos for pos in (lowered.find(t) for t in terms) if pos >= 0]
    anchor = min(hits) if hits else 0

    start = max(0, anchor - width // 4)
    end = min(len(text), start + width)
    start = max(0, end - width)
    # Do not cut words in half at either edge.
    if 0 < start < anchor:
        space = text.find(" ", start, anchor)
        if space != -1:
            start = space + 1
    if end < len(text):
        space = text.rfind(" ", start, end)
        if space > start:
            end = space

    snippet = text[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


class Retriever:
    """
    Query -> ranked passages.

    Query embeddings are kept in a small LRU cache because hosts tend to
    re-run the same question (chat retries, the summary card and the chat
    panel asking about the same note).
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: FaissVectorStore,
        note_source: Optional[NoteSource] = None,
        cache_size: int = 128,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.note_source = note_source
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    async def embed_query(self, query: str) -> List[float]:
        key = query.strip()
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached
        vector = await self.embedder.embed_one(key)
        self._cache[key] = vector
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return vector

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_entries(self) -> int:
        return len(self._cache)

    def _to_result(self, hit: VectorSearchResult, terms: List[str]) -> RetrievalResult:
        entry = hit.entry
        title = entry.note_title
        note = self.note_source.get_note(entry.note_id) if self.note_source is not None else None
        if note is not None and note.title:
            title = note.title
        return hit.to_retrieval_result(note_title=title, snippet=extract_snippet(entry.text, terms))

    async def retrieve(
        self,
        query: str,
        note_ids: Optional[Iterable[str]] = None,
        limit: int = 5,
        min_score: float = 0.0,
    ) -> List[RetrievalResult]:
        """
        Top ``limit`` passages for ``query`` scoring at least ``min_score``.

        ``note_ids`` restricts the search to those notes. Results are sorted
        by descending score, ties by note id.
        """
        if not query.strip() or limit <= 0:
            return []
        scope = list(note_ids) if note_ids is not None else None
        if scope is not None and not scope:
            return []

        vector = await self.embed_query(query)
        hits = self.store.nearest_neighbors(vector, limit, min_score=min_score, note_ids=scope)
        terms = query_terms(query)
        results = [self._to_result(hit, terms) for hit in hits if hit.score >= min_score]
        LOG.debug("Retrieved %d passages for %r (min_score=%.2f)", len(results), query, min_score)
        return results


__all__ = ["Retriever", "SNIPPET_CHARS", "extract_snippet", "query_terms"]
