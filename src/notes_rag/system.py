"""
RAGSystem: the engine's public facade.

One long-lived instance serves every host surface (chat, tag panel,
similar-notes panel, summary card). It is constructed explicitly with its
collaborators and has an explicit lifecycle::

    system = RAGSystem.from_config(cfg, note_source)
    async with system:
        await system.reindex_all()
        response = await system.query("what did I write about apples?")

The vector store and the tag vocabulary are the only shared mutable state.
Store writes come from the indexer one note at a time; the vocabulary is
replaced wholesale. Queries never write to either.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .chunker import Chunker
from .config import RAGConfig
from .embeddings import EmbeddingProvider, build_embedding_provider
from .errors import FeatureDisabled, IndexCorruption, InvalidConfig, RAGError
from .index import FaissVectorStore, StoredEntry, clamp_score, normalize
from .indexer import STATE_FILE, IndexState, Indexer
from .ingest import NoteSource
from .llm import GenerationOptions, GenerationProvider, build_generation_provider
from .models import (
    Note,
    NoteEvent,
    NoteSummary,
    QueryRequest,
    RAGResponse,
    ReindexReport,
    RetrievalResult,
    SimilarNote,
    SystemStats,
    TagSuggestion,
)
from .query import (
    NO_CONTEXT_ANSWER,
    SUMMARY_STYLES,
    build_collection_prompt,
    build_prompt,
    build_summary_prompt,
    build_tagging_prompt,
    pack_context,
)
from .retriever import Retriever
from .streaming import QueryStream
from .summarizer import ExtractiveSummarizer, make_summary
from .tagging import (
    build_vocabulary,
    lexical_tag_suggestions,
    merge_tag_suggestions,
    neighbor_tag_suggestions,
    parse_model_tags,
)

LOG = logging.getLogger(__name__)

# Notes at least this similar lend their tags to a tag suggestion.
NEIGHBOR_TAG_MIN_SCORE = 0.8


async def _once(text: str) -> AsyncIterator[str]:
    yield text


class RAGSystem:
    def __init__(
        self,
        config: RAGConfig,
        note_source: NoteSource,
        embedder: EmbeddingProvider,
        generator: Optional[GenerationProvider] = None,
        store: Optional[FaissVectorStore] = None,
    ) -> None:
        self.config = config
        self.note_source = note_source
        self.embedder = embedder
        self.generator = generator
        self.chunker = Chunker(
            max_chars=config.chunk_max_chars,
            overlap=config.chunk_overlap,
            min_chunk_chars=config.chunk_min_chars,
        )
        self.options = GenerationOptions(temperature=config.temperature, max_tokens=config.max_tokens)
        self._store = store
        self._indexer: Optional[Indexer] = None
        self._retriever: Optional[Retriever] = None
        self._vocabulary: Tuple[str, ...] = ()
        self._summarizer = ExtractiveSummarizer()

        self._events: "asyncio.Queue[NoteEvent]" = asyncio.Queue()
        self._event_worker: Optional[asyncio.Task] = None
        self._background: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._reindex_lock = asyncio.Lock()
        self._started = False

    @classmethod
    def from_config(cls, config: RAGConfig, note_source: NoteSource) -> "RAGSystem":
        """Build providers from ``config``. Fails fast on a bad provider setup."""
        return cls(
            config,
            note_source,
            embedder=build_embedding_provider(config),
            generator=build_generation_provider(config),
        )

    # ── lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Load the embedding model and the persisted index.

        Raises:
            InvalidConfig: the persisted index was built with another embedding model
            ProviderUnavailable: the embedding model cannot be loaded
        """
        if self._started:
            return
        await self.embedder.start()
        dimension = self.embedder.dimension
        index_dir = self.config.index_dir_resolved

        needs_rebuild = False
        store = self._store
        if store is None:
            try:
                store = FaissVectorStore.open(dimension, self.embedder.model_id, index_dir)
            except IndexCorruption as exc:
                LOG.error("Vector index failed its integrity check (%s); rebuilding from notes", exc)
                store = FaissVectorStore(dimension, self.embedder.model_id, index_dir)
                needs_rebuild = True
        elif store.dimension != dimension or store.model_id != self.embedder.model_id:
            raise InvalidConfig(
                f"Vector store holds {store.model_id!r} ({store.dimension}d) vectors but the "
                f"embedding model is {self.embedder.model_id!r} ({dimension}d)"
            )
        self._store = store

        state = IndexState(index_dir / STATE_FILE if index_dir is not None else None)
        if needs_rebuild:
            state.reset()
        self._indexer = Indexer(
            self.chunker,
            self.embedder,
            store,
            state=state,
            checkpoint_every=self.config.checkpoint_every,
        )
        if needs_rebuild:
            await self._indexer.commit()
        self._retriever = Retriever(self.embedder, store, self.note_source)

        subscribe = getattr(self.note_source, "subscribe", None)
        if callable(subscribe):
            self._unsubscribe = subscribe(self._events.put_nowait)
            self._event_worker = asyncio.create_task(self._apply_events())

        self._started = True
        LOG.info(
            "RAG system ready: %d vectors for %d notes (%s, %s)",
            len(store),
            len(store.note_ids()),
            self.embedder.model_id,
            self.config.llm_provider,
        )
        if needs_rebuild:
            self._background = asyncio.create_task(self.reindex_all())

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = [t for t in (self._event_worker, self._background) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._event_worker = None
        self._background = None

        if self._indexer is not None:
            await self._indexer.commit()
        await self.embedder.close()
        if self.generator is not None:
            await self.generator.close()
        self._started = False

    async def __aenter__(self) -> "RAGSystem":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("RAGSystem.start() has not been called")

    def _require_feature(self, enabled: bool, name: str) -> None:
        if not enabled:
            raise FeatureDisabled(f"{name} is disabled in the configuration")

    def _require_generator(self, feature: str) -> GenerationProvider:
        if self.generator is None:
            raise FeatureDisabled(f"{feature} needs a generation backend (llm_provider is 'none')")
        return self.generator

    @property
    def store(self) -> FaissVectorStore:
        self._require_started()
        return self._store

    @property
    def indexer(self) -> Indexer:
        self._require_started()
        return self._indexer

    @property
    def retriever(self) -> Retriever:
        self._require_started()
        return self._retriever

    @property
    def vocabulary(self) -> Sequence[str]:
        return self._vocabulary

    # ── indexing ─────────────────────────────────────────────────────────

    async def _apply_events(self) -> None:
        # Commit once the queue drains, or every checkpoint_every events
        # during a burst, rather than once per event.
        pending = 0
        while True:
            event = await self._events.get()
            try:
                try:
                    await self._indexer.handle_event(event, commit=False)
                except RAGError as exc:
                    LOG.error("Failed to apply %s event for note %s: %s", event.kind.value, event.note_id, exc)
                pending += 1
                if self._events.empty() or pending >= self.config.checkpoint_every:
                    pending = 0
                    await self._indexer.commit()
            except Exception:
                # Disk and faiss errors are logged; the worker keeps applying later events.
                LOG.exception("Unexpected error applying %s event for note %s", event.kind.value, event.note_id)
            finally:
                self._events.task_done()

    async def wait_for_indexing(self) -> None:
        """Wait until queued note events and any background reindex are done."""
        self._require_started()
        await self._events.join()
        if self._background is not None:
            await asyncio.gather(self._background, return_exceptions=True)

    async def handle_note_event(self, event: NoteEvent) -> None:
        self._require_started()
        await self._indexer.handle_event(event)

    async def index_note(self, note: Note) -> bool:
        self._require_started()
        return await self._indexer.index_note(note)

    async def remove_note(self, note_id: str) -> int:
        self._require_started()
        return await self._indexer.remove_note(note_id)

    async def reindex_all(self) -> ReindexReport:
        """Incremental full pass over the note source; resumable after interruption."""
        self._require_started()
        async with self._reindex_lock:
            return await self._indexer.reindex_all(self.note_source.list_notes())

    async def rebuild_index(self) -> ReindexReport:
        """Drop everything and embed every note again."""
        self._require_started()
        async with self._reindex_lock:
            return await self._indexer.rebuild(self.note_source.list_notes())

    async def clear_index(self) -> None:
        self._require_started()
        async with self._reindex_lock:
            await self._indexer.clear_index()
        LOG.info("Index cleared")

    def export_index(self) -> List[Tuple[StoredEntry, List[float]]]:
        """Stored entries with their vectors, for backup."""
        self._require_started()
        return self._store.export_vectors()

    async def import_index(self, records: Sequence[Tuple[StoredEntry, Sequence[float]]]) -> int:
        """
        Load exported vectors into the index. Imported notes carry no
        fingerprint, so the next ``reindex_all`` re-checks them.
        """
        self._require_started()
        async with self._reindex_lock:
            count = self._store.import_vectors(records)
            await self._indexer.commit()
        return count

    # ── question answering ───────────────────────────────────────────────

    def _request(self, request: Union[QueryRequest, str], **kwargs) -> QueryRequest:
        if isinstance(request, str):
            return QueryRequest(query=request, **kwargs)
        return request

    async def _retrieve_context(self, request: QueryRequest) -> List[RetrievalResult]:
        limit = request.limit if request.limit is not None else self.config.top_k
        results = await self._retriever.retrieve(
            request.query,
            note_ids=request.note_ids,
            limit=limit,
            min_score=self.config.min_score,
        )
        return pack_context(results, self.config.context_window)

    async def retrieve(
        self,
        query: str,
        note_ids: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[RetrievalResult]:
        self._require_started()
        return await self._retriever.retrieve(
            query,
            note_ids=note_ids,
            limit=limit if limit is not None else self.config.top_k,
            min_score=self.config.min_score if min_score is None else min_score,
        )

    async def query(self, request: Union[QueryRequest, str], **kwargs) -> RAGResponse:
        """
        Answer a question from the notes.

        If nothing clears ``min_score`` the answer is ``NO_CONTEXT_ANSWER``
        with no sources and the model is not called.
        """
        self._require_started()
        self._require_feature(self.config.enable_qa, "Question answering")
        request = self._request(request, **kwargs)
        generator = self._require_generator("Question answering")

        started = time.perf_counter()
        sources = await self._retrieve_context(request)
        if not sources:
            answer = NO_CONTEXT_ANSWER
        else:
            prompt = build_prompt(request.query, sources, include_metadata=request.include_metadata)
            answer = await generator.generate(prompt, self.options)
        return RAGResponse(
            answer=answer,
            sources=sources,
            model=generator.model,
            latency_ms=(time.perf_counter() - started) * 1000.0,
        )

    def stream_query(self, request: Union[QueryRequest, str], **kwargs) -> QueryStream:
        """
        Stream the answer to a question.

        Retrieval runs once, when iteration starts. Each call returns a new
        stream; a finished stream cannot be restarted.
        """
        self._require_started()
        self._require_feature(self.config.enable_qa, "Question answering")
        request = self._request(request, **kwargs)
        generator = self._require_generator("Question answering")
        options = self.options

        async def retrieve() -> List[RetrievalResult]:
            return await self._retrieve_context(request)

        def generate(sources: List[RetrievalResult]) -> AsyncIterator[str]:
            if not sources:
                return _once(NO_CONTEXT_ANSWER)
            prompt = build_prompt(request.query, sources, include_metadata=request.include_metadata)
            return generator.stream_generate(prompt, options)

        return QueryStream(retrieve, generate, idle_timeout=self.config.request_timeout)

    # ── summaries ────────────────────────────────────────────────────────

    async def summarize_note(self, note: Note, style: str = "brief") -> NoteSummary:
        """
        Summarize one note. ``word_count`` and ``reading_time`` are computed
        from the returned summary text.
        """
        self._require_started()
        self._require_feature(self.config.enable_summarization, "Summarization")
        if style not in SUMMARY_STYLES:
            raise ValueError(f"Unknown summary style {style!r}. Supported: {', '.join(SUMMARY_STYLES)}")
        if self.generator is None:
            return self._summarizer.summarize(note, style)
        text = await self.generator.generate(build_summary_prompt(note, style), self.options)
        return make_summary(note.id, style, text)

    async def summarize_notes(self, notes: Sequence[Note], style: str = "brief") -> Dict[str, NoteSummary]:
        """Summaries keyed by note id. A note whose summary fails is logged and left out."""
        self._require_started()
        self._require_feature(self.config.enable_summarization, "Summarization")
        summaries: Dict[str, NoteSummary] = {}
        for note in notes:
            try:
                summaries[note.id] = await self.summarize_note(note, style)
            except RAGError as exc:
                LOG.error("Failed to summarize note %s: %s", note.id, exc)
        return summaries

    async def summarize_collection(self, notes: Sequence[Note], title: str, style: str = "detailed") -> str:
        self._require_started()
        self._require_feature(self.config.enable_summarization, "Summarization")
        if not notes:
            return "No notes to summarize."
        if self.generator is None:
            return "\n\n".join(self._summarizer.summarize(n, style).summary for n in notes)
        text = await self.generator.generate(build_collection_prompt(notes, title), self.options)
        return text.strip()

    # ── similarity and tags ──────────────────────────────────────────────

    async def _note_vector(self, note: Note) -> Optional[np.ndarray]:
        vector = self._store.representative_vector(note.id)
        if vector is not None and self._indexer.is_current(note):
            return vector
        chunks = self.chunker.chunk(note)
        if not chunks:
            return vector
        vectors = await self.embedder.embed([c.text for c in chunks])
        return normalize(np.asarray(vectors, dtype="float32").mean(axis=0))[0]

    def _rank_similar(
        self, vector: np.ndarray, exclude: Sequence[str], limit: int, min_score: float = 0.0
    ) -> List[SimilarNote]:
        skip = set(exclude)
        ranked: List[SimilarNote] = []
        for note_id, rep in self._store.representative_vectors().items():
            if note_id in skip:
                continue
            other = self.note_source.get_note(note_id)
            if other is None or other.is_trashed:
                continue
            score = clamp_score(np.dot(vector, rep))
            if score <= 0.0 or score < min_score:
                continue
            ranked.append(SimilarNote(note_id=note_id, title=other.title, score=score))
        ranked.sort(key=lambda s: (-s.score, s.note_id))
        return ranked[: max(0, limit)]

    async def get_similar_notes(self, note_id: str, limit: int = 5) -> List[SimilarNote]:
        """
        Notes closest to ``note_id`` by the mean of their chunk vectors.

        The note itself and trashed or deleted notes are never returned.
        """
        self._require_started()
        self._require_feature(self.config.enable_similar_notes, "Similar notes")
        note = self.note_source.get_note(note_id)
        if note is not None:
            vector = await self._note_vector(note)
        else:
            vector = self._store.representative_vector(note_id)
        if vector is None:
            return []
        return self._rank_similar(vector, exclude=[note_id], limit=limit)

    async def suggest_tags(
        self,
        note: Note,
        max_tags: int = 5,
        min_confidence: float = 0.7,
        use_llm: bool = True,
    ) -> List[TagSuggestion]:
        """
        Suggest tags for ``note``, never one it already has.

        Blends vocabulary/keyword matches, tags of very similar notes and,
        when ``use_llm`` is set and a backend is configured, model proposals.
        """
        self._require_started()
        self._require_feature(self.config.enable_auto_tagging, "Auto-tagging")
        vocabulary = self._vocabulary
        sources: Dict[str, List[TagSuggestion]] = {"content": lexical_tag_suggestions(note, vocabulary)}

        vector = await self._note_vector(note)
        if vector is not None:
            similar = self._rank_similar(
                vector, exclude=[note.id], limit=max_tags * 2, min_score=NEIGHBOR_TAG_MIN_SCORE
            )
            neighbors = []
            for hit in similar:
                other = self.note_source.get_note(hit.note_id)
                if other is not None:
                    neighbors.append((hit.score, other.tags))
            sources["similar-notes"] = neighbor_tag_suggestions(neighbors)

        if use_llm and self.generator is not None:
            text = await self.generator.generate(build_tagging_prompt(note, vocabulary), self.options)
            sources["model"] = parse_model_tags(text, vocabulary)

        return merge_tag_suggestions(sources, note.tags, max_tags=max_tags, min_confidence=min_confidence)

    async def suggest_tags_batch(self, notes: Sequence[Note], **options) -> Dict[str, List[TagSuggestion]]:
        """``suggest_tags`` per note id; a note whose suggestion fails gets an empty list."""
        self._require_started()
        self._require_feature(self.config.enable_auto_tagging, "Auto-tagging")
        results: Dict[str, List[TagSuggestion]] = {}
        for note in notes:
            try:
                results[note.id] = await self.suggest_tags(note, **options)
            except RAGError as exc:
                LOG.error("Failed to suggest tags for note %s: %s", note.id, exc)
                results[note.id] = []
        return results

    def update_tags_list(self, tags: Sequence[str]) -> None:
        """Replace the tag vocabulary. Nothing is re-embedded."""
        self._vocabulary = build_vocabulary(tags)
        LOG.debug("Tag vocabulary updated: %d tags", len(self._vocabulary))

    # ── diagnostics ──────────────────────────────────────────────────────

    def stats(self) -> SystemStats:
        self._require_started()
        store_stats = self._store.stats()
        return SystemStats(
            total_embeddings=store_stats.total_embeddings,
            cache_size=store_stats.cache_size_bytes,
            unique_notes=store_stats.unique_notes,
            features=self.features(),
        )

    def features(self) -> Dict[str, bool]:
        return {
            "autoTagging": self.config.enable_auto_tagging,
            "summarization": self.config.enable_summarization,
            "similarNotes": self.config.enable_similar_notes,
            "qa": self.config.enable_qa,
        }


__all__ = ["NEIGHBOR_TAG_MIN_SCORE", "RAGSystem"]
