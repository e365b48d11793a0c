"""
Incremental indexing: chunk -> embed -> store.

A note is re-embedded only when its fingerprint changes. The fingerprint
covers the note fields that end up in the store plus everything that shapes
the vectors (chunker settings and embedding model), so changing either one
invalidates old entries without a separate migration step.

Progress is tracked in ``IndexState``, a small JSON file next to the vectors.
It is written only together with the vector store (``Indexer.commit``), always
after it, so after a crash the state can lag the store but never lead it. A
lagging state just means a note gets re-embedded, which is idempotent.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .chunker import Chunker
from .embeddings import EmbeddingProvider
from .errors import LOCAL_FAILURES
from .index import FaissVectorStore, StoreSnapshot
from .ingest import content_hash
from .models import Chunk, Note, NoteEvent, NoteEventKind, ReindexReport

LOG = logging.getLogger(__name__)

STATE_FILE = "index_state.json"


@dataclass(frozen=True)
class NoteRecord:
    fingerprint: str
    updated_at: datetime


class IndexState:
    """
    Per-note fingerprints plus the reindex watermark.

    The watermark is the ``(updated_at, note_id)`` of the last note a full
    reindex committed; ``reindex_all`` walks notes in that order, so
    everything at or below it was handled by the previous run.
    """

    def __init__(self, state_file: Optional[Path] = None) -> None:
        self.state_file = Path(state_file) if state_file is not None else None
        self._notes: Dict[str, NoteRecord] = {}
        self.watermark: Optional[Tuple[datetime, str]] = None
        self._load()

    def _load(self) -> None:
        if self.state_file is None or not self.state_file.exists():
            return
        try:
            with self.state_file.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            self._notes = {
                note_id: NoteRecord(rec["fingerprint"], datetime.fromisoformat(rec["updated_at"]))
                for note_id, rec in raw.get("notes", {}).items()
            }
            mark = raw.get("watermark")
            self.watermark = (datetime.fromisoformat(mark[0]), mark[1]) if mark else None
        except (OSError, ValueError, KeyError, TypeError, IndexError) as exc:
            # Losing the state only costs re-embedding; the store is checked separately.
            LOG.warning("Failed to load index state from %s: %s. Starting fresh.", self.state_file, exc)
            self._notes = {}
            self.watermark = None

    def payload(self) -> Dict[str, Any]:
        return {
            "notes": {
                note_id: {"fingerprint": rec.fingerprint, "updated_at": rec.updated_at.isoformat()}
                for note_id, rec in sorted(self._notes.items())
            },
            "watermark": [self.watermark[0].isoformat(), self.watermark[1]] if self.watermark else None,
        }

    def save(self, payload: Optional[Dict[str, Any]] = None) -> None:
        if self.state_file is None:
            return
        if payload is None:
            payload = self.payload()
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, self.state_file)

    def get(self, note_id: str) -> Optional[NoteRecord]:
        return self._notes.get(note_id)

    def record(self, note_id: str, fingerprint: str, updated_at: datetime) -> None:
        self._notes[note_id] = NoteRecord(fingerprint, updated_at)

    def forget(self, note_id: str) -> None:
        self._notes.pop(note_id, None)

    def note_ids(self) -> List[str]:
        return sorted(self._notes)

    def reset(self) -> None:
        self._notes = {}
        self.watermark = None


class Indexer:
    """Keeps the vector store in step with the note source."""

    def __init__(
        self,
        chunker: Chunker,
        embedder: EmbeddingProvider,
        store: FaissVectorStore,
        state: Optional[IndexState] = None,
        checkpoint_every: int = 25,
    ) -> None:
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.state = state or IndexState()
        self.checkpoint_every = max(1, checkpoint_every)
        self._commit_lock = asyncio.Lock()
        self._reconcile()

    def _reconcile(self) -> None:
        # A state entry without vectors (store was reset or lost) must not
        # make us believe the note is embedded.
        stored = set(self.store.note_ids())
        for note_id in self.state.note_ids():
            if note_id not in stored:
                self.state.forget(note_id)

    def fingerprint(self, note: Note) -> str:
        h = hashlib.sha256()
        h.update(content_hash(note).encode("utf-8"))
        h.update(
            f"|{self.chunker.max_chars}|{self.chunker.overlap}|{self.chunker.min_chunk_chars}"
            f"|{self.embedder.model_id}".encode("utf-8")
        )
        return h.hexdigest()

    def is_current(self, note: Note) -> bool:
        record = self.state.get(note.id)
        return record is not None and record.fingerprint == self.fingerprint(note)

    async def _embed_chunks(self, chunks: Sequence[Chunk]) -> Tuple[List[Tuple[Chunk, List[float]]], int]:
        """
        Embed a note's chunks in one batch, falling back to one call per
        chunk if the batch is rejected. Returns the embedded pairs and the
        number of chunks that had to be skipped.
        """
        if not chunks:
            return [], 0
        try:
            vectors = await self.embedder.embed([c.text for c in chunks])
            return list(zip(chunks, vectors)), 0
        except LOCAL_FAILURES as exc:
            LOG.warning("Batch embedding failed for note %s (%s); retrying per chunk", chunks[0].note_id, exc)

        items: List[Tuple[Chunk, List[float]]] = []
        failed = 0
        for chunk in chunks:
            try:
                items.append((chunk, await self.embedder.embed_one(chunk.text)))
            except LOCAL_FAILURES as exc:
                LOG.error("Skipping chunk %s: %s", chunk.chunk_id, exc)
                failed += 1
        return items, failed

    async def _index(self, note: Note) -> Tuple[bool, int]:
        if note.is_trashed:
            self._remove(note.id)
            return False, 0

        fingerprint = self.fingerprint(note)
        record = self.state.get(note.id)
        if record is not None and record.fingerprint == fingerprint:
            if note.updated_at > record.updated_at:
                self.state.record(note.id, fingerprint, note.updated_at)
            return False, 0

        chunks = self.chunker.chunk(note)
        items, failed = await self._embed_chunks(chunks)
        self.store.replace_note(
            note.id,
            items,
            self.embedder.model_id,
            note_title=note.title,
            metadata={"tags": list(note.tags), "notebook": note.notebook},
        )
        if failed:
            # Leave the fingerprint unrecorded so the next pass retries the note.
            self.state.forget(note.id)
        else:
            self.state.record(note.id, fingerprint, note.updated_at)
        LOG.debug("Indexed note %s: %d chunks (%d skipped)", note.id, len(items), failed)
        return True, failed

    def _remove(self, note_id: str) -> int:
        removed = self.store.delete_by_note(note_id)
        self.state.forget(note_id)
        return removed

    async def index_note(self, note: Note, commit: bool = True) -> bool:
        """
        Bring one note up to date. Returns True if it was (re-)embedded.

        Trashed notes are removed from the index.
        """
        changed, _ = await self._index(note)
        if commit:
            await self.commit()
        return changed

    async def remove_note(self, note_id: str, commit: bool = True) -> int:
        removed = self._remove(note_id)
        if commit:
            await self.commit()
        return removed

    async def handle_event(self, event: NoteEvent, commit: bool = True) -> None:
        if event.kind == NoteEventKind.DELETED:
            await self.remove_note(event.note_id, commit=commit)
            return
        if event.note is None:
            LOG.warning("Ignoring %s event for %s without a note payload", event.kind.value, event.note_id)
            return
        await self.index_note(event.note, commit=commit)

    @staticmethod
    def _write(snapshot: Optional[StoreSnapshot], state: IndexState, payload: Dict[str, Any]) -> None:
        if snapshot is not None:
            snapshot.write()
        state.save(payload)

    async def commit(self) -> None:
        """
        Persist the store, then the state that describes it.

        Both are copied on the event loop and written from a worker thread.
        Commits are written in the order they were taken.
        """
        snapshot = self.store.snapshot()
        payload = self.state.payload()
        async with self._commit_lock:
            await asyncio.to_thread(self._write, snapshot, self.state, payload)

    async def reindex_all(self, notes: Iterable[Note]) -> ReindexReport:
        """
        Bring the whole index in line with ``notes``.

        Notes are processed oldest first by ``(updated_at, id)``; work is
        committed every ``checkpoint_every`` notes and again on exit, including
        cancellation, so an interrupted run resumes where it stopped.
        """
        live = sorted((n for n in notes if not n.is_trashed), key=lambda n: (n.updated_at, n.id))
        live_ids = {n.id for n in live}
        report = ReindexReport()

        stale = (set(self.store.note_ids()) | set(self.state.note_ids())) - live_ids
        for note_id in sorted(stale):
            if self._remove(note_id):
                report.removed += 1

        LOG.info("Reindexing %d notes (%d stale removed)", len(live), report.removed)
        pending = 0
        try:
            for note in live:
                changed, failed = await self._index(note)
                if changed:
                    report.indexed += 1
                else:
                    report.skipped += 1
                report.failed_chunks += failed
                self.state.watermark = (note.updated_at, note.id)
                pending += 1
                if pending >= self.checkpoint_every:
                    await self.commit()
                    pending = 0
        finally:
            await self.commit()

        LOG.info(
            "Reindex done: %d indexed, %d unchanged, %d removed, %d chunks failed",
            report.indexed,
            report.skipped,
            report.removed,
            report.failed_chunks,
        )
        return report

    async def rebuild(self, notes: Iterable[Note]) -> ReindexReport:
        await self.clear_index()
        return await self.reindex_all(notes)

    async def clear_index(self) -> None:
        self.store.clear()
        self.state.reset()
        await self.commit()


__all__ = ["IndexState", "Indexer", "NoteRecord", "STATE_FILE"]
