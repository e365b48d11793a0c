"""
Persistent vector store over a faiss inner-product index.

Vectors are L2-normalized on the way in, so inner product equals cosine
similarity. Each chunk gets a fresh int64 faiss label on every write; the new
label becomes visible before the old one is removed, so a reader never sees a
chunk disappear while it is being replaced.

On disk (``persist_dir``)::

    vectors.faiss    faiss.serialize_index of the IndexIDMap2
    entries.pkl      chunk metadata keyed by label
    manifest.json    model id, dimension, entry count, sha256 of vectors.faiss

The manifest is written last and is the commit point; anything that does not
match it is reported as IndexCorruption.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import pickle
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import faiss
import numpy as np

from .errors import IndexCorruption, InvalidConfig
from .models import Chunk, RetrievalResult, VectorStoreStats, utcnow

LOG = logging.getLogger(__name__)

INDEX_FILE = "vectors.faiss"
ENTRIES_FILE = "entries.pkl"
MANIFEST_FILE = "manifest.json"

# range_search keeps strictly-greater inner products; widen by a hair so a
# score exactly at min_score survives, then filter precisely in Python.
_RADIUS_SLACK = 1e-6


@dataclass
class StoredEntry:
    label: int
    chunk_id: str
    note_id: str
    note_title: str
    text: str
    offset: int
    length: int
    model_id: str
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorSearchResult:
    """A single hit from the vector store."""

    entry: StoredEntry
    score: float

    @property
    def chunk_id(self) -> str:
        return self.entry.chunk_id

    @property
    def note_id(self) -> str:
        return self.entry.note_id

    def to_retrieval_result(
        self, note_title: Optional[str] = None, snippet: Optional[str] = None
    ) -> RetrievalResult:
        return RetrievalResult(
            chunk_id=self.entry.chunk_id,
            note_id=self.entry.note_id,
            note_title=note_title if note_title is not None else self.entry.note_title,
            snippet=snippet if snippet is not None else self.entry.text,
            score=self.score,
        )


def normalize(vector: Sequence[float] | np.ndarray, dimension: Optional[int] = None) -> np.ndarray:
    """Return ``vector`` as a (1, d) float32 row of unit length (zero stays zero)."""
    arr = np.asarray(vector, dtype="float32").reshape(1, -1)
    if dimension is not None and arr.shape[1] != dimension:
        raise ValueError(f"Vector has dimension {arr.shape[1]}, store expects {dimension}")
    norm = float(np.linalg.norm(arr))
    if norm > 0.0:
        arr = arr / norm
    return np.ascontiguousarray(arr, dtype="float32")


def clamp_score(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            h.update(block)
    return h.hexdigest()


@dataclass(frozen=True)
class StoreSnapshot:
    """A point-in-time copy of a store. ``write`` touches only the disk."""

    persist_dir: Path
    model_id: str
    dimension: int
    index_bytes: bytes
    next_label: int
    entries: List[StoredEntry]

    def write(self) -> None:
        self.persist_dir.mkdir(parents=True, exist_ok=True)
        index_path = self.persist_dir / INDEX_FILE
        entries_path = self.persist_dir / ENTRIES_FILE
        manifest_path = self.persist_dir / MANIFEST_FILE

        tmp_index = index_path.with_suffix(".tmp")
        tmp_index.write_bytes(self.index_bytes)
        tmp_entries = entries_path.with_suffix(".tmp")
        with tmp_entries.open("wb") as f:
            pickle.dump({"next_label": self.next_label, "entries": self.entries}, f)
        os.replace(tmp_index, index_path)
        os.replace(tmp_entries, entries_path)

        manifest = {
            "model_id": self.model_id,
            "dimension": self.dimension,
            "entries": len(self.entries),
            "index_sha256": hashlib.sha256(self.index_bytes).hexdigest(),
            "saved_at": utcnow().isoformat(),
        }
        tmp_manifest = manifest_path.with_suffix(".tmp")
        with tmp_manifest.open("w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
        os.replace(tmp_manifest, manifest_path)
        LOG.debug("Saved %d vectors to %s", len(self.entries), self.persist_dir)


class FaissVectorStore:
    """
    Keyed store of chunk vectors with exact cosine nearest-neighbor search.

    All mutating methods are synchronous and contain no awaits, so on an
    asyncio event loop each call is applied atomically with respect to
    concurrent readers.
    """

    def __init__(self, dimension: int, model_id: str, persist_dir: Optional[Path] = None) -> None:
        if dimension <= 0:
            raise InvalidConfig(f"Embedding dimension must be positive, got {dimension}")
        self.dimension = dimension
        self.model_id = model_id
        self.persist_dir = Path(persist_dir) if persist_dir is not None else None
        self._reset()

    def _reset(self) -> None:
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))
        self._entries: Dict[str, StoredEntry] = {}
        self._by_label: Dict[int, StoredEntry] = {}
        self._by_note: Dict[str, Set[str]] = {}
        self._next_label = 0

    # ── writes ───────────────────────────────────────────────────────────

    def _check_model(self, model_id: str) -> None:
        if model_id != self.model_id:
            raise InvalidConfig(
                f"Store holds {self.model_id!r} vectors; refusing {model_id!r} "
                "without a full reindex"
            )

    def _drop_labels(self, labels: Iterable[int]) -> None:
        ids = np.array(sorted(labels), dtype="int64")
        if ids.size == 0:
            return
        self._index.remove_ids(ids)
        for label in ids:
            self._by_label.pop(int(label), None)

    def upsert(
        self,
        chunk: Chunk,
        vector: Sequence[float],
        model_id: str,
        note_title: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Insert or replace the vector for one chunk."""
        self._check_model(model_id)
        entry = StoredEntry(
            label=-1,
            chunk_id=chunk.chunk_id,
            note_id=chunk.note_id,
            note_title=note_title,
            text=chunk.text,
            offset=chunk.offset,
            length=chunk.length,
            model_id=model_id,
            metadata=dict(metadata or {}),
        )
        self._put(normalize(vector, self.dimension), entry)

    def _put(self, row: np.ndarray, entry: StoredEntry) -> None:
        label = self._next_label
        self._next_label += 1
        self._index.add_with_ids(row, np.array([label], dtype="int64"))

        entry = replace(entry, label=label)
        old = self._entries.get(entry.chunk_id)
        self._entries[entry.chunk_id] = entry
        self._by_label[label] = entry
        self._by_note.setdefault(entry.note_id, set()).add(entry.chunk_id)
        if old is not None:
            self._drop_labels([old.label])

    def import_vectors(self, records: Iterable[Tuple[StoredEntry, Sequence[float]]]) -> int:
        """Upsert records produced by ``export_vectors``. Returns how many were added."""
        count = 0
        for entry, vector in records:
            self._check_model(entry.model_id)
            self._put(normalize(vector, self.dimension), replace(entry, metadata=dict(entry.metadata)))
            count += 1
        LOG.info("Imported %d vectors", count)
        return count

    def replace_note(
        self,
        note_id: str,
        items: Sequence[Tuple[Chunk, Sequence[float]]],
        model_id: str,
        note_title: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Swap in a note's new chunk set and drop chunks that no longer exist."""
        self._check_model(model_id)
        keep: Set[str] = set()
        for chunk, vector in items:
            if chunk.note_id != note_id:
                raise ValueError(f"Chunk {chunk.chunk_id} does not belong to note {note_id}")
            self.upsert(chunk, vector, model_id, note_title=note_title, metadata=metadata)
            keep.add(chunk.chunk_id)

        stale = self._by_note.get(note_id, set()) - keep
        if stale:
            self._drop_labels(self._entries[c].label for c in stale)
            for chunk_id in stale:
                del self._entries[chunk_id]
            self._by_note[note_id] = keep
        if not self._by_note.get(note_id):
            self._by_note.pop(note_id, None)

    def delete_by_note(self, note_id: str) -> int:
        """Remove every chunk of ``note_id``. Returns the number removed."""
        chunk_ids = self._by_note.pop(note_id, set())
        self._drop_labels(self._entries[c].label for c in chunk_ids)
        for chunk_id in chunk_ids:
            del self._entries[chunk_id]
        if chunk_ids:
            LOG.debug("Deleted %d chunks for note %s", len(chunk_ids), note_id)
        return len(chunk_ids)

    def clear(self) -> None:
        self._reset()
        LOG.info("Cleared vector store")

    # ── reads ────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._entries)

    def note_ids(self) -> List[str]:
        return sorted(self._by_note)

    def has_note(self, note_id: str) -> bool:
        return note_id in self._by_note

    def get_entry(self, chunk_id: str) -> Optional[StoredEntry]:
        return self._entries.get(chunk_id)

    def nearest_neighbors(
        self,
        query_vector: Sequence[float],
        k: int,
        min_score: float = 0.0,
        note_ids: Optional[Iterable[str]] = None,
        exclude_note_ids: Optional[Iterable[str]] = None,
    ) -> List[VectorSearchResult]:
        """
        Top-``k`` chunks by cosine similarity, all scoring >= ``min_score``.

        Ranking is by descending score; ties go to the lower note id, then
        the lower chunk id. Non-positive similarities never match.
        """
        if k <= 0 or self._index.ntotal == 0:
            return []
        query = normalize(query_vector, self.dimension)
        if not query.any():
            return []

        radius = max(float(min_score), 0.0) - _RADIUS_SLACK
        lims, distances, labels = self._index.range_search(query, radius)

        include = set(note_ids) if note_ids is not None else None
        exclude = set(exclude_note_ids or ())
        hits: List[VectorSearchResult] = []
        for raw, label in zip(distances[lims[0] : lims[1]], labels[lims[0] : lims[1]]):
            entry = self._by_label.get(int(label))
            if entry is None:
                continue
            if include is not None and entry.note_id not in include:
                continue
            if entry.note_id in exclude:
                continue
            score = clamp_score(raw)
            if score <= 0.0 or score < min_score:
                continue
            hits.append(VectorSearchResult(entry=entry, score=score))

        hits.sort(key=lambda h: (-h.score, h.entry.note_id, h.entry.chunk_id))
        return hits[:k]

    def note_vectors(self, note_id: str) -> np.ndarray:
        """Stored (normalized) chunk vectors of one note, ordered by chunk offset."""
        entries = sorted(
            (self._entries[c] for c in self._by_note.get(note_id, ())),
            key=lambda e: (e.offset, e.chunk_id),
        )
        if not entries:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack([self._index.reconstruct(int(e.label)) for e in entries])

    def export_vectors(self) -> List[Tuple[StoredEntry, List[float]]]:
        """Every entry with its stored vector, ordered by note and offset."""
        entries = sorted(self._entries.values(), key=lambda e: (e.note_id, e.offset, e.chunk_id))
        return [(e, self._index.reconstruct(int(e.label)).tolist()) for e in entries]

    def representative_vector(self, note_id: str) -> Optional[np.ndarray]:
        """Mean of a note's chunk vectors, re-normalized; None if not indexed."""
        vectors = self.note_vectors(note_id)
        if vectors.shape[0] == 0:
            return None
        return normalize(vectors.mean(axis=0))[0]

    def representative_vectors(self) -> Dict[str, np.ndarray]:
        out: Dict[str, np.ndarray] = {}
        for note_id in self._by_note:
            vector = self.representative_vector(note_id)
            if vector is not None:
                out[note_id] = vector
        return out

    def stats(self) -> VectorStoreStats:
        text_bytes = sum(len(e.text.encode("utf-8")) for e in self._entries.values())
        return VectorStoreStats(
            total_embeddings=int(self._index.ntotal),
            unique_notes=len(self._by_note),
            cache_size_bytes=int(self._index.ntotal) * self.dimension * 4 + text_bytes,
        )

    # ── persistence ──────────────────────────────────────────────────────

    def snapshot(self) -> Optional[StoreSnapshot]:
        """Copy what ``save`` writes, so the disk work can run off the event loop."""
        if self.persist_dir is None:
            return None
        return StoreSnapshot(
            persist_dir=self.persist_dir,
            model_id=self.model_id,
            dimension=self.dimension,
            index_bytes=faiss.serialize_index(self._index).tobytes(),
            next_label=self._next_label,
            entries=list(self._entries.values()),
        )

    def save(self) -> None:
        snapshot = self.snapshot()
        if snapshot is not None:
            snapshot.write()

    @classmethod
    def open(cls, dimension: int, model_id: str, persist_dir: Optional[Path] = None) -> "FaissVectorStore":
        """
        Load a persisted store, or create an empty one.

        Raises:
            InvalidConfig: the directory holds vectors from another model/dimension
            IndexCorruption: files are missing, unreadable, or disagree with the manifest
        """
        store = cls(dimension, model_id, persist_dir)
        if store.persist_dir is None:
            return store

        index_path = store.persist_dir / INDEX_FILE
        entries_path = store.persist_dir / ENTRIES_FILE
        manifest_path = store.persist_dir / MANIFEST_FILE
        if not manifest_path.exists():
            if index_path.exists() or entries_path.exists():
                raise IndexCorruption(f"{manifest_path} is missing but vector files exist")
            LOG.info("No existing vector store at %s; starting empty", store.persist_dir)
            return store

        try:
            with manifest_path.open("r", encoding="utf-8") as f:
                manifest = json.load(f)
            stored_model = manifest["model_id"]
            stored_dim = int(manifest["dimension"])
            stored_count = int(manifest["entries"])
            checksum = manifest["index_sha256"]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise IndexCorruption(f"Unreadable manifest {manifest_path}: {exc}") from exc

        if stored_model != model_id or stored_dim != dimension:
            if stored_count > 0:
                raise InvalidConfig(
                    f"Index at {store.persist_dir} was built with {stored_model!r} "
                    f"({stored_dim}d) but embedding_model is {model_id!r} ({dimension}d). "
                    "Clear the index or switch back to the original model."
                )
            LOG.info("Empty store built for %s; adopting %s", stored_model, model_id)
            return store

        try:
            if _sha256(index_path) != checksum:
                raise IndexCorruption(f"Checksum mismatch for {index_path}")
            index = faiss.read_index(str(index_path))
            with entries_path.open("rb") as f:
                payload = pickle.load(f)
            entries: List[StoredEntry] = payload["entries"]
            next_label = int(payload["next_label"])
        except IndexCorruption:
            raise
        except (
            OSError,
            RuntimeError,
            ValueError,
            EOFError,
            KeyError,
            IndexError,
            AttributeError,
            TypeError,
            ImportError,
            pickle.UnpicklingError,
        ) as exc:
            raise IndexCorruption(f"Could not load vector store from {store.persist_dir}: {exc}") from exc

        if index.d != dimension or index.ntotal != len(entries) or len(entries) != stored_count:
            raise IndexCorruption(
                f"Vector store at {store.persist_dir} is inconsistent: "
                f"{index.ntotal} vectors, {len(entries)} entries, manifest says {stored_count}"
            )
        labels = {int(label) for label in faiss.vector_to_array(index.id_map)}
        if labels != {e.label for e in entries}:
            raise IndexCorruption(f"Vector labels and entries disagree in {store.persist_dir}")

        store._index = index
        store._next_label = next_label
        for entry in entries:
            store._entries[entry.chunk_id] = entry
            store._by_label[entry.label] = entry
            store._by_note.setdefault(entry.note_id, set()).add(entry.chunk_id)
        LOG.info("Loaded %d vectors for %d notes from %s", len(entries), len(store._by_note), store.persist_dir)
        return store


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(a, b) / (na * nb))


__all__ = [
    "FaissVectorStore",
    "StoreSnapshot",
    "StoredEntry",
    "VectorSearchResult",
    "clamp_score",
    "cosine_similarity",
    "normalize",
]
