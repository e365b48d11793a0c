import json

import numpy as np
import pytest

from notes_rag.errors import IndexCorruption, InvalidConfig
from notes_rag.index import (
    ENTRIES_FILE,
    INDEX_FILE,
    MANIFEST_FILE,
    FaissVectorStore,
    cosine_similarity,
    normalize,
)
from notes_rag.models import Chunk

MODEL = "test-model"
E1 = [1.0, 0.0, 0.0, 0.0]
E2 = [0.0, 1.0, 0.0, 0.0]
E3 = [0.0, 0.0, 1.0, 0.0]


def chunk(note_id: str, i: int = 0, text: str = "") -> Chunk:
    text = text or f"text of {note_id} #{i}"
    return Chunk(note_id=note_id, chunk_id=f"{note_id}::{i}", index=i, text=text, offset=i * 100, length=len(text))


@pytest.fixture
def store() -> FaissVectorStore:
    return FaissVectorStore(4, MODEL)


class TestSearch:
    def test_nearest_neighbor_ranking(self, store):
        store.upsert(chunk("a"), E1, MODEL)
        store.upsert(chunk("b"), [1.0, 1.0, 0.0, 0.0], MODEL)
        store.upsert(chunk("c"), E2, MODEL)

        hits = store.nearest_neighbors(E1, k=5)
        assert [h.note_id for h in hits] == ["a", "b"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)
        assert hits[1].score == pytest.approx(0.7071, abs=1e-3)

    def test_ties_broken_by_note_id(self, store):
        store.upsert(chunk("zeta"), E1, MODEL)
        store.upsert(chunk("beta"), E1, MODEL)
        store.upsert(chunk("alpha"), E1, MODEL)
        assert [h.note_id for h in store.nearest_neighbors(E1, k=3)] == ["alpha", "beta", "zeta"]

    def test_min_score_and_k(self, store):
        store.upsert(chunk("a"), E1, MODEL)
        store.upsert(chunk("b"), [1.0, 1.0, 0.0, 0.0], MODEL)
        assert [h.note_id for h in store.nearest_neighbors(E1, k=5, min_score=0.8)] == ["a"]
        assert len(store.nearest_neighbors(E1, k=1)) == 1
        assert store.nearest_neighbors(E1, k=0) == []

    def test_opposite_and_orthogonal_vectors_never_match(self, store):
        store.upsert(chunk("neg"), [-1.0, 0.0, 0.0, 0.0], MODEL)
        store.upsert(chunk("orth"), E2, MODEL)
        assert store.nearest_neighbors(E1, k=5) == []

    def test_scope_and_exclusion(self, store):
        store.upsert(chunk("a"), E1, MODEL)
        store.upsert(chunk("b"), E1, MODEL)
        assert [h.note_id for h in store.nearest_neighbors(E1, 5, note_ids=["b"])] == ["b"]
        assert [h.note_id for h in store.nearest_neighbors(E1, 5, exclude_note_ids=["a"])] == ["b"]

    def test_empty_store_and_zero_query(self, store):
        assert store.nearest_neighbors(E1, k=3) == []
        store.upsert(chunk("a"), E1, MODEL)
        assert store.nearest_neighbors([0.0, 0.0, 0.0, 0.0], k=3) == []

    def test_retrieval_result_conversion(self, store):
        store.upsert(chunk("a", text="hello there"), E1, MODEL, note_title="Greeting")
        result = store.nearest_neighbors(E1, 1)[0].to_retrieval_result()
        assert result.note_title == "Greeting"
        assert result.snippet == "hello there"
        assert result.chunk_id == "a::0"


class TestWrites:
    def test_upsert_replaces_same_chunk(self, store):
        store.upsert(chunk("a"), E1, MODEL)
        store.upsert(chunk("a"), E2, MODEL)
        assert len(store) == 1
        assert store.stats().total_embeddings == 1
        assert store.nearest_neighbors(E1, 5) == []
        assert store.nearest_neighbors(E2, 5)[0].note_id == "a"

    def test_delete_by_note_cascades(self, store):
        store.upsert(chunk("a", 0), E1, MODEL)
        store.upsert(chunk("a", 1), E1, MODEL)
        store.upsert(chunk("b", 0), E1, MODEL)
        assert store.delete_by_note("a") == 2
        assert [h.note_id for h in store.nearest_neighbors(E1, 5)] == ["b"]
        assert store.delete_by_note("a") == 0
        assert not store.has_note("a")

    def test_replace_note_drops_stale_chunks(self, store):
        store.replace_note("a", [(chunk("a", i), E1) for i in range(3)], MODEL)
        assert len(store) == 3
        store.replace_note("a", [(chunk("a", 0), E2)], MODEL)
        assert len(store) == 1
        assert store.get_entry("a::2") is None
        store.replace_note("a", [], MODEL)
        assert store.note_ids() == []

    def test_replace_note_rejects_foreign_chunks(self, store):
        with pytest.raises(ValueError):
            store.replace_note("a", [(chunk("b"), E1)], MODEL)

    def test_model_and_dimension_checks(self, store):
        with pytest.raises(InvalidConfig):
            store.upsert(chunk("a"), E1, "other-model")
        with pytest.raises(ValueError):
            store.upsert(chunk("a"), [1.0, 0.0], MODEL)

    def test_clear(self, store):
        store.upsert(chunk("a"), E1, MODEL)
        store.clear()
        assert len(store) == 0
        assert store.stats().unique_notes == 0

    def test_export_and_import(self, store):
        store.upsert(chunk("b"), E2, MODEL, note_title="B", metadata={"tags": ["x"]})
        store.upsert(chunk("a"), [2.0, 0.0, 0.0, 0.0], MODEL, note_title="A")
        records = store.export_vectors()
        assert [entry.chunk_id for entry, _ in records] == ["a::0", "b::0"]
        assert records[0][1] == pytest.approx(E1)

        copy = FaissVectorStore(4, MODEL)
        assert copy.import_vectors(records) == 2
        hit = copy.nearest_neighbors(E2, k=1)[0]
        assert hit.note_id == "b"
        assert hit.entry.metadata == {"tags": ["x"]}
        assert hit.entry.created_at == records[1][0].created_at

        with pytest.raises(InvalidConfig):
            FaissVectorStore(4, "another-model").import_vectors(records)


class TestNoteVectors:
    def test_representative_vector_is_normalized_mean(self, store):
        store.upsert(chunk("a", 0), E1, MODEL)
        store.upsert(chunk("a", 1), E2, MODEL)
        rep = store.representative_vector("a")
        assert rep.tolist() == pytest.approx([0.7071, 0.7071, 0.0, 0.0], abs=1e-3)
        assert store.representative_vector("missing") is None

    def test_note_vectors_are_stored_normalized(self, store):
        store.upsert(chunk("a"), [3.0, 4.0, 0.0, 0.0], MODEL)
        vectors = store.note_vectors("a")
        assert vectors.shape == (1, 4)
        assert vectors[0].tolist() == pytest.approx([0.6, 0.8, 0.0, 0.0], abs=1e-5)

    def test_representative_vectors(self, store):
        store.upsert(chunk("a"), E1, MODEL)
        store.upsert(chunk("b"), E3, MODEL)
        reps = store.representative_vectors()
        assert set(reps) == {"a", "b"}


def test_stats(store):
    store.upsert(chunk("a", 0, "abcd"), E1, MODEL)
    store.upsert(chunk("a", 1, "efgh"), E2, MODEL)
    store.upsert(chunk("b", 0, "ij"), E3, MODEL)
    stats = store.stats()
    assert stats.total_embeddings == 3
    assert stats.unique_notes == 2
    assert stats.cache_size_bytes == 3 * 4 * 4 + 10


class TestPersistence:
    def _filled(self, path):
        store = FaissVectorStore(4, MODEL, path)
        store.upsert(chunk("a"), E1, MODEL, note_title="A")
        store.upsert(chunk("b"), E2, MODEL, note_title="B")
        store.save()
        return store

    def test_round_trip(self, tmp_path):
        self._filled(tmp_path)
        loaded = FaissVectorStore.open(4, MODEL, tmp_path)
        assert len(loaded) == 2
        hit = loaded.nearest_neighbors(E1, 1)[0]
        assert hit.note_id == "a"
        assert hit.entry.note_title == "A"
        # New writes continue after the loaded labels.
        loaded.upsert(chunk("c"), E3, MODEL)
        assert len(loaded) == 3

        manifest = json.loads((tmp_path / MANIFEST_FILE).read_text())
        assert manifest["model_id"] == MODEL
        assert manifest["dimension"] == 4
        assert manifest["entries"] == 2

    def test_open_missing_directory_is_empty(self, tmp_path):
        store = FaissVectorStore.open(4, MODEL, tmp_path / "nothing-here")
        assert len(store) == 0

    def test_in_memory_store_does_not_write(self, tmp_path):
        store = FaissVectorStore(4, MODEL)
        store.upsert(chunk("a"), E1, MODEL)
        store.save()
        assert list(tmp_path.iterdir()) == []

    def test_snapshot_ignores_later_writes(self, tmp_path):
        store = FaissVectorStore(4, MODEL, tmp_path)
        store.upsert(chunk("a"), E1, MODEL)
        snapshot = store.snapshot()
        store.upsert(chunk("b"), E2, MODEL)
        snapshot.write()

        loaded = FaissVectorStore.open(4, MODEL, tmp_path)
        assert loaded.note_ids() == ["a"]
        assert FaissVectorStore(4, MODEL).snapshot() is None

    def test_model_mismatch_fails_fast(self, tmp_path):
        self._filled(tmp_path)
        with pytest.raises(InvalidConfig):
            FaissVectorStore.open(4, "another-model", tmp_path)
        with pytest.raises(InvalidConfig):
            FaissVectorStore.open(8, MODEL, tmp_path)

    def test_empty_store_of_other_model_is_adopted(self, tmp_path):
        FaissVectorStore(4, MODEL, tmp_path).save()
        store = FaissVectorStore.open(8, "another-model", tmp_path)
        assert store.dimension == 8
        assert len(store) == 0

    def test_checksum_mismatch(self, tmp_path):
        self._filled(tmp_path)
        with (tmp_path / INDEX_FILE).open("ab") as f:
            f.write(b"\x00")
        with pytest.raises(IndexCorruption):
            FaissVectorStore.open(4, MODEL, tmp_path)

    def test_unreadable_entries(self, tmp_path):
        self._filled(tmp_path)
        (tmp_path / ENTRIES_FILE).write_bytes(b"not a pickle")
        with pytest.raises(IndexCorruption):
            FaissVectorStore.open(4, MODEL, tmp_path)

    def test_missing_manifest(self, tmp_path):
        self._filled(tmp_path)
        (tmp_path / MANIFEST_FILE).unlink()
        with pytest.raises(IndexCorruption):
            FaissVectorStore.open(4, MODEL, tmp_path)

    def test_garbled_manifest(self, tmp_path):
        self._filled(tmp_path)
        (tmp_path / MANIFEST_FILE).write_text("{not json")
        with pytest.raises(IndexCorruption):
            FaissVectorStore.open(4, MODEL, tmp_path)


def test_helpers():
    row = normalize([3.0, 4.0])
    assert row.shape == (1, 2)
    assert row[0].tolist() == pytest.approx([0.6, 0.8])
    assert cosine_similarity(np.array([1.0, 0.0]), np.array([1.0, 1.0])) == pytest.approx(0.7071, abs=1e-3)
    assert cosine_similarity(np.zeros(2), np.array([1.0, 0.0])) == 0.0
