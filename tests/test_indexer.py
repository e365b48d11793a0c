import dataclasses
import threading

import pytest
from conftest import KeywordEmbeddingProvider, at, make_note

from notes_rag.chunker import Chunker
from notes_rag.errors import ProviderUnavailable
from notes_rag.index import FaissVectorStore, StoreSnapshot
from notes_rag.indexer import STATE_FILE, IndexState, Indexer
from notes_rag.models import NoteEvent, NoteEventKind

FARM = (
    "Apples are grown in the orchard behind the old farm near the river.\n\n"
    "The poison ivy by the fence must go before the pears ripen this year."
)


def make_indexer(embedder, tmp_path=None, chunker=None, checkpoint_every=25):
    store = FaissVectorStore(embedder.dimension, embedder.model_id, tmp_path)
    state = IndexState(tmp_path / STATE_FILE if tmp_path is not None else None)
    return Indexer(chunker or Chunker(), embedder, store, state=state, checkpoint_every=checkpoint_every)


class TestIndexNote:
    @pytest.mark.asyncio
    async def test_unchanged_note_is_not_re_embedded(self, embedder):
        indexer = make_indexer(embedder)
        note = make_note("A", "apples and oranges")

        assert await indexer.index_note(note) is True
        first = indexer.store.note_vectors("A").copy()
        calls = len(embedder.calls)

        assert await indexer.index_note(note) is False
        assert len(embedder.calls) == calls
        assert len(indexer.store) == 1
        assert (indexer.store.note_vectors("A") == first).all()

    @pytest.mark.asyncio
    async def test_newer_timestamp_same_content_only_moves_checkpoint(self, embedder):
        indexer = make_indexer(embedder)
        note = make_note("A", "apples", minutes=1)
        await indexer.index_note(note)
        calls = len(embedder.calls)

        touched = dataclasses.replace(note, updated_at=at(50))
        assert await indexer.index_note(touched) is False
        assert len(embedder.calls) == calls
        assert indexer.state.get("A").updated_at == at(50)

    @pytest.mark.asyncio
    async def test_changed_note_replaces_chunks(self, embedder):
        chunker = Chunker(max_chars=100, overlap=0, min_chunk_chars=10)
        indexer = make_indexer(embedder, chunker=chunker)
        note = make_note("F", FARM, title="Farm")
        await indexer.index_note(note)
        assert len(indexer.store) == 2

        await indexer.index_note(dataclasses.replace(note, content="quantum garden", updated_at=at(5)))
        assert len(indexer.store) == 1
        assert indexer.store.nearest_neighbors(embedder.vector("pears"), 5) == []
        assert indexer.store.nearest_neighbors(embedder.vector("quantum"), 5)[0].note_id == "F"

    @pytest.mark.asyncio
    async def test_tag_change_refreshes_metadata(self, embedder):
        indexer = make_indexer(embedder)
        note = make_note("A", "apples", tags=("fruit",))
        await indexer.index_note(note)
        assert await indexer.index_note(dataclasses.replace(note, tags=("fruit", "food"))) is True
        assert indexer.store.get_entry("A::0").metadata["tags"] == ["fruit", "food"]

    @pytest.mark.asyncio
    async def test_trashed_note_is_removed(self, embedder):
        indexer = make_indexer(embedder)
        note = make_note("A", "apples")
        await indexer.index_note(note)
        assert await indexer.index_note(dataclasses.replace(note, is_trashed=True)) is False
        assert not indexer.store.has_note("A")
        assert indexer.state.get("A") is None

    @pytest.mark.asyncio
    async def test_commit_writes_from_worker_thread(self, embedder, tmp_path, monkeypatch):
        threads = []
        write = StoreSnapshot.write

        def recording_write(snapshot):
            threads.append(threading.get_ident())
            write(snapshot)

        monkeypatch.setattr(StoreSnapshot, "write", recording_write)
        indexer = make_indexer(embedder, tmp_path)
        await indexer.index_note(make_note("A", "apples"))
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()
        assert IndexState(tmp_path / STATE_FILE).get("A") is not None

    @pytest.mark.asyncio
    async def test_events_can_defer_commit(self, embedder, tmp_path):
        indexer = make_indexer(embedder, tmp_path)
        await indexer.handle_event(NoteEvent(NoteEventKind.CREATED, "A", make_note("A", "apples")), commit=False)
        assert indexer.store.has_note("A")
        assert not (tmp_path / STATE_FILE).exists()
        await indexer.commit()
        assert FaissVectorStore.open(embedder.dimension, embedder.model_id, tmp_path).has_note("A")

    @pytest.mark.asyncio
    async def test_remove_note(self, embedder):
        indexer = make_indexer(embedder)
        await indexer.index_note(make_note("A", "apples"))
        assert await indexer.remove_note("A") == 1
        assert indexer.store.nearest_neighbors(embedder.vector("apples"), 5) == []

    @pytest.mark.asyncio
    async def test_single_chunk_failure_is_skipped(self):
        embedder = KeywordEmbeddingProvider(fail_on="poison")
        indexer = make_indexer(embedder, chunker=Chunker(max_chars=100, overlap=0, min_chunk_chars=10))
        report = await indexer.reindex_all([make_note("F", FARM, title="Farm"), make_note("G", "garden")])

        assert report.failed_chunks == 1
        assert report.indexed == 2
        assert indexer.store.has_note("F")
        assert indexer.store.has_note("G")
        assert len(indexer.store) == 2
        # The partially embedded note is retried on the next pass.
        assert indexer.state.get("F") is None

    @pytest.mark.asyncio
    async def test_provider_outage_aborts(self, embedder):
        indexer = make_indexer(embedder)
        embedder.unavailable = True
        with pytest.raises(ProviderUnavailable):
            await indexer.index_note(make_note("A", "apples"))

    @pytest.mark.asyncio
    async def test_handle_events(self, embedder):
        indexer = make_indexer(embedder)
        note = make_note("A", "apples")
        await indexer.handle_event(NoteEvent(NoteEventKind.CREATED, "A", note))
        assert indexer.store.has_note("A")
        await indexer.handle_event(NoteEvent(NoteEventKind.UPDATED, "A", None))
        assert indexer.store.has_note("A")
        await indexer.handle_event(NoteEvent(NoteEventKind.DELETED, "A"))
        assert not indexer.store.has_note("A")

    def test_fingerprint_covers_chunker_settings(self, embedder):
        note = make_note("A", "apples")
        a = make_indexer(embedder, chunker=Chunker(max_chars=512))
        b = make_indexer(embedder, chunker=Chunker(max_chars=256))
        assert a.fingerprint(note) != b.fingerprint(note)
        assert a.fingerprint(note) == a.fingerprint(dataclasses.replace(note, updated_at=at(99)))


class TestReindexAll:
    @pytest.mark.asyncio
    async def test_empty_corpus(self, embedder):
        indexer = make_indexer(embedder)
        report = await indexer.reindex_all([])
        assert (report.indexed, report.skipped, report.removed, report.failed_chunks) == (0, 0, 0, 0)
        assert indexer.store.stats().unique_notes == 0

    @pytest.mark.asyncio
    async def test_idempotent(self, embedder, fruit_notes):
        indexer = make_indexer(embedder)
        first = await indexer.reindex_all(fruit_notes)
        total = len(indexer.store)
        second = await indexer.reindex_all(fruit_notes)

        assert first.indexed == 3
        assert second.indexed == 0
        assert second.skipped == 3
        assert len(indexer.store) == total == 3

    @pytest.mark.asyncio
    async def test_removes_notes_missing_from_source(self, embedder, fruit_notes):
        indexer = make_indexer(embedder)
        await indexer.reindex_all(fruit_notes)
        report = await indexer.reindex_all(fruit_notes[:2])
        assert report.removed == 1
        assert indexer.store.note_ids() == ["A", "B"]

    @pytest.mark.asyncio
    async def test_skips_trashed_notes(self, embedder, fruit_notes):
        indexer = make_indexer(embedder)
        notes = fruit_notes + [make_note("T", "apples in the bin", is_trashed=True)]
        await indexer.reindex_all(notes)
        assert not indexer.store.has_note("T")

    @pytest.mark.asyncio
    async def test_interrupted_run_resumes(self, tmp_path, fruit_notes):
        flaky = KeywordEmbeddingProvider()
        indexer = make_indexer(flaky, tmp_path, checkpoint_every=1)

        original = flaky._embed

        async def fail_on_quantum(texts):
            if any("quantum" in t for t in texts):
                raise ProviderUnavailable("went away", flaky.model_id)
            return await original(texts)

        flaky._embed = fail_on_quantum
        with pytest.raises(ProviderUnavailable):
            await indexer.reindex_all(fruit_notes)

        # Notes are walked oldest first, so A was committed before B failed.
        embedder = KeywordEmbeddingProvider()
        store = FaissVectorStore.open(embedder.dimension, embedder.model_id, tmp_path)
        resumed = Indexer(Chunker(), embedder, store, state=IndexState(tmp_path / STATE_FILE))
        assert resumed.is_current(fruit_notes[0])

        report = await resumed.reindex_all(fruit_notes)
        assert report.skipped == 1
        assert report.indexed == 2
        assert [t for batch in embedder.calls for t in batch if "oranges" in t] == []
        assert resumed.state.watermark == (fruit_notes[2].updated_at, "C")

    @pytest.mark.asyncio
    async def test_rebuild_and_clear(self, embedder, fruit_notes):
        indexer = make_indexer(embedder)
        await indexer.reindex_all(fruit_notes)
        report = await indexer.rebuild(fruit_notes)
        assert report.indexed == 3
        await indexer.clear_index()
        assert len(indexer.store) == 0
        assert indexer.state.note_ids() == []


class TestIndexState:
    def test_round_trip(self, tmp_path):
        path = tmp_path / STATE_FILE
        state = IndexState(path)
        state.record("A", "abc", at(1))
        state.watermark = (at(1), "A")
        state.save()

        loaded = IndexState(path)
        assert loaded.get("A").fingerprint == "abc"
        assert loaded.get("A").updated_at == at(1)
        assert loaded.watermark == (at(1), "A")

    def test_corrupt_state_starts_fresh(self, tmp_path):
        path = tmp_path / STATE_FILE
        path.write_text("{broken")
        state = IndexState(path)
        assert state.note_ids() == []
        assert state.watermark is None

    def test_state_without_vectors_is_forgotten(self, tmp_path, embedder):
        state = IndexState(tmp_path / STATE_FILE)
        state.record("ghost", "abc", at(1))
        store = FaissVectorStore(embedder.dimension, embedder.model_id)
        indexer = Indexer(Chunker(), embedder, store, state=state)
        assert indexer.state.get("ghost") is None
