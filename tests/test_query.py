import pytest
from conftest import make_note

from notes_rag.models import RetrievalResult
from notes_rag.query import (
    build_collection_prompt,
    build_prompt,
    build_summary_prompt,
    build_tagging_prompt,
    pack_context,
)


def result(note_id: str, snippet: str, score: float = 0.5) -> RetrievalResult:
    return RetrievalResult(
        chunk_id=f"{note_id}::0", note_id=note_id, note_title=f"Note {note_id}", snippet=snippet, score=score
    )


class TestPackContext:
    def test_keeps_order_within_budget(self):
        results = [result("A", "a" * 2000), result("B", "b" * 2000), result("C", "c" * 2000)]
        # 1024 tokens ~ 4096 characters.
        assert [r.note_id for r in pack_context(results, 1024)] == ["A", "B"]

    def test_first_source_always_kept(self):
        assert [r.note_id for r in pack_context([result("A", "a" * 10000)], 512)] == ["A"]

    def test_blank_snippets_skipped(self):
        assert [r.note_id for r in pack_context([result("A", "  "), result("B", "pears")], 512)] == ["B"]
        assert pack_context([], 512) == []


class TestPrompts:
    def test_sources_are_numbered(self):
        prompt = build_prompt("Which fruit?", [result("A", "apples"), result("C", "pears")])
        assert "[1] Note A\napples" in prompt
        assert "[2] Note C\npears" in prompt
        assert "Question: Which fruit?" in prompt
        assert prompt.endswith("Assistant:")
        assert "METADATA" not in prompt

    def test_detailed_prompt_lists_relevance(self):
        prompt = build_prompt("Which fruit?", [result("A", "apples", 0.8123)], include_metadata=True)
        assert "METADATA:\n- [1] Note A (relevance: 81.2%)" in prompt
        assert "QUESTION: Which fruit?" in prompt

    def test_summary_styles(self):
        note = make_note("A", "apples and pears", title="Fruit")
        assert "one concise paragraph" in build_summary_prompt(note, "brief")
        assert "Fruit\n\napples and pears" in build_summary_prompt(note, "detailed")
        assert '"- "' in build_summary_prompt(note, "bullet-points")
        assert "key insights" in build_summary_prompt(note, "key-insights")
        with pytest.raises(ValueError):
            build_summary_prompt(note, "haiku")

    def test_collection_prompt(self):
        notes = [make_note("A", "apples", title="One"), make_note("B", "pears", title="Two")]
        prompt = build_collection_prompt(notes, "Fruit")
        assert 'these 2 related notes about "Fruit"' in prompt
        assert "## One\napples\n\n---\n\n## Two\npears" in prompt

    def test_tagging_prompt(self):
        note = make_note("A", "apples")
        assert "Existing tags in the system: fruit, garden" in build_tagging_prompt(note, ["fruit", "garden"])
        assert "Existing tags in the system: (none)" in build_tagging_prompt(note, [])
