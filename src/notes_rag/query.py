from __future__ import annotations

from typing import List, Sequence

from .models import Note, RetrievalResult

NO_CONTEXT_ANSWER = "I couldn't find any relevant information in your notes."

# Rough conversion between the token budget and characters of context.
CHARS_PER_TOKEN = 4

SUMMARY_STYLES = ("brief", "detailed", "bullet-points", "key-insights")

_DEFAULT_SYSTEM = (
    "You are a helpful assistant with access to a personal knowledge base.\n"
    "Answer questions based only on the provided context from the user's notes.\n"
    "Cite the notes you use by their number. If the context does not contain the "
    "answer, say you are not sure rather than guessing."
)

_DETAILED_SYSTEM = (
    "You are a knowledge management assistant with access to a personal note-taking system.\n"
    "Answer based solely on the provided context, cite specific notes, point out "
    "connections between notes, and say when information seems to be missing."
)


def pack_context(results: Sequence[RetrievalResult], context_window: int) -> List[RetrievalResult]:
    """
    Keep the highest-ranked sources whose snippets fit the token budget.

    Order is preserved. At least one source is always kept, so a single
    oversized snippet still grounds the answer.
    """
    budget = context_window * CHARS_PER_TOKEN
    packed: List[RetrievalResult] = []
    total_chars = 0
    for result in results:
        snippet = result.snippet.strip()
        if not snippet:
            continue
        if packed and total_chars + len(snippet) > budget:
            break
        packed.append(result)
        total_chars += len(snippet)
    return packed


def _format_sources(sources: Sequence[RetrievalResult]) -> str:
    blocks = [
        f"[{number}] {result.note_title}\n{result.snippet.strip()}"
        for number, result in enumerate(sources, start=1)
    ]
    return "\n\n---\n\n".join(blocks)


def build_prompt(question: str, sources: Sequence[RetrievalResult], include_metadata: bool = False) -> str:
    """Grounded question-answering prompt; sources are cited as [1], [2], ..."""
    context = _format_sources(sources)
    if not include_metadata:
        return (
            f"System: {_DEFAULT_SYSTEM}\n\n"
            f"User: Context from your notes:\n{context}\n\n"
            f"Question: {question}\n\n"
            "Answer based on the context above and cite the notes you reference.\n\n"
            "Assistant:"
        )

    metadata = "\n".join(
        f"- [{number}] {result.note_title} (relevance: {result.score * 100:.1f}%)"
        for number, result in enumerate(sources, start=1)
    )
    return (
        f"System: {_DETAILED_SYSTEM}\n\n"
        f"User: CONTEXT:\n{context}\n\n"
        f"METADATA:\n{metadata}\n\n"
        f"QUESTION: {question}\n\n"
        "Give a detailed answer that addresses the question directly, cites specific "
        "notes, and mentions any important information that seems to be missing.\n\n"
        "Assistant:"
    )


def _note_text(note: Note) -> str:
    return f"{note.title}\n\n{note.content}"


def build_summary_prompt(note: Note, style: str) -> str:
    if style not in SUMMARY_STYLES:
        raise ValueError(f"Unknown summary style {style!r}. Supported: {', '.join(SUMMARY_STYLES)}")
    content = _note_text(note)
    if style == "brief":
        return (
            "System: You are a summarization assistant. Create brief, one-paragraph summaries.\n\n"
            f"User: Summarize this note in one concise paragraph:\n\n{content}\n\nAssistant:"
        )
    if style == "detailed":
        return (
            "System: You are a summarization assistant. Create comprehensive summaries with key points.\n\n"
            f"User: Create a detailed summary with key points:\n\n{content}\n\n"
            "Include:\n- Main topics\n- Key insights\n- Action items (if any)\n\nAssistant:"
        )
    if style == "bullet-points":
        return (
            "User: Summarize this note as a bullet-point list of the main points:\n\n"
            f'{content}\n\nFormat each point starting with "- "\n\nAssistant:'
        )
    return (
        "User: Extract the key insights and learnings from this note:\n\n"
        f'{content}\n\nFormat as bullet points starting with "- " and focus on actionable insights.\n\n'
        "Assistant:"
    )


def build_collection_prompt(notes: Sequence[Note], title: str) -> str:
    combined = "\n\n---\n\n".join(f"## {n.title}\n{n.content}" for n in notes)
    return (
        f'User: Create a comprehensive summary of these {len(notes)} related notes about "{title}":\n\n'
        f"{combined}\n\n"
        "Provide a cohesive summary that synthesizes the information across all notes.\n\n"
        "Assistant:"
    )


def build_tagging_prompt(note: Note, vocabulary: Sequence[str]) -> str:
    existing = ", ".join(vocabulary) if vocabulary else "(none)"
    return (
        "System: You are a tagging assistant. Analyze the note content and suggest relevant tags.\n"
        "Prefer tags that already exist in the system for consistency.\n"
        "Return only a comma-separated list of tags, nothing else.\n\n"
        f"User: Note content:\n{_note_text(note)}\n\n"
        f"Existing tags in the system: {existing}\n\n"
        "Suggest 3-5 relevant tags for this note:\n\nAssistant:"
    )


__all__ = [
    "CHARS_PER_TOKEN",
    "NO_CONTEXT_ANSWER",
    "SUMMARY_STYLES",
    "build_collection_prompt",
    "build_prompt",
    "build_summary_prompt",
    "build_tagging_prompt",
    "pack_context",
]
