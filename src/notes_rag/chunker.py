"""
Split notes into overlapping passages for embedding.

Chunks are contiguous spans of the note's composed text (title, blank line,
content), so ``offset``/``length`` always address the exact characters of a
chunk. Boundaries are chosen in order of preference: paragraph, sentence,
word, and only as a last resort a hard cut.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .models import Chunk, Note

_PARAGRAPH_RE = re.compile(r"(?:[^\n]|\n(?![ \t]*\n))+")
_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")
_WORD_START_RE = re.compile(r"\s+(?=\S)")
_SPACE_RE = re.compile(r"\s")

Span = Tuple[int, int]


def compose_text(note: Note) -> str:
    title = note.title.strip()
    if not title:
        return note.content
    if not note.content.strip():
        return title
    return f"{title}\n\n{note.content}"


def make_chunk_id(note_id: str, index: int) -> str:
    return f"{note_id}::{index}"


def _trim(text: str, start: int, end: int) -> Span:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _split_words(text: str, start: int, end: int, max_chars: int) -> List[Span]:
    pieces: List[Span] = []
    while end - start > max_chars:
        window = text[start : start + max_chars + 1]
        ws = max(window.rfind(" "), window.rfind("\n"), window.rfind("\t"))
        cut = start + ws if ws > 0 else start + max_chars
        s, e = _trim(text, start, cut)
        if e > s:
            pieces.append((s, e))
        start, end = _trim(text, cut, end)
    s, e = _trim(text, start, end)
    if e > s:
        pieces.append((s, e))
    return pieces


@dataclass(frozen=True)
class Chunker:
    max_chars: int = 512
    overlap: int = 128
    min_chunk_chars: int = 100

    def _units(self, text: str) -> List[Span]:
        # Units stay below max_chars - overlap so any boundary can carry
        # a full overlap into the next chunk.
        limit = self.max_chars - self.overlap
        units: List[Span] = []
        for para in _PARAGRAPH_RE.finditer(text):
            s, e = _trim(text, para.start(), para.end())
            if e <= s:
                continue
            if e - s <= limit:
                units.append((s, e))
                continue
            for sentence in _SENTENCE_RE.finditer(text, s, e):
                ss, se = _trim(text, sentence.start(), sentence.end())
                if se <= ss:
                    continue
                if se - ss <= limit:
                    units.append((ss, se))
                else:
                    units.extend(_split_words(text, ss, se, limit))
        return units

    def _overlap_start(self, text: str, prev_start: int, unit: Span, next_end: int) -> Optional[int]:
        """Start of the next chunk inside the previous chunk's last unit."""
        end = unit[1]
        earliest = max(end - self.overlap, next_end - self.max_chars, prev_start + 1)
        if earliest >= end:
            return None
        word = _WORD_START_RE.search(text, max(earliest - 1, 0), end)
        if word is not None and word.end() < end:
            return word.end()
        # Mid-word starts only for text with no word boundaries at all.
        if _SPACE_RE.search(text, unit[0], end) is None:
            return earliest
        return None

    def _pack(self, text: str, units: List[Span]) -> List[Span]:
        spans: List[Span] = []
        if not units:
            return spans
        i, start = 0, units[0][0]
        while i < len(units):
            j = i
            while j + 1 < len(units) and units[j + 1][1] - start <= self.max_chars:
                j += 1
            spans.append((start, units[j][1]))
            if j + 1 >= len(units):
                break

            # Carry trailing whole units into the next chunk while they fit
            # the overlap and leave room for the next unit.
            end = units[j][1]
            next_end = units[j + 1][1]
            carry = j + 1
            while (
                carry - 1 > i
                and end - units[carry - 1][0] <= self.overlap
                and next_end - units[carry - 1][0] <= self.max_chars
            ):
                carry -= 1
            if carry <= j:
                i, start = carry, units[carry][0]
                continue

            # Otherwise back up to a word boundary inside the last unit.
            i = j + 1
            partial = self._overlap_start(text, start, units[j], next_end)
            start = partial if partial is not None else units[i][0]
        return spans

    def chunk(self, note: Note) -> List[Chunk]:
        text = compose_text(note)
        return [
            Chunk(
                note_id=note.id,
                chunk_id=make_chunk_id(note.id, index),
                index=index,
                text=text[start:end],
                offset=start,
                length=end - start,
            )
            for index, (start, end) in enumerate(self._pack(text, self._units(text)))
        ]

    def estimate_chunk_count(self, note: Note) -> int:
        text = compose_text(note)
        if not text.strip():
            return 0
        return math.ceil(len(text) / (self.max_chars * 0.75))

    def validate_chunks(self, chunks: List[Chunk]) -> Tuple[bool, List[str]]:
        """Report chunks outside the configured size bounds."""
        issues: List[str] = []
        for chunk in chunks:
            if chunk.length > self.max_chars:
                issues.append(f"Chunk {chunk.chunk_id} exceeds max length ({chunk.length} chars)")
            # A lone short chunk is a short note, not a problem.
            if chunk.length < self.min_chunk_chars and len(chunks) > 1:
                issues.append(f"Chunk {chunk.chunk_id} is too small ({chunk.length} chars)")
        return not issues, issues


__all__ = ["Chunker", "compose_text", "make_chunk_id"]
