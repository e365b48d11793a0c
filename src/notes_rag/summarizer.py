from __future__ import annotations

import math
import re
from typing import List, Optional

from .models import Note, NoteSummary, utcnow
from .query import SUMMARY_STYLES

WORDS_PER_MINUTE = 200

_BULLET_RE = re.compile(r"^\s*[-•*]\s+")
_HEADER_RE = re.compile(r"^#{1,3}\s+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_EMPHASIS_RE = re.compile(r"\*\*([^*]+)\*\*|\*([^*]+)\*")
_INSIGHT_RES = [
    re.compile(r"^(in conclusion|therefore|thus|hence|as a result)", re.I),
    re.compile(r"^(key takeaway|important|note that|remember)", re.I),
    re.compile(r"^(insight|learning|discovered|found that)", re.I),
]


def word_count(text: str) -> int:
    """Whitespace-separated token count."""
    return len(text.split())


def reading_time(words: int) -> int:
    """Minutes to read ``words`` words at ``WORDS_PER_MINUTE``."""
    return math.ceil(words / WORDS_PER_MINUTE)


def parse_key_points(text: str) -> List[str]:
    points = []
    for line in text.splitlines():
        if _BULLET_RE.match(line):
            point = _BULLET_RE.sub("", line).strip()
            if point:
                points.append(point)
    return points


def make_summary(note_id: str, style: str, text: str) -> NoteSummary:
    """
    Wrap generated text into a NoteSummary.

    ``word_count`` and ``reading_time`` depend only on ``text``; key points
    are the bullet lines for the bullet styles.
    """
    summary = text.strip()
    words = word_count(summary)
    key_points = parse_key_points(summary) if style in ("bullet-points", "key-insights") else []
    return NoteSummary(
        note_id=note_id,
        style=style,
        summary=summary,
        key_points=key_points,
        word_count=words,
        reading_time=reading_time(words),
        generated_at=utcnow(),
    )


def _unique(items: List[str], limit: int) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen[:limit]


class ExtractiveSummarizer:
    """
    Rule-based summaries for deployments without a generation backend.

    Picks sentences, paragraphs, headings and list items straight from the
    note; nothing is paraphrased.
    """

    def sentences(self, text: str) -> List[str]:
        flat = re.sub(r"\n+", " ", text)
        return [s.strip() for s in _SENTENCE_SPLIT_RE.split(flat) if len(s.strip()) > 20]

    def first_paragraph(self, text: str) -> Optional[str]:
        for paragraph in _PARAGRAPH_SPLIT_RE.split(text):
            if len(paragraph.strip()) > 50:
                return paragraph.strip()
        return None

    def key_paragraphs(self, text: str, count: int = 3) -> str:
        paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text) if len(p.strip()) > 50]
        if len(paragraphs) <= count:
            return "\n\n".join(paragraphs)
        picked = [paragraphs[0]]
        if count > 2:
            picked.append(paragraphs[len(paragraphs) // 2])
        picked.append(paragraphs[-1])
        return "\n\n".join(picked)

    def key_points(self, note: Note) -> List[str]:
        lines = note.content.splitlines()
        points = [_HEADER_RE.sub("", l).strip() for l in lines if _HEADER_RE.match(l)][:5]
        points += [_BULLET_RE.sub("", l).strip() for l in lines if _BULLET_RE.match(l)][:5]
        if len(points) < 3:
            points += self.sentences(note.content)[:3]
        return _unique(points, 5)

    def insights(self, note: Note) -> List[str]:
        found = []
        for line in note.content.splitlines():
            stripped = line.strip()
            if any(p.match(stripped) for p in _INSIGHT_RES):
                found.append(stripped)
        for match in _EMPHASIS_RE.finditer(note.content):
            found.append((match.group(1) or match.group(2)).strip())
        if not found:
            found = self.sentences(note.content)[:3]
        return _unique(found, 5)

    def summarize_text(self, note: Note, style: str) -> str:
        if style not in SUMMARY_STYLES:
            raise ValueError(f"Unknown summary style {style!r}")
        sentences = self.sentences(note.content)
        if not sentences:
            return note.title
        if style == "brief":
            return self.first_paragraph(note.content) or sentences[0]
        if style == "detailed":
            return self.key_paragraphs(note.content) or " ".join(sentences[:3])
        if style == "bullet-points":
            return "\n".join(f"- {p}" for p in self.key_points(note))
        return "\n".join(f"- {i}" for i in self.insights(note))

    def summarize(self, note: Note, style: str = "brief") -> NoteSummary:
        return make_summary(note.id, style, self.summarize_text(note, style))


__all__ = [
    "ExtractiveSummarizer",
    "WORDS_PER_MINUTE",
    "make_summary",
    "parse_key_points",
    "reading_time",
    "word_count",
]
