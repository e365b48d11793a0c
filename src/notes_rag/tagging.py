"""
Tag suggestion scoring.

Everything here is a pure function of its inputs. Suggestions come from three
sources, each producing ``TagSuggestion`` lists:

* ``lexical_tag_suggestions``: the note mentions a vocabulary tag, or a
  topic keyword from ``TOPIC_KEYWORDS``
* ``neighbor_tag_suggestions``: tags carried by the most similar indexed notes
* ``parse_model_tags``: a comma-separated tag list proposed by a model

``merge_tag_suggestions`` blends them into the final ranked list. Confidence
is always in [0, 1]; what threshold a host treats as "apply automatically" is
up to the host.
"""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from .models import Note, TagSuggestion

MENTION_CONFIDENCE = 0.95
MODEL_VOCAB_CONFIDENCE = 0.8
MODEL_NEW_CONFIDENCE = 0.7
MULTI_SOURCE_BOOST = 1.1
MAX_TAG_CHARS = 40

# Topic -> keywords that indicate it.
TOPIC_KEYWORDS: Mapping[str, Tuple[str, ...]] = {
    "api": ("api", "endpoint", "rest", "graphql", "swagger"),
    "database": ("database", "sql", "mongodb", "postgres", "mysql"),
    "frontend": ("frontend", "css", "html"),
    "backend": ("backend", "server"),
    "devops": ("docker", "kubernetes", "deployment"),
    "testing": ("testing", "pytest", "jest", "cypress", "playwright"),
    "security": ("security", "encryption", "oauth", "jwt"),
    "performance": ("performance", "optimization", "latency"),
    "architecture": ("architecture", "microservice", "microservices"),
    "documentation": ("documentation", "readme", "tutorial"),
}

_WORD_RE = re.compile(r"[a-z0-9]+")
_LIST_PREFIX_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def _words(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def normalize_tag(raw: str) -> str:
    """Canonical tag form: lowercase, no leading '#', words joined by '-'."""
    tag = _LIST_PREFIX_RE.sub("", raw).strip().strip("\"'`.").lstrip("#").strip()
    return "-".join(tag.lower().split())


def tag_key(tag: str) -> str:
    return normalize_tag(tag)


def lexical_tag_suggestions(
    note: Note,
    vocabulary: Iterable[str],
    topics: Mapping[str, Sequence[str]] = TOPIC_KEYWORDS,
) -> List[TagSuggestion]:
    """
    Score vocabulary tags and topic keywords against the note's words.

    A vocabulary tag whose words appear as a phrase in the note scores
    ``MENTION_CONFIDENCE``. A multi-word tag that only shares some words
    scores proportionally lower.
    """
    words = _words(f"{note.title} {note.content}")
    if not words:
        return []
    present = set(words)
    joined = f" {' '.join(words)} "

    out: List[TagSuggestion] = []
    for tag in vocabulary:
        tag_words = _words(tag)
        if not tag_words:
            continue
        if f" {' '.join(tag_words)} " in joined:
            out.append(TagSuggestion(tag, MENTION_CONFIDENCE, "Existing tag mentioned in content"))
            continue
        shared = sum(1 for w in set(tag_words) if w in present)
        if shared and len(tag_words) > 1:
            overlap = shared / len(set(tag_words))
            out.append(
                TagSuggestion(
                    tag,
                    round(0.9 * overlap, 4),
                    f"Shares {shared} of {len(set(tag_words))} words with existing tag",
                )
            )

    for topic, keywords in topics.items():
        matches = sum(1 for kw in keywords if kw in present)
        if matches:
            out.append(
                TagSuggestion(
                    topic,
                    round(min(0.95, 0.7 + 0.1 * matches), 4),
                    f"Topic keywords detected ({matches} matches)",
                )
            )
    return out


def neighbor_tag_suggestions(neighbors: Sequence[Tuple[float, Sequence[str]]]) -> List[TagSuggestion]:
    """
    Tags of similar notes, given as ``(similarity, tags)`` pairs.

    Confidence blends the best similarity of a note carrying the tag (70%)
    with the share of neighbors that carry it (30%).
    """
    if not neighbors:
        return []
    counts: Dict[str, int] = defaultdict(int)
    best: Dict[str, float] = defaultdict(float)
    display: Dict[str, str] = {}
    for score, tags in neighbors:
        for tag in {t for t in tags if t.strip()}:
            key = tag_key(tag)
            display.setdefault(key, tag)
            counts[key] += 1
            best[key] = max(best[key], score)

    return [
        TagSuggestion(
            display[key],
            round(min(1.0, 0.7 * best[key] + 0.3 * counts[key] / len(neighbors)), 4),
            f"Found in {counts[key]} similar notes",
        )
        for key in sorted(counts)
    ]


def parse_model_tags(text: str, vocabulary: Iterable[str]) -> List[TagSuggestion]:
    """Parse a model's comma/line separated tag list."""
    known = {tag_key(t): t for t in vocabulary}
    seen = set()
    out: List[TagSuggestion] = []
    for part in re.split(r"[,\n]", text):
        tag = normalize_tag(part)
        if not tag or len(tag) > MAX_TAG_CHARS or tag in seen:
            continue
        seen.add(tag)
        if tag in known:
            out.append(TagSuggestion(known[tag], MODEL_VOCAB_CONFIDENCE, "AI suggested"))
        else:
            out.append(TagSuggestion(tag, MODEL_NEW_CONFIDENCE, "AI suggested"))
    return out


def merge_tag_suggestions(
    sources: Mapping[str, Iterable[TagSuggestion]],
    existing_tags: Iterable[str] = (),
    max_tags: int = 5,
    min_confidence: float = 0.7,
) -> List[TagSuggestion]:
    """
    Blend suggestions from several sources into one ranked list.

    ``sources`` maps a source name (content, similar notes, model) to its
    suggestions. Suggestions for the same tag (compared case-insensitively)
    keep the highest confidence and join their reasons; a tag proposed by
    more than one source is boosted by ``MULTI_SOURCE_BOOST`` (capped at 1.0).
    Tags already on the note are dropped, then anything below
    ``min_confidence``. The result is sorted by descending confidence, then
    tag, and cut to ``max_tags``. Input order does not affect the output.
    """
    by_key: Dict[str, List[Tuple[str, TagSuggestion]]] = defaultdict(list)
    for source, suggestions in sources.items():
        for suggestion in suggestions:
            key = tag_key(suggestion.tag)
            if key:
                by_key[key].append((source, suggestion))

    taken = {tag_key(t) for t in existing_tags}
    merged: List[TagSuggestion] = []
    for key, items in by_key.items():
        if key in taken:
            continue
        items.sort(key=lambda item: (-item[1].confidence, item[1].tag, item[1].reason, item[0]))
        top = items[0][1]
        reasons: List[str] = []
        for _, item in items:
            if item.reason and item.reason not in reasons:
                reasons.append(item.reason)
        confidence = top.confidence
        if len({source for source, _ in items}) > 1:
            confidence *= MULTI_SOURCE_BOOST
        confidence = min(1.0, max(0.0, confidence))
        if confidence < min_confidence:
            continue
        merged.append(TagSuggestion(top.tag, round(confidence, 4), "; ".join(reasons)))

    merged.sort(key=lambda s: (-s.confidence, s.tag.lower()))
    return merged[: max(0, max_tags)]


def build_vocabulary(tags: Iterable[str]) -> Tuple[str, ...]:
    """Deduplicated (case-insensitively) and sorted tag vocabulary."""
    out: Dict[str, str] = {}
    for tag in tags:
        cleaned = tag.strip().lstrip("#").strip()
        if cleaned:
            out.setdefault(cleaned.lower(), cleaned)
    return tuple(sorted(out.values(), key=str.lower))


__all__ = [
    "MENTION_CONFIDENCE",
    "TOPIC_KEYWORDS",
    "build_vocabulary",
    "lexical_tag_suggestions",
    "merge_tag_suggestions",
    "neighbor_tag_suggestions",
    "normalize_tag",
    "parse_model_tags",
]
