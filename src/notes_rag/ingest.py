from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from .models import Note, NoteEvent, NoteEventKind

LOG = logging.getLogger(__name__)

NoteListener = Callable[[NoteEvent], None]


class NoteSource(Protocol):
    """Read-only access to the host's notes."""

    def get_note(self, note_id: str) -> Optional[Note]: ...

    def list_notes(self) -> List[Note]: ...


class InMemoryNoteSource:
    """
    Note source fed by the host application.

    The host pushes notes in with ``upsert``/``delete``; subscribers receive a
    NoteEvent for every change, which is how the indexer learns about note
    lifecycle transitions.
    """

    def __init__(self, notes: Iterable[Note] = ()) -> None:
        self._notes: Dict[str, Note] = {n.id: n for n in notes}
        self._listeners: List[NoteListener] = []

    def get_note(self, note_id: str) -> Optional[Note]:
        return self._notes.get(note_id)

    def list_notes(self) -> List[Note]:
        return list(self._notes.values())

    def subscribe(self, listener: NoteListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def upsert(self, note: Note) -> NoteEvent:
        kind = NoteEventKind.UPDATED if note.id in self._notes else NoteEventKind.CREATED
        self._notes[note.id] = note
        return self._emit(NoteEvent(kind=kind, note_id=note.id, note=note))

    def delete(self, note_id: str) -> Optional[NoteEvent]:
        if self._notes.pop(note_id, None) is None:
            return None
        return self._emit(NoteEvent(kind=NoteEventKind.DELETED, note_id=note_id))

    def _emit(self, event: NoteEvent) -> NoteEvent:
        for listener in list(self._listeners):
            listener(event)
        return event


def load_markdown(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def iter_files(data_dir: Path) -> Iterable[Path]:
    for path in sorted(data_dir.rglob("*")):
        if path.is_file() and path.suffix.lower() in {".md", ".markdown"}:
            yield path


def _title_from_markdown(text: str, fallback: str) -> str:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip()
        if stripped:
            break
    return fallback


def _strip_title_line(text: str, title: str) -> str:
    lines = text.splitlines()
    if lines and lines[0].strip() == f"# {title}":
        return "\n".join(lines[1:]).lstrip("\n")
    return text


class MarkdownDirectorySource:
    """
    Treat every markdown file below ``data_dir`` as a note.

    The note id is the path relative to ``data_dir``, the notebook is the
    parent directory, and ``updated_at`` is the file's modification time.
    A leading ``# heading`` becomes the title. Tags are taken from a
    ``tags:`` line if one is present.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self._cache: Dict[str, Note] = {}

    def _load(self, path: Path) -> Note:
        rel = path.relative_to(self.data_dir).as_posix()
        text = load_markdown(path)
        title = _title_from_markdown(text, fallback=path.stem)
        content = _strip_title_line(text, title)
        tags: List[str] = []
        for line in content.splitlines():
            if line.lower().startswith("tags:"):
                tags = [t.strip().lstrip("#") for t in line[5:].split(",") if t.strip()]
                break
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        parent = path.parent.relative_to(self.data_dir).as_posix()
        return Note(
            id=rel,
            title=title,
            content=content,
            tags=tuple(tags),
            notebook="" if parent == "." else parent,
            updated_at=mtime,
        )

    def list_notes(self) -> List[Note]:
        if not self.data_dir.exists():
            LOG.warning("Data directory not found: %s", self.data_dir)
            return []

        notes: List[Note] = []
        for path in iter_files(self.data_dir):
            try:
                note = self._load(path)
            except (OSError, UnicodeDecodeError) as exc:
                LOG.warning("Failed to read %s: %s", path, exc)
                continue
            notes.append(note)
        self._cache = {n.id: n for n in notes}
        return notes

    def get_note(self, note_id: str) -> Optional[Note]:
        path = self.data_dir / note_id
        if not path.is_file():
            return None
        cached = self._cache.get(note_id)
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        if cached is not None and cached.updated_at == mtime:
            return cached
        note = self._load(path)
        self._cache[note_id] = note
        return note


def content_hash(note: Note) -> str:
    """Hash of every note field that influences stored chunks or their metadata."""
    h = hashlib.sha256()
    for part in (note.title, note.content, note.notebook, "\x1f".join(note.tags)):
        h.update(part.encode("utf-8"))
        h.update(b"\x1e")
    return h.hexdigest()


__all__ = [
    "InMemoryNoteSource",
    "MarkdownDirectorySource",
    "NoteSource",
    "content_hash",
    "iter_files",
    "load_markdown",
]
