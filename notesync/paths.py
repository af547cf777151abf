"""Remote path derivation for notes and folders.

Paths are relative to the configured remote root, use ``/`` as separator and
carry no leading slash, e.g. ``Work/2024/Foo.md``.
"""

from __future__ import annotations

import re
from typing import Iterable, Mapping

from notesync.models import Folder

SEPARATOR = "/"
NOTE_EXTENSION = ".md"
UNTITLED = "Untitled"

_UNSAFE_CHARS_RE = re.compile(r'[\\/<>:"|?*\x00-\x1f\x7f]')


def sanitize_segment(name: str) -> str:
    """Make a title or folder name usable as a single path segment."""
    cleaned = _UNSAFE_CHARS_RE.sub("_", name or "").strip().rstrip(".").strip()
    return cleaned or UNTITLED


def index_folders(folders: Iterable[Folder] | Mapping[str, Folder]) -> Mapping[str, Folder]:
    """Folders by id; a mapping is used as is, without copying."""
    if isinstance(folders, Mapping):
        return folders
    return {f.id: f for f in folders}


def folder_segments(folder_id: str | None, folders: Iterable[Folder] | Mapping[str, Folder]) -> list[str]:
    by_id = index_folders(folders)
    segments: list[str] = []
    seen: set[str] = set()
    current = folder_id
    while current and current not in seen:
        folder = by_id.get(current)
        if folder is None:
            # dangling ancestor: treat as root
            break
        seen.add(current)
        segments.append(sanitize_segment(folder.name))
        current = folder.parent_id
    segments.reverse()
    return segments


def folder_path(folder_id: str | None, folders: Iterable[Folder] | Mapping[str, Folder]) -> str:
    return SEPARATOR.join(folder_segments(folder_id, folders))


def note_path(title: str, folder_id: str | None, folders: Iterable[Folder] | Mapping[str, Folder]) -> str:
    segments = folder_segments(folder_id, folders)
    segments.append(sanitize_segment(title) + NOTE_EXTENSION)
    return SEPARATOR.join(segments)


def path_key(path: str) -> str:
    """Comparison key for remote paths; the remote store is case-insensitive."""
    return path.strip(SEPARATOR).lower()


def split_note_path(path: str) -> tuple[list[str], str]:
    """Split ``a/b/Title.md`` into (["a", "b"], "Title")."""
    parts = [p for p in path.strip(SEPARATOR).split(SEPARATOR) if p]
    if not parts:
        return [], UNTITLED
    name = parts[-1]
    if name.lower().endswith(NOTE_EXTENSION):
        name = name[: -len(NOTE_EXTENSION)]
    return parts[:-1], name
