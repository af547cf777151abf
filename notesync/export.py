from __future__ import annotations

import html
import io
import re
import zipfile
from datetime import date
from typing import Iterable, Mapping

import markdown

from notesync.models import Folder, Note
from notesync.paths import NOTE_EXTENSION, note_path, sanitize_segment

_WIKILINK_RE = re.compile(r"\[\[([^\]]+)\]\]")
_TASK_RE = re.compile(r"<li>\[([ x])\]\s?")

HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
  <style>
    body {{ font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; max-width: 800px; margin: 0 auto; padding: 2rem; color: #333; }}
    h1 {{ border-bottom: 1px solid #eaeaea; padding-bottom: 0.5rem; }}
    blockquote {{ border-left: 4px solid #ddd; padding-left: 1rem; color: #666; margin: 1rem 0; }}
    code {{ background: #f4f4f4; padding: 0.2rem 0.4rem; border-radius: 4px; font-family: monospace; }}
    img {{ max-width: 100%; height: auto; }}
    .task {{ list-style: none; }}
    .task.done {{ text-decoration: line-through; color: #888; }}
  </style>
</head>
<body>
  <h1>{title}</h1>
{body}
</body>
</html>
"""


def export_filename(note: Note, ext: str = NOTE_EXTENSION) -> str:
    return sanitize_segment(note.title) + ext


def render_markdown(text: str) -> str:
    text = _WIKILINK_RE.sub(lambda m: f"<em>{html.escape(m.group(1))}</em>", text)
    body = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists", "nl2br"])

    def _task(m: re.Match) -> str:
        if m.group(1) == "x":
            return '<li class="task done"><input type="checkbox" checked disabled> '
        return '<li class="task"><input type="checkbox" disabled> '

    return _TASK_RE.sub(_task, body)


def note_to_markdown(note: Note) -> str:
    return note.content


def note_to_html(note: Note) -> str:
    title = html.escape(note.title or "Untitled")
    return HTML_TEMPLATE.format(title=title, body=render_markdown(note.content))


def export_zip(notes: Iterable[Note], folders: Iterable[Folder] | Mapping[str, Folder]) -> bytes:
    """All live notes in a zip archive laid out by their remote paths."""
    folder_map = folders if isinstance(folders, Mapping) else {f.id: f for f in folders}
    buf = io.BytesIO()
    written: set[str] = set()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for note in notes:
            if note.deleted_at is not None:
                continue
            arcname = note_path(note.title, note.folder_id, folder_map)
            if arcname.lower() in written:
                # same resolved path twice: keep both in the archive
                stem = arcname[: -len(NOTE_EXTENSION)]
                arcname = f"{stem} ({note.id}){NOTE_EXTENSION}"
            written.add(arcname.lower())
            zf.writestr(arcname, note.content)
    return buf.getvalue()


def backup_filename(today: date | None = None) -> str:
    return f"notesync_backup_{(today or date.today()).isoformat()}.zip"
