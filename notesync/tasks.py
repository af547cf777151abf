from __future__ import annotations

import re
from typing import Iterable

from pydantic import BaseModel

from notesync.models import Note

TASK_LINE_RE = re.compile(r"^(\s*)(-\s\[([ x])\]\s)(.*)")


class TaskItem(BaseModel):
    note_id: str
    line_index: int
    content: str
    is_checked: bool
    raw_content: str


def extract_tasks(note: Note) -> list[TaskItem]:
    if note.deleted_at is not None:
        return []
    out: list[TaskItem] = []
    for idx, line in enumerate(note.content.split("\n")):
        m = TASK_LINE_RE.match(line)
        if not m:
            continue
        out.append(
            TaskItem(
                note_id=note.id,
                line_index=idx,
                content=m.group(4).strip(),
                is_checked=m.group(3) == "x",
                raw_content=line,
            )
        )
    return out


def collect_tasks(notes: Iterable[Note], include_done: bool = True) -> list[TaskItem]:
    items: list[TaskItem] = []
    for note in notes:
        items.extend(t for t in extract_tasks(note) if include_done or not t.is_checked)
    return items


def toggle_task_line(content: str, line_index: int) -> str:
    lines = content.split("\n")
    if line_index < 0 or line_index >= len(lines):
        return content
    line = lines[line_index]
    m = TASK_LINE_RE.match(line)
    if not m:
        return content
    mark = "[ ]" if m.group(3) == "x" else "[x]"
    lines[line_index] = re.sub(r"\[([ x])\]", mark, line, count=1)
    return "\n".join(lines)
