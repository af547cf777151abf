from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable

from notesync.daily import format_date, process_template
from notesync.models import Folder, Note, RenameOperation, now_ms
from notesync.paths import folder_path, note_path
from notesync.queues import DeletionQueue, RenameQueue
from notesync.tasks import toggle_task_line

logger = logging.getLogger("store")

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_RETENTION_DAYS = 30

_UNSET: Any = object()


@dataclass
class StoreSnapshot:
    notes: list[Note]
    folders: list[Folder]
    renames: list[RenameOperation]
    deleted_paths: list[str]
    unsynced_ids: set[str]
    taken_at: int = field(default_factory=now_ms)


class LocalStore:
    """In-memory note/folder tables plus the pending-sync ledgers.

    Every mutation that changes a resolved remote path enqueues a rename,
    every permanent removal enqueues a remote delete, and every content change
    marks the note unsynced.
    """

    def __init__(
        self,
        notes: Iterable[Note] | None = None,
        folders: Iterable[Folder] | None = None,
        renames: Iterable[RenameOperation | dict] | None = None,
        deleted_paths: Iterable[str] | None = None,
        unsynced_ids: Iterable[str] | None = None,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], int] = now_ms,
    ):
        self.notes: dict[str, Note] = {n.id: n for n in notes or []}
        self.folders: dict[str, Folder] = {f.id: f for f in folders or []}
        self.renames = RenameQueue(renames)
        self.deleted_paths = DeletionQueue(deleted_paths)
        self.unsynced_ids: set[str] = set(unsynced_ids or [])
        self.retention_ms = int(retention_days) * DAY_MS
        self.open_views: list[str | None] = [None, None]
        self._clock = clock
        self._edit_listeners: list[Callable[[], None]] = []

        # edit journal since the last snapshot
        self._touched_notes: set[str] = set()
        self._touched_folders: set[str] = set()
        self._removed_notes: set[str] = set()
        self._removed_folders: set[str] = set()

    # -- plumbing ---------------------------------------------------------

    def add_edit_listener(self, listener: Callable[[], None]) -> None:
        self._edit_listeners.append(listener)

    def _edited(self) -> None:
        for listener in self._edit_listeners:
            listener()

    def _touch_note(self, note_id: str, unsynced: bool = True) -> None:
        self._touched_notes.add(note_id)
        if unsynced:
            self.unsynced_ids.add(note_id)

    def _remove_note(self, note_id: str) -> None:
        self.notes.pop(note_id, None)
        self.unsynced_ids.discard(note_id)
        self._touched_notes.discard(note_id)
        self._removed_notes.add(note_id)
        self._close_views([note_id])

    def _remove_folder(self, folder_id: str) -> None:
        self.folders.pop(folder_id, None)
        self._touched_folders.discard(folder_id)
        self._removed_folders.add(folder_id)

    def _close_views(self, note_ids: Iterable[str]) -> None:
        gone = set(note_ids)
        self.open_views = [None if v in gone else v for v in self.open_views]

    def get_note(self, note_id: str) -> Note:
        note = self.notes.get(note_id)
        if note is None:
            raise KeyError(f"note_not_found: {note_id}")
        return note

    def get_folder(self, folder_id: str) -> Folder:
        folder = self.folders.get(folder_id)
        if folder is None:
            raise KeyError(f"folder_not_found: {folder_id}")
        return folder

    def live_notes(self) -> list[Note]:
        return [n for n in self.notes.values() if n.deleted_at is None]

    def live_folders(self) -> list[Folder]:
        return [f for f in self.folders.values() if f.deleted_at is None]

    def trashed_notes(self) -> list[Note]:
        return [n for n in self.notes.values() if n.deleted_at is not None]

    def trashed_folders(self) -> list[Folder]:
        return [f for f in self.folders.values() if f.deleted_at is not None]

    def path_of(self, note: Note) -> str:
        return note_path(note.title, note.folder_id, self.folders)

    def open_note(self, note_id: str, pane: int = 0) -> None:
        self.get_note(note_id)
        self.open_views[pane] = note_id

    def descendant_folder_ids(self, folder_id: str) -> list[str]:
        children: dict[str | None, list[str]] = {}
        for f in self.folders.values():
            children.setdefault(f.parent_id, []).append(f.id)

        out: list[str] = []
        seen = {folder_id}
        stack = list(children.get(folder_id, []))
        while stack:
            fid = stack.pop()
            if fid in seen:
                continue
            seen.add(fid)
            out.append(fid)
            stack.extend(children.get(fid, []))
        return out

    def _notes_in(self, folder_ids: Iterable[str]) -> list[Note]:
        wanted = set(folder_ids)
        return [n for n in self.notes.values() if n.folder_id is not None and n.folder_id in wanted]

    # -- notes ------------------------------------------------------------

    def create_note(self, title: str = "", content: str = "", folder_id: str | None = None) -> Note:
        ts = self._clock()
        note = Note(folder_id=folder_id, title=title, content=content, created_at=ts, updated_at=ts)
        self.notes = {note.id: note, **self.notes}
        self._touch_note(note.id)
        self._edited()
        logger.debug("note_created id=%s", note.id)
        return note

    def update_note(
        self,
        note_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        folder_id: str | None = _UNSET,
    ) -> Note:
        old = self.get_note(note_id)
        new_title = old.title if title is None else title
        new_folder_id = old.folder_id if folder_id is _UNSET else folder_id
        if new_folder_id is not None and new_folder_id not in self.folders:
            raise KeyError(f"folder_not_found: {new_folder_id}")

        if new_title != old.title or new_folder_id != old.folder_id:
            old_path = note_path(old.title, old.folder_id, self.folders)
            new_path = note_path(new_title, new_folder_id, self.folders)
            if old_path != new_path:
                self.renames.queue_rename(old_path, new_path)

        updates: dict[str, Any] = {"title": new_title, "folder_id": new_folder_id, "updated_at": self._clock()}
        if content is not None:
            updates["content"] = content
        note = old.model_copy(update=updates)
        self.notes[note_id] = note
        self._touch_note(note_id)
        self._edited()
        return note

    def move_note(self, note_id: str, folder_id: str | None) -> Note:
        return self.update_note(note_id, folder_id=folder_id)

    def soft_delete_note(self, note_id: str) -> Note:
        ts = self._clock()
        note = self.get_note(note_id).model_copy(update={"deleted_at": ts, "updated_at": ts})
        self.notes[note_id] = note
        self._touch_note(note_id, unsynced=False)
        self._close_views([note_id])
        return note

    def restore_note(self, note_id: str) -> Note:
        note = self.get_note(note_id).model_copy(update={"deleted_at": None, "updated_at": self._clock()})
        self.notes[note_id] = note
        self._touch_note(note_id, unsynced=False)
        self._restore_ancestors(note.folder_id)
        return note

    def permanent_delete_note(self, note_id: str) -> str:
        note = self.get_note(note_id)
        path = note_path(note.title, note.folder_id, self.folders)
        self.deleted_paths.append(path)
        self._remove_note(note_id)
        logger.info("note_purged id=%s path=%s", note_id, path)
        return path

    # -- folders ----------------------------------------------------------

    def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        if parent_id is not None and parent_id not in self.folders:
            raise KeyError(f"folder_not_found: {parent_id}")
        folder = Folder(name=name, parent_id=parent_id, created_at=self._clock())
        self.folders[folder.id] = folder
        self._touched_folders.add(folder.id)
        return folder

    def rename_folder(self, folder_id: str, name: str) -> Folder:
        folder = self.get_folder(folder_id)
        if not name or name == folder.name:
            return folder

        old_path = folder_path(folder_id, self.folders)
        renamed = folder.model_copy(update={"name": name})
        simulated = {**self.folders, folder_id: renamed}
        new_path = folder_path(folder_id, simulated)
        if old_path != new_path:
            self.renames.queue_rename(old_path, new_path)

        self.folders[folder_id] = renamed
        self._touched_folders.add(folder_id)
        return renamed

    def is_descendant(self, candidate_id: str | None, ancestor_id: str) -> bool:
        seen: set[str] = set()
        current = candidate_id
        while current and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            parent = self.folders.get(current)
            current = parent.parent_id if parent else None
        return False

    def move_folder(self, folder_id: str, parent_id: str | None) -> Folder:
        folder = self.get_folder(folder_id)
        if parent_id == folder_id or (parent_id and self.is_descendant(parent_id, folder_id)):
            raise ValueError("folder_cycle: cannot move a folder into its own descendant")
        if parent_id is not None and parent_id not in self.folders:
            raise KeyError(f"folder_not_found: {parent_id}")

        old_path = folder_path(folder_id, self.folders)
        moved = folder.model_copy(update={"parent_id": parent_id})
        new_path = folder_path(folder_id, {**self.folders, folder_id: moved})
        if old_path != new_path:
            self.renames.queue_rename(old_path, new_path)

        self.folders[folder_id] = moved
        self._touched_folders.add(folder_id)
        return moved

    def soft_delete_folder(self, folder_id: str) -> list[str]:
        """Trash the folder, its descendants and their notes with one timestamp."""
        self.get_folder(folder_id)
        ts = self._clock()
        affected = [folder_id, *self.descendant_folder_ids(folder_id)]
        for fid in affected:
            self.folders[fid] = self.folders[fid].model_copy(update={"deleted_at": ts})
            self._touched_folders.add(fid)

        note_ids = []
        for note in self._notes_in(affected):
            self.notes[note.id] = note.model_copy(update={"deleted_at": ts, "updated_at": ts})
            self._touch_note(note.id, unsynced=False)
            note_ids.append(note.id)
        self._close_views(note_ids)
        return affected

    def _restore_ancestors(self, folder_id: str | None) -> list[str]:
        """Untrash the ancestors of a restored item, without their other contents."""
        restored: list[str] = []
        seen: set[str] = set()
        current = folder_id
        while current and current not in seen:
            seen.add(current)
            folder = self.folders.get(current)
            if folder is None:
                break
            if folder.deleted_at is not None:
                self.folders[current] = folder.model_copy(update={"deleted_at": None})
                self._touched_folders.add(current)
                restored.append(current)
            current = folder.parent_id
        return restored

    def restore_folder(self, folder_id: str) -> list[str]:
        self.get_folder(folder_id)
        ts = self._clock()
        affected = [folder_id, *self.descendant_folder_ids(folder_id)]
        for fid in affected:
            self.folders[fid] = self.folders[fid].model_copy(update={"deleted_at": None})
            self._touched_folders.add(fid)
        for note in self._notes_in(affected):
            self.notes[note.id] = note.model_copy(update={"deleted_at": None, "updated_at": ts})
            self._touch_note(note.id, unsynced=False)
        affected += self._restore_ancestors(self.folders[folder_id].parent_id)
        return affected

    def permanent_delete_folder(self, folder_id: str) -> str:
        self.get_folder(folder_id)
        affected = [folder_id, *self.descendant_folder_ids(folder_id)]
        # the remote delete is recursive, so the top path is enough
        path = folder_path(folder_id, self.folders)
        self.deleted_paths.append(path)

        for note in self._notes_in(affected):
            self._remove_note(note.id)
        for fid in affected:
            self._remove_folder(fid)
        logger.info("folder_purged id=%s path=%s folders=%s", folder_id, path, len(affected))
        return path

    # -- trash ------------------------------------------------------------

    def is_expired(self, deleted_at: int | None, now: int) -> bool:
        return deleted_at is not None and now - deleted_at > self.retention_ms

    def has_live_content(self, folder_id: str) -> bool:
        subtree = [folder_id, *self.descendant_folder_ids(folder_id)]
        if any(self.folders[fid].deleted_at is None for fid in subtree[1:]):
            return True
        return any(n.deleted_at is None for n in self._notes_in(subtree))

    def reap_expired(self, now: int | None = None) -> list[str]:
        """Permanently remove trash older than the retention window.

        Paths are resolved against the folder table as it is before anything
        is removed, then queued for remote deletion. A folder that still
        holds live notes or folders is kept, since the remote delete of its
        path is recursive.
        """
        now = self._clock() if now is None else now
        expired_notes = [n for n in self.notes.values() if self.is_expired(n.deleted_at, now)]
        expired_folders = [
            f for f in self.folders.values() if self.is_expired(f.deleted_at, now) and not self.has_live_content(f.id)
        ]
        if not expired_notes and not expired_folders:
            return []

        paths = [note_path(n.title, n.folder_id, self.folders) for n in expired_notes]
        paths += [folder_path(f.id, self.folders) for f in expired_folders]
        self.deleted_paths.extend(paths)

        for note in expired_notes:
            self._remove_note(note.id)
        for folder in expired_folders:
            self._remove_folder(folder.id)
        logger.info("trash_reaped notes=%s folders=%s", len(expired_notes), len(expired_folders))
        return paths

    # -- bookmarks --------------------------------------------------------

    def bookmarked_notes(self) -> list[Note]:
        marked = [n for n in self.notes.values() if n.is_bookmarked]
        return sorted(marked, key=lambda n: n.bookmark_order if n.bookmark_order is not None else 0)

    def _renumber_bookmarks(self, ordered: list[Note]) -> None:
        for rank, note in enumerate(ordered):
            self.notes[note.id] = self.notes[note.id].model_copy(update={"bookmark_order": rank})
            self._touched_notes.add(note.id)

    def toggle_bookmark(self, note_id: str) -> Note:
        note = self.get_note(note_id)
        ordered = [n for n in self.bookmarked_notes() if n.id != note_id]
        if note.is_bookmarked:
            self.notes[note_id] = note.model_copy(update={"is_bookmarked": False, "bookmark_order": None})
        else:
            self.notes[note_id] = note.model_copy(update={"is_bookmarked": True})
            ordered.append(self.notes[note_id])
        self._renumber_bookmarks(ordered)
        self._touched_notes.add(note_id)
        return self.notes[note_id]

    def reorder_bookmark(self, dragged_id: str, target_id: str) -> list[Note]:
        ordered = self.bookmarked_notes()
        ids = [n.id for n in ordered]
        if dragged_id not in ids or target_id not in ids or dragged_id == target_id:
            return ordered
        item = ordered.pop(ids.index(dragged_id))
        ordered.insert(ids.index(target_id), item)
        self._renumber_bookmarks(ordered)
        return self.bookmarked_notes()

    # -- links, daily notes, tasks ----------------------------------------

    def find_live_note(self, title: str, folder_id: Any = _UNSET) -> Note | None:
        for note in self.notes.values():
            if note.deleted_at is not None or note.title != title:
                continue
            if folder_id is _UNSET or note.folder_id == folder_id:
                return note
        return None

    def open_link(self, title: str, pane: int = 0) -> Note:
        """Follow a ``[[title]]`` link, creating the note when it does not exist."""
        note = self.find_live_note(title)
        if note is None:
            note = self.create_note(title=title, content=f"# {title}\n")
        self.open_note(note.id, pane)
        return note

    def refactor_links(self, old_title: str, new_title: str) -> list[str]:
        if old_title == new_title:
            return []
        pattern = re.compile(r"\[\[" + re.escape(old_title) + r"\]\]")
        replacement = f"[[{new_title}]]"
        changed: list[str] = []
        for note in list(self.notes.values()):
            if not pattern.search(note.content):
                continue
            content = pattern.sub(lambda _m: replacement, note.content)
            self.notes[note.id] = note.model_copy(update={"content": content, "updated_at": self._clock()})
            self._touch_note(note.id)
            changed.append(note.id)
        if changed:
            self._edited()
        return changed

    def open_daily_note(
        self,
        fmt: str = "YYYY-MM-DD",
        folder_id: str | None = None,
        template: str = "",
        today: date | None = None,
        pane: int = 0,
    ) -> Note:
        today = today or date.today()
        title = format_date(today, fmt)
        target_folder = folder_id if folder_id in self.folders else None
        note = self.find_live_note(title, target_folder)
        if note is None:
            note = self.create_note(
                title=title,
                content=process_template(template, title, today),
                folder_id=target_folder,
            )
        self.open_note(note.id, pane)
        return note

    def toggle_task(self, note_id: str, line_index: int) -> Note:
        note = self.get_note(note_id)
        content = toggle_task_line(note.content, line_index)
        if content == note.content:
            return note
        return self.update_note(note_id, content=content)

    # -- sync support -----------------------------------------------------

    def mark_all_unsynced(self) -> int:
        for note_id in self.notes:
            self.unsynced_ids.add(note_id)
        return len(self.notes)

    def snapshot(self) -> StoreSnapshot:
        snap = StoreSnapshot(
            notes=[n.model_copy() for n in self.notes.values()],
            folders=[f.model_copy() for f in self.folders.values()],
            renames=self.renames.operations(),
            deleted_paths=self.deleted_paths.paths(),
            unsynced_ids=set(self.unsynced_ids),
        )
        self._touched_notes.clear()
        self._touched_folders.clear()
        self._removed_notes.clear()
        self._removed_folders.clear()
        return snap

    def _renames_after(self, applied: list[RenameOperation]) -> RenameQueue:
        applied_by_source = {op.source: op.target for op in applied}
        current = self.renames.operations()
        remaining = RenameQueue()
        for op in current:
            done_to = applied_by_source.pop(op.source, None)
            if done_to is None:
                remaining.queue_rename(op.source, op.target)
            elif done_to != op.target:
                # renamed again while the first move was in flight
                remaining.queue_rename(done_to, op.target)
        for source, done_to in applied_by_source.items():
            # entry vanished mid-round: it was renamed back to its source
            remaining.queue_rename(done_to, source)
        return remaining

    def commit_sync(self, snapshot: StoreSnapshot, notes: Iterable[Note], folders: Iterable[Folder]) -> None:
        """Adopt a merged sync result, keeping local edits made during the round."""
        merged_notes = {n.id: n for n in notes}
        for note_id in self._removed_notes:
            merged_notes.pop(note_id, None)
        for note_id in self._touched_notes:
            if note_id in self.notes:
                merged_notes[note_id] = self.notes[note_id]

        merged_folders = {f.id: f for f in folders}
        for folder_id in self._removed_folders:
            merged_folders.pop(folder_id, None)
        for folder_id in self._touched_folders:
            if folder_id in self.folders:
                merged_folders[folder_id] = self.folders[folder_id]

        self.notes = merged_notes
        self.folders = merged_folders
        self.renames = self._renames_after(snapshot.renames)
        self.deleted_paths.drop_first(len(snapshot.deleted_paths))
        self.unsynced_ids = {
            nid for nid in self.unsynced_ids if nid not in snapshot.unsynced_ids or nid in self._touched_notes
        }
        self.unsynced_ids &= set(self.notes)
        self._close_views([v for v in self.open_views if v and v not in self.notes])

        self._touched_notes.clear()
        self._touched_folders.clear()
        self._removed_notes.clear()
        self._removed_folders.clear()

    # -- persistence ------------------------------------------------------

    def to_state(self) -> dict[str, Any]:
        return {
            "notes": [n.model_dump() for n in self.notes.values()],
            "folders": [f.model_dump() for f in self.folders.values()],
            "renames": self.renames.to_records(),
            "deleted_paths": self.deleted_paths.paths(),
            "unsynced_ids": sorted(self.unsynced_ids),
        }

    @classmethod
    def from_state(cls, state: dict[str, Any], **kwargs: Any) -> "LocalStore":
        return cls(
            notes=[Note.model_validate(n) for n in state.get("notes", [])],
            folders=[Folder.model_validate(f) for f in state.get("folders", [])],
            renames=state.get("renames", []),
            deleted_paths=state.get("deleted_paths", []),
            unsynced_ids=state.get("unsynced_ids", []),
            **kwargs,
        )
