import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from notesync.models import Folder, Note, RenameOperation, now_ms
from notesync.paths import NOTE_EXTENSION, SEPARATOR, folder_path, note_path, path_key, split_note_path

from .client import content_hash


@dataclass
class SyncResult:
    notes: list[Note]
    folders: list[Folder]
    sync_log: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)


def new_summary() -> dict[str, Any]:
    return {
        "renamed": 0,
        "rename_missing": 0,
        "deleted": 0,
        "delete_missing": 0,
        "uploaded": 0,
        "path_collisions": 0,
        "remote_files": 0,
        "remote_folders": 0,
        "folders_created": 0,
        "pulled_created": 0,
        "pulled_updated": 0,
        "removed_local": 0,
    }


class SyncEngine:
    """One sync round against a snapshot of the local tables.

    Phases run in a fixed order: token check, queued renames, queued deletes,
    uploads of unsynced notes, then a pull of the remote tree. Every phase is
    safe to repeat after a failure. The engine never touches the live store;
    it returns the merged tables and the caller decides whether to adopt them.
    """

    def __init__(self, client, log_func: Optional[Callable[..., None]] = None, clock: Callable[[], int] = now_ms):
        self.client = client
        self.log_func = log_func
        self.clock = clock

    def _log(self, level: str, module: str, message: str, detail: Optional[str] = None):
        if self.log_func:
            self.log_func(level, module, message, detail)

    def _record(self, sync_log: list, op: str, path: str, **extra: Any) -> None:
        sync_log.append({"op": op, "path": path, "at": self.clock(), **extra})

    def sync(
        self,
        auth,
        notes: Iterable[Note],
        folders: Iterable[Folder],
        deleted_paths: Iterable[str],
        renames: Iterable[RenameOperation],
        unsynced_ids: Iterable[str],
    ) -> SyncResult:
        notes_by_id: dict[str, Note] = {n.id: n.model_copy() for n in notes}
        folders_by_id: dict[str, Folder] = {f.id: f.model_copy() for f in folders}
        pending = set(unsynced_ids)
        sync_log: list[dict[str, Any]] = []
        summary = new_summary()

        auth.ensure_access_token()

        self._apply_renames(list(renames), sync_log, summary)
        self._apply_deletes(list(deleted_paths), sync_log, summary)
        uploaded = self._upload_pending(notes_by_id, folders_by_id, pending, sync_log, summary)
        self._pull_remote(notes_by_id, folders_by_id, pending, uploaded, sync_log, summary)

        self._log("INFO", "sync", "sync_round_done", json.dumps(summary, ensure_ascii=False))
        return SyncResult(
            notes=list(notes_by_id.values()),
            folders=list(folders_by_id.values()),
            sync_log=sync_log,
            summary=summary,
        )

    def _apply_renames(self, renames: list[RenameOperation], sync_log: list, summary: dict) -> None:
        for op in renames:
            outcome = self.client.move(op.source, op.target)
            if outcome == "missing":
                summary["rename_missing"] += 1
                self._log("INFO", "sync", "rename_source_missing", json.dumps(op.to_record(), ensure_ascii=False))
            else:
                summary["renamed"] += 1
            self._record(sync_log, "rename", op.target, source=op.source, outcome=outcome)

    def _apply_deletes(self, deleted_paths: list[str], sync_log: list, summary: dict) -> None:
        for path in deleted_paths:
            existed = self.client.delete(path)
            if existed:
                summary["deleted"] += 1
            else:
                summary["delete_missing"] += 1
            self._record(sync_log, "delete", path, existed=existed)

    def _upload_pending(
        self,
        notes_by_id: dict[str, Note],
        folders_by_id: dict[str, Folder],
        pending: set[str],
        sync_log: list,
        summary: dict,
    ) -> dict[str, str]:
        """Upload every pending note; returns path key -> note id."""
        uploaded: dict[str, str] = {}
        for note in notes_by_id.values():
            if note.id not in pending:
                continue
            path = note_path(note.title, note.folder_id, folders_by_id)
            key = path_key(path)
            if key in uploaded:
                summary["path_collisions"] += 1
                self._log(
                    "WARN",
                    "sync",
                    "path_collision",
                    json.dumps({"path": path, "kept": note.id, "overwritten": uploaded[key]}, ensure_ascii=False),
                )
            self.client.upload(path, note.content)
            uploaded[key] = note.id
            summary["uploaded"] += 1
            self._record(sync_log, "upload", path, note_id=note.id)
        return uploaded

    def _ensure_local_folder(
        self,
        parts: list[str],
        folders_by_id: dict[str, Folder],
        folder_index: dict[str, str],
        sync_log: list,
        summary: dict,
    ) -> Optional[str]:
        parent_id: Optional[str] = None
        for depth in range(1, len(parts) + 1):
            rel = SEPARATOR.join(parts[:depth])
            key = path_key(rel)
            existing = folder_index.get(key)
            if existing:
                parent_id = existing
                continue
            folder = Folder(name=parts[depth - 1], parent_id=parent_id, created_at=self.clock())
            folders_by_id[folder.id] = folder
            folder_index[key] = folder.id
            parent_id = folder.id
            summary["folders_created"] += 1
            self._record(sync_log, "create", rel, kind="folder", folder_id=folder.id)
        return parent_id

    def _local_note_index(self, notes_by_id: dict[str, Note], folders_by_id: dict[str, Folder], summary: dict):
        index: dict[str, Note] = {}
        for note in notes_by_id.values():
            key = path_key(note_path(note.title, note.folder_id, folders_by_id))
            other = index.get(key)
            if other is not None:
                summary["path_collisions"] += 1
                self._log(
                    "WARN",
                    "sync",
                    "path_collision",
                    json.dumps({"path": key, "notes": [other.id, note.id]}, ensure_ascii=False),
                )
                # the most recently edited note owns the path
                if (other.deleted_at is None, other.updated_at) >= (note.deleted_at is None, note.updated_at):
                    continue
            index[key] = note
        return index

    def _pull_remote(
        self,
        notes_by_id: dict[str, Note],
        folders_by_id: dict[str, Folder],
        pending: set[str],
        uploaded: dict[str, str],
        sync_log: list,
        summary: dict,
    ) -> None:
        remote_files, remote_folders = self.client.list_tree()
        summary["remote_files"] = len(remote_files)
        summary["remote_folders"] = len(remote_folders)

        folder_index: dict[str, str] = {}
        for folder in folders_by_id.values():
            folder_index.setdefault(path_key(folder_path(folder.id, folders_by_id)), folder.id)

        for rel in remote_folders:
            parts = [p for p in rel.split(SEPARATOR) if p]
            self._ensure_local_folder(parts, folders_by_id, folder_index, sync_log, summary)

        local_index = self._local_note_index(notes_by_id, folders_by_id, summary)
        seen: set[str] = set()

        for item in remote_files:
            path = item["path"]
            if not path.lower().endswith(NOTE_EXTENSION):
                continue
            key = path_key(path)
            seen.add(key)
            if key in uploaded:
                continue

            remote_mtime = int(item.get("server_modified") or 0)
            local = local_index.get(key)
            if local is None:
                folder_parts, title = split_note_path(path)
                folder_id = self._ensure_local_folder(folder_parts, folders_by_id, folder_index, sync_log, summary)
                content = self.client.download(path)
                ts = remote_mtime or self.clock()
                note = Note(folder_id=folder_id, title=title, content=content, created_at=ts, updated_at=ts)
                notes_by_id[note.id] = note
                local_index[key] = note
                summary["pulled_created"] += 1
                self._record(sync_log, "create", path, kind="note", note_id=note.id)
                continue

            if local.id in pending or remote_mtime <= local.updated_at:
                continue
            if item.get("content_hash") and item["content_hash"] == content_hash(local.content):
                continue

            content = self.client.download(path)
            notes_by_id[local.id] = local.model_copy(update={"content": content, "updated_at": remote_mtime})
            local_index[key] = notes_by_id[local.id]
            summary["pulled_updated"] += 1
            self._record(sync_log, "update", path, note_id=local.id)

        for note in list(notes_by_id.values()):
            if note.id in pending:
                continue
            path = note_path(note.title, note.folder_id, folders_by_id)
            if path_key(path) in seen:
                continue
            del notes_by_id[note.id]
            summary["removed_local"] += 1
            self._record(sync_log, "remove", path, note_id=note.id)
