import pytest

from notesync.exceptions import AuthError, NetworkError
from notesync.models import Folder, Note, RenameOperation
from notesync.paths import path_key
from notesync.providers.dropbox import SyncEngine, content_hash

NOW = 1_700_000_000_000


class _FakeAuth:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    def ensure_access_token(self):
        self.calls += 1
        if self.error:
            raise self.error
        return "token"


class _FakeRemote:
    """In-memory Dropbox tree keyed case-insensitively, like the real one."""

    def __init__(self, files: dict[str, tuple[str, int]] | None = None, folders: list[str] | None = None):
        self.files: dict[str, dict] = {}
        self.folders: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.clock = NOW
        for path, (content, mtime) in (files or {}).items():
            self._put(path, content, mtime)
        for folder in folders or []:
            self.folders[path_key(folder)] = folder

    def _put(self, path: str, content: str, mtime: int) -> None:
        self.files[path_key(path)] = {"path": path, "content": content, "mtime": mtime}
        parts = path.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            rel = "/".join(parts[:depth])
            self.folders.setdefault(path_key(rel), rel)

    def content(self, path: str) -> str:
        return self.files[path_key(path)]["content"]

    def list_tree(self):
        self.calls.append(("list_tree",))
        files = [
            {
                "path": f["path"],
                "name": f["path"].rsplit("/", 1)[-1],
                "server_modified": f["mtime"],
                "content_hash": content_hash(f["content"]),
                "size": len(f["content"]),
            }
            for f in self.files.values()
        ]
        folders = sorted(self.folders.values(), key=lambda p: (p.count("/"), p.lower()))
        return files, folders

    def download(self, path: str) -> str:
        self.calls.append(("download", path))
        return self.content(path)

    def upload(self, path: str, content: str):
        self.calls.append(("upload", path))
        self.clock += 1000
        self._put(path, content, self.clock)
        return {}

    def move(self, source: str, target: str) -> str:
        self.calls.append(("move", source, target))
        src_key, dst_key = path_key(source), path_key(target)
        if src_key in self.files:
            outcome = "replaced" if dst_key in self.files else "moved"
            src = self.files.pop(src_key)
            self._put(target, src["content"], src["mtime"])
            return outcome
        if src_key not in self.folders:
            return "missing"
        # folder move carries the whole subtree
        outcome = "replaced" if dst_key in self.folders else "moved"
        prefix = src_key + "/"
        for key in [k for k in self.folders if k == src_key or k.startswith(prefix)]:
            rel = self.folders.pop(key)[len(source) :]
            self.folders[path_key(target + rel)] = target + rel
        for key in [k for k in self.files if k.startswith(prefix)]:
            entry = self.files.pop(key)
            self._put(target + entry["path"][len(source) :], entry["content"], entry["mtime"])
        return outcome

    def delete(self, path: str) -> bool:
        self.calls.append(("delete", path))
        key = path_key(path)
        existed = key in self.files or key in self.folders
        self.files.pop(key, None)
        for k in [k for k in self.files if k.startswith(key + "/")]:
            del self.files[k]
        for k in [k for k in self.folders if k == key or k.startswith(key + "/")]:
            del self.folders[k]
        return existed


def _engine(remote: _FakeRemote) -> tuple[SyncEngine, list]:
    logs: list = []
    engine = SyncEngine(remote, log_func=lambda *args: logs.append(args), clock=lambda: NOW)
    return engine, logs


def _sync(engine, notes=(), folders=(), deleted=(), renames=(), unsynced=(), auth=None):
    return engine.sync(auth or _FakeAuth(), list(notes), list(folders), list(deleted), list(renames), list(unsynced))


def test_unsynced_note_is_uploaded_and_kept():
    remote = _FakeRemote()
    engine, _ = _engine(remote)
    note = Note(title="Hello", content="hi", updated_at=NOW)

    result = _sync(engine, notes=[note], unsynced=[note.id])

    assert remote.content("Hello.md") == "hi"
    assert [n.id for n in result.notes] == [note.id]
    assert result.summary["uploaded"] == 1
    assert result.summary["removed_local"] == 0
    assert result.sync_log[0]["op"] == "upload"


def test_phases_run_in_order():
    remote = _FakeRemote({"Old.md": ("x", NOW), "Trash.md": ("t", NOW)})
    engine, _ = _engine(remote)
    note = Note(title="New", content="x", updated_at=NOW)

    _sync(
        engine,
        notes=[note],
        deleted=["Trash.md"],
        renames=[RenameOperation(source="Old.md", target="New.md")],
        unsynced=[note.id],
    )

    assert [c[0] for c in remote.calls] == ["move", "delete", "upload", "list_tree"]


def test_applied_rename_keeps_note_and_content():
    remote = _FakeRemote({"A.md": ("body", NOW)})
    engine, _ = _engine(remote)
    note = Note(title="B", content="body", updated_at=NOW)

    result = _sync(engine, notes=[note], renames=[RenameOperation(source="A.md", target="B.md")])

    assert "a.md" not in remote.files
    assert remote.content("B.md") == "body"
    assert [n.id for n in result.notes] == [note.id]
    assert result.summary["renamed"] == 1


def test_rename_with_missing_source_is_skipped():
    remote = _FakeRemote({"B.md": ("body", NOW)})
    engine, logs = _engine(remote)
    note = Note(title="B", content="body", updated_at=NOW)

    result = _sync(engine, notes=[note], renames=[RenameOperation(source="A.md", target="B.md")])

    assert result.summary["rename_missing"] == 1
    assert result.summary["renamed"] == 0
    assert any(entry[2] == "rename_source_missing" for entry in logs)
    assert [n.id for n in result.notes] == [note.id]


def test_deletes_are_idempotent():
    remote = _FakeRemote({"Work/Foo.md": ("x", NOW)})
    engine, _ = _engine(remote)

    first = _sync(engine, deleted=["Work"])
    second = _sync(engine, deleted=["Work"])

    assert first.summary["deleted"] == 1
    assert second.summary["delete_missing"] == 1
    assert remote.files == {}


def test_pull_creates_nested_folders_and_note():
    remote = _FakeRemote({"Work/2024/Foo.md": ("remote body", NOW - 5000)})
    engine, _ = _engine(remote)

    result = _sync(engine)

    folders = {f.id: f for f in result.folders}
    assert sorted(f.name for f in folders.values()) == ["2024", "Work"]
    (note,) = result.notes
    assert note.title == "Foo"
    assert note.content == "remote body"
    assert note.updated_at == NOW - 5000
    year = folders[note.folder_id]
    assert year.name == "2024"
    assert folders[year.parent_id].name == "Work"
    assert result.summary["pulled_created"] == 1
    assert result.summary["folders_created"] == 2


def test_pull_reuses_existing_folder_case_insensitively():
    work = Folder(id="w", name="Work")
    remote = _FakeRemote({"work/Foo.md": ("x", NOW)})
    engine, _ = _engine(remote)

    result = _sync(engine, folders=[work])

    assert [f.id for f in result.folders] == ["w"]
    assert result.notes[0].folder_id == "w"


def test_newer_remote_content_replaces_synced_note():
    remote = _FakeRemote({"Foo.md": ("remote", NOW + 1000)})
    engine, _ = _engine(remote)
    note = Note(title="Foo", content="local", updated_at=NOW)

    result = _sync(engine, notes=[note])

    (pulled,) = result.notes
    assert pulled.id == note.id
    assert pulled.content == "remote"
    assert pulled.updated_at == NOW + 1000
    assert result.summary["pulled_updated"] == 1


def test_identical_hash_skips_download():
    remote = _FakeRemote({"Foo.md": ("same", NOW + 1000)})
    engine, _ = _engine(remote)
    note = Note(title="Foo", content="same", updated_at=NOW)

    result = _sync(engine, notes=[note])

    assert ("download", "Foo.md") not in remote.calls
    assert result.notes[0].updated_at == NOW
    assert result.summary["pulled_updated"] == 0


def test_older_remote_does_not_overwrite_local():
    remote = _FakeRemote({"Foo.md": ("remote", NOW - 1000)})
    engine, _ = _engine(remote)
    note = Note(title="Foo", content="local", updated_at=NOW)

    result = _sync(engine, notes=[note])

    assert result.notes[0].content == "local"


def test_synced_note_missing_remotely_is_removed():
    remote = _FakeRemote()
    engine, _ = _engine(remote)
    gone = Note(title="Gone", content="x", updated_at=NOW)
    trashed = Note(title="Binned", content="y", updated_at=NOW, deleted_at=NOW)

    result = _sync(engine, notes=[gone, trashed])

    assert result.notes == []
    assert result.summary["removed_local"] == 2


def test_trashed_note_still_present_remotely_is_not_duplicated():
    remote = _FakeRemote({"Binned.md": ("y", NOW + 1000)})
    engine, _ = _engine(remote)
    trashed = Note(title="Binned", content="y", updated_at=NOW, deleted_at=NOW)

    result = _sync(engine, notes=[trashed])

    assert [n.id for n in result.notes] == [trashed.id]
    assert result.summary["pulled_created"] == 0


def test_pending_note_survives_concurrent_remote_edit():
    remote = _FakeRemote({"Foo.md": ("remote", NOW + 99_000)})
    engine, _ = _engine(remote)
    note = Note(title="Foo", content="local", updated_at=NOW)

    result = _sync(engine, notes=[note], unsynced=[note.id])

    assert remote.content("Foo.md") == "local"
    assert result.notes[0].content == "local"


def test_path_collision_is_counted_and_logged():
    remote = _FakeRemote()
    engine, logs = _engine(remote)
    a = Note(title="Same", content="a", updated_at=NOW)
    b = Note(title="same", content="b", updated_at=NOW + 1)

    result = _sync(engine, notes=[a, b], unsynced=[a.id, b.id])

    assert result.summary["path_collisions"] >= 1
    assert any(entry[0] == "WARN" and entry[2] == "path_collision" for entry in logs)
    assert len(remote.files) == 1


def test_auth_failure_aborts_before_remote_calls():
    remote = _FakeRemote()
    engine, _ = _engine(remote)

    with pytest.raises(AuthError):
        _sync(engine, deleted=["x.md"], auth=_FakeAuth(AuthError("no_token")))
    assert remote.calls == []


def test_network_failure_propagates_from_phase():
    class _Offline(_FakeRemote):
        def delete(self, path):
            raise NetworkError("offline")

    engine, _ = _engine(_Offline())
    with pytest.raises(NetworkError):
        _sync(engine, deleted=["x.md"])


def test_input_notes_are_not_mutated():
    remote = _FakeRemote({"Foo.md": ("remote", NOW + 1000)})
    engine, _ = _engine(remote)
    note = Note(title="Foo", content="local", updated_at=NOW)

    _sync(engine, notes=[note])

    assert note.content == "local"


def test_folder_rename_moves_nested_notes_and_keeps_them_matched():
    remote = _FakeRemote({"Work/A.md": ("a", NOW), "Work/Sub/B.md": ("b", NOW)})
    engine, _ = _engine(remote)
    projects = Folder(id="p", name="Projects")
    sub = Folder(id="s", name="Sub", parent_id="p")
    a = Note(title="A", content="a", folder_id="p", updated_at=NOW)
    b = Note(title="B", content="b", folder_id="s", updated_at=NOW)

    result = _sync(
        engine,
        notes=[a, b],
        folders=[projects, sub],
        renames=[RenameOperation(source="Work", target="Projects")],
    )

    assert sorted(remote.files) == ["projects/a.md", "projects/sub/b.md"]
    assert "work" not in remote.folders
    assert sorted(n.id for n in result.notes) == sorted([a.id, b.id])
    assert sorted(f.id for f in result.folders) == ["p", "s"]
    assert result.summary["renamed"] == 1
    assert result.summary["pulled_created"] == 0
    assert result.summary["removed_local"] == 0
    assert result.summary["folders_created"] == 0
