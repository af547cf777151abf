from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from notesync import db
from notesync.core.config import AppConfig
from notesync.runtime import build_runtime
from notesync.store import LocalStore
from notesync.web import api as api_module


def _build_client() -> TestClient:
    app = FastAPI()
    app.include_router(api_module.router)
    return TestClient(app)


def _cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "notesync.db")
    cfg.logging.file = str(tmp_path / "runtime" / "notesync.log")
    cfg.auth.token_file = str(tmp_path / "runtime" / "tokens.json")
    return cfg


@pytest.fixture
def runtime(monkeypatch, tmp_path: Path):
    cfg = _cfg(tmp_path)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    monkeypatch.setattr(api_module, "load_config", lambda: cfg)
    rt = build_runtime(cfg, store=LocalStore())
    rt.service.history_path = tmp_path / "runtime" / "run_history.jsonl"
    db.init_db(cfg.database.path)
    api_module.set_runtime(rt)
    yield rt
    api_module.set_runtime(None)


def test_healthz_returns_alive():
    client = _build_client()
    resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_readyz_returns_200_when_checks_pass(monkeypatch, tmp_path: Path):
    cfg = _cfg(tmp_path)

    monkeypatch.setattr(api_module, "load_config", lambda: cfg)
    monkeypatch.setattr(
        api_module,
        "_scheduler_state_snapshot",
        lambda: {
            "running": True,
            "enabled": True,
            "poll_interval_sec": 300,
            "last_started_at": None,
            "last_finished_at": None,
            "next_run_at": None,
            "next_run_in_sec": None,
            "last_result": "success",
            "last_error": None,
            "run_count": 1,
            "skip_counts": {},
        },
    )

    client = _build_client()
    resp = client.get("/api/readyz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["checks"]["config_load"] is True
    assert payload["checks"]["database_parent_ready"] is True
    assert payload["checks"]["log_parent_ready"] is True
    assert payload["checks"]["scheduler_running"] is True
    assert "dropbox_not_connected" in payload["warnings"]
    assert payload["errors"] == []


def test_readyz_returns_503_when_config_load_fails(monkeypatch):
    def _raise_load_config():
        raise RuntimeError("boom")

    monkeypatch.setattr(api_module, "load_config", _raise_load_config)
    monkeypatch.setattr(api_module, "_scheduler_state_snapshot", lambda: {"running": False, "enabled": False})

    client = _build_client()
    resp = client.get("/api/readyz")
    assert resp.status_code == 503
    payload = resp.json()
    assert payload["ok"] is False
    assert payload["checks"]["config_load"] is False
    assert any("config_load_failed" in err for err in payload["errors"])


def test_note_lifecycle_over_http(runtime):
    client = _build_client()

    folder = client.post("/api/folders", json={"name": "Work"}).json()
    note = client.post("/api/notes", json={"title": "Foo", "content": "x", "folder_id": folder["id"]}).json()
    assert note["path"] == "Work/Foo.md"
    assert note["unsynced"] is True

    renamed = client.patch(f"/api/notes/{note['id']}", json={"title": "Bar"}).json()
    assert renamed["path"] == "Work/Bar.md"
    assert runtime.store.renames.to_records() == [{"from": "Work/Foo.md", "to": "Work/Bar.md"}]

    assert client.delete(f"/api/notes/{note['id']}").json()["deleted_at"] is not None
    assert client.get("/api/trash").json()["notes"][0]["id"] == note["id"]
    assert client.post(f"/api/notes/{note['id']}/restore").json()["deleted_at"] is None

    purged = client.delete(f"/api/notes/{note['id']}/purge").json()
    assert purged["queued_remote_delete"] == "Work/Bar.md"
    assert client.get(f"/api/notes/{note['id']}").status_code == 404


def test_folder_move_into_descendant_is_400(runtime):
    client = _build_client()
    parent = client.post("/api/folders", json={"name": "A"}).json()
    child = client.post("/api/folders", json={"name": "B", "parent_id": parent["id"]}).json()

    resp = client.patch(f"/api/folders/{parent['id']}", json={"parent_id": child["id"]})

    assert resp.status_code == 400


def test_folder_trash_cascades_and_purge_queues_top_path(runtime):
    client = _build_client()
    folder = client.post("/api/folders", json={"name": "Work"}).json()
    client.post("/api/notes", json={"title": "Foo", "folder_id": folder["id"]})

    client.delete(f"/api/folders/{folder['id']}")
    assert client.get("/api/notes").json()["count"] == 0
    assert client.get("/api/notes", params={"trashed": True}).json()["count"] == 1

    assert client.delete(f"/api/folders/{folder['id']}/purge").json()["queued_remote_delete"] == "Work"
    assert runtime.store.deleted_paths.paths() == ["Work"]


def test_sync_run_returns_409_while_busy(runtime):
    client = _build_client()
    sync_round = runtime.service.begin("manual")
    try:
        resp = client.post("/api/sync/run")
    finally:
        runtime.service.fail(sync_round, RuntimeError("test"))

    assert resp.status_code == 409
    assert resp.json()["detail"] == "sync_busy"


def test_trigger_while_disconnected_is_skipped(runtime):
    client = _build_client()

    assert client.post("/api/triggers/focus").json()["outcome"] == "skipped_disconnected"
    assert client.post("/api/triggers/visible", json={"visible": False}).json()["outcome"] == "ignored_hidden"


def test_auth_status_reports_disconnected(runtime):
    client = _build_client()
    payload = client.get("/api/auth/status").json()
    assert payload["connected"] is False
    assert payload["has_refresh_token"] is False


def test_export_note_as_markdown(runtime):
    client = _build_client()
    note = client.post("/api/notes", json={"title": "Foo", "content": "# hi"}).json()

    resp = client.get(f"/api/notes/{note['id']}/export", params={"format": "md"})

    assert resp.status_code == 200
    assert resp.text == "# hi"
    assert 'filename="Foo.md"' in resp.headers["content-disposition"]
    assert client.get(f"/api/notes/{note['id']}/export", params={"format": "pdf"}).status_code == 400
