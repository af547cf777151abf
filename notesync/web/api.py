from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response

from notesync.core.config import load_config
from notesync.exceptions import SyncError
from notesync.export import backup_filename, export_filename, export_zip, note_to_html, note_to_markdown
from notesync.models import Folder, Note
from notesync.runtime import Runtime, build_runtime
from notesync.service import SyncBusy, read_run_history
from notesync.tasks import collect_tasks

router = APIRouter(prefix="/api")

logger = logging.getLogger("web")

_runtime: Runtime | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(load_config())
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


def start_runtime() -> Runtime:
    runtime = get_runtime()
    runtime.scheduler.start()
    return runtime


async def stop_runtime() -> None:
    global _runtime
    if _runtime is None:
        return
    await _runtime.scheduler.stop()
    _runtime.service.persist()
    _runtime = None


def _scheduler_state_snapshot() -> dict[str, Any]:
    if _runtime is None:
        return {"running": False, "enabled": False}
    return _runtime.scheduler.snapshot()


def _saved(runtime: Runtime) -> None:
    runtime.service.persist()


def _not_found(e: KeyError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "not_found")


def _note_out(runtime: Runtime, note: Note) -> dict[str, Any]:
    return {**note.model_dump(), "path": runtime.store.path_of(note), "unsynced": note.id in runtime.store.unsynced_ids}


def _folder_out(folder: Folder) -> dict[str, Any]:
    return folder.model_dump()


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "database_parent_ready": False,
        "log_parent_ready": False,
        "scheduler_running": False,
        "auth_connected": False,
    }
    warnings: list[str] = []
    errors: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except OSError as e:
            errors.append(f"database_parent_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except OSError as e:
            errors.append(f"log_parent_unavailable: {e}")

        if _runtime is not None:
            checks["auth_connected"] = _runtime.auth.is_connected()
        if not checks["auth_connected"]:
            warnings.append("dropbox_not_connected")

    if scheduler.get("enabled") and not checks["scheduler_running"]:
        warnings.append("scheduler_enabled_but_not_running")

    ok = checks["config_load"] and checks["database_parent_ready"] and checks["log_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


# -- notes ------------------------------------------------------------------


@router.get("/notes")
async def list_notes(trashed: bool = False, folder_id: str | None = None):
    runtime = get_runtime()
    notes = runtime.store.trashed_notes() if trashed else runtime.store.live_notes()
    if folder_id is not None:
        notes = [n for n in notes if n.folder_id == folder_id]
    return {"count": len(notes), "items": [_note_out(runtime, n) for n in notes]}


@router.post("/notes")
async def create_note(payload: dict):
    runtime = get_runtime()
    try:
        note = runtime.store.create_note(
            title=str(payload.get("title", "")),
            content=str(payload.get("content", "")),
            folder_id=payload.get("folder_id"),
        )
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return _note_out(runtime, note)


@router.get("/notes/{note_id}")
async def get_note(note_id: str):
    runtime = get_runtime()
    try:
        return _note_out(runtime, runtime.store.get_note(note_id))
    except KeyError as e:
        raise _not_found(e) from e


@router.patch("/notes/{note_id}")
async def update_note(note_id: str, payload: dict):
    runtime = get_runtime()
    store = runtime.store
    kwargs: dict[str, Any] = {}
    if "title" in payload:
        kwargs["title"] = str(payload["title"])
    if "content" in payload:
        kwargs["content"] = str(payload["content"])
    if "folder_id" in payload:
        kwargs["folder_id"] = payload["folder_id"]
    try:
        old_title = store.get_note(note_id).title
        note = store.update_note(note_id, **kwargs)
    except KeyError as e:
        raise _not_found(e) from e
    relinked: list[str] = []
    if payload.get("refactor_links") and note.title != old_title:
        relinked = store.refactor_links(old_title, note.title)
    _saved(runtime)
    return {**_note_out(runtime, store.get_note(note_id)), "relinked": relinked}


@router.delete("/notes/{note_id}")
async def trash_note(note_id: str):
    runtime = get_runtime()
    try:
        note = runtime.store.soft_delete_note(note_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return _note_out(runtime, note)


@router.post("/notes/{note_id}/restore")
async def restore_note(note_id: str):
    runtime = get_runtime()
    try:
        note = runtime.store.restore_note(note_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return _note_out(runtime, note)


@router.delete("/notes/{note_id}/purge")
async def purge_note(note_id: str):
    runtime = get_runtime()
    try:
        path = runtime.store.permanent_delete_note(note_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return {"ok": True, "queued_remote_delete": path}


@router.post("/notes/{note_id}/bookmark")
async def toggle_bookmark(note_id: str):
    runtime = get_runtime()
    try:
        note = runtime.store.toggle_bookmark(note_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return _note_out(runtime, note)


@router.get("/bookmarks")
async def list_bookmarks():
    runtime = get_runtime()
    return {"items": [_note_out(runtime, n) for n in runtime.store.bookmarked_notes()]}


@router.post("/bookmarks/reorder")
async def reorder_bookmarks(payload: dict):
    runtime = get_runtime()
    ordered = runtime.store.reorder_bookmark(str(payload.get("dragged_id", "")), str(payload.get("target_id", "")))
    _saved(runtime)
    return {"items": [_note_out(runtime, n) for n in ordered]}


@router.post("/notes/{note_id}/tasks/{line_index}/toggle")
async def toggle_task(note_id: str, line_index: int):
    runtime = get_runtime()
    try:
        note = runtime.store.toggle_task(note_id, line_index)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return _note_out(runtime, note)


@router.get("/tasks")
async def list_tasks(include_done: bool = True):
    runtime = get_runtime()
    items = collect_tasks(runtime.store.live_notes(), include_done=include_done)
    return {"count": len(items), "items": [t.model_dump() for t in items]}


@router.post("/links/open")
async def open_link(payload: dict):
    title = str(payload.get("title", "")).strip()
    if not title:
        raise HTTPException(status_code=400, detail="link_title_missing")
    runtime = get_runtime()
    note = runtime.store.open_link(title, pane=int(payload.get("pane", 0)))
    _saved(runtime)
    return _note_out(runtime, note)


@router.post("/daily")
async def open_daily(payload: dict | None = None):
    payload = payload or {}
    runtime = get_runtime()
    note = runtime.store.open_daily_note(
        fmt=str(payload.get("format", "YYYY-MM-DD")),
        folder_id=payload.get("folder_id"),
        template=str(payload.get("template", "")),
    )
    _saved(runtime)
    return _note_out(runtime, note)


@router.get("/notes/{note_id}/export")
async def export_note(note_id: str, format: str = "md"):
    runtime = get_runtime()
    try:
        note = runtime.store.get_note(note_id)
    except KeyError as e:
        raise _not_found(e) from e
    if format == "html":
        return HTMLResponse(
            note_to_html(note),
            headers={"Content-Disposition": f'attachment; filename="{export_filename(note, ".html")}"'},
        )
    if format == "md":
        return PlainTextResponse(
            note_to_markdown(note),
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="{export_filename(note)}"'},
        )
    raise HTTPException(status_code=400, detail="unsupported_export_format")


@router.get("/export/zip")
async def export_all():
    runtime = get_runtime()
    data = export_zip(runtime.store.notes.values(), runtime.store.folders)
    return Response(
        content=data,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{backup_filename()}"'},
    )


# -- folders ----------------------------------------------------------------


@router.get("/folders")
async def list_folders(trashed: bool = False):
    runtime = get_runtime()
    folders = runtime.store.trashed_folders() if trashed else runtime.store.live_folders()
    return {"count": len(folders), "items": [_folder_out(f) for f in folders]}


@router.post("/folders")
async def create_folder(payload: dict):
    name = str(payload.get("name", "")).strip()
    if not name:
        raise HTTPException(status_code=400, detail="folder_name_missing")
    runtime = get_runtime()
    try:
        folder = runtime.store.create_folder(name, parent_id=payload.get("parent_id"))
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return _folder_out(folder)


@router.patch("/folders/{folder_id}")
async def update_folder(folder_id: str, payload: dict):
    runtime = get_runtime()
    try:
        if "name" in payload:
            runtime.store.rename_folder(folder_id, str(payload["name"]).strip())
        if "parent_id" in payload:
            runtime.store.move_folder(folder_id, payload["parent_id"])
        folder = runtime.store.get_folder(folder_id)
    except KeyError as e:
        raise _not_found(e) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    _saved(runtime)
    return _folder_out(folder)


@router.delete("/folders/{folder_id}")
async def trash_folder(folder_id: str):
    runtime = get_runtime()
    try:
        affected = runtime.store.soft_delete_folder(folder_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return {"ok": True, "folders": affected}


@router.post("/folders/{folder_id}/restore")
async def restore_folder(folder_id: str):
    runtime = get_runtime()
    try:
        affected = runtime.store.restore_folder(folder_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return {"ok": True, "folders": affected}


@router.delete("/folders/{folder_id}/purge")
async def purge_folder(folder_id: str):
    runtime = get_runtime()
    try:
        path = runtime.store.permanent_delete_folder(folder_id)
    except KeyError as e:
        raise _not_found(e) from e
    _saved(runtime)
    return {"ok": True, "queued_remote_delete": path}


@router.get("/trash")
async def list_trash():
    runtime = get_runtime()
    return {
        "notes": [_note_out(runtime, n) for n in runtime.store.trashed_notes()],
        "folders": [_folder_out(f) for f in runtime.store.trashed_folders()],
        "retention_days": runtime.cfg.sync.trash_retention_days,
    }


@router.post("/trash/sweep")
async def sweep_trash():
    runtime = get_runtime()
    paths = runtime.store.reap_expired()
    _saved(runtime)
    return {"ok": True, "queued_remote_deletes": paths}


# -- sync -------------------------------------------------------------------


@router.post("/sync/run")
async def run_sync():
    runtime = get_runtime()
    if runtime.scheduler.in_flight or runtime.service.busy:
        raise HTTPException(status_code=409, detail="sync_busy")
    try:
        return await runtime.service.run_async("manual_web")
    except SyncBusy as e:
        raise HTTPException(status_code=409, detail="sync_busy") from e


@router.get("/status/sync")
async def sync_status():
    runtime = get_runtime()
    return {"checked_at": _now_iso(), **runtime.service.state()}


@router.get("/status/scheduler")
def scheduler_status():
    return {
        "ok": True,
        "checked_at": _now_iso(),
        **_scheduler_state_snapshot(),
    }


@router.post("/triggers/visible")
async def trigger_visible(payload: dict | None = None):
    visible = bool((payload or {}).get("visible", True))
    outcome = get_runtime().scheduler.on_visibility_change(visible)
    return {"outcome": outcome or "ignored_hidden"}


@router.post("/triggers/focus")
async def trigger_focus():
    return {"outcome": get_runtime().scheduler.on_focus()}


# -- auth -------------------------------------------------------------------


@router.get("/auth/url")
def auth_url():
    try:
        auth = get_runtime().auth
        url = auth.begin_auth()
        return {"ok": True, "auth_url": url, "redirect_uri": auth.redirect_uri}
    except SyncError as e:
        return {"ok": False, "error": str(e)}


@router.get("/auth/callback")
def auth_callback(code: str = "", state: str | None = None, error: str | None = None):
    if error:
        return JSONResponse(status_code=400, content={"ok": False, "error": error})
    runtime = get_runtime()
    try:
        token_data = runtime.auth.complete_auth(code, state)
    except SyncError as e:
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
    return {
        "ok": True,
        "saved_to": runtime.cfg.auth.token_file,
        "expires_in": token_data.get("expires_in"),
        "created_at": token_data.get("created_at"),
        "has_access_token": bool(token_data.get("access_token")),
        "has_refresh_token": bool(token_data.get("refresh_token")),
    }


@router.post("/auth/refresh")
def auth_refresh(force: bool = True):
    runtime = get_runtime()
    try:
        token_data = runtime.auth.refresh(force=force)
    except SyncError as e:
        return {"ok": False, "error": str(e)}
    return {
        "ok": True,
        "saved_to": runtime.cfg.auth.token_file,
        "expires_in": token_data.get("expires_in"),
        "created_at": token_data.get("created_at"),
        "has_access_token": bool(token_data.get("access_token")),
        "has_refresh_token": bool(token_data.get("refresh_token")),
    }


@router.post("/auth/disconnect")
def auth_disconnect():
    get_runtime().auth.disconnect()
    return {"ok": True}


@router.get("/auth/status")
def auth_status():
    return get_runtime().auth.status()


@router.get("/history")
def get_history(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), 500)
    history_path = get_runtime().service.history_path
    items = read_run_history(limit=limit_sanitized, path=history_path)
    return {
        "path": str(history_path),
        "limit": limit_sanitized,
        "count": len(items),
        "items": items,
    }
