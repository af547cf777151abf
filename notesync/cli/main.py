from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from notesync import db
from notesync.core.config import DEFAULT_CONFIG_PATH, RUNTIME_DIR, load_config, save_config
from notesync.exceptions import SyncError
from notesync.export import backup_filename, export_filename, export_zip, note_to_html, note_to_markdown
from notesync.runtime import build_auth, build_runtime, open_store
from notesync.service import SyncBusy
from notesync.tasks import collect_tasks

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _fail(error: str) -> None:
    _print_json({"ok": False, "error": error})
    raise typer.Exit(2)


def _open():
    cfg = load_config()
    from notesync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)
    return cfg, open_store(cfg)


def _save(cfg, store) -> None:
    db.save_state(cfg.database.path, store.to_state())


def _token_summary(cfg, token_data: dict) -> dict:
    return {
        "ok": True,
        "saved_to": cfg.auth.token_file,
        "expires_in": token_data.get("expires_in"),
        "created_at": token_data.get("created_at"),
        "has_access_token": bool(token_data.get("access_token")),
        "has_refresh_token": bool(token_data.get("refresh_token")),
    }


# -- config / status --------------------------------------------------------


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _print_json(cfg.model_dump())


@app.command("config-set-auth")
def config_set_auth(
    app_key: str = typer.Option(..., "--app-key", help="Dropbox app key"),
    redirect_uri: Optional[str] = typer.Option(None, "--redirect-uri", help="OAuth redirect URI registered for the app"),
    token_file: str = typer.Option(str(RUNTIME_DIR / "tokens.json"), "--token-file", help="Path for storing tokens"),
):
    """Set Dropbox app credentials for the PKCE flow."""
    cfg = load_config()
    cfg.auth.app_key = app_key
    if redirect_uri:
        cfg.auth.redirect_uri = redirect_uri
    cfg.auth.token_file = token_file
    save_config(cfg)
    _print_json(
        {
            "ok": True,
            "app_key_set": bool(cfg.auth.app_key),
            "redirect_uri": cfg.auth.redirect_uri,
            "token_file": cfg.auth.token_file,
        }
    )


@app.command()
def status():
    """Show configuration, connection and pending sync work."""
    cfg = load_config()
    store = open_store(cfg)
    auth = build_auth(cfg)
    auth_state = auth.status()
    runs = db.recent_sync_runs(cfg.database.path, limit=1)

    table = Table(title="notesync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("remote_root", cfg.sync.remote_root or "/")
    table.add_row("dropbox", "connected" if auth_state["connected"] else "disconnected")
    table.add_row("auto_sync", "on" if cfg.sync.auto_sync else "off")
    table.add_row("poll_interval_sec", str(cfg.sync.poll_interval_sec))
    table.add_row("notes", f"{len(store.live_notes())} live / {len(store.trashed_notes())} trashed")
    table.add_row("folders", f"{len(store.live_folders())} live / {len(store.trashed_folders())} trashed")
    table.add_row("pending_renames", str(len(store.renames)))
    table.add_row("pending_deletes", str(len(store.deleted_paths)))
    table.add_row("unsynced_notes", str(len(store.unsynced_ids)))
    table.add_row("last_run", f"{runs[0]['status']} at {runs[0]['finished_at'] or runs[0]['started_at']}" if runs else "-")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "app_key_configured": False,
            "redirect_uri_configured": False,
            "token_file_exists": False,
            "web_port_valid": False,
            "database_parent_ready": False,
            "log_parent_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    out["checks"]["app_key_configured"] = bool(cfg.auth.app_key)
    out["checks"]["redirect_uri_configured"] = bool(cfg.auth.redirect_uri)
    if not cfg.auth.app_key:
        out["warnings"].append("auth_incomplete: app_key not configured")

    token_path = Path(cfg.auth.token_file).expanduser()
    out["checks"]["token_file_exists"] = token_path.exists()
    if not token_path.exists():
        out["warnings"].append(f"token_file_missing: {token_path}")

    port = int(cfg.web_port)
    out["checks"]["web_port_valid"] = 1 <= port <= 65535
    if not out["checks"]["web_port_valid"]:
        out["errors"].append(f"web_port_out_of_range: {port}")

    if 0 < cfg.sync.poll_interval_sec < cfg.sync.min_interval_sec:
        out["warnings"].append(
            f"poll_interval_below_min_interval: {cfg.sync.poll_interval_sec} < {cfg.sync.min_interval_sec}"
        )

    try:
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["database_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"database_parent_unavailable: {e}")

    try:
        Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["log_parent_ready"] = True
    except OSError as e:
        out["errors"].append(f"log_parent_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


# -- auth -------------------------------------------------------------------


@app.command("auth-url")
def auth_url():
    """Start the PKCE flow and print the Dropbox authorization URL."""
    cfg = load_config()
    auth = build_auth(cfg)
    try:
        url = auth.begin_auth()
    except SyncError as e:
        _fail(str(e))
    _print_json({"ok": True, "auth_url": url, "redirect_uri": auth.redirect_uri, "token_file": cfg.auth.token_file})


@app.command("auth-exchange")
def auth_exchange(
    code: str = typer.Option(..., "--code", help="Authorization code returned by Dropbox."),
    state: Optional[str] = typer.Option(None, "--state", help="state returned with the code."),
):
    """Exchange an authorization code for tokens."""
    cfg = load_config()
    try:
        token_data = build_auth(cfg).complete_auth(code, state)
    except SyncError as e:
        _fail(str(e))
    _print_json(_token_summary(cfg, token_data))


@app.command("auth-refresh")
def auth_refresh(
    force: bool = typer.Option(
        True,
        "--force/--no-force",
        help="Force refresh even if current access token still looks valid.",
    ),
):
    """Refresh the access token using the refresh token."""
    cfg = load_config()
    try:
        token_data = build_auth(cfg).refresh(force=force)
    except SyncError as e:
        _fail(str(e))
    _print_json(_token_summary(cfg, token_data))


@app.command()
def disconnect():
    """Forget stored Dropbox tokens."""
    cfg = load_config()
    build_auth(cfg).disconnect()
    _print_json({"ok": True, "token_file": cfg.auth.token_file})


# -- sync -------------------------------------------------------------------


@app.command("run-once")
def run_once(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show pending work only, no remote calls."),
    run_type: str = typer.Option("manual_cli", "--run-type", help="sync run_type label."),
):
    """Run one sync round and print the summary JSON."""
    cfg, store = _open()

    if dry_run:
        _print_json(
            {
                "dry_run": True,
                "run_type": run_type,
                "checked_at": _now_iso(),
                "renames": store.renames.to_records(),
                "deleted_paths": store.deleted_paths.paths(),
                "unsynced": [store.path_of(store.notes[i]) for i in sorted(store.unsynced_ids) if i in store.notes],
            }
        )
        return

    runtime = build_runtime(cfg, store=store)
    try:
        summary = runtime.service.run_once(run_type)
    except SyncBusy:
        _fail("sync_busy")
    _print_json(summary)
    if summary.get("status") != "success":
        raise typer.Exit(2)


@app.command("trash-sweep")
def trash_sweep():
    """Permanently remove trash older than the retention window."""
    cfg, store = _open()
    paths = store.reap_expired()
    _save(cfg, store)
    _print_json({"ok": True, "queued_remote_deletes": paths})


# -- notes ------------------------------------------------------------------


@app.command()
def notes(
    trashed: bool = typer.Option(False, "--trashed", help="List the trash instead."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """List notes with their remote paths."""
    _cfg, store = _open()
    items = store.trashed_notes() if trashed else store.live_notes()
    if json_output:
        _print_json([{**n.model_dump(), "path": store.path_of(n)} for n in items])
        return

    table = Table(title="trash" if trashed else "notes")
    table.add_column("id")
    table.add_column("path")
    table.add_column("bookmark")
    table.add_column("unsynced")
    for note in items:
        table.add_row(
            note.id,
            store.path_of(note),
            "" if note.bookmark_order is None else str(note.bookmark_order),
            "yes" if note.id in store.unsynced_ids else "",
        )
    console.print(table)


@app.command("note-add")
def note_add(
    title: str = typer.Argument(...),
    content: str = typer.Option("", "--content"),
    folder_id: Optional[str] = typer.Option(None, "--folder"),
):
    """Create a note."""
    cfg, store = _open()
    try:
        note = store.create_note(title=title, content=content, folder_id=folder_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({**note.model_dump(), "path": store.path_of(note)})


@app.command("note-edit")
def note_edit(
    note_id: str = typer.Argument(...),
    title: Optional[str] = typer.Option(None, "--title"),
    content: Optional[str] = typer.Option(None, "--content"),
    content_file: Optional[Path] = typer.Option(None, "--content-file", help="Read the new body from a file."),
    refactor_links: bool = typer.Option(False, "--refactor-links", help="Rewrite [[old title]] links."),
):
    """Change a note's title or body."""
    cfg, store = _open()
    if content_file is not None:
        content = content_file.read_text(encoding="utf-8")
    try:
        old_title = store.get_note(note_id).title
        note = store.update_note(note_id, title=title, content=content)
    except KeyError as e:
        _fail(str(e.args[0]))
    relinked = store.refactor_links(old_title, note.title) if refactor_links else []
    _save(cfg, store)
    _print_json({**store.get_note(note_id).model_dump(), "path": store.path_of(note), "relinked": relinked})


@app.command("note-mv")
def note_mv(note_id: str = typer.Argument(...), folder_id: Optional[str] = typer.Option(None, "--to")):
    """Move a note into a folder (root when --to is omitted)."""
    cfg, store = _open()
    try:
        note = store.move_note(note_id, folder_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "path": store.path_of(note)})


@app.command("note-rm")
def note_rm(note_id: str = typer.Argument(...)):
    """Move a note to the trash."""
    cfg, store = _open()
    try:
        store.soft_delete_note(note_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "trashed": note_id})


@app.command("note-restore")
def note_restore(note_id: str = typer.Argument(...)):
    """Restore a note from the trash."""
    cfg, store = _open()
    try:
        store.restore_note(note_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "restored": note_id})


@app.command("note-purge")
def note_purge(note_id: str = typer.Argument(...)):
    """Delete a note permanently, locally and remotely on next sync."""
    cfg, store = _open()
    try:
        path = store.permanent_delete_note(note_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "queued_remote_delete": path})


@app.command("note-bookmark")
def note_bookmark(note_id: str = typer.Argument(...)):
    """Toggle a bookmark."""
    cfg, store = _open()
    try:
        note = store.toggle_bookmark(note_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "is_bookmarked": note.is_bookmarked, "bookmark_order": note.bookmark_order})


@app.command()
def daily(
    fmt: str = typer.Option("YYYY-MM-DD", "--format"),
    folder_id: Optional[str] = typer.Option(None, "--folder"),
    template: Optional[Path] = typer.Option(None, "--template", help="Template file for new daily notes."),
):
    """Open (or create) today's daily note."""
    cfg, store = _open()
    template_text = template.read_text(encoding="utf-8") if template else ""
    note = store.open_daily_note(fmt=fmt, folder_id=folder_id, template=template_text)
    _save(cfg, store)
    _print_json({**note.model_dump(), "path": store.path_of(note)})


# -- folders ----------------------------------------------------------------


@app.command("folder-add")
def folder_add(name: str = typer.Argument(...), parent_id: Optional[str] = typer.Option(None, "--parent")):
    """Create a folder."""
    cfg, store = _open()
    try:
        folder = store.create_folder(name, parent_id=parent_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json(folder.model_dump())


@app.command("folder-rename")
def folder_rename(folder_id: str = typer.Argument(...), name: str = typer.Argument(...)):
    """Rename a folder; every nested note moves remotely on next sync."""
    cfg, store = _open()
    try:
        folder = store.rename_folder(folder_id, name)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, **folder.model_dump(), "pending_renames": store.renames.to_records()})


@app.command("folder-mv")
def folder_mv(folder_id: str = typer.Argument(...), parent_id: Optional[str] = typer.Option(None, "--to")):
    """Move a folder under another folder (root when --to is omitted)."""
    cfg, store = _open()
    try:
        folder = store.move_folder(folder_id, parent_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    except ValueError as e:
        _fail(str(e))
    _save(cfg, store)
    _print_json({"ok": True, **folder.model_dump()})


@app.command("folder-rm")
def folder_rm(folder_id: str = typer.Argument(...)):
    """Move a folder, its subfolders and their notes to the trash."""
    cfg, store = _open()
    try:
        affected = store.soft_delete_folder(folder_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "folders": affected})


@app.command("folder-restore")
def folder_restore(folder_id: str = typer.Argument(...)):
    """Restore a folder and everything trashed with it."""
    cfg, store = _open()
    try:
        affected = store.restore_folder(folder_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "folders": affected})


@app.command("folder-purge")
def folder_purge(folder_id: str = typer.Argument(...)):
    """Delete a folder tree permanently."""
    cfg, store = _open()
    try:
        path = store.permanent_delete_folder(folder_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    _print_json({"ok": True, "queued_remote_delete": path})


# -- tasks / export ---------------------------------------------------------


@app.command()
def tasks(open_only: bool = typer.Option(False, "--open", help="Hide completed tasks.")):
    """List checkbox tasks across all live notes."""
    _cfg, store = _open()
    items = collect_tasks(store.live_notes(), include_done=not open_only)
    table = Table(title="tasks")
    table.add_column("done")
    table.add_column("task")
    table.add_column("note")
    table.add_column("line")
    for item in items:
        note = store.notes[item.note_id]
        table.add_row("x" if item.is_checked else "", item.content, store.path_of(note), str(item.line_index))
    console.print(table)


@app.command("task-toggle")
def task_toggle(note_id: str = typer.Argument(...), line_index: int = typer.Argument(...)):
    """Check or uncheck the task on a note line."""
    cfg, store = _open()
    try:
        note = store.toggle_task(note_id, line_index)
    except KeyError as e:
        _fail(str(e.args[0]))
    _save(cfg, store)
    lines = note.content.split("\n")
    _print_json({"ok": True, "line": lines[line_index] if 0 <= line_index < len(lines) else None})


@app.command()
def export(
    note_id: Optional[str] = typer.Option(None, "--note", help="Export a single note; all notes as zip otherwise."),
    fmt: str = typer.Option("md", "--format", help="md or html (single note only)."),
    out_dir: Path = typer.Option(Path("."), "--out", help="Directory to write into."),
):
    """Export one note as markdown/HTML or everything as a zip archive."""
    _cfg, store = _open()
    out_dir.mkdir(parents=True, exist_ok=True)

    if note_id is None:
        target = out_dir / backup_filename()
        target.write_bytes(export_zip(store.notes.values(), store.folders))
        _print_json({"ok": True, "written": str(target), "notes": len(store.live_notes())})
        return

    try:
        note = store.get_note(note_id)
    except KeyError as e:
        _fail(str(e.args[0]))
    if fmt == "html":
        target = out_dir / export_filename(note, ".html")
        target.write_text(note_to_html(note), encoding="utf-8")
    elif fmt == "md":
        target = out_dir / export_filename(note)
        target.write_text(note_to_markdown(note), encoding="utf-8")
    else:
        _fail(f"unsupported_export_format: {fmt}")
    _print_json({"ok": True, "written": str(target)})


@app.command()
def serve():
    """Run the web API with the auto-sync scheduler."""
    from notesync.web.main import main as web_main

    logging.getLogger("cli").info("serve_requested")
    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
