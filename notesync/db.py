from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS folders (
          id TEXT PRIMARY KEY,
          position INTEGER,
          name TEXT,
          parent_id TEXT,
          created_at INTEGER,
          deleted_at INTEGER
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS notes (
          id TEXT PRIMARY KEY,
          position INTEGER,
          folder_id TEXT,
          title TEXT,
          content TEXT,
          is_bookmarked INTEGER DEFAULT 0,
          bookmark_order INTEGER,
          created_at INTEGER,
          updated_at INTEGER,
          deleted_at INTEGER
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_renames (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          from_path TEXT,
          to_path TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS deleted_paths (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          path TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS unsynced_notes (
          note_id TEXT PRIMARY KEY
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          run_type TEXT,
          status TEXT,
          started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          finished_at DATETIME,
          summary_json TEXT
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_notes_folder ON notes(folder_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_folders_parent ON folders(parent_id)")

    conn.commit()
    conn.close()


def load_state(db_path: str) -> dict[str, Any]:
    conn = get_conn(db_path)
    try:
        folders = [
            {
                "id": r["id"],
                "name": r["name"],
                "parent_id": r["parent_id"],
                "created_at": r["created_at"],
                "deleted_at": r["deleted_at"],
            }
            for r in conn.execute("SELECT * FROM folders ORDER BY position")
        ]
        notes = [
            {
                "id": r["id"],
                "folder_id": r["folder_id"],
                "title": r["title"],
                "content": r["content"],
                "is_bookmarked": bool(r["is_bookmarked"]),
                "bookmark_order": r["bookmark_order"],
                "created_at": r["created_at"],
                "updated_at": r["updated_at"],
                "deleted_at": r["deleted_at"],
            }
            for r in conn.execute("SELECT * FROM notes ORDER BY position")
        ]
        renames = [
            {"from": r["from_path"], "to": r["to_path"]}
            for r in conn.execute("SELECT from_path, to_path FROM pending_renames ORDER BY id")
        ]
        deleted_paths = [r["path"] for r in conn.execute("SELECT path FROM deleted_paths ORDER BY id")]
        unsynced_ids = [r["note_id"] for r in conn.execute("SELECT note_id FROM unsynced_notes ORDER BY note_id")]
    finally:
        conn.close()

    return {
        "notes": notes,
        "folders": folders,
        "renames": renames,
        "deleted_paths": deleted_paths,
        "unsynced_ids": unsynced_ids,
    }


def save_state(db_path: str, state: dict[str, Any]) -> None:
    """Replace the persisted tables with ``state`` in one transaction."""
    conn = get_conn(db_path)
    try:
        with conn:
            conn.execute("DELETE FROM folders")
            conn.execute("DELETE FROM notes")
            conn.execute("DELETE FROM pending_renames")
            conn.execute("DELETE FROM deleted_paths")
            conn.execute("DELETE FROM unsynced_notes")

            conn.executemany(
                "INSERT INTO folders(id,position,name,parent_id,created_at,deleted_at) VALUES (?,?,?,?,?,?)",
                [
                    (f["id"], pos, f["name"], f["parent_id"], f["created_at"], f["deleted_at"])
                    for pos, f in enumerate(state.get("folders", []))
                ],
            )
            conn.executemany(
                """
                INSERT INTO notes(
                    id,position,folder_id,title,content,is_bookmarked,bookmark_order,
                    created_at,updated_at,deleted_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                [
                    (
                        n["id"],
                        pos,
                        n["folder_id"],
                        n["title"],
                        n["content"],
                        int(bool(n["is_bookmarked"])),
                        n["bookmark_order"],
                        n["created_at"],
                        n["updated_at"],
                        n["deleted_at"],
                    )
                    for pos, n in enumerate(state.get("notes", []))
                ],
            )
            conn.executemany(
                "INSERT INTO pending_renames(from_path,to_path) VALUES (?,?)",
                [(r["from"], r["to"]) for r in state.get("renames", [])],
            )
            conn.executemany(
                "INSERT INTO deleted_paths(path) VALUES (?)",
                [(p,) for p in state.get("deleted_paths", [])],
            )
            conn.executemany(
                "INSERT INTO unsynced_notes(note_id) VALUES (?)",
                [(i,) for i in state.get("unsynced_ids", [])],
            )
    finally:
        conn.close()


def insert_sync_run(db_path: str, run_type: str) -> int:
    conn = get_conn(db_path)
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO sync_runs(run_type,status,started_at,summary_json) VALUES (?,?,?,?)",
        (run_type, "running", now_iso(), "{}"),
    )
    rid = cur.lastrowid
    conn.commit()
    conn.close()
    return int(rid)


def finish_sync_run(db_path: str, run_id: int, status: str, summary: dict):
    conn = get_conn(db_path)
    conn.execute(
        "UPDATE sync_runs SET status=?, finished_at=?, summary_json=? WHERE id=?",
        (status, now_iso(), json.dumps(summary, ensure_ascii=False), run_id),
    )
    conn.commit()
    conn.close()


def has_successful_sync(db_path: str) -> bool:
    conn = get_conn(db_path)
    row = conn.execute("SELECT COUNT(1) FROM sync_runs WHERE status='success'").fetchone()
    conn.close()
    return bool(row[0])


def recent_sync_runs(db_path: str, limit: int = 20) -> list[dict[str, Any]]:
    conn = get_conn(db_path)
    rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
    conn.close()
    out = []
    for r in rows:
        item = dict(r)
        try:
            item["summary"] = json.loads(item.pop("summary_json") or "{}")
        except json.JSONDecodeError:
            item["summary"] = {}
        out.append(item)
    return out
