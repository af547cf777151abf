from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from notesync import db
from notesync.core.config import RUN_HISTORY_PATH, AppConfig
from notesync.exceptions import AuthError, NetworkError, SyncError
from notesync.providers.dropbox import SyncEngine, SyncResult
from notesync.store import LocalStore, StoreSnapshot

logger = logging.getLogger("sync")

# newest entries kept per run in summaries and history
SYNC_LOG_LIMIT = 200


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def append_run_history(summary: dict, path: Path = RUN_HISTORY_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(summary, ensure_ascii=False))
        f.write("\n")


def read_run_history(limit: int = 50, path: Path = RUN_HISTORY_PATH) -> list[dict]:
    if limit <= 0 or not path.exists():
        return []

    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    out: list[dict] = []
    for line in reversed(lines):
        if len(out) >= limit:
            break
        raw = line.strip()
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = {"raw": raw, "parse_error": True}
        if isinstance(payload, dict):
            out.append(payload)
    return out


@dataclass
class SyncRound:
    run_id: int
    run_type: str
    snapshot: StoreSnapshot
    started_at: float = field(default_factory=time.time)


class SyncBusy(RuntimeError):
    """A round is already in flight."""


class SyncService:
    """Boundary between the local store and the sync engine.

    ``begin`` snapshots the store and ``finish`` commits the engine result;
    both must run on the thread that owns the store. ``execute`` only reads
    the snapshot and may run in a worker thread.
    """

    def __init__(self, cfg: AppConfig, store: LocalStore, auth, engine: SyncEngine, history_path: Path = RUN_HISTORY_PATH):
        self.cfg = cfg
        self.store = store
        self.auth = auth
        self.engine = engine
        self.db_path = cfg.database.path
        self.history_path = history_path

        self.status = "idle"
        self.message: str | None = None
        self.last_summary: dict[str, Any] | None = None
        self.last_finished_at: str | None = None
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def state(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "busy": self.busy,
            "last_finished_at": self.last_finished_at,
            "last_summary": self.last_summary,
            "sync_log": (self.last_summary or {}).get("sync_log", []),
            "pending": {
                "renames": len(self.store.renames),
                "deleted_paths": len(self.store.deleted_paths),
                "unsynced": len(self.store.unsynced_ids),
            },
        }

    def persist(self) -> None:
        db.save_state(self.db_path, self.store.to_state())

    def begin(self, run_type: str = "manual") -> SyncRound:
        if not self._lock.acquire(blocking=False):
            raise SyncBusy("sync_busy")

        try:
            if self.cfg.sync.initial_sync_strategy == "local_wins" and not db.has_successful_sync(self.db_path):
                marked = self.store.mark_all_unsynced()
                logger.info("initial_sync_local_wins marked_unsynced=%s", marked)
            snapshot = self.store.snapshot()
            run_id = db.insert_sync_run(self.db_path, run_type)
        except Exception:
            self._lock.release()
            raise

        self.status = "syncing"
        self.message = None
        logger.info(
            "run_started %s",
            json.dumps(
                {
                    "run_id": run_id,
                    "run_type": run_type,
                    "renames": len(snapshot.renames),
                    "deleted_paths": len(snapshot.deleted_paths),
                    "unsynced": len(snapshot.unsynced_ids),
                },
                ensure_ascii=False,
            ),
        )
        return SyncRound(run_id=run_id, run_type=run_type, snapshot=snapshot)

    def execute(self, sync_round: SyncRound) -> SyncResult:
        snap = sync_round.snapshot
        return self.engine.sync(
            self.auth,
            snap.notes,
            snap.folders,
            snap.deleted_paths,
            snap.renames,
            snap.unsynced_ids,
        )

    def _base_summary(self, sync_round: SyncRound) -> dict[str, Any]:
        return {
            "run_id": sync_round.run_id,
            "run_type": sync_round.run_type,
            "started_at": datetime.fromtimestamp(sync_round.started_at, timezone.utc).isoformat(),
            "finished_at": _now_iso(),
            "duration_ms": int((time.time() - sync_round.started_at) * 1000),
        }

    def _close(self, sync_round: SyncRound, status: str, summary: dict[str, Any]) -> dict[str, Any]:
        try:
            db.finish_sync_run(self.db_path, sync_round.run_id, status, summary)
            append_run_history(summary, self.history_path)
        finally:
            self.last_summary = summary
            self.last_finished_at = summary["finished_at"]
            self._lock.release()
        return summary

    def finish(self, sync_round: SyncRound, result: SyncResult) -> dict[str, Any]:
        try:
            self.store.commit_sync(sync_round.snapshot, result.notes, result.folders)
            self.persist()
        except Exception as e:
            logger.exception("commit_failed run_id=%s", sync_round.run_id)
            return self.fail(sync_round, e)

        summary = {
            **self._base_summary(sync_round),
            "status": "success",
            **result.summary,
            "log_entries": len(result.sync_log),
            "sync_log": result.sync_log[-SYNC_LOG_LIMIT:],
        }
        self.status = "success"
        self.message = None
        counts = {k: v for k, v in summary.items() if k != "sync_log"}
        logger.info("run_success %s", json.dumps(counts, ensure_ascii=False))
        return self._close(sync_round, "success", summary)

    def fail(self, sync_round: SyncRound, exc: BaseException) -> dict[str, Any]:
        if isinstance(exc, AuthError):
            kind = "auth"
            self.message = f"Dropbox authorization required: {exc}"
        elif isinstance(exc, NetworkError):
            kind = "network"
            self.message = f"Dropbox unreachable, will retry: {exc}"
        else:
            kind = "sync"
            self.message = f"Sync failed: {exc}"

        summary = {
            **self._base_summary(sync_round),
            "status": "error",
            "error_kind": kind,
            "fatal_error": str(exc),
            "sync_log": [],
        }
        self.status = "error"
        logger.error("run_failed %s", json.dumps(summary, ensure_ascii=False))
        return self._close(sync_round, "error", summary)

    def run_once(self, run_type: str = "manual") -> dict[str, Any]:
        """Begin, execute and finish in the calling thread."""
        sync_round = self.begin(run_type)
        try:
            result = self.execute(sync_round)
        except SyncError as e:
            return self.fail(sync_round, e)
        except Exception as e:
            logger.exception("run_crashed run_id=%s", sync_round.run_id)
            return self.fail(sync_round, e)
        return self.finish(sync_round, result)

    async def run_async(self, run_type: str = "manual") -> dict[str, Any]:
        """Like ``run_once`` but the remote phases run in a worker thread."""
        sync_round = self.begin(run_type)
        try:
            result = await asyncio.to_thread(self.execute, sync_round)
        except asyncio.CancelledError as e:
            self.fail(sync_round, e)
            raise
        except SyncError as e:
            return self.fail(sync_round, e)
        except Exception as e:
            logger.exception("run_crashed run_id=%s", sync_round.run_id)
            return self.fail(sync_round, e)
        return self.finish(sync_round, result)
