from __future__ import annotations

import logging
from dataclasses import dataclass

from notesync import db
from notesync.core.config import AUTH_STATE_PATH, AppConfig
from notesync.providers.dropbox import DropboxAuth, DropboxClient, SyncEngine
from notesync.scheduler import AutoSyncScheduler
from notesync.service import SyncService
from notesync.store import LocalStore

logger = logging.getLogger("store")


def log_func(level: str, module: str, message: str, detail: str | None = None):
    logging.getLogger(module).log(
        getattr(logging, level.upper(), logging.INFO),
        f"{message} {detail or ''}".strip(),
    )


@dataclass
class Runtime:
    cfg: AppConfig
    store: LocalStore
    auth: DropboxAuth
    service: SyncService
    scheduler: AutoSyncScheduler


def build_auth(cfg: AppConfig) -> DropboxAuth:
    return DropboxAuth(
        app_key=cfg.auth.app_key,
        token_file=cfg.auth.token_file,
        state_file=str(AUTH_STATE_PATH),
        redirect_uri=cfg.auth.redirect_uri,
        timeout=int(cfg.auth.timeout_sec),
    )


def open_store(cfg: AppConfig) -> LocalStore:
    """Load the persisted store and sweep expired trash into the delete queue."""
    db.init_db(cfg.database.path)
    store = LocalStore.from_state(db.load_state(cfg.database.path), retention_days=cfg.sync.trash_retention_days)
    reaped = store.reap_expired()
    if reaped:
        db.save_state(cfg.database.path, store.to_state())
        logger.info("trash_sweep_on_load paths=%s", len(reaped))
    return store


def build_runtime(cfg: AppConfig, store: LocalStore | None = None) -> Runtime:
    store = store if store is not None else open_store(cfg)
    auth = build_auth(cfg)
    client = DropboxClient(auth, remote_root=cfg.sync.remote_root, timeout=int(cfg.auth.timeout_sec))
    engine = SyncEngine(client, log_func=log_func)
    service = SyncService(cfg, store, auth, engine)
    scheduler = AutoSyncScheduler(service, cfg.sync)
    store.add_edit_listener(scheduler.mark_edit)
    return Runtime(cfg=cfg, store=store, auth=auth, service=service, scheduler=scheduler)
