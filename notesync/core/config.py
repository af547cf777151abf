from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("NOTESYNC_HOME", "~/.notesync")).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
RUN_HISTORY_PATH = RUNTIME_DIR / "run_history.jsonl"
AUTH_STATE_PATH = RUNTIME_DIR / "auth_state.json"


class DropboxAuthConfig(BaseModel):
    app_key: str = ""
    redirect_uri: str = "http://127.0.0.1:8765/api/auth/callback"
    token_file: str = str(RUNTIME_DIR / "tokens.json")
    timeout_sec: int = 30


class SyncConfig(BaseModel):
    # Remote folder all note paths are relative to; "" is the app folder root.
    remote_root: str = ""
    auto_sync: bool = True
    # 0 disables the periodic trigger; visibility/focus triggers still apply.
    poll_interval_sec: int = Field(default=300, ge=0, le=86400)
    min_interval_sec: float = Field(default=30, ge=0)
    quiet_window_sec: float = Field(default=5, ge=0)
    initial_delay_sec: float = Field(default=1.5, ge=0)
    trash_retention_days: int = Field(default=30, ge=1)
    # First sync policy when no successful run is recorded yet:
    # - local_wins: push every local note so nothing is treated as remotely deleted
    # - remote_wins: take the remote tree as is
    initial_sync_strategy: Literal["local_wins", "remote_wins"] = "local_wins"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "notesync.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "notesync.db")


class AppConfig(BaseModel):
    auth: DropboxAuthConfig = Field(default_factory=DropboxAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.auth.token_file).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        cfg = None
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                cfg = AppConfig.model_validate(yaml.safe_load(template_text) or {})
                path.write_text(template_text, encoding="utf-8")
            except (yaml.YAMLError, ValueError):
                cfg = None
        if cfg is None:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
