from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from notesync.core.config import load_config
from notesync.db import init_db
from notesync.web.api import router as api_router, start_runtime, stop_runtime


def build_app() -> FastAPI:
    cfg = load_config()
    init_db(cfg.database.path)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        start_runtime()
        try:
            yield
        finally:
            await stop_runtime()

    api = FastAPI(title="notesync", version="0.1.0", lifespan=lifespan)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()
    init_db(cfg.database.path)

    from notesync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
