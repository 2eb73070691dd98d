from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router as v1_router
from .config import load_app_config
from .db import fail_interrupted_events
from .engine import build_engine_from_config
from .logging_config import configure_logging
from .runtime_paths import ensure_runtime_dirs
from .store import SQLiteStore


def create_app() -> FastAPI:
    ensure_runtime_dirs()
    log_path = configure_logging()

    app = FastAPI(
        title="Price Alert API",
        version="0.1.0",
        description="Spot price alert monitoring with Telegram notifications.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(v1_router)

    @app.on_event("startup")
    async def on_startup() -> None:
        logger = logging.getLogger("")
        config = load_app_config()
        store = SQLiteStore()
        interrupted = fail_interrupted_events(store.db_path)
        if interrupted:
            logger.warning("marked %s undelivered events as failed after restart", interrupted)
        engine = build_engine_from_config(store, config=config)
        app.state.store = store
        app.state.engine = engine
        if config.monitor.enabled:
            engine.start()
        else:
            engine.rebuild()
        logger.info(
            "Price alert API startup complete; db=%s logs=%s engine_running=%s",
            store.db_path,
            log_path,
            engine.running,
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.aclose()
        logging.getLogger("").info("Price alert API shutdown complete")

    return app


app = create_app()


def run() -> None:
    uvicorn.run("pricealert.main:app", host="127.0.0.1", port=8000)
