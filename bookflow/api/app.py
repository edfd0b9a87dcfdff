from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from bookflow.api.errors import (
    APIError,
    api_error_handler,
    config_error_handler,
    flow_error_handler,
    sqlite_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from bookflow.config.load_config import ConfigError
from bookflow.flow.errors import FlowError
from bookflow.runtime.tracker import RequestStateTracker
from bookflow.runtime.worker import FlowWorker
from bookflow.storage.sqlite_store import SQLiteStore

from .routers.health import router as health_router
from .routers.requests import router as requests_router


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("BOOKFLOW_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Requests left in_progress by a previous process have lost their job trees.
        if _env_bool("BOOKFLOW_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                reconciled = RequestStateTracker(store).reconcile_in_progress()
                app.state.reconciled_requests = int(reconciled)
            finally:
                store.close()
            if reconciled:
                logger.warning("reconciled_in_progress_requests count=%d", reconciled)
        else:
            app.state.reconciled_requests = 0

        # Single background worker (single-instance assumption).
        app.state.flow_worker = None
        if _env_bool("BOOKFLOW_ENABLE_WORKER", True):
            worker = FlowWorker()
            worker.start()
            app.state.flow_worker = worker
        try:
            yield
        finally:
            worker = getattr(app.state, "flow_worker", None)
            if worker is not None:
                worker.stop()

    app = FastAPI(title="bookflow API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(FlowError, flow_error_handler)
    app.add_exception_handler(sqlite3.Error, sqlite_error_handler)
    app.add_exception_handler(ConfigError, config_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(requests_router, prefix="/api/v1", tags=["requests"])

    return app


app = create_app()
