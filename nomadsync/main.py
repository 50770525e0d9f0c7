"""FastAPI application factory for the remote sync endpoint.

Run with `uvicorn nomadsync.main:create_app --factory`.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text as sql_text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from nomadsync.config import AppConfig, load_config
from nomadsync.db.base import get_engine
from nomadsync.db.migrations_runner import apply_migrations
from nomadsync.http.problem import (
    handle_http_exception,
    handle_request_validation_error,
    handle_unexpected_error,
)
from nomadsync.http.request_id import RequestIdMiddleware
from nomadsync.logging_setup import configure_logging
from nomadsync.routes import api_router

logger = logging.getLogger(__name__)


def _health_check(engine: Engine) -> Callable[[], dict]:
    def check() -> dict:
        try:
            with engine.connect() as conn:
                conn.execute(sql_text("SELECT 1"))
            return {"status": "ok", "db": True}
        except SQLAlchemyError as e:
            logger.error("Health DB check failed", exc_info=True)
            return {"status": "degraded", "db": False, "reason": str(e)}

    return check


def create_app(engine: Engine | None = None, config: AppConfig | None = None) -> FastAPI:
    configure_logging()
    cfg = config or load_config()
    engine = engine or get_engine(cfg.server.database_url)
    if cfg.server.auto_apply_migrations:
        applied = apply_migrations(engine)
        if applied:
            logger.info("startup_migrations_applied files=%s", ",".join(applied))

    app = FastAPI(title="NomadSync endpoint")
    app.state.engine = engine
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router, prefix="/api")

    health_check = _health_check(engine)

    @app.get("/health")
    def health():  # pragma: no cover - trivial
        return health_check()

    return app


def serve() -> None:
    """Console entry point: serve the endpoint with uvicorn.

    Host and port come from `NOMADSYNC_HOST` / `NOMADSYNC_PORT`.
    """
    import os

    import uvicorn

    uvicorn.run(
        "nomadsync.main:create_app",
        factory=True,
        host=os.getenv("NOMADSYNC_HOST", "127.0.0.1"),
        port=int(os.getenv("NOMADSYNC_PORT", "8000")),
        log_config=None,
    )


# Intentionally do not instantiate the app at import time to prevent side effects.
