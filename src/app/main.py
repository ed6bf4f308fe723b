from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.app.routes.actions import router as actions_router
from src.app.routes.sync import router as sync_router
from src.core.sync_ingest import code_for_status
from src.db.init_db import init_db


log = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def create_app(*, init_database: bool = True) -> FastAPI:
    load_dotenv()
    _configure_logging()
    app = FastAPI(title="Trade Sync", version="0.1.0")

    if init_database:

        @app.on_event("startup")
        def _startup() -> None:
            init_db()

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed."
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": detail, "code": code_for_status(exc.status_code)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"ok": False, "error": "Invalid JSON body.", "code": "bad_request"})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"ok": False, "error": "Server error.", "code": "server_error"})

    @app.get("/health")
    def health() -> dict:
        return {"ok": True, "data": {"status": "ok"}}

    app.include_router(sync_router)
    app.include_router(actions_router)
    return app


app = create_app()
