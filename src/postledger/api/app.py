# src/postledger/api/app.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from postledger.api.errors import ApiError
from postledger.api.request_logging import RequestLogMiddleware
from postledger.api.routes_public import public_router
from postledger.api.security import RequestSizeLimitMiddleware
from postledger.config import parse_cors_origins
from postledger.services import Services
from postledger.services import build_services as _build_services
from postledger.structured_logging import log_event

log = logging.getLogger("postledger.http")


def build_services() -> Services:
    """Build the service bundle for the API runtime.

    This wrapper exists so tests can monkeypatch `postledger.api.app.build_services`
    without reaching into the boot module.
    """
    return _build_services()


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        if exc.status_code >= 500:
            log_event(log, "api_error", level=logging.WARNING, status=exc.status_code, code=exc.code, message=exc.message)
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg", ""))} for e in exc.errors()
        ]
        return ApiError.bad_request("validation_failed", "request body failed validation", {"errors": errors}).to_response()


def create_app(*, services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application.

    services:
      - None (default): build clients from the environment via build_services()
      - explicit Services: used as-is (tests, embedding)
    """
    svc = services if services is not None else build_services()
    cfg = svc.cfg

    # Disable docs in production.
    if cfg.mode == "prod":
        app = FastAPI(title="postledger", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="postledger")

    app.state.services = svc

    _install_error_handlers(app)

    # --- Middleware ---
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=cfg.max_request_bytes)

    cors_origins = parse_cors_origins(cfg.cors_origins, mode=cfg.mode)
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=cors_origins != ["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "X-Request-Id"],
        )

    # Added last so it wraps everything, including rejected oversize requests.
    app.add_middleware(RequestLogMiddleware)

    # --- Routers ---
    app.include_router(public_router)

    return app

