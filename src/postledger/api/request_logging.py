# src/postledger/api/request_logging.py
from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from postledger.config import _env_bool
from postledger.structured_logging import log_event

log = logging.getLogger("postledger.http")


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One http_request event per request; echoes x-request-id.

    POSTLEDGER_LOG_REQUESTS=0 turns the event off (the header is still set).
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = _env_bool("POSTLEDGER_LOG_REQUESTS", True)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as e:
            if self._enabled:
                log_event(
                    log,
                    "http_request",
                    level=logging.ERROR,
                    request_id=request_id,
                    method=request.method,
                    path=request.url.path,
                    status=500,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=str(e),
                )
            raise

        if self._enabled:
            log_event(
                log,
                "http_request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        response.headers.setdefault("x-request-id", request_id)
        return response
