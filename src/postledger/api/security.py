from __future__ import annotations

from typing import Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Fail-fast request size limiter.

    - Enforces Content-Length when present.
    - Also caps buffered body size for mutating requests (covers chunked bodies).
    """

    def __init__(self, app, *, max_bytes: int, exempt_prefixes: Tuple[str, ...] = ("/docs", "/openapi.json", "/health")):
        super().__init__(app)
        self._max_bytes = int(max_bytes)
        self._exempt_prefixes = exempt_prefixes

    def _too_large(self) -> JSONResponse:
        return JSONResponse(
            status_code=413,
            content={
                "ok": False,
                "error": {
                    "code": "request_too_large",
                    "message": "Request body too large",
                    "details": {"max_bytes": self._max_bytes},
                },
            },
        )

    async def dispatch(self, request: Request, call_next):
        path = request.url.path or ""
        for ex in self._exempt_prefixes:
            if path.startswith(ex):
                return await call_next(request)

        cl = request.headers.get("content-length")
        if cl:
            try:
                if int(cl) > self._max_bytes:
                    return self._too_large()
            except ValueError:
                # Malformed header; fall back to the buffered body cap.
                pass

        method = (request.method or "").upper()
        if method in {"POST", "PUT", "PATCH"}:
            body = await request.body()
            if body and len(body) > self._max_bytes:
                return self._too_large()

        return await call_next(request)
