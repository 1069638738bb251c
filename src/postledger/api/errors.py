# src/postledger/api/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    @staticmethod
    def bad_gateway(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(502, code, message, details or {})

    @staticmethod
    def unavailable(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(503, code, message, details or {})

    @staticmethod
    def gateway_timeout(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(504, code, message, details or {})

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={
                "ok": False,
                "error": {"code": self.code, "message": self.message, "details": self.details},
            },
        )
