from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _try_ping(client: Any) -> bool:
    if client is None:
        return False
    ping = getattr(client, "ping", None)
    if not callable(ping):
        return False
    try:
        return bool(ping())
    except Exception:
        return False


def _health_payload(request: Request) -> dict[str, object]:
    # health must never crash: best-effort checks only
    svc = getattr(request.app.state, "services", None)
    store = getattr(svc, "store", None)
    ledger = getattr(svc, "ledger", None)

    store_ok = _try_ping(store)
    ledger_ok = _try_ping(ledger)

    return {
        "ok": True,
        "status": "ok" if (store_ok and ledger_ok) else "degraded",
        "service": "postledger",
        "ts_ms": _now_ms(),
        "mode": "full" if ledger is not None else "content_only",
        "contentStoreConnected": store_ok,
        "ledgerConnected": ledger_ok,
    }


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    return _health_payload(request)
