from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from postledger.api.errors import ApiError
from postledger.errors import (
    KIND_CORRUPT,
    KIND_INDETERMINATE,
    KIND_NOT_FOUND,
    KIND_REJECTED,
    KIND_TRANSPORT,
    KIND_VALIDATION,
    STAGE_CONTENT,
    STAGE_INDETERMINATE,
    PostledgerError,
    PublishError,
    VoteError,
)
from postledger.services import Services

Json = Dict[str, Any]

_KIND_STATUS = {
    KIND_VALIDATION: 400,
    KIND_NOT_FOUND: 404,
    KIND_REJECTED: 409,
    KIND_CORRUPT: 502,
    KIND_TRANSPORT: 503,
    KIND_INDETERMINATE: 504,
}


def _services(request: Request) -> Services:
    svc = getattr(request.app.state, "services", None)
    if svc is None:
        raise ApiError.internal("not_ready", "services not attached to app.state", {})
    return svc


def _require_ledger(svc: Services) -> None:
    if svc.ledger is None or svc.aggregator is None or svc.voter is None:
        raise ApiError.unavailable(
            "not_configured",
            "ledger is not configured; deploy the contract and restart the service",
            {"ledger_info_path": svc.cfg.ledger_info_path},
        )


def api_error_from(e: PostledgerError) -> ApiError:
    status = _KIND_STATUS.get(e.kind, 500)
    return ApiError(status, e.code, e.reason, dict(e.details))


def api_error_from_publish(e: PublishError) -> ApiError:
    """Map a stage-tagged publish failure onto HTTP.

    The body always carries stage and contentRef so the presentation tier can
    tell "nothing happened" from "stored but unanchored" from "check first".
    """
    if e.stage == STAGE_INDETERMINATE:
        status = 504
    elif e.stage == STAGE_CONTENT and e.kind == KIND_REJECTED:
        # The content store refused the write.
        status = 502
    else:
        status = _KIND_STATUS.get(e.kind, 500)
    return ApiError(status, e.code, e.reason, e.to_details())


def api_error_from_vote(e: VoteError) -> ApiError:
    status = 404 if e.reason == "post_not_found" else _KIND_STATUS.get(e.reason, 500)
    return ApiError(status, e.code, e.message or e.reason, e.to_details())
