from __future__ import annotations

from fastapi import APIRouter, Request

from postledger.api.errors import ApiError
from postledger.api.routes_public_parts.common import (
    Json,
    _require_ledger,
    _services,
    api_error_from,
    api_error_from_vote,
)
from postledger.api.schemas import VoteRequest
from postledger.errors import PostledgerError, VoteError
from postledger.ledger import read_ledger_info
from postledger.models import Direction

router = APIRouter()


@router.get("/ledger-info")
def ledger_info(request: Request) -> Json:
    """Ledger connection metadata exactly as deployed (address + interface)."""
    svc = _services(request)
    try:
        data = read_ledger_info(svc.cfg.ledger_info_path)
    except ValueError as e:
        raise ApiError.internal("ledger_info_invalid", "failed to load ledger metadata", {"error": str(e)}) from e
    if data is None:
        raise ApiError.not_found("not_deployed", "ledger contract not deployed yet", {})
    return data


@router.get("/ledger/posts/{post_id}")
def get_merged_post(request: Request, post_id: int) -> Json:
    svc = _services(request)
    _require_ledger(svc)
    try:
        merged = svc.aggregator.get_merged_post(post_id)
    except PostledgerError as e:
        raise api_error_from(e) from e
    return {"ok": True, "post": merged.to_dict()}


@router.post("/ledger/posts/{post_id}/vote")
def cast_vote(request: Request, post_id: int, body: VoteRequest) -> Json:
    """Submit a vote and wait for the ledger to settle it.

    The response carries no rating: re-read the post to see the ledger's value.
    """
    svc = _services(request)
    _require_ledger(svc)

    raw = (body.direction or "").strip().lower()
    try:
        direction = Direction(raw)
    except ValueError as e:
        raise ApiError.bad_request("validation_failed", 'direction must be "up" or "down"', {"direction": raw}) from e

    try:
        outcome = svc.voter.cast_vote(post_id, direction)
    except VoteError as e:
        raise api_error_from_vote(e) from e

    return {"ok": True, "postId": outcome.post_id, "direction": outcome.direction.value, "txId": outcome.tx_id}
