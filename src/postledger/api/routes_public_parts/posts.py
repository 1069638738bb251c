# src/postledger/api/routes_public_parts/posts.py
from __future__ import annotations

from fastapi import APIRouter, Request

from postledger.api.errors import ApiError
from postledger.api.routes_public_parts.common import (
    Json,
    _require_ledger,
    _services,
    api_error_from,
    api_error_from_publish,
)
from postledger.api.schemas import AnchorRequest, PublishRequest
from postledger.errors import PostledgerError, PublishError
from postledger.models import ContentRecord
from postledger.util.content_id import validate_content_id

router = APIRouter()


@router.post("/posts")
def publish_post(request: Request, body: PublishRequest) -> Json:
    """Store the post content, then anchor its content id on the ledger.

    Content-only mode (no ledger configured) stops after the content step and
    answers with anchored=false.
    """
    svc = _services(request)
    record = ContentRecord.new(title=body.title or "", content=body.content or "", author=body.author)

    try:
        if not svc.ledger_configured:
            content_ref = svc.publisher.store_content(record)
            return {"ok": True, "postId": None, "contentRef": content_ref, "txId": None, "anchored": False}

        outcome = svc.publisher.publish(record)
    except PublishError as e:
        raise api_error_from_publish(e) from e
    except PostledgerError as e:
        raise api_error_from(e) from e

    return {
        "ok": True,
        "postId": outcome.post_id,
        "contentRef": outcome.content_ref,
        "txId": outcome.tx_id,
        "anchored": True,
    }


@router.post("/posts/anchor")
def anchor_post(request: Request, body: AnchorRequest) -> Json:
    """Anchor content stored by an earlier publish whose ledger step failed."""
    svc = _services(request)
    _require_ledger(svc)

    v = validate_content_id(body.content_ref)
    if not v.ok:
        raise ApiError.bad_request("invalid_content_ref", "contentRef is not a valid content id", {"reason": v.reason})

    try:
        outcome = svc.publisher.anchor(v.cid)
    except PublishError as e:
        raise api_error_from_publish(e) from e

    return {
        "ok": True,
        "postId": outcome.post_id,
        "contentRef": outcome.content_ref,
        "txId": outcome.tx_id,
        "anchored": True,
    }


@router.get("/posts")
def list_posts(request: Request) -> Json:
    svc = _services(request)
    _require_ledger(svc)
    try:
        posts = svc.aggregator.list_merged_posts()
    except PostledgerError as e:
        raise api_error_from(e) from e
    return {"ok": True, "posts": [p.to_dict() for p in posts]}


@router.get("/posts/{content_ref}")
def get_post_content(request: Request, content_ref: str) -> Json:
    """Raw content record straight from the content store."""
    svc = _services(request)

    v = validate_content_id(content_ref)
    if not v.ok:
        raise ApiError.bad_request("invalid_content_ref", "not a valid content id", {"reason": v.reason})

    try:
        raw = svc.store.get(v.cid, timeout_s=svc.cfg.fetch_timeout_s)
        record = ContentRecord.from_bytes(raw)
    except PostledgerError as e:
        raise api_error_from(e) from e
    return record.to_dict()
