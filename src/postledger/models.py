from __future__ import annotations

"""Typed records shared by the clients, coordinators and the HTTP layer.

ContentRecord is what lives in the content store, LedgerEntry is what the
ledger reports, MergedPost is the per-request join of the two.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from postledger.errors import ContentCorrupt

Json = Dict[str, Any]

PLACEHOLDER_TITLE = "Error loading content"
PLACEHOLDER_CONTENT = "Could not load post content from IPFS"
PLACEHOLDER_AUTHOR = "Unknown"

DEFAULT_AUTHOR = "Anonymous"


def _canon_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    dt = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True, slots=True)
class ContentRecord:
    title: str
    content: str
    author: str
    created_at: str

    @staticmethod
    def new(title: str, content: str, author: Optional[str] = None) -> "ContentRecord":
        return ContentRecord(
            title=title,
            content=content,
            author=(author or "").strip() or DEFAULT_AUTHOR,
            created_at=utc_timestamp(),
        )

    def to_dict(self) -> Json:
        return {
            "title": self.title,
            "content": self.content,
            "author": self.author,
            "timestamp": self.created_at,
        }

    def to_bytes(self) -> bytes:
        # Identical records must serialize to identical bytes (content addressing).
        return _canon_json(self.to_dict()).encode("utf-8")

    @staticmethod
    def from_bytes(raw: bytes) -> "ContentRecord":
        try:
            obj = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise ContentCorrupt("content is not valid JSON", {"error": str(e)}) from e
        if not isinstance(obj, dict):
            raise ContentCorrupt("content is not a JSON object", {"type": type(obj).__name__})

        title = obj.get("title")
        content = obj.get("content")
        if not isinstance(title, str) or not isinstance(content, str):
            raise ContentCorrupt("content record is missing title or content", {"keys": sorted(obj.keys())})

        author = obj.get("author")
        created_at = obj.get("timestamp") or obj.get("createdAt") or ""
        return ContentRecord(
            title=title,
            content=content,
            author=str(author) if author else DEFAULT_AUTHOR,
            created_at=str(created_at),
        )


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    post_id: int
    creator: str
    content_ref: str
    rating: int
    created_at: int

    def to_dict(self) -> Json:
        return {
            "postId": self.post_id,
            "creator": self.creator,
            "contentRef": self.content_ref,
            "rating": self.rating,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class MergedPost:
    """A ledger entry joined with its content, or with the placeholder."""

    post_id: int
    creator: str
    content_ref: str
    rating: int
    created_at: int
    content_available: bool
    title: str
    content: str
    author: str
    authored_at: Optional[str] = None
    unavailable_reason: Optional[str] = None

    @staticmethod
    def joined(entry: LedgerEntry, record: ContentRecord) -> "MergedPost":
        return MergedPost(
            post_id=entry.post_id,
            creator=entry.creator,
            content_ref=entry.content_ref,
            rating=entry.rating,
            created_at=entry.created_at,
            content_available=True,
            title=record.title,
            content=record.content,
            author=record.author,
            authored_at=record.created_at,
        )

    @staticmethod
    def placeholder(entry: LedgerEntry, reason: str) -> "MergedPost":
        return MergedPost(
            post_id=entry.post_id,
            creator=entry.creator,
            content_ref=entry.content_ref,
            rating=entry.rating,
            created_at=entry.created_at,
            content_available=False,
            title=PLACEHOLDER_TITLE,
            content=PLACEHOLDER_CONTENT,
            author=PLACEHOLDER_AUTHOR,
            unavailable_reason=reason,
        )

    def to_dict(self) -> Json:
        out = {
            "postId": self.post_id,
            "creator": self.creator,
            "contentRef": self.content_ref,
            "rating": self.rating,
            "createdAt": self.created_at,
            "contentAvailable": self.content_available,
            "title": self.title,
            "content": self.content,
            "author": self.author,
            "authoredAt": self.authored_at,
        }
        if not self.content_available:
            out["unavailableReason"] = self.unavailable_reason
        return out


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"

    @property
    def is_up(self) -> bool:
        return self is Direction.UP


class ReceiptState(str, Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in {ReceiptState.CONFIRMED, ReceiptState.REJECTED, ReceiptState.TIMED_OUT}


INTENT_CREATE_POST = "create_post"
INTENT_VOTE = "vote"


@dataclass(frozen=True, slots=True)
class PendingReceipt:
    tx_id: str
    kind: str
    submitted_ms: int
    post_id: Optional[int] = None
    content_ref: Optional[str] = None


@dataclass(frozen=True, slots=True)
class FinalityResult:
    state: ReceiptState
    post_id: Optional[int] = None
    reason: str = ""
    block_number: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.state is ReceiptState.CONFIRMED
