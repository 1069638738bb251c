from __future__ import annotations

"""Error taxonomy for the reconciliation layer.

Clients (content store, ledger) raise the raw failure kinds below. The
coordinators translate them into stage-tagged errors so callers can tell
which side effect, if any, already happened:

  - TRANSPORT      store/ledger unreachable; caller may retry with backoff
  - NOT_FOUND      content or post id absent; terminal for that lookup
  - REJECTED       the store or ledger refused the request as-is
  - INDETERMINATE  finality wait elapsed; re-query before deciding anything
  - VALIDATION     request refused before any I/O
  - CORRUPT        stored bytes do not decode to a content record
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional

KIND_TRANSPORT = "transport"
KIND_NOT_FOUND = "not_found"
KIND_REJECTED = "rejected"
KIND_INDETERMINATE = "indeterminate"
KIND_VALIDATION = "validation"
KIND_CORRUPT = "corrupt"

STAGE_CONTENT = "content"
STAGE_LEDGER = "ledger"
STAGE_INDETERMINATE = "indeterminate"


@dataclass(eq=False)
class PostledgerError(Exception):
    """Base error for client-level failures."""

    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    code: ClassVar[str] = "postledger_error"
    kind: ClassVar[str] = KIND_REJECTED

    def __str__(self) -> str:  # pragma: no cover
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class StoreUnavailable(PostledgerError):
    code = "store_unavailable"
    kind = KIND_TRANSPORT


class StoreWriteFailed(PostledgerError):
    code = "store_write_failed"
    kind = KIND_REJECTED


class NotFound(PostledgerError):
    code = "content_not_found"
    kind = KIND_NOT_FOUND


class ContentCorrupt(PostledgerError):
    code = "content_corrupt"
    kind = KIND_CORRUPT


class LedgerUnreachable(PostledgerError):
    code = "ledger_unreachable"
    kind = KIND_TRANSPORT


class LedgerRejected(PostledgerError):
    code = "ledger_rejected"
    kind = KIND_REJECTED


class PostNotFound(PostledgerError):
    code = "post_not_found"
    kind = KIND_NOT_FOUND


class ValidationFailure(PostledgerError):
    code = "validation_failed"
    kind = KIND_VALIDATION


@dataclass(eq=False)
class PublishError(Exception):
    """Publish failed at a known stage.

    stage:
      - "content": nothing was written anywhere
      - "ledger": content is stored under content_ref but not anchored;
        anchoring the same content_ref again is safe
      - "indeterminate": the anchor intent may still confirm; re-query the
        ledger before retrying or a duplicate entry can appear
    """

    stage: str
    kind: str
    reason: str
    content_ref: Optional[str] = None
    tx_id: Optional[str] = None

    code: ClassVar[str] = "publish_failed"

    def to_details(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "kind": self.kind,
            "reason": self.reason,
            "contentRef": self.content_ref,
            "txId": self.tx_id,
        }

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}:{self.stage}:{self.kind}:{self.reason}"


@dataclass(eq=False)
class VoteError(Exception):
    """Vote failed.

    reason is one of: post_not_found, rejected, transport, indeterminate.
    An indeterminate vote may still be counted by the ledger.
    """

    reason: str
    post_id: int
    message: str = ""
    tx_id: Optional[str] = None

    code: ClassVar[str] = "vote_failed"

    def to_details(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "postId": self.post_id,
            "message": self.message,
            "txId": self.tx_id,
        }

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}:{self.reason}:{self.post_id}"
