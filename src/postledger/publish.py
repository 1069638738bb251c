# src/postledger/publish.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from postledger.content_store import ContentStore
from postledger.errors import (
    KIND_INDETERMINATE,
    KIND_REJECTED,
    STAGE_CONTENT,
    STAGE_INDETERMINATE,
    STAGE_LEDGER,
    LedgerRejected,
    LedgerUnreachable,
    PublishError,
    StoreUnavailable,
    StoreWriteFailed,
    ValidationFailure,
)
from postledger.ledger import LedgerClient
from postledger.models import ContentRecord, ReceiptState
from postledger.structured_logging import log_event

log = logging.getLogger("postledger.publish")


@dataclass(frozen=True, slots=True)
class PublishOutcome:
    post_id: Optional[int]
    content_ref: str
    tx_id: str


def validate_record(record: ContentRecord) -> None:
    """Refuse a record before any I/O happens."""
    missing = [name for name in ("title", "content") if not str(getattr(record, name) or "").strip()]
    if missing:
        raise ValidationFailure("title and content are required", {"missing": missing})


class PublishCoordinator:
    """Two-phase publish: store content, then anchor its id on the ledger.

    Ordering guarantees no ledger entry ever points at content that was not
    written. Per call: exactly one content write, at most one ledger write,
    no internal retries.
    """

    def __init__(self, *, store: ContentStore, ledger: Optional[LedgerClient], finality_timeout_s: float) -> None:
        self.store = store
        self.ledger = ledger
        self.finality_timeout_s = float(finality_timeout_s)

    def store_content(self, record: ContentRecord) -> str:
        """Phase one only. Used directly when no ledger is configured."""
        validate_record(record)
        try:
            content_ref = self.store.put(record.to_bytes())
        except (StoreUnavailable, StoreWriteFailed) as e:
            log_event(log, "publish_failed", level=logging.WARNING, stage=STAGE_CONTENT, kind=e.kind, error=str(e))
            raise PublishError(stage=STAGE_CONTENT, kind=e.kind, reason=e.reason) from e
        return content_ref

    def anchor(self, content_ref: str) -> PublishOutcome:
        """Phase two: anchor an already-stored content id and wait for finality."""
        if self.ledger is None:
            raise PublishError(stage=STAGE_LEDGER, kind=KIND_REJECTED, reason="ledger not configured", content_ref=content_ref)

        try:
            _predicted, receipt = self.ledger.create_post(content_ref)
        except (LedgerRejected, LedgerUnreachable) as e:
            log_event(
                log,
                "publish_failed",
                level=logging.WARNING,
                stage=STAGE_LEDGER,
                kind=e.kind,
                content_ref=content_ref,
                error=str(e),
            )
            raise PublishError(stage=STAGE_LEDGER, kind=e.kind, reason=e.reason, content_ref=content_ref) from e

        result = self.ledger.await_finality(receipt, timeout_s=self.finality_timeout_s)

        if result.state is ReceiptState.REJECTED:
            log_event(
                log,
                "publish_failed",
                level=logging.WARNING,
                stage=STAGE_LEDGER,
                kind=KIND_REJECTED,
                content_ref=content_ref,
                tx_id=receipt.tx_id,
            )
            raise PublishError(
                stage=STAGE_LEDGER,
                kind=KIND_REJECTED,
                reason=result.reason or "ledger rejected the post",
                content_ref=content_ref,
                tx_id=receipt.tx_id,
            )

        if result.state is not ReceiptState.CONFIRMED:
            # Do not retry: the intent may still confirm and a second
            # createPost would duplicate the entry.
            log_event(
                log,
                "publish_indeterminate",
                level=logging.WARNING,
                content_ref=content_ref,
                tx_id=receipt.tx_id,
                state=result.state.value,
            )
            raise PublishError(
                stage=STAGE_INDETERMINATE,
                kind=KIND_INDETERMINATE,
                reason=result.reason or "finality not reached before deadline",
                content_ref=content_ref,
                tx_id=receipt.tx_id,
            )

        if result.post_id is None:
            # Anchored, but the ledger gave no way to tell which entry is ours.
            log_event(log, "post_id_unresolved", level=logging.WARNING, content_ref=content_ref, tx_id=receipt.tx_id)

        post_id = int(result.post_id) if result.post_id is not None else None
        log_event(log, "post_published", post_id=post_id, content_ref=content_ref, tx_id=receipt.tx_id)
        return PublishOutcome(post_id=post_id, content_ref=content_ref, tx_id=receipt.tx_id)

    def publish(self, record: ContentRecord) -> PublishOutcome:
        content_ref = self.store_content(record)
        return self.anchor(content_ref)
