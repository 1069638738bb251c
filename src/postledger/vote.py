from __future__ import annotations

import logging
from dataclasses import dataclass

from postledger.errors import (
    KIND_INDETERMINATE,
    KIND_REJECTED,
    KIND_TRANSPORT,
    LedgerRejected,
    LedgerUnreachable,
    PostNotFound,
    VoteError,
)
from postledger.ledger import LedgerClient
from postledger.models import Direction, ReceiptState
from postledger.structured_logging import log_event

log = logging.getLogger("postledger.vote")

REASON_POST_NOT_FOUND = "post_not_found"


@dataclass(frozen=True, slots=True)
class VoteOutcome:
    post_id: int
    direction: Direction
    tx_id: str


class VoteCoordinator:
    """Submit a vote and wait (bounded) for the ledger to settle it.

    The rating is never computed here; a fresh read shows the ledger's value.
    """

    def __init__(self, *, ledger: LedgerClient, finality_timeout_s: float) -> None:
        self.ledger = ledger
        self.finality_timeout_s = float(finality_timeout_s)

    def cast_vote(self, post_id: int, direction: Direction) -> VoteOutcome:
        pid = int(post_id)
        try:
            receipt = self.ledger.vote(pid, direction)
        except PostNotFound as e:
            raise VoteError(reason=REASON_POST_NOT_FOUND, post_id=pid, message=e.reason) from e
        except LedgerRejected as e:
            raise VoteError(reason=KIND_REJECTED, post_id=pid, message=e.reason) from e
        except LedgerUnreachable as e:
            raise VoteError(reason=KIND_TRANSPORT, post_id=pid, message=e.reason) from e

        result = self.ledger.await_finality(receipt, timeout_s=self.finality_timeout_s)
        if result.state is ReceiptState.REJECTED:
            raise VoteError(
                reason=KIND_REJECTED,
                post_id=pid,
                message=result.reason or "ledger rejected the vote",
                tx_id=receipt.tx_id,
            )
        if result.state is not ReceiptState.CONFIRMED:
            log_event(log, "vote_indeterminate", level=logging.WARNING, post_id=pid, tx_id=receipt.tx_id)
            raise VoteError(
                reason=KIND_INDETERMINATE,
                post_id=pid,
                message=result.reason or "finality not reached before deadline",
                tx_id=receipt.tx_id,
            )

        log_event(log, "vote_confirmed", post_id=pid, direction=direction.value, tx_id=receipt.tx_id)
        return VoteOutcome(post_id=pid, direction=direction, tx_id=receipt.tx_id)
