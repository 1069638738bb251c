# src/postledger/aggregator.py
from __future__ import annotations

import logging
import math
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, List

from postledger.content_store import ContentStore
from postledger.errors import PostledgerError
from postledger.ledger import LedgerClient
from postledger.models import ContentRecord, LedgerEntry, MergedPost
from postledger.structured_logging import log_event

log = logging.getLogger("postledger.aggregator")

REASON_TIMEOUT = "timeout"


class PostAggregator:
    """Joins ledger entries with content-store lookups.

    Listing fans out one lookup per entry on a pool capped at max_inflight.
    Each lookup passes fetch_timeout_s down to the store; on top of that the
    listing gives up on stragglers once every wave has had its full timeout
    (plus guard_slack_s), so one hung lookup cannot hold the response.

    Any per-entry content failure degrades that entry to the placeholder.
    Ledger failures propagate: without entries there is nothing to list.
    """

    def __init__(
        self,
        *,
        store: ContentStore,
        ledger: LedgerClient,
        max_inflight: int = 8,
        fetch_timeout_s: float = 10.0,
        guard_slack_s: float = 1.0,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.max_inflight = max(1, int(max_inflight))
        self.fetch_timeout_s = float(fetch_timeout_s)
        self.guard_slack_s = max(0.0, float(guard_slack_s))

    def _fetch_record(self, content_ref: str) -> ContentRecord:
        raw = self.store.get(content_ref, timeout_s=self.fetch_timeout_s)
        return ContentRecord.from_bytes(raw)

    def _placeholder(self, entry: LedgerEntry, reason: str, error: str) -> MergedPost:
        log_event(
            log,
            "content_placeholder",
            level=logging.WARNING,
            post_id=entry.post_id,
            cid=entry.content_ref,
            reason=reason,
            error=error,
        )
        return MergedPost.placeholder(entry, reason)

    def _guard_deadline_s(self, n: int, workers: int) -> float:
        waves = math.ceil(n / workers)
        return self.fetch_timeout_s * waves + self.guard_slack_s

    def list_merged_posts(self) -> List[MergedPost]:
        started = time.monotonic()
        entries = self.ledger.list_posts()
        if not entries:
            return []

        workers = min(self.max_inflight, len(entries))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="postledger-fetch")
        futures: Dict[int, Future] = {}
        try:
            for i, entry in enumerate(entries):
                futures[i] = pool.submit(self._fetch_record, entry.content_ref)
            wait(list(futures.values()), timeout=self._guard_deadline_s(len(entries), workers))
        finally:
            # Never join stragglers; they finish (or time out) on their own.
            pool.shutdown(wait=False, cancel_futures=True)

        out: List[MergedPost] = []
        placeholders = 0
        for i, entry in enumerate(entries):
            fut = futures[i]
            merged: MergedPost
            if not fut.done() or fut.cancelled():
                merged = self._placeholder(entry, REASON_TIMEOUT, "lookup did not finish before the listing deadline")
            else:
                try:
                    merged = MergedPost.joined(entry, fut.result())
                except PostledgerError as e:
                    merged = self._placeholder(entry, e.code, str(e))
            if not merged.content_available:
                placeholders += 1
            out.append(merged)

        log_event(
            log,
            "posts_merged",
            total=len(out),
            placeholders=placeholders,
            max_inflight=workers,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return out

    def get_merged_post(self, post_id: int) -> MergedPost:
        """Single-entry join. Content failures surface as errors, not placeholders."""
        entry = self.ledger.get_post(int(post_id))
        return MergedPost.joined(entry, self._fetch_record(entry.content_ref))
