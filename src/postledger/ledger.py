# src/postledger/ledger.py
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from postledger.errors import LedgerRejected, LedgerUnreachable, PostNotFound
from postledger.models import (
    INTENT_CREATE_POST,
    INTENT_VOTE,
    Direction,
    FinalityResult,
    LedgerEntry,
    PendingReceipt,
    ReceiptState,
)
from postledger.structured_logging import log_event
from postledger.util.content_id import validate_content_id

Json = Dict[str, Any]

log = logging.getLogger("postledger.ledger")


def _now_ms() -> int:
    return int(time.time() * 1000)


class LedgerClient:
    """Typed access to the append-only post ledger.

    Writes submit an intent and hand back a PendingReceipt; callers decide how
    long to wait for finality. Reads never block on pending intents.

    Intent lifecycle: submitted -> pending -> confirmed | rejected | timed_out.
    A timed_out intent is indeterminate: it may still confirm later.
    """

    def create_post(self, content_ref: str) -> Tuple[Optional[int], PendingReceipt]:
        raise NotImplementedError

    def vote(self, post_id: int, direction: Direction) -> PendingReceipt:
        raise NotImplementedError

    def list_posts(self) -> List[LedgerEntry]:
        raise NotImplementedError

    def get_post(self, post_id: int) -> LedgerEntry:
        for entry in self.list_posts():
            if entry.post_id == int(post_id):
                return entry
        raise PostNotFound("post not found", {"post_id": int(post_id)})

    def await_finality(self, receipt: PendingReceipt, *, timeout_s: float) -> FinalityResult:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


# --------------------------------------------------------------------------
# Ledger metadata (contract-info.json)
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerInfo:
    address: str
    abi: List[Json]
    raw: Json = field(default_factory=dict)

    def has_event(self, name: str) -> bool:
        return any(isinstance(x, dict) and x.get("type") == "event" and x.get("name") == name for x in self.abi)

    def has_function(self, name: str) -> bool:
        return any(isinstance(x, dict) and x.get("type") == "function" and x.get("name") == name for x in self.abi)

    def function_outputs(self, name: str) -> List[Json]:
        for x in self.abi:
            if isinstance(x, dict) and x.get("type") == "function" and x.get("name") == name:
                outs = x.get("outputs")
                return outs if isinstance(outs, list) else []
        return []


def read_ledger_info(path: Optional[str]) -> Optional[Json]:
    """Raw ledger metadata, or None when the file is absent.

    A present but malformed file raises ValueError: that is a deployment
    error, not a "not deployed yet" state.
    """
    if not path:
        return None
    p = Path(path)
    if not p.exists() or not p.is_file():
        return None
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"ledger info at {path} must be a JSON object")
    return data


def load_ledger_info(path: Optional[str]) -> Optional[LedgerInfo]:
    data = read_ledger_info(path)
    if data is None:
        return None

    address = str(data.get("address") or "").strip()
    abi = data.get("abi")
    if not address:
        raise ValueError(f"ledger info at {path} is missing 'address'")
    if not isinstance(abi, list):
        raise ValueError(f"ledger info at {path} is missing 'abi'")
    return LedgerInfo(address=address, abi=abi, raw=data)


# --------------------------------------------------------------------------
# EVM contract client
# --------------------------------------------------------------------------

_POST_FIELDS = ("id", "creator", "ipfsHash", "rating", "timestamp")

_MISSING_POST_MARKERS = ("does not exist", "not exist", "not found", "invalid post")

VOTE_SURFACE_BOOL = "vote"
VOTE_SURFACE_SPLIT = "upvotePost/downvotePost"


@dataclass(frozen=True)
class EvmLedgerConfig:
    rpc_url: str
    account: str = ""
    poll_s: float = 0.5
    request_timeout_s: float = 10.0


def _revert_message(e: Exception) -> str:
    msg = getattr(e, "message", None)
    return str(msg if msg else e)


def _looks_like_missing_post(msg: str) -> bool:
    m = (msg or "").lower()
    return any(s in m for s in _MISSING_POST_MARKERS)


def _field(row: Any, name: str, index: int, names: Sequence[str]) -> Any:
    if isinstance(row, dict):
        return row.get(name)
    if hasattr(row, name):
        return getattr(row, name)
    if name in names:
        index = list(names).index(name)
    return row[index]


class EvmLedgerClient(LedgerClient):
    """PostManager contract over JSON-RPC (web3).

    Contract surface:
      - createPost(string ipfsHash)
      - vote(uint256 postId, bool up), or upvotePost(uint256) + downvotePost(uint256)
      - getAllPosts() -> (id, creator, ipfsHash, rating, timestamp)[]

    Transactions are sent from an account the node manages; signing and key
    management live outside this service.
    """

    def __init__(self, cfg: EvmLedgerConfig, info: LedgerInfo, *, w3: Optional[Web3] = None) -> None:
        self.cfg = cfg
        self.info = info
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(cfg.rpc_url, request_kwargs={"timeout": float(cfg.request_timeout_s)}))
        self._w3 = w3
        self._contract = w3.eth.contract(address=Web3.to_checksum_address(info.address), abi=info.abi)

        outs = info.function_outputs("getAllPosts")
        comps = outs[0].get("components") if outs and isinstance(outs[0], dict) else None
        self._post_field_names: Tuple[str, ...] = (
            tuple(str(c.get("name") or "") for c in comps) if isinstance(comps, list) else _POST_FIELDS
        )
        self._sender: Optional[str] = cfg.account.strip() or None
        if info.has_function("vote"):
            self._vote_surface: Optional[str] = VOTE_SURFACE_BOOL
        elif info.has_function("upvotePost") and info.has_function("downvotePost"):
            self._vote_surface = VOTE_SURFACE_SPLIT
        else:
            self._vote_surface = None

    def _account(self) -> str:
        if self._sender:
            return Web3.to_checksum_address(self._sender)
        try:
            accounts = list(self._w3.eth.accounts)
        except OSError as e:
            raise LedgerUnreachable("ledger rpc unreachable", {"error": str(e)}) from e
        except (ValueError, Web3Exception) as e:
            raise LedgerRejected("ledger node refused eth_accounts", {"error": str(e)}) from e
        if not accounts:
            raise LedgerRejected("no sending account available on the ledger node")
        self._sender = str(accounts[0])
        return Web3.to_checksum_address(self._sender)

    def _row_to_entry(self, row: Any) -> LedgerEntry:
        names = self._post_field_names
        return LedgerEntry(
            post_id=int(_field(row, "id", 0, names)),
            creator=str(_field(row, "creator", 1, names)),
            content_ref=str(_field(row, "ipfsHash", 2, names)),
            rating=int(_field(row, "rating", 3, names)),
            created_at=int(_field(row, "timestamp", 4, names)),
        )

    def list_posts(self) -> List[LedgerEntry]:
        try:
            rows = self._contract.functions.getAllPosts().call()
        except ContractLogicError as e:
            raise LedgerRejected("getAllPosts reverted", {"error": _revert_message(e)}) from e
        except OSError as e:
            raise LedgerUnreachable("ledger rpc unreachable", {"error": str(e)}) from e
        except (ValueError, Web3Exception) as e:
            # Wrong address or undeployed contract surfaces as undecodable output.
            raise LedgerRejected("getAllPosts failed", {"error": str(e), "address": self.info.address}) from e

        entries = [self._row_to_entry(r) for r in rows]
        entries.sort(key=lambda e: e.post_id)
        return entries

    def _submit(self, fn: Any, *, kind: str, context: Json) -> PendingReceipt:
        tx = {"from": self._account()}
        try:
            preview = fn.call(tx)
        except ContractLogicError as e:
            msg = _revert_message(e)
            if kind == INTENT_VOTE and _looks_like_missing_post(msg):
                raise PostNotFound("post not found", dict(context, error=msg)) from e
            raise LedgerRejected(f"{kind} would revert", dict(context, error=msg)) from e
        except OSError as e:
            raise LedgerUnreachable("ledger rpc unreachable", dict(context, error=str(e))) from e
        except (ValueError, Web3Exception) as e:
            raise LedgerRejected(f"{kind} refused by node", dict(context, error=str(e))) from e

        try:
            tx_hash = fn.transact(tx)
        except ContractLogicError as e:
            raise LedgerRejected(f"{kind} reverted", dict(context, error=_revert_message(e))) from e
        except OSError as e:
            raise LedgerUnreachable("ledger rpc unreachable", dict(context, error=str(e))) from e
        except (ValueError, Web3Exception) as e:
            # JSON-RPC error objects: the node answered and refused.
            raise LedgerRejected(f"{kind} refused by node", dict(context, error=str(e))) from e

        predicted = preview if isinstance(preview, int) and not isinstance(preview, bool) else None
        receipt = PendingReceipt(
            tx_id=Web3.to_hex(tx_hash),
            kind=kind,
            submitted_ms=_now_ms(),
            post_id=predicted if kind == INTENT_CREATE_POST else context.get("post_id"),
            content_ref=context.get("content_ref"),
        )
        log_event(log, "ledger_submitted", kind=kind, tx_id=receipt.tx_id, **context)
        return receipt

    def create_post(self, content_ref: str) -> Tuple[Optional[int], PendingReceipt]:
        v = validate_content_id(content_ref)
        if not v.ok:
            raise LedgerRejected("malformed content reference", {"content_ref": content_ref, "reason": v.reason})

        receipt = self._submit(
            self._contract.functions.createPost(v.cid),
            kind=INTENT_CREATE_POST,
            context={"content_ref": v.cid},
        )
        return receipt.post_id, receipt

    def _vote_fn(self, pid: int, direction: Direction) -> Any:
        if self._vote_surface == VOTE_SURFACE_BOOL:
            return self._contract.functions.vote(pid, direction.is_up)
        if direction.is_up:
            return self._contract.functions.upvotePost(pid)
        return self._contract.functions.downvotePost(pid)

    def vote(self, post_id: int, direction: Direction) -> PendingReceipt:
        pid = int(post_id)
        if self._vote_surface is None:
            raise LedgerRejected(
                "contract exposes no vote function",
                {"post_id": pid, "expected": [VOTE_SURFACE_BOOL, VOTE_SURFACE_SPLIT], "address": self.info.address},
            )
        # Existence check first: a missing post must surface as PostNotFound.
        self.get_post(pid)
        receipt = self._submit(
            self._vote_fn(pid, direction),
            kind=INTENT_VOTE,
            context={"post_id": pid, "direction": direction.value},
        )
        return receipt

    def _post_id_from_receipt(self, rcpt: Any) -> Optional[int]:
        if not self.info.has_event("PostCreated"):
            return None
        events = self._contract.events.PostCreated().process_receipt(rcpt, errors=DISCARD)
        for ev in events:
            args = ev["args"]
            for key in ("id", "postId", "_id"):
                if key in args:
                    return int(args[key])
            for value in args.values():
                if isinstance(value, int) and not isinstance(value, bool):
                    return int(value)
        return None

    def _post_id_from_ledger(self, receipt: PendingReceipt) -> Optional[int]:
        """Newest entry anchoring the receipt's content ref from our sender."""
        if not receipt.content_ref:
            return None
        sender = (self._sender or "").lower()
        try:
            entries = self.list_posts()
        except (LedgerRejected, LedgerUnreachable) as e:
            log_event(log, "ledger_id_lookup_failed", level=logging.WARNING, tx_id=receipt.tx_id, error=str(e))
            return None
        ids = [
            e.post_id
            for e in entries
            if e.content_ref == receipt.content_ref and (not sender or e.creator.lower() == sender)
        ]
        return max(ids) if ids else None

    def await_finality(self, receipt: PendingReceipt, *, timeout_s: float) -> FinalityResult:
        timeout_s = max(0.0, float(timeout_s))
        try:
            rcpt = self._w3.eth.wait_for_transaction_receipt(
                receipt.tx_id,
                timeout=timeout_s,
                poll_latency=float(self.cfg.poll_s),
            )
        except (TimeExhausted, TransactionNotFound):
            return FinalityResult(ReceiptState.TIMED_OUT, post_id=receipt.post_id, reason="deadline elapsed")
        except (OSError, ValueError, Web3Exception) as e:
            # Lost contact while waiting: the intent's fate is unknown.
            log_event(log, "ledger_wait_transport_error", level=logging.WARNING, tx_id=receipt.tx_id, error=str(e))
            return FinalityResult(ReceiptState.TIMED_OUT, post_id=receipt.post_id, reason="rpc failure while waiting")

        block_number = rcpt.get("blockNumber")
        if int(rcpt["status"]) != 1:
            return FinalityResult(
                ReceiptState.REJECTED,
                post_id=receipt.post_id,
                reason="transaction reverted",
                block_number=block_number,
            )

        post_id = receipt.post_id
        if receipt.kind == INTENT_CREATE_POST:
            # The eth_call preview races with concurrent creates; prefer what the ledger recorded.
            post_id = self._post_id_from_receipt(rcpt)
            if post_id is None:
                post_id = self._post_id_from_ledger(receipt)
            if post_id is None:
                post_id = receipt.post_id

        return FinalityResult(ReceiptState.CONFIRMED, post_id=post_id, block_number=block_number)

    def ping(self) -> bool:
        try:
            return bool(self._w3.is_connected())
        except (OSError, Web3Exception):
            return False


# --------------------------------------------------------------------------
# In-process ledger
# --------------------------------------------------------------------------

FINALITY_CONFIRM = "confirm"
FINALITY_REJECT = "reject"
FINALITY_HANG = "hang"
FINALITY_CONFIRM_LATE = "confirm_late"


@dataclass
class _Intent:
    receipt: PendingReceipt
    state: ReceiptState
    creator: str
    content_ref: str = ""
    direction: Optional[Direction] = None
    result: Optional[FinalityResult] = None


class MemoryLedger(LedgerClient):
    """
    Minimal in-process ledger used for unit tests and the memory backend.

    - Post ids ascend from 1 and are assigned on confirmation
    - Ratings move +1/-1 per confirmed vote (simulation only; the deployed
      contract owns the real rule)
    - finality controls what await_finality does with pending intents:
        confirm       confirm immediately
        reject        reject
        hang          wait out the deadline, leave the intent pending
        confirm_late  wait out the deadline, then confirm anyway
    """

    def __init__(self, *, finality: str = FINALITY_CONFIRM, creator: str = "0x" + "11" * 20) -> None:
        self.finality = finality
        self.creator = creator
        self.available = True
        self._lock = threading.Lock()
        self._posts: Dict[int, Json] = {}
        self._intents: Dict[str, _Intent] = {}
        self._next_id = 1
        self._seq = 0
        self.create_calls = 0
        self.vote_calls = 0

    def _require_available(self) -> None:
        if not self.available:
            raise LedgerUnreachable("memory ledger offline")

    def _new_receipt(self, kind: str, post_id: Optional[int], content_ref: Optional[str] = None) -> PendingReceipt:
        self._seq += 1
        tx_id = "0x" + hashlib.sha256(f"{kind}:{self._seq}".encode("utf-8")).hexdigest()
        return PendingReceipt(
            tx_id=tx_id, kind=kind, submitted_ms=_now_ms(), post_id=post_id, content_ref=content_ref
        )

    def create_post(self, content_ref: str) -> Tuple[Optional[int], PendingReceipt]:
        self._require_available()
        v = validate_content_id(content_ref)
        if not v.ok:
            raise LedgerRejected("malformed content reference", {"content_ref": content_ref, "reason": v.reason})

        with self._lock:
            self.create_calls += 1
            pending_creates = sum(
                1 for i in self._intents.values() if i.receipt.kind == INTENT_CREATE_POST and not i.state.terminal
            )
            predicted = self._next_id + pending_creates
            receipt = self._new_receipt(INTENT_CREATE_POST, predicted, v.cid)
            self._intents[receipt.tx_id] = _Intent(
                receipt=receipt, state=ReceiptState.SUBMITTED, creator=self.creator, content_ref=v.cid
            )
        return predicted, receipt

    def vote(self, post_id: int, direction: Direction) -> PendingReceipt:
        self._require_available()
        pid = int(post_id)
        with self._lock:
            self.vote_calls += 1
            if pid not in self._posts:
                raise PostNotFound("post not found", {"post_id": pid})
            receipt = self._new_receipt(INTENT_VOTE, pid)
            self._intents[receipt.tx_id] = _Intent(
                receipt=receipt, state=ReceiptState.SUBMITTED, creator=self.creator, direction=direction
            )
        return receipt

    def list_posts(self) -> List[LedgerEntry]:
        self._require_available()
        with self._lock:
            return [self._entry(pid) for pid in sorted(self._posts)]

    def get_post(self, post_id: int) -> LedgerEntry:
        self._require_available()
        with self._lock:
            if int(post_id) not in self._posts:
                raise PostNotFound("post not found", {"post_id": int(post_id)})
            return self._entry(int(post_id))

    def _entry(self, pid: int) -> LedgerEntry:
        p = self._posts[pid]
        return LedgerEntry(
            post_id=pid,
            creator=str(p["creator"]),
            content_ref=str(p["content_ref"]),
            rating=int(p["rating"]),
            created_at=int(p["created_at"]),
        )

    def _apply(self, intent: _Intent) -> FinalityResult:
        """Confirm a pending intent. Caller holds the lock."""
        post_id = intent.receipt.post_id
        if intent.receipt.kind == INTENT_CREATE_POST:
            post_id = self._next_id
            self._next_id += 1
            self._posts[post_id] = {
                "creator": intent.creator,
                "content_ref": intent.content_ref,
                "rating": 0,
                "created_at": int(time.time()),
            }
        elif intent.direction is not None and post_id in self._posts:
            self._posts[post_id]["rating"] += 1 if intent.direction.is_up else -1

        intent.state = ReceiptState.CONFIRMED
        intent.result = FinalityResult(ReceiptState.CONFIRMED, post_id=post_id, block_number=self._seq)
        return intent.result

    def await_finality(self, receipt: PendingReceipt, *, timeout_s: float) -> FinalityResult:
        with self._lock:
            intent = self._intents.get(receipt.tx_id)
            if intent is None:
                return FinalityResult(ReceiptState.REJECTED, reason="unknown transaction")
            if intent.result is not None:
                return intent.result
            # Awaited intents are pending until resolved.
            intent.state = ReceiptState.PENDING

            mode = self.finality
            if mode == FINALITY_CONFIRM:
                return self._apply(intent)
            if mode == FINALITY_REJECT:
                intent.state = ReceiptState.REJECTED
                intent.result = FinalityResult(ReceiptState.REJECTED, post_id=receipt.post_id, reason="rejected by ledger")
                return intent.result

        # hang / confirm_late: honour the caller's deadline without holding the lock.
        time.sleep(max(0.0, float(timeout_s)))
        if mode == FINALITY_CONFIRM_LATE:
            with self._lock:
                if intent.result is None:
                    self._apply(intent)
        return FinalityResult(ReceiptState.TIMED_OUT, post_id=receipt.post_id, reason="deadline elapsed")

    def ping(self) -> bool:
        return bool(self.available)

    # ---- helpers for tests / harness ----

    def settle_pending(self) -> int:
        """Confirm every unresolved intent; returns how many were applied."""
        n = 0
        with self._lock:
            for intent in self._intents.values():
                if intent.result is None and not intent.state.terminal:
                    self._apply(intent)
                    n += 1
        return n

    def intent_state(self, tx_id: str) -> Optional[ReceiptState]:
        with self._lock:
            intent = self._intents.get(tx_id)
            return intent.state if intent is not None else None
