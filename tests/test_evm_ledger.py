from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted

from postledger.content_store import MemoryContentStore
from postledger.errors import LedgerRejected, LedgerUnreachable, PostNotFound, VoteError
from postledger.ledger import EvmLedgerClient, EvmLedgerConfig, LedgerInfo, load_ledger_info, read_ledger_info
from postledger.models import INTENT_CREATE_POST, INTENT_VOTE, ContentRecord, Direction, PendingReceipt, ReceiptState
from postledger.publish import PublishCoordinator
from postledger.util.content_id import compute_content_id
from postledger.vote import VoteCoordinator

ADDRESS = "0x" + "ab" * 20
SENDER = "0x" + "cd" * 20
CID = compute_content_id(b"hello")

ABI: List[dict] = [
    {
        "type": "function",
        "name": "getAllPosts",
        "inputs": [],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "id", "type": "uint256"},
                    {"name": "creator", "type": "address"},
                    {"name": "ipfsHash", "type": "string"},
                    {"name": "rating", "type": "int256"},
                    {"name": "timestamp", "type": "uint256"},
                ],
            }
        ],
    },
    {"type": "function", "name": "createPost", "inputs": [{"name": "ipfsHash", "type": "string"}], "outputs": []},
    {
        "type": "function",
        "name": "vote",
        "inputs": [{"name": "postId", "type": "uint256"}, {"name": "up", "type": "bool"}],
        "outputs": [],
    },
    {"type": "event", "name": "PostCreated", "inputs": [{"name": "id", "type": "uint256", "indexed": True}]},
]


class _Fn:
    """A bound contract function: call() previews, transact() submits."""

    def __init__(self, *, preview: Any = None, call_error: Optional[Exception] = None, transact_error: Optional[Exception] = None) -> None:
        self.preview = preview
        self.call_error = call_error
        self.transact_error = transact_error
        self.calls: List[Any] = []
        self.transacts: List[Any] = []

    def call(self, tx: Any = None) -> Any:
        self.calls.append(tx)
        if self.call_error is not None:
            raise self.call_error
        return self.preview

    def transact(self, tx: Any) -> bytes:
        self.transacts.append(tx)
        if self.transact_error is not None:
            raise self.transact_error
        return b"\x12" * 32


def _mk(
    *,
    rows: Optional[list] = None,
    create: Optional[_Fn] = None,
    vote: Optional[_Fn] = None,
    receipt: Any = None,
    wait_error: Optional[Exception] = None,
    event_id: Optional[int] = 7,
    accounts: Optional[list] = None,
    abi: Optional[list] = None,
) -> SimpleNamespace:
    create = create or _Fn()
    vote = vote or _Fn()
    vote_args: List[Any] = []
    create_args: List[Any] = []

    def _create_post(cid: str) -> _Fn:
        create_args.append(cid)
        return create

    def _vote(pid: int, up: bool) -> _Fn:
        vote_args.append((pid, up))
        return vote

    def _upvote(pid: int) -> _Fn:
        vote_args.append((pid, "upvotePost"))
        return vote

    def _downvote(pid: int) -> _Fn:
        vote_args.append((pid, "downvotePost"))
        return vote

    def _wait(tx_id: str, timeout: float, poll_latency: float) -> Any:
        if wait_error is not None:
            raise wait_error
        return receipt

    def _process_receipt(rcpt: Any, errors: Any = None) -> list:
        return [] if event_id is None else [{"args": {"id": event_id}}]

    contract = SimpleNamespace(
        functions=SimpleNamespace(
            getAllPosts=lambda: SimpleNamespace(call=lambda: list(rows or [])),
            createPost=_create_post,
            vote=_vote,
            upvotePost=_upvote,
            downvotePost=_downvote,
        ),
        events=SimpleNamespace(PostCreated=lambda: SimpleNamespace(process_receipt=_process_receipt)),
    )
    w3 = SimpleNamespace(
        eth=SimpleNamespace(
            contract=lambda address, abi: contract,
            accounts=[SENDER] if accounts is None else accounts,
            wait_for_transaction_receipt=_wait,
        ),
        is_connected=lambda: True,
    )
    client = EvmLedgerClient(
        EvmLedgerConfig(rpc_url="http://127.0.0.1:8545", poll_s=0.01),
        LedgerInfo(address=ADDRESS, abi=ABI if abi is None else abi),
        w3=w3,  # type: ignore[arg-type]
    )
    return SimpleNamespace(client=client, w3=w3, create=create, vote=vote, create_args=create_args, vote_args=vote_args)


def test_list_posts_maps_rows_and_sorts_by_id() -> None:
    h = _mk(rows=[(2, SENDER, CID, -1, 1_700_000_100), (1, SENDER, CID, 4, 1_700_000_000)])

    posts = h.client.list_posts()

    assert [p.post_id for p in posts] == [1, 2]
    assert posts[0].rating == 4
    assert posts[1].rating == -1
    assert posts[0].content_ref == CID
    assert posts[0].created_at == 1_700_000_000


def test_list_posts_accepts_attribute_rows() -> None:
    row = SimpleNamespace(id=3, creator=SENDER, ipfsHash=CID, rating=0, timestamp=5)
    assert [p.post_id for p in _mk(rows=[row]).client.list_posts()] == [3]


def test_list_posts_transport_failure() -> None:
    h = _mk()

    def _boom() -> Any:
        raise ConnectionError("rpc down")

    h.client._contract.functions.getAllPosts = lambda: SimpleNamespace(call=_boom)
    with pytest.raises(LedgerUnreachable):
        h.client.list_posts()


def test_create_post_previews_then_submits_from_node_account() -> None:
    h = _mk(create=_Fn(preview=5))

    predicted, receipt = h.client.create_post(CID)

    assert predicted == 5
    assert receipt.kind == INTENT_CREATE_POST
    assert receipt.tx_id == "0x" + "12" * 32
    assert h.create_args == [CID]
    assert len(h.create.calls) == 1
    assert len(h.create.transacts) == 1
    assert h.create.transacts[0]["from"].lower() == SENDER


def test_create_post_without_preview_id() -> None:
    h = _mk(create=_Fn(preview=None))
    predicted, receipt = h.client.create_post(CID)
    assert predicted is None
    assert receipt.post_id is None


def test_create_post_rejects_malformed_ref_without_rpc() -> None:
    h = _mk()
    with pytest.raises(LedgerRejected):
        h.client.create_post("not a cid")
    assert h.create_args == []


def test_create_post_revert_is_rejected_and_not_submitted() -> None:
    h = _mk(create=_Fn(call_error=ContractLogicError("execution reverted: empty hash")))
    with pytest.raises(LedgerRejected):
        h.client.create_post(CID)
    assert h.create.transacts == []


def test_create_post_transport_failure() -> None:
    h = _mk(create=_Fn(preview=1, transact_error=ConnectionError("reset")))
    with pytest.raises(LedgerUnreachable):
        h.client.create_post(CID)


def test_no_sending_account_is_rejected() -> None:
    h = _mk(accounts=[])
    with pytest.raises(LedgerRejected):
        h.client.create_post(CID)


def test_vote_checks_existence_first() -> None:
    h = _mk(rows=[])
    with pytest.raises(PostNotFound):
        h.client.vote(3, Direction.UP)
    assert h.vote_args == []


def test_vote_passes_direction_as_bool() -> None:
    h = _mk(rows=[(1, SENDER, CID, 0, 1)])

    r_up = h.client.vote(1, Direction.UP)
    h.client.vote(1, Direction.DOWN)

    assert h.vote_args == [(1, True), (1, False)]
    assert r_up.kind == INTENT_VOTE
    assert r_up.post_id == 1


def test_vote_revert_for_missing_post_maps_to_not_found() -> None:
    h = _mk(rows=[(1, SENDER, CID, 0, 1)], vote=_Fn(call_error=ContractLogicError("execution reverted: Post does not exist")))
    with pytest.raises(PostNotFound):
        h.client.vote(1, Direction.UP)


def test_vote_uses_split_functions_when_the_abi_has_them() -> None:
    split_abi = [x for x in ABI if x.get("name") != "vote"] + [
        {"type": "function", "name": "upvotePost", "inputs": [{"name": "postId", "type": "uint256"}], "outputs": []},
        {"type": "function", "name": "downvotePost", "inputs": [{"name": "postId", "type": "uint256"}], "outputs": []},
    ]
    h = _mk(rows=[(1, SENDER, CID, 0, 1)], abi=split_abi)

    h.client.vote(1, Direction.UP)
    h.client.vote(1, Direction.DOWN)

    assert h.vote_args == [(1, "upvotePost"), (1, "downvotePost")]
    assert len(h.vote.transacts) == 2


def test_vote_without_a_vote_function_is_rejected_before_rpc() -> None:
    no_vote_abi = [x for x in ABI if x.get("name") != "vote"]
    h = _mk(rows=[(1, SENDER, CID, 0, 1)], abi=no_vote_abi)

    with pytest.raises(LedgerRejected) as e:
        h.client.vote(1, Direction.UP)

    assert e.value.reason == "contract exposes no vote function"
    assert h.vote_args == []
    assert h.vote.transacts == []

    voter = VoteCoordinator(ledger=h.client, finality_timeout_s=0.01)
    with pytest.raises(VoteError) as ve:
        voter.cast_vote(1, Direction.UP)
    assert ve.value.reason == "rejected"


def test_undecodable_contract_output_is_rejected() -> None:
    h = _mk(rows=[(1, SENDER, CID, 0, 1)])

    def _bad() -> Any:
        raise BadFunctionCallOutput("Could not decode contract function call to getAllPosts with return data: b''")

    h.client._contract.functions.getAllPosts = lambda: SimpleNamespace(call=_bad)

    with pytest.raises(LedgerRejected) as e:
        h.client.list_posts()
    assert e.value.details["address"] == ADDRESS
    with pytest.raises(LedgerRejected):
        h.client.get_post(1)
    with pytest.raises(LedgerRejected):
        h.client.vote(1, Direction.UP)
    assert h.vote.transacts == []


def _receipt(
    kind: str = INTENT_CREATE_POST, post_id: Optional[int] = 5, content_ref: Optional[str] = None
) -> PendingReceipt:
    return PendingReceipt(tx_id="0x" + "12" * 32, kind=kind, submitted_ms=0, post_id=post_id, content_ref=content_ref)


def test_await_finality_confirmed_uses_event_id() -> None:
    h = _mk(receipt={"status": 1, "blockNumber": 12}, event_id=7)
    res = h.client.await_finality(_receipt(), timeout_s=1.0)
    assert res.state is ReceiptState.CONFIRMED
    assert res.post_id == 7
    assert res.block_number == 12


def test_await_finality_without_event_keeps_predicted_id() -> None:
    h = _mk(receipt={"status": 1, "blockNumber": 12}, event_id=None)
    assert h.client.await_finality(_receipt(post_id=5), timeout_s=1.0).post_id == 5

    no_event_abi = [x for x in ABI if x.get("type") != "event"]
    h = _mk(receipt={"status": 1, "blockNumber": 12}, abi=no_event_abi)
    assert h.client.await_finality(_receipt(post_id=5), timeout_s=1.0).post_id == 5


def test_await_finality_without_event_reads_id_back_from_ledger() -> None:
    other = "0x" + "ef" * 20
    rows = [
        (3, SENDER, CID, 0, 1),
        (7, other, CID, 0, 5),
        (5, SENDER, compute_content_id(b"other"), 0, 3),
        (6, SENDER, CID, 0, 4),
    ]
    h = _mk(rows=rows, receipt={"status": 1, "blockNumber": 12}, event_id=None)
    h.client._account()

    # Newest matching entry from our sender wins over a stale preview.
    res = h.client.await_finality(_receipt(post_id=2, content_ref=CID), timeout_s=1.0)
    assert res.state is ReceiptState.CONFIRMED
    assert res.post_id == 6


def test_publish_confirmed_without_event_or_return_value_resolves_post_id() -> None:
    record = ContentRecord.new("Hello", "World")
    cid = compute_content_id(record.to_bytes())
    no_event_abi = [x for x in ABI if x.get("type") != "event"]
    h = _mk(
        rows=[(1, "0x" + "ef" * 20, cid, 0, 1), (2, SENDER, cid, 0, 2)],
        create=_Fn(preview=[]),
        receipt={"status": 1, "blockNumber": 12},
        abi=no_event_abi,
    )
    pub = PublishCoordinator(store=MemoryContentStore(), ledger=h.client, finality_timeout_s=1.0)

    out = pub.publish(record)

    assert out.post_id == 2
    assert out.content_ref == cid
    assert out.tx_id == "0x" + "12" * 32


def test_publish_confirmed_with_no_way_to_identify_the_entry() -> None:
    no_event_abi = [x for x in ABI if x.get("type") != "event"]
    h = _mk(rows=[], create=_Fn(preview=None), receipt={"status": 1, "blockNumber": 12}, abi=no_event_abi)
    pub = PublishCoordinator(store=MemoryContentStore(), ledger=h.client, finality_timeout_s=1.0)

    out = pub.publish(ContentRecord.new("Hello", "World"))

    # Anchored, so not indeterminate; the id is simply unknown.
    assert out.post_id is None
    assert out.tx_id == "0x" + "12" * 32


def test_await_finality_reverted_is_rejected() -> None:
    h = _mk(receipt={"status": 0, "blockNumber": 12})
    assert h.client.await_finality(_receipt(), timeout_s=1.0).state is ReceiptState.REJECTED


@pytest.mark.parametrize("err", [TimeExhausted(), ConnectionError("lost"), ValueError({"code": -32000, "message": "header not found"})])
def test_await_finality_unknown_outcome_is_timed_out(err: Exception) -> None:
    h = _mk(wait_error=err)
    res = h.client.await_finality(_receipt(), timeout_s=0.01)
    assert res.state is ReceiptState.TIMED_OUT
    assert res.post_id == 5


def test_ping() -> None:
    h = _mk()
    assert h.client.ping() is True

    def _down() -> bool:
        raise ConnectionError("down")

    h.w3.is_connected = _down
    assert h.client.ping() is False


def test_ledger_info_files(tmp_path) -> None:
    missing = tmp_path / "nope.json"
    assert read_ledger_info(str(missing)) is None
    assert load_ledger_info(str(missing)) is None
    assert read_ledger_info("") is None

    good = tmp_path / "contract-info.json"
    good.write_text(json.dumps({"address": ADDRESS, "abi": ABI}), encoding="utf-8")
    info = load_ledger_info(str(good))
    assert info is not None
    assert info.address == ADDRESS
    assert info.has_event("PostCreated")
    assert [o["name"] for o in info.function_outputs("getAllPosts")[0]["components"]][2] == "ipfsHash"

    not_obj = tmp_path / "list.json"
    not_obj.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        read_ledger_info(str(not_obj))

    no_addr = tmp_path / "noaddr.json"
    no_addr.write_text(json.dumps({"abi": []}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_ledger_info(str(no_addr))
