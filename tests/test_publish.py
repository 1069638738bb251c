from __future__ import annotations

import pytest

from postledger.content_store import MemoryContentStore
from postledger.errors import PublishError, ValidationFailure
from postledger.ledger import FINALITY_CONFIRM, FINALITY_CONFIRM_LATE, FINALITY_HANG, FINALITY_REJECT, MemoryLedger
from postledger.models import ContentRecord
from postledger.publish import PublishCoordinator
from postledger.util.content_id import compute_content_id


def _mk(*, finality: str = FINALITY_CONFIRM, with_ledger: bool = True):
    store = MemoryContentStore()
    ledger = MemoryLedger(finality=finality) if with_ledger else None
    pub = PublishCoordinator(store=store, ledger=ledger, finality_timeout_s=0.01)
    return store, ledger, pub


def test_publish_hello_world_anchors_the_stored_content() -> None:
    store, ledger, pub = _mk()
    record = ContentRecord.new("Hello", "World")

    out = pub.publish(record)

    assert out.post_id == 1
    assert out.content_ref == compute_content_id(record.to_bytes())
    assert out.tx_id.startswith("0x")
    assert out.content_ref in store

    entries = ledger.list_posts()
    assert len(entries) == 1
    assert entries[0].content_ref == out.content_ref
    assert entries[0].rating == 0
    assert ContentRecord.from_bytes(store.get(out.content_ref)).author == "Anonymous"


def test_validation_happens_before_any_io() -> None:
    store, ledger, pub = _mk()

    with pytest.raises(ValidationFailure) as e:
        pub.publish(ContentRecord.new("", "World"))
    assert e.value.details["missing"] == ["title"]

    with pytest.raises(ValidationFailure):
        pub.publish(ContentRecord.new("Hello", "   "))

    assert store.put_calls == 0
    assert ledger.create_calls == 0


def test_store_unavailable_never_touches_the_ledger() -> None:
    store, ledger, pub = _mk()
    store.available = False

    with pytest.raises(PublishError) as e:
        pub.publish(ContentRecord.new("Hello", "World"))

    assert e.value.stage == "content"
    assert e.value.kind == "transport"
    assert e.value.content_ref is None
    assert ledger.create_calls == 0


def test_store_write_rejected_is_content_stage() -> None:
    store, ledger, pub = _mk()
    store.reject_writes = True

    with pytest.raises(PublishError) as e:
        pub.publish(ContentRecord.new("Hello", "World"))

    assert (e.value.stage, e.value.kind) == ("content", "rejected")
    assert ledger.create_calls == 0


def test_ledger_rejection_keeps_content_ref_and_anchor_retry_succeeds() -> None:
    store, ledger, pub = _mk(finality=FINALITY_REJECT)
    record = ContentRecord.new("Hello", "World")

    with pytest.raises(PublishError) as e:
        pub.publish(record)

    err = e.value
    assert (err.stage, err.kind) == ("ledger", "rejected")
    assert err.content_ref == compute_content_id(record.to_bytes())
    assert err.tx_id
    assert err.content_ref in store
    assert ledger.list_posts() == []

    # Content is already stored; anchoring the same id again needs no new write.
    ledger.finality = FINALITY_CONFIRM
    puts_before = store.put_calls
    out = pub.anchor(err.content_ref)
    assert out.post_id == 1
    assert store.put_calls == puts_before


def test_ledger_unreachable_is_ledger_stage() -> None:
    store, ledger, pub = _mk()
    ledger.available = False

    with pytest.raises(PublishError) as e:
        pub.publish(ContentRecord.new("Hello", "World"))

    assert (e.value.stage, e.value.kind) == ("ledger", "transport")
    assert e.value.content_ref in store


def test_finality_timeout_is_indeterminate_and_may_never_land() -> None:
    _store, ledger, pub = _mk(finality=FINALITY_HANG)

    with pytest.raises(PublishError) as e:
        pub.publish(ContentRecord.new("Hello", "World"))

    err = e.value
    assert (err.stage, err.kind) == ("indeterminate", "indeterminate")
    assert err.tx_id
    assert err.content_ref
    assert ledger.create_calls == 1
    assert ledger.list_posts() == []


def test_finality_timeout_is_indeterminate_and_may_land_later() -> None:
    _store, ledger, pub = _mk(finality=FINALITY_CONFIRM_LATE)

    with pytest.raises(PublishError) as e:
        pub.publish(ContentRecord.new("Hello", "World"))

    assert e.value.stage == "indeterminate"
    # No internal retry: exactly one entry, written by the single intent.
    assert ledger.create_calls == 1
    assert [p.content_ref for p in ledger.list_posts()] == [e.value.content_ref]


def test_anchor_without_ledger() -> None:
    store, _ledger, pub = _mk(with_ledger=False)
    ref = pub.store_content(ContentRecord.new("Hello", "World"))
    assert ref in store

    with pytest.raises(PublishError) as e:
        pub.anchor(ref)
    assert e.value.stage == "ledger"
    assert e.value.content_ref == ref


def test_publish_error_details_shape() -> None:
    err = PublishError(stage="ledger", kind="rejected", reason="nope", content_ref="bafkx", tx_id="0x1")
    assert err.to_details() == {
        "stage": "ledger",
        "kind": "rejected",
        "reason": "nope",
        "contentRef": "bafkx",
        "txId": "0x1",
    }
