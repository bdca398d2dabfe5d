from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fundnet.errors import InfrastructureError
from fundnet.fund_types import POSITION_REF_RE, PositionStatus

ADDR_A = "0xAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAa"
ADDR_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
TX1 = "0x" + "01" * 32
TX2 = "0x" + "02" * 32
FUNDED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
SWEPT_AT = datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc)


@pytest.fixture
def position(store):
    return store.create_position(ADDR_A, "blob-a", Decimal("100"), Decimal("250000"))


def _fund(store, position, tx=TX1, amount="150"):
    return store.mark_funded(position.id, tx, Decimal(amount), int(Decimal(amount) * 10 ** 18), FUNDED_AT)


def test_create_position_defaults(store, position):
    assert POSITION_REF_RE.match(position.position_ref)
    assert position.deposit_address == ADDR_A.lower()
    assert position.status == PositionStatus.AWAITING_FUNDS
    assert position.expected_min == Decimal("100")
    assert position.created_at.tzinfo is not None
    assert store.get_encrypted_key(position.id) == "blob-a"
    assert store.get_by_address(ADDR_A).id == position.id


def test_deposit_address_is_never_reused(store, position):
    with pytest.raises(InfrastructureError, match="already issued"):
        store.create_position(ADDR_A, "blob-again", Decimal("100"), Decimal("250000"))


def test_ref_collision_retries_with_fresh_ref(store, position, monkeypatch):
    refs = iter([position.position_ref, "FN-0000BEEF"])
    monkeypatch.setattr("fundnet.position_store.make_position_ref", lambda: next(refs))

    second = store.create_position(ADDR_B, "blob-b", Decimal("100"), Decimal("250000"))
    assert second.position_ref == "FN-0000BEEF"
    assert store.get_encrypted_key(second.id) == "blob-b"


def test_mark_funded_is_write_once(store, position):
    assert _fund(store, position) is True
    assert _fund(store, position, tx=TX2, amount="200") is False

    current = store.get_by_id(position.id)
    assert current.status == PositionStatus.FUNDED_LOCKED
    assert current.deposit_tx_hash == TX1
    assert current.funded_amount == Decimal("150")
    assert current.funded_amount_raw == 150 * 10 ** 18
    assert current.funded_at == FUNDED_AT


def test_same_deposit_tx_cannot_fund_two_positions(store, position):
    other = store.create_position(ADDR_B, "blob-b", Decimal("100"), Decimal("250000"))
    assert _fund(store, position) is True
    assert _fund(store, other) is False
    assert store.get_by_id(other.id).status == PositionStatus.AWAITING_FUNDS


def test_sweep_requires_funded(store, position):
    assert store.mark_swept(position.id, TX2, SWEPT_AT) is False
    _fund(store, position)
    assert store.mark_swept(position.id, TX2, SWEPT_AT) is True
    assert store.mark_swept(position.id, "0x" + "03" * 32, SWEPT_AT) is False
    assert store.get_by_id(position.id).sweep_tx_hash == TX2


def test_gas_topup_is_recorded_once(store, position):
    _fund(store, position)
    assert store.record_gas_topup(position.id, TX2, 450) is True
    assert store.record_gas_topup(position.id, "0x" + "04" * 32, 900) is False

    current = store.get_by_id(position.id)
    assert current.gas_topup_tx_hash == TX2
    assert current.gas_topup_amount == 450


def test_chain_tx_slot_is_claimed_once_per_step(store, position):
    raw = bytes.fromhex("f86b8085012a05f200")
    assert store.claim_chain_tx(position.id, "sweep", TX1, raw, ADDR_B, 150) is True
    assert store.claim_chain_tx(position.id, "sweep", TX2, b"\x01", ADDR_B) is False
    assert store.claim_chain_tx(position.id, "mint", TX2, b"\x01", ADDR_B) is True

    claimed = store.get_chain_tx(position.id, "sweep")
    assert claimed.tx_hash == TX1
    assert claimed.raw_tx == raw
    assert claimed.amount == 150
    assert store.get_chain_tx(position.id, "allocation") is None


def test_chain_tx_hash_is_unique_across_positions(store, position):
    other = store.create_position(ADDR_B, "blob-b", Decimal("100"), Decimal("250000"))
    assert store.claim_chain_tx(position.id, "sweep", TX1, b"", ADDR_A) is True
    assert store.claim_chain_tx(other.id, "sweep", TX1, b"", ADDR_B) is False


def test_allocation_requires_mint_and_keeps_accrual_start(store, position):
    _fund(store, position)
    store.mark_swept(position.id, TX2, SWEPT_AT)

    assert store.record_allocation(position.id, "0x" + "06" * 32, Decimal("150"), SWEPT_AT) is False
    assert store.record_mint(position.id, "0x" + "05" * 32) is True
    assert store.record_mint(position.id, "0x" + "07" * 32) is False
    assert store.record_allocation(position.id, "0x" + "06" * 32, Decimal("150"), SWEPT_AT) is True

    current = store.get_by_id(position.id)
    assert current.is_allocated
    assert current.accrual_started_at == SWEPT_AT
    assert current.allocated_amount == Decimal("150")


def test_bind_owner(store, position):
    other = store.create_position(ADDR_B, "blob-b", Decimal("100"), Decimal("250000"))
    bound = store.bind_owner([position.position_ref, other.position_ref, "FN-FFFFFFFF"], "user-1")

    assert bound == [position.position_ref, other.position_ref]
    assert [p.id for p in store.list_by_owner("user-1")] == [position.id, other.id]

    assert store.bind_owner_if_unset(position.id, "user-2") is False
    assert store.get_by_id(position.id).owner_id == "user-1"


def test_backlog_lists(store, position):
    other = store.create_position(ADDR_B, "blob-b", Decimal("100"), Decimal("250000"))
    _fund(store, position)

    assert [p.id for p in store.list_awaiting()] == [other.id]
    assert [p.id for p in store.list_sweepable()] == [position.id]
    assert store.list_swept_unallocated() == []

    store.mark_swept(position.id, TX2, SWEPT_AT)
    assert [p.id for p in store.list_swept_unallocated()] == [position.id]


def test_summary_counts_active_positions(store, position):
    other = store.create_position(ADDR_B, "blob-b", Decimal("100"), Decimal("250000"))
    store.create_position("0x" + "cc" * 20, "blob-c", Decimal("100"), Decimal("250000"))
    store.mark_funded(position.id, TX1, Decimal("150"), 150, FUNDED_AT, owner_id="user-1")
    store.mark_funded(other.id, TX2, Decimal("1000.5"), 1000, FUNDED_AT)
    store.mark_swept(other.id, "0x" + "09" * 32, SWEPT_AT)

    summary = store.summary("user-1")
    assert summary["pending_positions"] == 1
    assert summary["active_positions"] == 2
    assert Decimal(summary["total_funded"]) == Decimal("1150.5")
    assert summary["counts_by_status"] == {"awaiting_funds": 1, "funded_locked": 1, "swept_locked": 1}
    assert Decimal(summary["owner"]["total_funded"]) == Decimal("150")
    assert store.summary()["owner"] is None


def test_ping(store):
    assert store.ping() is True
