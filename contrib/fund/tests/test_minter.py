from dataclasses import replace
from decimal import Decimal

import pytest
from eth_account import Account

from fundnet.errors import InfrastructureError, MaintenanceActive, StateConflict
from fundnet.gate import StaticGate
from fundnet.minter import CustodyMinter, custody_amount

from conftest import CUSTODY_TOKEN, MINTER_KEY, TREASURY_KEY, units


@pytest.fixture
def swept(services, funded):
    services.sweeper.sweep(funded.position_ref)
    return services.store.get_by_ref(funded.position_ref)


def test_custody_amount_truncates_to_six_decimals():
    assert custody_amount(Decimal("150")) == Decimal("150.000000")
    assert custody_amount(Decimal("1.23456789")) == Decimal("1.234567")


def test_mint_then_allocate(services, chain, swept):
    result = services.minter.mint(swept.position_ref)

    assert result["ok"] is True
    assert result["status"] == "swept_locked"
    assert result["custody_amount"] == "150.000000"

    mint = chain.calls("mintToTreasury")
    assert len(mint) == 1
    assert mint[0]["contract"] == CUSTODY_TOKEN
    assert mint[0]["args"] == [150 * 10 ** 6]
    assert mint[0]["sender"] == Account.from_key(MINTER_KEY).address.lower()

    allocation = [c for c in chain.calls("transfer") if c["contract"] == CUSTODY_TOKEN]
    assert allocation[0]["args"] == [swept.deposit_address, 150 * 10 ** 6]
    assert allocation[0]["sender"] == Account.from_key(TREASURY_KEY).address.lower()

    position = services.store.get_by_ref(swept.position_ref)
    assert position.mint_tx_hash == result["mint_tx_hash"] == mint[0]["tx_hash"]
    assert position.transfer_tx_hash == result["transfer_tx_hash"]
    assert position.allocated_amount == Decimal("150")
    assert position.accrual_started_at == swept.swept_at


def test_remint_is_a_noop(services, chain, swept):
    first = services.minter.mint(swept.position_ref)
    sent = len(chain.sent)

    second = services.minter.mint(swept.position_ref)

    assert len(chain.sent) == sent
    assert second["mint_tx_hash"] == first["mint_tx_hash"]
    assert second["transfer_tx_hash"] == first["transfer_tx_hash"]


def test_partial_failure_resumes_at_allocation(services, chain, swept):
    chain.fail_once.append("transfer")

    with pytest.raises(InfrastructureError):
        services.minter.mint(swept.position_ref)

    position = services.store.get_by_ref(swept.position_ref)
    assert position.mint_tx_hash is not None
    assert position.transfer_tx_hash is None

    result = services.minter.mint(swept.position_ref)

    assert len(chain.calls("mintToTreasury")) == 1
    assert result["mint_tx_hash"] == position.mint_tx_hash
    assert result["transfer_tx_hash"] is not None


def test_existing_accrual_start_is_kept(services, chain, swept, monkeypatch):
    anchor = swept.swept_at.replace(year=2020)
    original = services.store.get_by_id

    def with_anchor(position_id):
        return replace(original(position_id), accrual_started_at=anchor)

    monkeypatch.setattr(services.store, "get_by_id", with_anchor)
    services.minter.mint(swept.position_ref)
    monkeypatch.undo()

    assert services.store.get_by_ref(swept.position_ref).accrual_started_at == anchor


def test_unswept_position_cannot_mint(services, chain, funded):
    with pytest.raises(StateConflict, match="not mintable"):
        services.minter.mint(funded.position_ref)
    assert chain.calls("mintToTreasury") == []


def test_mint_blocked_by_maintenance(config, services, chain, swept):
    minter = CustodyMinter(config, services.store, chain, services.sweeper.signer, StaticGate(paused=True))
    with pytest.raises(MaintenanceActive):
        minter.mint(swept.position_ref)
    assert chain.calls("mintToTreasury") == []


def test_mint_pending(services, chain, swept):
    results = services.minter.mint_pending()
    assert [r["position_ref"] for r in results] == [swept.position_ref]
    assert services.minter.mint_pending() == []


def test_sub_precision_amount_is_rejected(services, chain, issued):
    tx = chain.add_deposit(issued["deposit_address"], 1)
    pos = services.store.get_by_ref(issued["ref"])
    services.store.mark_funded(pos.id, tx, Decimal("1E-18"), 1, pos.created_at)
    services.store.mark_swept(pos.id, "0x" + "42" * 32, pos.created_at)

    with pytest.raises(StateConflict, match="precision"):
        services.minter.mint(issued["ref"])


def _allocations(chain):
    return [c for c in chain.calls("transfer") if c["contract"] == CUSTODY_TOKEN]


def test_mint_receipt_timeout_does_not_mint_twice(services, chain, swept):
    chain.timeout_once.append("mintToTreasury")

    with pytest.raises(InfrastructureError, match="Timed out"):
        services.minter.mint(swept.position_ref)
    result = services.minter.mint(swept.position_ref)

    mints = chain.calls("mintToTreasury")
    assert len(mints) == 1
    assert result["mint_tx_hash"] == mints[0]["tx_hash"]
    assert len(_allocations(chain)) == 1


def test_allocation_receipt_timeout_does_not_allocate_twice(services, chain, swept):
    chain.timeout_once.append("transfer")

    with pytest.raises(InfrastructureError):
        services.minter.mint(swept.position_ref)
    result = services.minter.mint(swept.position_ref)

    allocations = _allocations(chain)
    assert len(allocations) == 1
    assert result["transfer_tx_hash"] == allocations[0]["tx_hash"]
    assert result["allocated_amount"] == "150.000000"


def test_stalled_allocation_is_resent(services, chain, swept):
    chain.stall_once.append("transfer")

    with pytest.raises(InfrastructureError):
        services.minter.mint(swept.position_ref)
    result = services.minter.mint(swept.position_ref)

    assert len(_allocations(chain)) == 1
    assert [c["tx_hash"] for c in chain.resent] == [result["transfer_tx_hash"]]


def test_pipeline_retry_after_mint_timeout_mints_once(services, chain, issued):
    chain.timeout_once.append("mintToTreasury")
    tx = chain.add_deposit(issued["deposit_address"], units(150))

    result = services.verifier.confirm(issued["ref"], tx)

    assert result["mint"]["ok"] is True
    assert len(chain.calls("mintToTreasury")) == 1
    assert len(_allocations(chain)) == 1
