"""
Fund Network SDK - Custody Minter

Allocates custody token for a swept position in two steps, each written only
while its tx field is still unset:

  1. mintToTreasury(amount)            signed by CUSTODY_MINTER_KEY -> mint_tx_hash
  2. transfer(deposit_address, amount) signed by CUSTODY_TREASURY_KEY -> transfer_tx_hash,
                                       allocated_amount, accrual_started_at

Each step signs once: its tx is claimed in the store before broadcast, so
re-invoking after a partial failure or a receipt timeout resumes the claimed
tx (re-sending the same signed bytes if needed) rather than minting again. Custody
token has 6 decimals; the funded amount is truncated to that precision.
"""

import logging
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional

from .chain import from_units
from .config import CUSTODY_TOKEN_DECIMALS, FundConfig
from .errors import FundError, NotFoundError, StateConflict
from .fund_types import PositionStatus, normalize_ref
from .outbox import TxOutbox
from .position_store import PositionStore
from .signer import Signer

log = logging.getLogger(__name__)

CUSTODY_QUANTUM = Decimal(1).scaleb(-CUSTODY_TOKEN_DECIMALS)


def custody_amount(funded: Decimal) -> Decimal:
    return funded.quantize(CUSTODY_QUANTUM, rounding=ROUND_DOWN)


class CustodyMinter:
    def __init__(self, config: FundConfig, store: PositionStore, chain, signer: Signer, gate,
                 outbox: Optional[TxOutbox] = None):
        self.config = config
        self.store = store
        self.chain = chain
        self.signer = signer
        self.gate = gate
        self.outbox = outbox or TxOutbox(store, chain)

    def mint(self, ref: str) -> Dict:
        self.gate.check()
        ref = normalize_ref(ref)

        position = self.store.get_by_ref(ref)
        if not position:
            raise NotFoundError("Position not found", position_ref=ref)
        if position.status != PositionStatus.SWEPT_LOCKED or not position.sweep_tx_hash:
            raise StateConflict(f"Position not mintable in status={position.status.value}",
                                position_ref=ref)
        if not position.funded_amount or position.funded_amount <= 0:
            raise StateConflict("Position has no funded amount", position_ref=ref)

        custody_token = self.config.require("custody_token")
        amount = custody_amount(position.funded_amount)
        amount_raw = from_units(amount, CUSTODY_TOKEN_DECIMALS)
        if amount_raw <= 0:
            raise StateConflict(f"Funded amount {position.funded_amount} below custody precision",
                                position_ref=ref)

        # Step 1: mint into treasury holding
        if not position.mint_tx_hash:
            def build_mint():
                with self.signer.hot_account("CUSTODY_MINTER_KEY", self.config.minter_key) as minter:
                    return self.chain.prepare_call(minter, custody_token, "mintToTreasury", [amount_raw])

            claimed, _ = self.outbox.send_once(position, "mint", build_mint, amount=amount_raw)
            if self.store.record_mint(position.id, claimed.tx_hash):
                log.info(f"{ref}: minted {amount} custody token ({claimed.tx_hash[:18]}...)")
            else:
                log.info(f"{ref}: mint {claimed.tx_hash[:18]}... already recorded")
            position = self.store.get_by_id(position.id)

        # Step 2: allocate treasury -> deposit address
        if not position.transfer_tx_hash:
            def build_allocation():
                with self.signer.hot_account("CUSTODY_TREASURY_KEY", self.config.treasury_key) as treasury:
                    return self.chain.prepare_call(treasury, custody_token, "transfer",
                                                   [position.deposit_address, amount_raw])

            claimed, _ = self.outbox.send_once(position, "allocation", build_allocation, amount=amount_raw)
            accrual_start = position.accrual_started_at or position.swept_at
            if self.store.record_allocation(position.id, claimed.tx_hash, amount, accrual_start):
                log.info(f"{ref}: allocated {amount} -> {position.deposit_address[:10]}... "
                         f"({claimed.tx_hash[:18]}...)")
            else:
                log.info(f"{ref}: allocation {claimed.tx_hash[:18]}... already recorded")

        current = self.store.get_by_id(position.id)
        return {
            "ok": True,
            "position_ref": ref,
            "status": current.status.value,
            "custody_amount": str(amount),
            "mint_tx_hash": current.mint_tx_hash,
            "transfer_tx_hash": current.transfer_tx_hash,
            "allocated_amount": str(current.allocated_amount) if current.allocated_amount is not None else None,
            "accrual_started_at": current.accrual_started_at.isoformat() if current.accrual_started_at else None,
            "note": "Idempotent: safe to re-call.",
        }

    def mint_pending(self, limit: int = 10) -> List[Dict]:
        results = []
        for position in self.store.list_swept_unallocated(limit):
            try:
                results.append(self.mint(position.position_ref))
            except FundError as e:
                log.error(f"{position.position_ref}: mint failed: {e}")
                results.append(dict(e.to_dict(), position_ref=position.position_ref))
        return results
