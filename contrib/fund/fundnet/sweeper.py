"""
Fund Network SDK - Treasury Sweeper

Moves the verified deposit from the position's single-use address to the
treasury: funded_locked -> swept_locked.

Gas policy:
  needed  = ceil(estimate * GAS_MULTIPLIER) * gas_price
  deficit = needed - native balance
  top-up  = clamp(deficit, GAS_TOPUP_MIN_WEI, GAS_TOPUP_MAX_WEI), at most ONCE

Both the top-up and the sweep transfer go through the outbox: signed, claimed
in the store, then broadcast. A retry after a timeout resumes the claimed
transaction instead of signing another. gas_topup_tx_hash is written once the
top-up is mined; a shortfall after that fails with "already topped up once"
instead of funding the address again.
"""

import logging
import math
from typing import Dict, List, Optional

from .config import FundConfig
from .errors import FundError, GasTopupExhausted, NotFoundError, StateConflict
from .fund_types import FundingPosition, PositionStatus, normalize_ref, utc_from_timestamp
from .outbox import TxOutbox
from .position_store import PositionStore
from .signer import Signer

log = logging.getLogger(__name__)


def gas_limit_for(estimate: int, multiplier) -> int:
    return int(math.ceil(estimate * multiplier))


def clamp_topup(deficit: int, min_wei: int, max_wei: int) -> int:
    return min(max(deficit, min_wei), max_wei)


class TreasurySweeper:
    """
    Usage:
        result = sweeper.sweep("FN-3FA91C0B")
        result = sweeper.sweep()          # oldest funded position
        results = sweeper.sweep_pending()
    """

    def __init__(self, config: FundConfig, store: PositionStore, chain, signer: Signer,
                 outbox: Optional[TxOutbox] = None):
        self.config = config
        self.store = store
        self.chain = chain
        self.signer = signer
        self.outbox = outbox or TxOutbox(store, chain)

    def _select(self, ref: Optional[str]) -> FundingPosition:
        if ref:
            ref = normalize_ref(ref)
            position = self.store.get_by_ref(ref)
            if not position:
                raise NotFoundError("Position not found", position_ref=ref)
            return position

        pending = self.store.list_sweepable(limit=1)
        if not pending:
            raise NotFoundError("No sweepable position")
        return pending[0]

    def sweep(self, ref: Optional[str] = None) -> Dict:
        position = self._select(ref)
        ref = position.position_ref

        if position.sweep_tx_hash or position.status == PositionStatus.SWEPT_LOCKED:
            raise StateConflict("Already swept", position_ref=ref,
                                sweep_tx_hash=position.sweep_tx_hash)
        if not position.is_sweepable:
            raise StateConflict(f"Position not sweepable in status={position.status.value}",
                                position_ref=ref)
        if not position.funded_amount_raw or position.funded_amount_raw <= 0:
            raise StateConflict("Position has no funded amount", position_ref=ref)

        token = self.config.require("deposit_token")
        treasury = self.config.require("treasury_address")
        amount_raw = position.funded_amount_raw

        claimed = self.outbox.pending(position, "sweep")
        if claimed:
            # Already signed and possibly sent; the address may be empty by now
            gas_limit = None
            receipt = self.outbox.resume(position, claimed)
        else:
            estimate = self.chain.estimate_call_gas(position.deposit_address, token, "transfer",
                                                    [treasury, amount_raw])
            gas_limit = gas_limit_for(estimate, self.config.gas_multiplier)
            gas_price = self.chain.gas_price()
            needed = gas_limit * gas_price
            balance = self.chain.native_balance(position.deposit_address)

            if balance < needed:
                self._top_up(position, needed - balance)
                balance = self.chain.native_balance(position.deposit_address)
                if balance < needed:
                    raise GasTopupExhausted(
                        f"Insufficient gas after top-up ({balance} < {needed} wei): already topped up once",
                        position_ref=ref)

            def build():
                with self.signer.deposit_account(position) as account:
                    return self.chain.prepare_call(account, token, "transfer", [treasury, amount_raw],
                                                   gas_limit=gas_limit, gas_price=gas_price)

            claimed, receipt = self.outbox.send_once(position, "sweep", build)

        sweep_tx = claimed.tx_hash
        swept_at = utc_from_timestamp(self.chain.get_block_timestamp(receipt["block_number"]))

        if self.store.mark_swept(position.id, sweep_tx, swept_at):
            log.info(f"{ref}: swept {position.funded_amount} -> treasury {treasury[:10]}... "
                     f"({sweep_tx[:18]}...)")
        else:
            current = self.store.get_by_id(position.id)
            log.warning(f"{ref}: sweep {sweep_tx[:18]}... confirmed but another sweep was recorded "
                        f"({(current.sweep_tx_hash or '')[:18]}...)")
            sweep_tx = current.sweep_tx_hash
            swept_at = current.swept_at

        return {
            "ok": True,
            "position_ref": ref,
            "sweep_tx_hash": sweep_tx,
            "swept_at": swept_at.isoformat() if swept_at else None,
            "to": treasury,
            "amount": str(position.funded_amount),
            "gas_limit": gas_limit,
            "status": PositionStatus.SWEPT_LOCKED.value,
        }

    def _top_up(self, position: FundingPosition, deficit: int):
        ref = position.position_ref
        if position.gas_topup_tx_hash:
            raise GasTopupExhausted("Insufficient gas: already topped up once", position_ref=ref,
                                    gas_topup_tx_hash=position.gas_topup_tx_hash)

        amount = clamp_topup(deficit, self.config.gas_topup_min_wei, self.config.gas_topup_max_wei)

        def build():
            with self.signer.hot_account("GAS_OPS_KEY", self.config.gas_ops_key) as ops:
                return self.chain.prepare_native_transfer(ops, position.deposit_address, amount)

        # An earlier, interrupted top-up is resumed with its own amount
        claimed, _ = self.outbox.send_once(position, "gas_topup", build, amount=amount)
        sent = claimed.amount if claimed.amount is not None else amount
        self.store.record_gas_topup(position.id, claimed.tx_hash, sent)
        log.info(f"{ref}: gas top-up {sent} wei (deficit {deficit}) via {claimed.tx_hash[:18]}...")

    def sweep_pending(self, limit: int = 10) -> List[Dict]:
        """Sweep every funded, unswept position (daemon backlog). Per-position errors are reported, not raised."""
        results = []
        for position in self.store.list_sweepable(limit):
            try:
                results.append(self.sweep(position.position_ref))
            except FundError as e:
                log.error(f"{position.position_ref}: sweep failed: {e}")
                results.append(dict(e.to_dict(), position_ref=position.position_ref))
        return results
