"""
Fund Network SDK - Transaction outbox

Every on-chain write a stage makes (gas top-up, sweep, mint, allocation) goes
through send_once(). The signed transaction is claimed in the store BEFORE it
is broadcast, one per (position, step):

  no claim        -> sign, claim, broadcast, wait
  claim, mined    -> use that receipt, nothing is sent
  claim, unknown  -> re-send the stored signed bytes, wait
  claim, reverted -> ChainVerificationError (manual recovery)

A timeout or dropped connection after broadcast therefore never leads to a
second, differently signed transaction: a retry resumes the claimed one.
"""

import logging
from typing import Callable, Dict, Optional, Tuple

from .chain import PreparedTx
from .errors import ChainVerificationError, InfrastructureError
from .fund_types import ChainTx, FundingPosition
from .position_store import PositionStore

log = logging.getLogger(__name__)

STEPS = ("gas_topup", "sweep", "mint", "allocation")


def as_prepared(tx: ChainTx) -> PreparedTx:
    return PreparedTx(tx.tx_hash, tx.raw_tx, tx.sender, f"{tx.step} (resend)")


class TxOutbox:
    """
    Usage:
        tx, receipt = outbox.send_once(position, "sweep", build_sweep_tx)
        store.mark_swept(position.id, tx.tx_hash, ...)
    """

    def __init__(self, store: PositionStore, chain):
        self.store = store
        self.chain = chain

    def pending(self, position: FundingPosition, step: str) -> Optional[ChainTx]:
        return self.store.get_chain_tx(position.id, step)

    def send_once(self, position: FundingPosition, step: str,
                  build: Callable[[], PreparedTx],
                  amount: Optional[int] = None) -> Tuple[ChainTx, Dict]:
        """Broadcast at most one signed tx for this step and wait for its receipt."""
        if step not in STEPS:
            raise ValueError(f"Unknown step: {step}")

        claimed = self.pending(position, step)
        if claimed is None:
            prepared = build()
            if self.store.claim_chain_tx(position.id, step, prepared.tx_hash, prepared.raw,
                                         prepared.sender, amount):
                self.chain.broadcast(prepared)
                return self.pending(position, step), self.chain.wait_for_success(prepared.tx_hash)

            log.info(f"{position.position_ref}: {step} claimed by another caller, following it")
            claimed = self.pending(position, step)
            if claimed is None:
                raise InfrastructureError(f"{step} claim vanished", position_ref=position.position_ref)

        return claimed, self.resume(position, claimed)

    def resume(self, position: FundingPosition, tx: ChainTx) -> Dict:
        ref = position.position_ref
        receipt = self.chain.get_receipt(tx.tx_hash)
        if receipt is None:
            log.warning(f"{ref}: {tx.step} {tx.tx_hash[:18]}... not mined, re-sending signed tx")
            self.chain.broadcast(as_prepared(tx), resend=True)
            return self.chain.wait_for_success(tx.tx_hash)

        if receipt["status"] != 1:
            raise ChainVerificationError(f"{tx.step} transaction reverted: {tx.tx_hash}",
                                         tx_hash=tx.tx_hash, position_ref=ref)
        log.info(f"{ref}: {tx.step} {tx.tx_hash[:18]}... already mined (block {receipt['block_number']})")
        return receipt
