"""
Fund Network SDK - Deposit Verifier

confirm(ref, tx_hash) checks a user-submitted deposit transaction on-chain and
advances the position awaiting_funds -> funded_locked, then hands it to the
stage pipeline (sweep, then mint).

Deposit rules shared with the chain watcher live here too:
  - canonical Transfer topic, emitted by the configured deposit token
  - recipient == position deposit address
  - decoded amount within [expected_min, expected_max]
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional

from .chain import decode_transfer, to_units
from .config import FundConfig
from .errors import (
    ChainVerificationError, InfrastructureError, NotFoundError, StateConflict,
)
from .fund_types import (
    FundingPosition, PositionStatus, normalize_ref, normalize_tx_hash, utc_from_timestamp,
)
from .position_store import PositionStore

log = logging.getLogger(__name__)


# =============================================================================
# DEPOSIT MATCHING
# =============================================================================

def find_deposit_transfer(logs: Iterable[Dict], token: str, deposit_address: str) -> Optional[Dict]:
    """First Transfer(token, to=deposit_address) among `logs`, decoded, or None."""
    token = token.lower()
    deposit_address = deposit_address.lower()
    for entry in logs:
        if entry.get("address", "").lower() != token:
            continue
        transfer = decode_transfer(entry)
        if transfer and transfer["to"] == deposit_address:
            return transfer
    return None


def deposit_amount(raw: int, decimals: int) -> Decimal:
    """Base units -> token amount, normalised (150.000... -> 150)."""
    amount = to_units(raw, decimals)
    if amount == amount.to_integral_value():
        return amount.quantize(Decimal(1))
    return amount.normalize()


def check_bounds(position: FundingPosition, amount: Decimal):
    if not position.accepts(amount):
        raise ChainVerificationError(
            f"Amount out of bounds ({amount} not in [{position.expected_min}, {position.expected_max}])",
            position_ref=position.position_ref,
        )


# =============================================================================
# VERIFIER
# =============================================================================

class DepositVerifier:
    """
    Usage:
        result = verifier.confirm("FN-3FA91C0B", "0x...", owner_id="user-42")
        result["status"]          # re-read from the store after the pipeline ran
        result["sweep"], result["mint"]
    """

    def __init__(self, config: FundConfig, store: PositionStore, chain, pipeline=None):
        self.config = config
        self.store = store
        self.chain = chain
        self.pipeline = pipeline

    def confirm(self, ref: str, tx_hash: str, owner_id: Optional[str] = None) -> Dict:
        ref = normalize_ref(ref)
        tx_hash = normalize_tx_hash(tx_hash)
        owner_id = owner_id.strip() if isinstance(owner_id, str) and owner_id.strip() else None

        position = self.store.get_by_ref(ref)
        if not position:
            raise NotFoundError("Position not found", position_ref=ref)

        # Never overwrite once set
        if position.deposit_tx_hash:
            return self._already_confirmed(position, owner_id)

        if position.status != PositionStatus.AWAITING_FUNDS:
            raise StateConflict(f"Position not confirmable in status={position.status.value}",
                                position_ref=ref)

        token = self.config.require("deposit_token")

        receipt = self.chain.get_receipt(tx_hash)
        if not receipt:
            raise InfrastructureError("Receipt not found", tx_hash=tx_hash)
        if receipt["status"] != 1:
            raise ChainVerificationError("Tx not successful", tx_hash=tx_hash, position_ref=ref)

        transfer = find_deposit_transfer(receipt["logs"], token, position.deposit_address)
        if not transfer:
            raise ChainVerificationError("No matching Transfer(to=deposit) log found in tx",
                                         tx_hash=tx_hash, position_ref=ref)

        amount = deposit_amount(transfer["value"], self.config.deposit_token_decimals)
        check_bounds(position, amount)

        funded_at = utc_from_timestamp(self.chain.get_block_timestamp(receipt["block_number"]))

        won = self.store.mark_funded(position.id, tx_hash, amount, transfer["value"],
                                     funded_at, owner_id=owner_id)
        if not won:
            log.info(f"{ref}: confirm lost to a concurrent update")
            raise StateConflict("Position updated by someone else", position_ref=ref)

        log.info(f"{ref}: funded {amount} via {tx_hash[:18]}... (block {receipt['block_number']})")

        outcomes = {"sweep": None, "mint": None}
        if self.pipeline is not None:
            outcomes = self.pipeline.after_funded(ref)

        current = self.store.get_by_ref(ref)
        return {
            "ok": True,
            "position_ref": ref,
            "deposit_tx_hash": tx_hash,
            "funded_amount": str(amount),
            "funded_at": funded_at.isoformat(),
            "owner_id": current.owner_id,
            "status": current.status.value,
            "sweep": outcomes.get("sweep"),
            "mint": outcomes.get("mint"),
        }

    def _already_confirmed(self, position: FundingPosition, owner_id: Optional[str]) -> Dict:
        bound = position.owner_id
        if owner_id and not bound:
            if self.store.bind_owner_if_unset(position.id, owner_id):
                bound = owner_id
                log.info(f"{position.position_ref}: late-bound owner")
            else:
                bound = self.store.get_by_id(position.id).owner_id

        return {
            "ok": True,
            "already_confirmed": True,
            "position_ref": position.position_ref,
            "status": position.status.value,
            "deposit_tx_hash": position.deposit_tx_hash,
            "funded_amount": str(position.funded_amount) if position.funded_amount is not None else None,
            "owner_id": bound,
            "note": "Already confirmed (deposit_tx_hash set).",
        }
