"""
Fund Network SDK - Data Types

Funding position record and its lifecycle status.
"""

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from .errors import ValidationError


TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
POSITION_REF_RE = re.compile(r"^FN-[0-9A-F]{8}$")


class PositionStatus(Enum):
    """Position status. Only ever moves forward."""
    AWAITING_FUNDS = "awaiting_funds"
    FUNDED_LOCKED = "funded_locked"
    SWEPT_LOCKED = "swept_locked"


# Funded positions that count toward totals
ACTIVE_STATUSES = (PositionStatus.FUNDED_LOCKED, PositionStatus.SWEPT_LOCKED)


def make_position_ref() -> str:
    """Short human-friendly ref, e.g. FN-3FA91C0B"""
    return f"FN-{secrets.token_hex(4).upper()}"


def normalize_ref(ref) -> str:
    if not isinstance(ref, str) or not ref.strip():
        raise ValidationError("Missing ref")
    ref = ref.strip().upper()
    if not POSITION_REF_RE.match(ref):
        raise ValidationError(f"Bad ref: {ref}")
    return ref


def normalize_tx_hash(tx_hash) -> str:
    if not isinstance(tx_hash, str) or not TX_HASH_RE.match(tx_hash.strip()):
        raise ValidationError("Bad tx_hash")
    return tx_hash.strip().lower()


def normalize_address(address) -> str:
    if not isinstance(address, str) or not ADDRESS_RE.match(address.strip()):
        raise ValidationError("Bad address")
    return address.strip().lower()


def utc_from_timestamp(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _num(value: Optional[Decimal]):
    return str(value) if value is not None else None


@dataclass
class FundingPosition:
    """
    One funding attempt bound to a single-use deposit address.

    Lifecycle:
      awaiting_funds -> funded_locked (deposit verified)
                     -> swept_locked  (funds moved to treasury)
      then allocation fields are filled (custody token minted + transferred).

    Write-once fields: deposit_tx_hash, gas_topup_tx_hash, sweep_tx_hash,
    mint_tx_hash, transfer_tx_hash.
    """
    id: int
    position_ref: str
    deposit_address: str
    expected_min: Decimal
    expected_max: Decimal
    status: PositionStatus
    chain: str = "bsc"
    token: str = "usdt"

    deposit_tx_hash: Optional[str] = None
    funded_amount: Optional[Decimal] = None
    funded_amount_raw: Optional[int] = None
    funded_at: Optional[datetime] = None

    gas_topup_tx_hash: Optional[str] = None
    gas_topup_amount: Optional[int] = None
    gas_topup_at: Optional[datetime] = None

    sweep_tx_hash: Optional[str] = None
    swept_at: Optional[datetime] = None

    mint_tx_hash: Optional[str] = None
    minted_at: Optional[datetime] = None
    transfer_tx_hash: Optional[str] = None
    transferred_at: Optional[datetime] = None
    allocated_amount: Optional[Decimal] = None
    accrual_started_at: Optional[datetime] = None

    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_awaiting(self) -> bool:
        return self.status == PositionStatus.AWAITING_FUNDS and not self.deposit_tx_hash

    @property
    def is_sweepable(self) -> bool:
        return self.status == PositionStatus.FUNDED_LOCKED and not self.sweep_tx_hash

    @property
    def is_allocated(self) -> bool:
        return bool(self.mint_tx_hash and self.transfer_tx_hash)

    def accepts(self, amount: Decimal) -> bool:
        """Amount-bounds law: min <= amount <= max."""
        return self.expected_min <= amount <= self.expected_max

    def to_dict(self) -> dict:
        """Public record. Key material lives elsewhere and is never included."""
        return {
            "id": self.id,
            "position_ref": self.position_ref,
            "deposit_address": self.deposit_address,
            "chain": self.chain,
            "token": self.token,
            "expected_min": _num(self.expected_min),
            "expected_max": _num(self.expected_max),
            "status": self.status.value,
            "deposit_tx_hash": self.deposit_tx_hash,
            "funded_amount": _num(self.funded_amount),
            "funded_at": _iso(self.funded_at),
            "gas_topup_tx_hash": self.gas_topup_tx_hash,
            "gas_topup_amount": str(self.gas_topup_amount) if self.gas_topup_amount is not None else None,
            "gas_topup_at": _iso(self.gas_topup_at),
            "sweep_tx_hash": self.sweep_tx_hash,
            "swept_at": _iso(self.swept_at),
            "mint_tx_hash": self.mint_tx_hash,
            "minted_at": _iso(self.minted_at),
            "transfer_tx_hash": self.transfer_tx_hash,
            "transferred_at": _iso(self.transferred_at),
            "allocated_amount": _num(self.allocated_amount),
            "accrual_started_at": _iso(self.accrual_started_at),
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ChainTx:
    """
    A signed transaction claimed for one position step before broadcast.

    Steps: gas_topup, sweep, mint, allocation. At most one per (position, step);
    the stored raw bytes are what gets re-sent, never a freshly signed tx.
    """
    position_id: int
    step: str
    tx_hash: str
    raw_tx: bytes
    sender: str
    amount: Optional[int] = None
    created_at: Optional[datetime] = None
