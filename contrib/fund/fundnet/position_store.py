"""
Fund Network SDK - Position Store

Durable funding positions plus their encrypted deposit keys (SQLAlchemy).

Every state transition is a single conditional UPDATE (compare-and-swap):
the WHERE clause carries the expected prior state and the caller learns from
the affected row count whether it won. Write-once fields are only ever set
where they are still NULL.

Amounts are stored as decimal strings. Base-unit integers (uint256) do not
fit a 64-bit column, so funded_amount_raw is a string too.

Outgoing transactions are claimed in fund_chain_txs (one per position and
step) with their signed bytes before broadcast, so a retry re-sends the same
transaction instead of signing a new one.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import (
    Column, DateTime, ForeignKey, Integer, String, Text,
    create_engine, func, select, text, update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import InfrastructureError
from .fund_types import (
    ACTIVE_STATUSES, ChainTx, FundingPosition, PositionStatus, make_position_ref,
)

log = logging.getLogger(__name__)

Base = declarative_base()

REF_ATTEMPTS = 5


# =============================================================================
# TABLES
# =============================================================================

class PositionRow(Base):
    __tablename__ = "fund_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    position_ref = Column(String(16), unique=True, nullable=False, index=True)
    deposit_address = Column(String(42), unique=True, nullable=False, index=True)
    chain = Column(String(16), nullable=False, default="bsc")
    token = Column(String(16), nullable=False, default="usdt")
    expected_min = Column(String(78), nullable=False)
    expected_max = Column(String(78), nullable=False)
    status = Column(String(32), nullable=False, index=True)

    deposit_tx_hash = Column(String(66), unique=True)
    funded_amount = Column(String(78))
    funded_amount_raw = Column(String(78))
    funded_at = Column(DateTime(timezone=True))

    gas_topup_tx_hash = Column(String(66))
    gas_topup_amount = Column(String(78))
    gas_topup_at = Column(DateTime(timezone=True))

    sweep_tx_hash = Column(String(66))
    swept_at = Column(DateTime(timezone=True))

    mint_tx_hash = Column(String(66))
    minted_at = Column(DateTime(timezone=True))
    transfer_tx_hash = Column(String(66))
    transferred_at = Column(DateTime(timezone=True))
    allocated_amount = Column(String(78))
    accrual_started_at = Column(DateTime(timezone=True))

    owner_id = Column(String(128), index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DepositKeyRow(Base):
    __tablename__ = "fund_deposit_keys"

    position_id = Column(Integer, ForeignKey("fund_positions.id"), primary_key=True)
    address = Column(String(42), unique=True, nullable=False)
    encrypted_key = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ChainTxRow(Base):
    """Signed transaction claimed for a position step. Written before broadcast."""
    __tablename__ = "fund_chain_txs"

    position_id = Column(Integer, ForeignKey("fund_positions.id"), primary_key=True)
    step = Column(String(16), primary_key=True)
    tx_hash = Column(String(66), unique=True, nullable=False)
    raw_tx = Column(Text, nullable=False)
    sender = Column(String(42), nullable=False)
    amount = Column(String(78))
    created_at = Column(DateTime(timezone=True), nullable=False)


# =============================================================================
# HELPERS
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _int(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None


def row_to_position(row: PositionRow) -> FundingPosition:
    return FundingPosition(
        id=row.id,
        position_ref=row.position_ref,
        deposit_address=row.deposit_address,
        expected_min=Decimal(row.expected_min),
        expected_max=Decimal(row.expected_max),
        status=PositionStatus(row.status),
        chain=row.chain,
        token=row.token,
        deposit_tx_hash=row.deposit_tx_hash,
        funded_amount=_dec(row.funded_amount),
        funded_amount_raw=_int(row.funded_amount_raw),
        funded_at=_utc(row.funded_at),
        gas_topup_tx_hash=row.gas_topup_tx_hash,
        gas_topup_amount=_int(row.gas_topup_amount),
        gas_topup_at=_utc(row.gas_topup_at),
        sweep_tx_hash=row.sweep_tx_hash,
        swept_at=_utc(row.swept_at),
        mint_tx_hash=row.mint_tx_hash,
        minted_at=_utc(row.minted_at),
        transfer_tx_hash=row.transfer_tx_hash,
        transferred_at=_utc(row.transferred_at),
        allocated_amount=_dec(row.allocated_amount),
        accrual_started_at=_utc(row.accrual_started_at),
        owner_id=row.owner_id,
        created_at=_utc(row.created_at),
    )


# =============================================================================
# STORE
# =============================================================================

class PositionStore:
    """
    Usage:
        store = PositionStore.from_url("sqlite:///fund_positions.db")
        pos = store.create_position(address, blob, Decimal("100"), Decimal("250000"))
        won = store.mark_funded(pos.id, tx_hash, amount, raw, funded_at)
    """

    def __init__(self, engine):
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, create: bool = True) -> "PositionStore":
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory DB
            engine = create_engine(url, connect_args={"check_same_thread": False},
                                   poolclass=StaticPool)
        else:
            engine = create_engine(url, pool_pre_ping=True)
        store = cls(engine)
        if create:
            store.create_tables()
        return store

    def create_tables(self):
        Base.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            log.error(f"Store unreachable: {e}")
            return False

    def _cas(self, position_id: int, where: List, values: Dict) -> bool:
        """Conditional update of one position. True if this caller won."""
        stmt = (
            update(PositionRow)
            .where(PositionRow.id == position_id, *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with self.engine.begin() as conn:
                return conn.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store update failed: {e}")

    def _query(self, stmt) -> List[FundingPosition]:
        try:
            with self.Session() as session:
                return [row_to_position(r) for r in session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store read failed: {e}")

    def _one(self, stmt) -> Optional[FundingPosition]:
        rows = self._query(stmt.limit(1))
        return rows[0] if rows else None

    # ═══════════════════════════════════════════════════════════════════════
    # CREATE / LOOKUP
    # ═══════════════════════════════════════════════════════════════════════

    def create_position(self, deposit_address: str, encrypted_key: str,
                        expected_min: Decimal, expected_max: Decimal,
                        chain: str = "bsc", token: str = "usdt") -> FundingPosition:
        """Insert position + key row atomically. A ref collision retries with a fresh ref."""
        address = deposit_address.lower()
        for attempt in range(1, REF_ATTEMPTS + 1):
            now = utcnow()
            row = PositionRow(
                position_ref=make_position_ref(),
                deposit_address=address,
                chain=chain,
                token=token,
                expected_min=str(expected_min),
                expected_max=str(expected_max),
                status=PositionStatus.AWAITING_FUNDS.value,
                created_at=now,
            )
            try:
                with self.Session.begin() as session:
                    session.add(row)
                    session.flush()
                    session.add(DepositKeyRow(position_id=row.id, address=address,
                                              encrypted_key=encrypted_key, created_at=now))
                return row_to_position(row)
            except IntegrityError as e:
                if self.get_by_address(address):
                    raise InfrastructureError(f"Deposit address already issued: {address}")
                log.warning(f"Position ref collision (attempt {attempt}/{REF_ATTEMPTS}): {e.orig}")
            except SQLAlchemyError as e:
                raise InfrastructureError(f"Store insert failed: {e}")
        raise InfrastructureError("Could not allocate a unique position ref")

    def get_by_ref(self, ref: str) -> Optional[FundingPosition]:
        return self._one(select(PositionRow).where(PositionRow.position_ref == ref))

    def get_by_id(self, position_id: int) -> Optional[FundingPosition]:
        return self._one(select(PositionRow).where(PositionRow.id == position_id))

    def get_by_address(self, address: str) -> Optional[FundingPosition]:
        return self._one(select(PositionRow).where(PositionRow.deposit_address == address.lower()))

    def get_encrypted_key(self, position_id: int) -> Optional[str]:
        try:
            with self.Session() as session:
                row = session.get(DepositKeyRow, position_id)
                return row.encrypted_key if row else None
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store read failed: {e}")

    # ═══════════════════════════════════════════════════════════════════════
    # SIGNED TX LEDGER
    # ═══════════════════════════════════════════════════════════════════════

    def claim_chain_tx(self, position_id: int, step: str, tx_hash: str, raw_tx: bytes,
                       sender: str, amount: Optional[int] = None) -> bool:
        """Claim the single tx slot for (position, step). True if this caller may broadcast."""
        row = ChainTxRow(
            position_id=position_id,
            step=step,
            tx_hash=tx_hash,
            raw_tx=bytes(raw_tx).hex(),
            sender=sender.lower(),
            amount=str(amount) if amount is not None else None,
            created_at=utcnow(),
        )
        try:
            with self.Session.begin() as session:
                session.add(row)
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store insert failed: {e}")

    def get_chain_tx(self, position_id: int, step: str) -> Optional[ChainTx]:
        try:
            with self.Session() as session:
                row = session.get(ChainTxRow, (position_id, step))
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store read failed: {e}")
        if row is None:
            return None
        return ChainTx(
            position_id=row.position_id,
            step=row.step,
            tx_hash=row.tx_hash,
            raw_tx=bytes.fromhex(row.raw_tx),
            sender=row.sender,
            amount=_int(row.amount),
            created_at=_utc(row.created_at),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # LISTS
    # ═══════════════════════════════════════════════════════════════════════

    def list_awaiting(self, limit: int = 50) -> List[FundingPosition]:
        """Oldest first, so long-waiting positions are not starved."""
        return self._query(
            select(PositionRow)
            .where(PositionRow.status == PositionStatus.AWAITING_FUNDS.value,
                   PositionRow.deposit_tx_hash.is_(None))
            .order_by(PositionRow.created_at, PositionRow.id)
            .limit(limit)
        )

    def list_sweepable(self, limit: int = 50) -> List[FundingPosition]:
        return self._query(
            select(PositionRow)
            .where(PositionRow.status == PositionStatus.FUNDED_LOCKED.value,
                   PositionRow.sweep_tx_hash.is_(None))
            .order_by(PositionRow.funded_at, PositionRow.id)
            .limit(limit)
        )

    def list_swept_unallocated(self, limit: int = 50) -> List[FundingPosition]:
        return self._query(
            select(PositionRow)
            .where(PositionRow.status == PositionStatus.SWEPT_LOCKED.value,
                   (PositionRow.mint_tx_hash.is_(None)) | (PositionRow.transfer_tx_hash.is_(None)))
            .order_by(PositionRow.swept_at, PositionRow.id)
            .limit(limit)
        )

    def list_by_refs(self, refs: Iterable[str]) -> List[FundingPosition]:
        refs = list(refs)
        if not refs:
            return []
        return self._query(
            select(PositionRow).where(PositionRow.position_ref.in_(refs)).order_by(PositionRow.id))

    def list_by_owner(self, owner_id: str) -> List[FundingPosition]:
        return self._query(
            select(PositionRow).where(PositionRow.owner_id == owner_id).order_by(PositionRow.id))

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSITIONS (compare-and-swap)
    # ═══════════════════════════════════════════════════════════════════════

    def mark_funded(self, position_id: int, tx_hash: str, amount: Decimal,
                    amount_raw: int, funded_at: datetime,
                    owner_id: Optional[str] = None) -> bool:
        """awaiting_funds -> funded_locked, only if no deposit hash is recorded yet."""
        values = {
            "status": PositionStatus.FUNDED_LOCKED.value,
            "deposit_tx_hash": tx_hash,
            "funded_amount": str(amount),
            "funded_amount_raw": str(amount_raw),
            "funded_at": funded_at,
        }
        if owner_id:
            values["owner_id"] = func.coalesce(PositionRow.owner_id, owner_id)
        try:
            return self._cas(position_id, [
                PositionRow.status == PositionStatus.AWAITING_FUNDS.value,
                PositionRow.deposit_tx_hash.is_(None),
            ], values)
        except InfrastructureError as e:
            # Unique deposit_tx_hash: the same transaction already funds another position
            if isinstance(e.__context__, IntegrityError):
                return False
            raise

    def bind_owner_if_unset(self, position_id: int, owner_id: str) -> bool:
        return self._cas(position_id, [PositionRow.owner_id.is_(None)], {"owner_id": owner_id})

    def bind_owner(self, refs: Iterable[str], owner_id: str) -> List[str]:
        """Attach an owner to the listed positions. Returns the refs that exist."""
        refs = list(refs)
        if not refs:
            return []
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(PositionRow)
                    .where(PositionRow.position_ref.in_(refs))
                    .values(owner_id=owner_id)
                    .execution_options(synchronize_session=False)
                )
                bound = conn.execute(
                    select(PositionRow.position_ref)
                    .where(PositionRow.position_ref.in_(refs), PositionRow.owner_id == owner_id)
                    .order_by(PositionRow.id)
                ).scalars().all()
            return list(bound)
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store update failed: {e}")

    def record_gas_topup(self, position_id: int, tx_hash: str, amount_wei: int) -> bool:
        """Record the mined top-up. The signed tx itself is claimed earlier via claim_chain_tx."""
        return self._cas(position_id, [
            PositionRow.status == PositionStatus.FUNDED_LOCKED.value,
            PositionRow.gas_topup_tx_hash.is_(None),
        ], {
            "gas_topup_tx_hash": tx_hash,
            "gas_topup_amount": str(amount_wei),
            "gas_topup_at": utcnow(),
        })

    def mark_swept(self, position_id: int, tx_hash: str, swept_at: datetime) -> bool:
        """funded_locked -> swept_locked, only if no sweep hash is recorded yet."""
        return self._cas(position_id, [
            PositionRow.status == PositionStatus.FUNDED_LOCKED.value,
            PositionRow.sweep_tx_hash.is_(None),
        ], {
            "status": PositionStatus.SWEPT_LOCKED.value,
            "sweep_tx_hash": tx_hash,
            "swept_at": swept_at,
        })

    def record_mint(self, position_id: int, tx_hash: str) -> bool:
        return self._cas(position_id, [
            PositionRow.status == PositionStatus.SWEPT_LOCKED.value,
            PositionRow.mint_tx_hash.is_(None),
        ], {
            "mint_tx_hash": tx_hash,
            "minted_at": utcnow(),
        })

    def record_allocation(self, position_id: int, tx_hash: str, allocated: Decimal,
                          accrual_started_at: datetime) -> bool:
        """Record the treasury -> deposit address transfer. accrual start is kept if already set."""
        return self._cas(position_id, [
            PositionRow.status == PositionStatus.SWEPT_LOCKED.value,
            PositionRow.mint_tx_hash.isnot(None),
            PositionRow.transfer_tx_hash.is_(None),
        ], {
            "transfer_tx_hash": tx_hash,
            "transferred_at": utcnow(),
            "allocated_amount": str(allocated),
            "accrual_started_at": func.coalesce(PositionRow.accrual_started_at, accrual_started_at),
        })

    # ═══════════════════════════════════════════════════════════════════════
    # SUMMARY
    # ═══════════════════════════════════════════════════════════════════════

    def summary(self, owner_id: Optional[str] = None) -> Dict:
        try:
            with self.Session() as session:
                rows = session.execute(
                    select(PositionRow.status, PositionRow.funded_amount, PositionRow.owner_id)
                ).all()
        except SQLAlchemyError as e:
            raise InfrastructureError(f"Store read failed: {e}")

        active = {s.value for s in ACTIVE_STATUSES}
        counts: Dict[str, int] = {}
        total = Decimal(0)
        owner_total = Decimal(0)

        for status, funded, owner in rows:
            counts[status] = counts.get(status, 0) + 1
            if status in active and funded is not None:
                total += Decimal(funded)
                if owner_id and owner == owner_id:
                    owner_total += Decimal(funded)

        result = {
            "pending_positions": counts.get(PositionStatus.AWAITING_FUNDS.value, 0),
            "active_positions": sum(counts.get(s, 0) for s in active),
            "total_funded": str(total),
            "counts_by_status": counts,
            "active_statuses": sorted(active),
            "owner": None,
        }
        if owner_id:
            result["owner"] = {"owner_id": owner_id, "total_funded": str(owner_total)}
        return result
