"""
Fund Network SDK

Custodial deposit settlement on an EVM chain.

Lifecycle:
  issue      -> awaiting_funds   (fresh single-use deposit address, key sealed in the vault)
  confirm    -> funded_locked    (user-submitted tx hash, or the chain watcher)
  sweep      -> swept_locked     (deposit moved to the treasury, one gas top-up max)
  mint       -> allocated        (custody token minted to treasury, then sent to the position)

Every transition is a conditional update on the position row; duplicate or
concurrent calls are safe and the loser performs no write.

Usage:
    from fundnet import FundConfig, build_services

    services = build_services(FundConfig.from_env())
    position = services.issuer.issue()
    result = services.verifier.confirm(position["ref"], "0x...")
"""

from .config import FundConfig, load_env_file
from .errors import (
    FundError, ValidationError, NotFoundError, StateConflict,
    ChainVerificationError, InfrastructureError, ConfigurationError,
    KeyIntegrityError, MaintenanceActive, GasTopupExhausted,
)
from .fund_types import FundingPosition, PositionStatus
from .key_vault import KeyVault
from .position_store import PositionStore
from .service import FundServices, build_services

__version__ = "0.1.0"
__all__ = [
    # Config
    "FundConfig", "load_env_file",
    # Errors
    "FundError", "ValidationError", "NotFoundError", "StateConflict",
    "ChainVerificationError", "InfrastructureError", "ConfigurationError",
    "KeyIntegrityError", "MaintenanceActive", "GasTopupExhausted",
    # Types
    "FundingPosition", "PositionStatus",
    # Core
    "KeyVault", "PositionStore", "FundServices", "build_services",
]
