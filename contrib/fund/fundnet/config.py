"""
Fund Network SDK - Configuration

All fixed thresholds (bounds, gas caps, multipliers, scan windows) live in one
immutable FundConfig built at startup and passed to every component.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from .errors import ConfigurationError

# Custody token is 6 decimals on-chain. Locked here, never read from env.
CUSTODY_TOKEN_DECIMALS = 6

# Provider limit for a single eth_getLogs range
MAX_WATCH_CHUNK = 2000

PIPELINE_MODES = ("inline", "background")


def load_env_file(path: str) -> bool:
    """Load KEY=VALUE lines into os.environ without overriding real env vars."""
    if not os.path.exists(path):
        return False
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
    return True


@dataclass(frozen=True)
class FundConfig:
    # Storage
    database_url: str = "sqlite:///fund_positions.db"
    key_enc_secret: str = field(default="", repr=False)

    # Position bounds (deposit token units)
    min_amount: Decimal = Decimal("100")
    max_amount: Decimal = Decimal("250000")

    # Chain (BSC mainnet defaults)
    rpc_url: str = "https://bsc-dataseed.binance.org"
    chain_id: int = 56
    deposit_token: str = ""
    deposit_token_decimals: int = 18
    treasury_address: str = ""
    custody_token: str = ""

    # Hot keys (mint authority, treasury holding, gas operations account)
    minter_key: str = field(default="", repr=False)
    treasury_key: str = field(default="", repr=False)
    gas_ops_key: str = field(default="", repr=False)

    # Gas policy
    gas_multiplier: Decimal = Decimal("1.5")
    gas_topup_min_wei: int = 300_000_000_000_000       # 0.0003 native
    gas_topup_max_wei: int = 3_000_000_000_000_000     # 0.003 native

    # Watcher
    watch_blocks: int = 1500
    watch_chunk: int = 100
    watch_batch: int = 50

    # RPC deadlines and retry
    rpc_timeout: int = 30
    rpc_attempts: int = 3
    rpc_backoff: float = 1.0
    receipt_timeout: int = 120

    # Maintenance gate
    paused: bool = False
    flags_url: str = ""

    # Stage pipeline
    pipeline_mode: str = "inline"
    stage_attempts: int = 3

    http_port: int = 8090

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FundConfig":
        """Build config from environment variables (defaults for anything unset)."""
        env = os.environ if environ is None else environ
        d = cls()

        def get(name: str, default):
            value = env.get(name)
            if value is None or not value.strip():
                return default
            return value.strip()

        def get_int(name: str, default: int) -> int:
            raw = get(name, None)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"Bad {name}: {raw!r}")

        def get_decimal(name: str, default: Decimal) -> Decimal:
            raw = get(name, None)
            if raw is None:
                return default
            try:
                return Decimal(raw)
            except InvalidOperation:
                raise ConfigurationError(f"Bad {name}: {raw!r}")

        def get_bool(name: str, default: bool) -> bool:
            raw = get(name, None)
            if raw is None:
                return default
            return raw.lower() in ("1", "true", "yes", "on")

        config = cls(
            database_url=get("FUND_DATABASE_URL", d.database_url),
            key_enc_secret=get("FUND_KEY_ENC_SECRET", ""),
            min_amount=get_decimal("FUND_MIN_AMOUNT", d.min_amount),
            max_amount=get_decimal("FUND_MAX_AMOUNT", d.max_amount),
            rpc_url=get("CHAIN_RPC_URL", d.rpc_url),
            chain_id=get_int("CHAIN_ID", d.chain_id),
            deposit_token=get("DEPOSIT_TOKEN_ADDRESS", "").lower(),
            deposit_token_decimals=get_int("DEPOSIT_TOKEN_DECIMALS", d.deposit_token_decimals),
            treasury_address=get("TREASURY_ADDRESS", "").lower(),
            custody_token=get("CUSTODY_TOKEN_ADDRESS", "").lower(),
            minter_key=get("CUSTODY_MINTER_KEY", ""),
            treasury_key=get("CUSTODY_TREASURY_KEY", ""),
            gas_ops_key=get("GAS_OPS_KEY", ""),
            gas_multiplier=get_decimal("GAS_MULTIPLIER", d.gas_multiplier),
            gas_topup_min_wei=get_int("GAS_TOPUP_MIN_WEI", d.gas_topup_min_wei),
            gas_topup_max_wei=get_int("GAS_TOPUP_MAX_WEI", d.gas_topup_max_wei),
            watch_blocks=get_int("FUND_WATCH_BLOCKS", d.watch_blocks),
            watch_chunk=get_int("FUND_WATCH_CHUNK", d.watch_chunk),
            watch_batch=get_int("FUND_WATCH_BATCH", d.watch_batch),
            rpc_timeout=get_int("RPC_TIMEOUT", d.rpc_timeout),
            rpc_attempts=get_int("RPC_ATTEMPTS", d.rpc_attempts),
            rpc_backoff=float(get("RPC_BACKOFF", d.rpc_backoff)),
            receipt_timeout=get_int("RECEIPT_TIMEOUT", d.receipt_timeout),
            paused=get_bool("FUND_PAUSED", d.paused),
            flags_url=get("FUND_FLAGS_URL", ""),
            pipeline_mode=get("FUND_PIPELINE_MODE", d.pipeline_mode).lower(),
            stage_attempts=get_int("FUND_STAGE_ATTEMPTS", d.stage_attempts),
            http_port=get_int("FUND_HTTP_PORT", d.http_port),
        )
        config.validate()
        return config

    def validate(self):
        """Sanity-check values that would otherwise fail deep inside a stage."""
        if self.watch_blocks <= 0:
            raise ConfigurationError("Bad FUND_WATCH_BLOCKS (must be > 0)")
        if not 0 < self.watch_chunk <= MAX_WATCH_CHUNK:
            raise ConfigurationError(f"Bad FUND_WATCH_CHUNK (must be 1..{MAX_WATCH_CHUNK})")
        if self.gas_multiplier < 1:
            raise ConfigurationError("Bad GAS_MULTIPLIER (must be >= 1)")
        if not 0 < self.gas_topup_min_wei <= self.gas_topup_max_wei:
            raise ConfigurationError("Bad GAS_TOPUP_MIN_WEI / GAS_TOPUP_MAX_WEI")
        if self.pipeline_mode not in PIPELINE_MODES:
            raise ConfigurationError(f"Bad FUND_PIPELINE_MODE: {self.pipeline_mode}")
        if self.rpc_attempts < 1 or self.stage_attempts < 1:
            raise ConfigurationError("RPC_ATTEMPTS and FUND_STAGE_ATTEMPTS must be >= 1")

    def validate_bounds(self):
        """Position bounds must be positive with min < max."""
        if self.min_amount <= 0 or self.max_amount <= 0 or self.min_amount >= self.max_amount:
            raise ConfigurationError("Invalid FUND_MIN_AMOUNT / FUND_MAX_AMOUNT")

    def require(self, name: str) -> str:
        """Return a non-empty setting or fail naming the field."""
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(f"Missing setting: {name}")
        return value
