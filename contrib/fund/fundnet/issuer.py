"""
Fund Network SDK - Position Issuer

One call = one fresh deposit keypair, one position (awaiting_funds), one
encrypted key row. Only the reference and the deposit address leave here.
"""

import logging
from typing import Dict

from eth_account import Account

from .config import FundConfig
from .chain import to_hex
from .key_vault import KeyVault
from .position_store import PositionStore

log = logging.getLogger(__name__)


class PositionIssuer:
    def __init__(self, config: FundConfig, store: PositionStore, vault: KeyVault, gate):
        self.config = config
        self.store = store
        self.vault = vault
        self.gate = gate

    def issue(self) -> Dict:
        self.gate.check()
        self.config.validate_bounds()

        account = Account.create()
        blob = self.vault.encrypt(to_hex(account.key))
        position = self.store.create_position(
            deposit_address=account.address,
            encrypted_key=blob,
            expected_min=self.config.min_amount,
            expected_max=self.config.max_amount,
        )

        log.info(f"Issued {position.position_ref} -> {position.deposit_address[:10]}... "
                 f"bounds [{position.expected_min}, {position.expected_max}]")

        return {
            "ok": True,
            "ref": position.position_ref,
            "deposit_address": position.deposit_address,
            "chain": position.chain,
            "token": position.token,
            "min": str(position.expected_min),
            "max": str(position.expected_max),
            "status": position.status.value,
            "created_at": position.created_at.isoformat() if position.created_at else None,
        }
