"""
Fund Network SDK - Signing boundary

The only place key material becomes an eth_account account. Callers get the
account for the duration of a `with` block; the raw key buffer is zeroed on
exit whether signing succeeded or not.
"""

import logging
import re
from contextlib import contextmanager
from typing import Iterator

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import ConfigurationError, KeyIntegrityError
from .fund_types import FundingPosition
from .key_vault import KeyVault, mask_secret, zero

log = logging.getLogger(__name__)

HEX_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def normalize_private_key(name: str, hex_key: str) -> bytearray:
    """Accept a 64-hex key with or without 0x; return the raw 32 bytes."""
    if not hex_key:
        raise ConfigurationError(f"Missing setting: {name}")
    hex_key = hex_key.strip()
    if not HEX_KEY_RE.match(hex_key):
        raise ConfigurationError(f"Bad {name}: expected 64 hex chars ({mask_secret(hex_key)})")
    if hex_key.startswith("0x"):
        hex_key = hex_key[2:]
    return bytearray(bytes.fromhex(hex_key))


class Signer:
    """
    Usage:
        with signer.deposit_account(position) as acct:
            prepared = chain.prepare_call(acct, token, "transfer", [...])

        with signer.hot_account("CUSTODY_MINTER_KEY", config.minter_key) as minter:
            ...
    """

    def __init__(self, vault: KeyVault, store):
        self.vault = vault
        self.store = store

    @contextmanager
    def deposit_account(self, position: FundingPosition) -> Iterator[LocalAccount]:
        blob = self.store.get_encrypted_key(position.id)
        if not blob:
            raise KeyIntegrityError(f"Missing deposit key for {position.position_ref}")

        key = self.vault.decrypt(blob)
        try:
            account = Account.from_key(bytes(key))
            if account.address.lower() != position.deposit_address.lower():
                raise KeyIntegrityError(
                    f"Deposit key does not match address for {position.position_ref}")
            yield account
        finally:
            zero(key)

    @contextmanager
    def hot_account(self, name: str, hex_key: str) -> Iterator[LocalAccount]:
        key = normalize_private_key(name, hex_key)
        try:
            yield Account.from_key(bytes(key))
        finally:
            zero(key)
