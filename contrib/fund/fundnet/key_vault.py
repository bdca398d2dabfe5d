"""
Fund Network SDK - Key Vault

AES-256-GCM custody for per-position deposit keys.

Stored blob (base64):  nonce (12) || tag (16) || ciphertext
Plaintext:             "0x" + 64 hex chars, UTF-8

The symmetric key is SHA-256 of the server-held secret (FUND_KEY_ENC_SECRET).
A fresh random nonce is drawn for every encryption. Decryption verifies the
tag and the recovered key format before anything is returned; any failure
raises KeyIntegrityError and no key material leaves this module.
"""

import base64
import binascii
import hashlib
import re
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ConfigurationError, KeyIntegrityError

NONCE_SIZE = 12
TAG_SIZE = 16
PRIVKEY_HEX_RE = re.compile(rb"^0x[0-9a-fA-F]{64}$")


def mask_secret(secret: str, visible_prefix: int = 6, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. NEVER log full secrets/keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


def zero(buf: bytearray):
    """Overwrite a key buffer in place."""
    for i in range(len(buf)):
        buf[i] = 0


class KeyVault:
    """
    Encrypts and decrypts deposit private keys.

    Usage:
        vault = KeyVault(config.key_enc_secret)
        blob = vault.encrypt("0x" + key_hex)
        key = vault.decrypt(blob)      # bytearray, 32 bytes
        try:
            ...sign...
        finally:
            zero(key)
    """

    def __init__(self, secret: str):
        # An unset secret only fails when a key is actually sealed or opened
        self._aes = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest()) if secret else None

    def __repr__(self) -> str:
        return "KeyVault(<sealed>)"

    @property
    def cipher(self) -> AESGCM:
        if self._aes is None:
            raise ConfigurationError("Missing setting: FUND_KEY_ENC_SECRET")
        return self._aes

    def encrypt(self, privkey_hex: str) -> str:
        """Encrypt a 0x-prefixed hex private key. Returns the base64 storage blob."""
        plaintext = privkey_hex.encode("utf-8")
        if not PRIVKEY_HEX_RE.match(plaintext):
            raise KeyIntegrityError("Refusing to encrypt malformed private key")

        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self.cipher.encrypt(nonce, plaintext, None)
        # cryptography returns ciphertext || tag; storage layout is nonce || tag || ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> bytearray:
        """
        Decrypt a storage blob into the raw 32-byte key.

        Raises:
            KeyIntegrityError: bad encoding, tag mismatch or malformed key
        """
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise KeyIntegrityError("Encrypted key blob is not valid base64")

        if len(raw) <= NONCE_SIZE + TAG_SIZE:
            raise KeyIntegrityError("Encrypted key blob too short")

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE:]

        try:
            plaintext = bytearray(self.cipher.decrypt(nonce, ciphertext + tag, None))
        except InvalidTag:
            raise KeyIntegrityError("Key authentication failed (tag mismatch)")

        try:
            if not PRIVKEY_HEX_RE.match(bytes(plaintext)):
                raise KeyIntegrityError("Bad decrypted key")
            return bytearray(bytes.fromhex(plaintext[2:].decode("ascii")))
        finally:
            zero(plaintext)
