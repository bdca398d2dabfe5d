"""
Fund Network SDK - Chain Client

Narrow web3 wrapper for everything the pipeline needs from the EVM chain:
receipts, block timestamps, Transfer logs, balances, gas estimation and
signed transaction submission.

All reads go through bounded retry; provider failures surface as
InfrastructureError. Receipts and logs are normalised to plain dicts with
lowercase 0x-hex strings so the rest of the SDK never touches HexBytes.
"""

import logging
from collections import namedtuple
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, List, Optional

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from .config import FundConfig
from .errors import ChainVerificationError, InfrastructureError
from .retry import call_with_retry

log = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# Deposit token (ERC20) + custody token treasury mint
TOKEN_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [{"name": "amount", "type": "uint256"}],
        "name": "mintToTreasury",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    }
]

RETRIABLE_ERRORS = (requests.exceptions.RequestException, OSError, Web3Exception)

PreparedTx = namedtuple("PreparedTx", ["tx_hash", "raw", "sender", "description"])

# Node replies to re-sending a transaction it has already accepted or mined
KNOWN_TX_ERRORS = ("already known", "known transaction", "nonce too low", "already imported")


# =============================================================================
# HELPERS
# =============================================================================

def to_hex(value: Any) -> str:
    """Normalise bytes/HexBytes/str to a lowercase 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value).lower()
    return s if s.startswith("0x") else "0x" + s


def address_topic(address: str) -> str:
    """32-byte left-padded topic for an indexed address."""
    return "0x" + address.lower()[2:].zfill(64)


def to_units(raw: int, decimals: int) -> Decimal:
    """Base units -> human amount (exact)."""
    return Decimal(int(raw)).scaleb(-decimals)


def from_units(amount: Decimal, decimals: int) -> int:
    """Human amount -> base units, truncating precision beyond `decimals`."""
    quantum = Decimal(1).scaleb(-decimals)
    return int(Decimal(amount).quantize(quantum, rounding=ROUND_DOWN).scaleb(decimals))


def decode_transfer(log_entry: Dict) -> Optional[Dict]:
    """
    Decode a normalised Transfer log.

    Returns {"token", "from", "to", "value"} or None if the log is not a
    canonical Transfer(address indexed, address indexed, uint256).
    """
    topics = log_entry.get("topics") or []
    if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
        return None

    data = log_entry.get("data", "0x")
    data = data[2:] if data.startswith("0x") else data
    if len(data) != 64:
        return None

    try:
        value = int(data, 16)
    except ValueError:
        return None

    return {
        "token": log_entry.get("address", "").lower(),
        "from": "0x" + topics[1][-40:].lower(),
        "to": "0x" + topics[2][-40:].lower(),
        "value": value,
    }


def normalize_log(entry) -> Dict:
    return {
        "address": str(entry["address"]).lower(),
        "topics": [to_hex(t) for t in entry["topics"]],
        "data": to_hex(entry["data"]),
        "transaction_hash": to_hex(entry["transactionHash"]),
        "block_number": int(entry["blockNumber"]),
        "log_index": int(entry.get("logIndex", 0)),
    }


def normalize_receipt(receipt) -> Dict:
    return {
        "transaction_hash": to_hex(receipt["transactionHash"]),
        "status": int(receipt["status"]),
        "block_number": int(receipt["blockNumber"]),
        "logs": [normalize_log(lg) for lg in receipt["logs"]],
    }


# =============================================================================
# CHAIN CLIENT
# =============================================================================

class ChainClient:
    """
    EVM access for the settlement pipeline.

    Usage:
        chain = ChainClient.from_config(config)
        receipt = chain.get_receipt("0x...")
        logs = chain.get_transfer_logs(token, deposit_addr, 1000, 1099)

        prepared = chain.prepare_call(account, token, "transfer", [treasury, amount])
        chain.broadcast(prepared)
        chain.wait_for_success(prepared.tx_hash)
    """

    def __init__(self, w3: Web3, chain_id: int, attempts: int = 3,
                 backoff: float = 1.0, receipt_timeout: int = 120):
        self.w3 = w3
        self.chain_id = chain_id
        self.attempts = attempts
        self.backoff = backoff
        self.receipt_timeout = receipt_timeout

    @classmethod
    def from_config(cls, config: FundConfig) -> "ChainClient":
        w3 = Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={"timeout": config.rpc_timeout}))
        return cls(w3, config.chain_id, config.rpc_attempts, config.rpc_backoff, config.receipt_timeout)

    def _read(self, label: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_retry(fn, self.attempts, self.backoff, RETRIABLE_ERRORS, label=label)
        except RETRIABLE_ERRORS as e:
            raise InfrastructureError(f"RPC {label} failed: {e}")

    def _token(self, address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=TOKEN_ABI)

    @staticmethod
    def _checksum_args(args: List[Any]) -> List[Any]:
        out = []
        for a in args:
            if isinstance(a, str) and a.startswith("0x") and len(a) == 42:
                a = Web3.to_checksum_address(a)
            out.append(a)
        return out

    # ═══════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════

    def is_connected(self) -> bool:
        try:
            return self.w3.is_connected()
        except RETRIABLE_ERRORS:
            return False

    def block_number(self) -> int:
        return int(self._read("eth_blockNumber", lambda: self.w3.eth.block_number))

    def get_receipt(self, tx_hash: str) -> Optional[Dict]:
        """Normalised receipt, or None if the transaction is not mined (yet)."""
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = self._read("eth_getTransactionReceipt", fetch)
        return normalize_receipt(receipt) if receipt else None

    def get_block_timestamp(self, block_number: int) -> int:
        block = self._read("eth_getBlockByNumber", lambda: self.w3.eth.get_block(block_number))
        return int(block["timestamp"])

    def get_transfer_logs(self, token: str, to_address: str,
                          from_block: int, to_block: int) -> List[Dict]:
        """Transfer logs emitted by `token` with recipient `to_address` in [from_block, to_block]."""
        params = {
            "address": Web3.to_checksum_address(token),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [TRANSFER_TOPIC, None, address_topic(to_address)],
        }
        logs = self._read("eth_getLogs", lambda: self.w3.eth.get_logs(params))
        return [normalize_log(lg) for lg in logs]

    def native_balance(self, address: str) -> int:
        return int(self._read("eth_getBalance",
                              lambda: self.w3.eth.get_balance(Web3.to_checksum_address(address))))

    def token_balance(self, token: str, address: str) -> int:
        fn = self._token(token).functions.balanceOf(Web3.to_checksum_address(address))
        return int(self._read("balanceOf", fn.call))

    def gas_price(self) -> int:
        return int(self._read("eth_gasPrice", lambda: self.w3.eth.gas_price))

    def estimate_call_gas(self, sender: str, contract: str, fn_name: str, args: List[Any]) -> int:
        fn = self._token(contract).functions[fn_name](*self._checksum_args(args))
        try:
            return int(self._read("eth_estimateGas",
                                  lambda: fn.estimate_gas({"from": Web3.to_checksum_address(sender)})))
        except InfrastructureError as e:
            cause = e.__context__
            if isinstance(cause, ContractLogicError):
                raise ChainVerificationError(f"{fn_name} would revert: {cause}")
            raise

    # ═══════════════════════════════════════════════════════════════════════
    # WRITES
    # ═══════════════════════════════════════════════════════════════════════

    def _nonce(self, address: str) -> int:
        return int(self._read("eth_getTransactionCount",
                              lambda: self.w3.eth.get_transaction_count(
                                  Web3.to_checksum_address(address), "pending")))

    def _sign(self, account, tx: Dict, description: str) -> PreparedTx:
        signed = account.sign_transaction(tx)
        return PreparedTx(to_hex(signed.hash), signed.raw_transaction, account.address.lower(), description)

    def prepare_native_transfer(self, account, to: str, value_wei: int) -> PreparedTx:
        """Build and sign a plain value transfer. The hash is final before broadcast."""
        tx = {
            "chainId": self.chain_id,
            "to": Web3.to_checksum_address(to),
            "value": int(value_wei),
            "gas": 21000,
            "gasPrice": self.gas_price(),
            "nonce": self._nonce(account.address),
        }
        return self._sign(account, tx, f"native transfer {value_wei} wei -> {to}")

    def prepare_call(self, account, contract: str, fn_name: str, args: List[Any],
                     gas_limit: Optional[int] = None,
                     gas_price: Optional[int] = None) -> PreparedTx:
        """Build and sign a token contract call. A given gas_price is used as-is."""
        params = {
            "from": account.address,
            "chainId": self.chain_id,
            "gasPrice": int(gas_price) if gas_price else self.gas_price(),
            "nonce": self._nonce(account.address),
        }
        if gas_limit:
            params["gas"] = int(gas_limit)

        fn = self._token(contract).functions[fn_name](*self._checksum_args(args))
        try:
            tx = self._read("build_transaction", lambda: fn.build_transaction(params))
        except InfrastructureError as e:
            if isinstance(e.__context__, ContractLogicError):
                raise ChainVerificationError(f"{fn_name} would revert: {e.__context__}")
            raise
        return self._sign(account, tx, f"{fn_name} on {contract}")

    def broadcast(self, prepared: PreparedTx, resend: bool = False) -> str:
        """
        Submit signed bytes. With resend=True the node already knowing the
        transaction (or its nonce being used) is not an error.
        """
        try:
            self.w3.eth.send_raw_transaction(prepared.raw)
        # Older web3 releases surface JSON-RPC errors as ValueError
        except RETRIABLE_ERRORS + (ValueError,) as e:
            if resend and any(m in str(e).lower() for m in KNOWN_TX_ERRORS):
                log.info(f"TX already known: {prepared.tx_hash[:18]}... ({e})")
                return prepared.tx_hash
            raise InfrastructureError(f"Broadcast failed ({prepared.description}): {e}",
                                      tx_hash=prepared.tx_hash)
        log.info(f"TX sent: {prepared.tx_hash[:18]}... ({prepared.description})")
        return prepared.tx_hash

    def wait_for_success(self, tx_hash: str) -> Dict:
        """Block until mined (bounded). Reverted -> ChainVerificationError."""
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=2)
        except TimeExhausted:
            raise InfrastructureError(f"Timed out waiting for {tx_hash}", tx_hash=tx_hash)
        except RETRIABLE_ERRORS as e:
            raise InfrastructureError(f"Receipt wait failed for {tx_hash}: {e}", tx_hash=tx_hash)

        normalized = normalize_receipt(receipt)
        if normalized["status"] != 1:
            raise ChainVerificationError(f"Transaction reverted: {tx_hash}", tx_hash=tx_hash)
        return normalized
