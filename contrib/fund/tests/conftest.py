import hashlib
import itertools
from decimal import Decimal

import pytest

from fundnet.chain import PreparedTx, TRANSFER_TOPIC, address_topic
from fundnet.config import FundConfig
from fundnet.errors import ChainVerificationError, InfrastructureError
from fundnet.fund_types import utc_from_timestamp
from fundnet.pipeline import InlineExecutor
from fundnet.position_store import PositionStore
from fundnet.service import build_services

DEPOSIT_TOKEN = "0x55d398326f99059ff775485246999027b3197955"
CUSTODY_TOKEN = "0x1111111111111111111111111111111111111111"
TREASURY = "0x2222222222222222222222222222222222222222"
FUNDER = "0x3333333333333333333333333333333333333333"
OTHER_TOKEN = "0x4444444444444444444444444444444444444444"

MINTER_KEY = "0x" + "11" * 32
TREASURY_KEY = "0x" + "22" * 32
GAS_OPS_KEY = "33" * 32

GENESIS_TS = 1_700_000_000
HEAD_BLOCK = 1000


def units(amount, decimals=18) -> int:
    return int(Decimal(str(amount)).scaleb(decimals))


class FakeChain:
    """In-memory stand-in for ChainClient. Deterministic hashes, blocks and balances."""

    def __init__(self, head: int = HEAD_BLOCK):
        self.head = head
        self.receipts = {}
        self.logs = []
        self.balances = {}
        self.gas_price_wei = 5_000_000_000
        self.gas_estimate = 60_000
        self.credit_topups = True
        self.revert = set()
        self.fail_once = []
        # fn names whose receipt wait times out once: mined anyway / still pending
        self.timeout_once = []
        self.stall_once = []
        self.connected = True

        self.prepared = {}
        self.sent = []
        self.resent = []
        self.log_queries = []
        self.on_block_timestamp = None
        self._ids = itertools.count(1)

    def _next_hash(self) -> str:
        return "0x" + hashlib.sha256(f"tx-{next(self._ids)}".encode()).hexdigest()

    # ----- scenario helpers -----

    def add_deposit(self, to: str, raw: int, token: str = DEPOSIT_TOKEN,
                    block: int = None, status: int = 1, sender: str = FUNDER) -> str:
        tx_hash = self._next_hash()
        block = self.head - 10 if block is None else block
        entry = {
            "address": token.lower(),
            "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(to)],
            "data": "0x" + format(raw, "064x"),
            "transaction_hash": tx_hash,
            "block_number": block,
            "log_index": 0,
        }
        self.receipts[tx_hash] = {
            "transaction_hash": tx_hash,
            "status": status,
            "block_number": block,
            "logs": [entry],
        }
        if status == 1:
            self.logs.append(entry)
        return tx_hash

    def calls(self, fn: str = None):
        return [c for c in self.sent if fn is None or c["fn"] == fn]

    # ----- reads -----

    def is_connected(self) -> bool:
        return self.connected

    def block_number(self) -> int:
        return self.head

    def get_receipt(self, tx_hash: str):
        return self.receipts.get(tx_hash)

    def get_block_timestamp(self, block_number: int) -> int:
        hook, self.on_block_timestamp = self.on_block_timestamp, None
        if hook:
            hook()
        return GENESIS_TS + 3 * block_number

    def get_transfer_logs(self, token, to_address, from_block, to_block):
        self.log_queries.append((from_block, to_block))
        return [
            lg for lg in self.logs
            if lg["address"] == token.lower()
            and lg["topics"][2] == address_topic(to_address)
            and from_block <= lg["block_number"] <= to_block
        ]

    def native_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), 0)

    def gas_price(self) -> int:
        return self.gas_price_wei

    def estimate_call_gas(self, sender, contract, fn_name, args) -> int:
        return self.gas_estimate

    # ----- writes -----

    def _prepare(self, call) -> PreparedTx:
        tx_hash = self._next_hash()
        self.prepared[tx_hash] = call
        return PreparedTx(tx_hash, b"", call["sender"], call["fn"])

    def prepare_native_transfer(self, account, to, value_wei):
        return self._prepare({"sender": account.address.lower(), "contract": None,
                              "fn": "native", "args": [to.lower(), value_wei], "gas_limit": 21000})

    def prepare_call(self, account, contract, fn_name, args, gas_limit=None, gas_price=None):
        return self._prepare({"sender": account.address.lower(), "contract": contract.lower(),
                              "fn": fn_name, "args": list(args), "gas_limit": gas_limit,
                              "gas_price": gas_price or self.gas_price()})

    def broadcast(self, prepared, resend=False):
        call = dict(self.prepared[prepared.tx_hash], tx_hash=prepared.tx_hash)
        if any(c["tx_hash"] == prepared.tx_hash for c in self.sent):
            # Same signed bytes again: the node already has it
            self.resent.append(call)
            return prepared.tx_hash
        if call["fn"] in self.fail_once:
            self.fail_once.remove(call["fn"])
            raise InfrastructureError(f"Broadcast failed ({call['fn']})", tx_hash=prepared.tx_hash)
        self.sent.append(call)
        if call["fn"] == "native" and self.credit_topups:
            to, value = call["args"]
            self.balances[to] = self.balances.get(to, 0) + value
        return prepared.tx_hash

    def wait_for_success(self, tx_hash):
        fn = self.prepared[tx_hash]["fn"]
        if fn in self.stall_once:
            self.stall_once.remove(fn)
            raise InfrastructureError(f"Timed out waiting for {tx_hash}", tx_hash=tx_hash)

        if tx_hash not in self.receipts:
            self.head += 1
            self.receipts[tx_hash] = {"transaction_hash": tx_hash, "status": 0 if tx_hash in self.revert else 1,
                                      "block_number": self.head, "logs": []}
        receipt = self.receipts[tx_hash]

        if fn in self.timeout_once:
            self.timeout_once.remove(fn)
            raise InfrastructureError(f"Timed out waiting for {tx_hash}", tx_hash=tx_hash)
        if receipt["status"] != 1:
            raise ChainVerificationError(f"Transaction reverted: {tx_hash}", tx_hash=tx_hash)
        return receipt


@pytest.fixture
def config():
    return FundConfig(
        database_url="sqlite://",
        key_enc_secret="test-enc-secret",
        min_amount=Decimal("100"),
        max_amount=Decimal("250000"),
        chain_id=56,
        deposit_token=DEPOSIT_TOKEN,
        deposit_token_decimals=18,
        treasury_address=TREASURY,
        custody_token=CUSTODY_TOKEN,
        minter_key=MINTER_KEY,
        treasury_key=TREASURY_KEY,
        gas_ops_key=GAS_OPS_KEY,
        watch_blocks=300,
        watch_chunk=100,
        rpc_backoff=0.0,
        stage_attempts=2,
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def store():
    return PositionStore.from_url("sqlite://")


@pytest.fixture
def executor():
    return InlineExecutor(attempts=2, backoff=0.0, sleep=lambda s: None)


@pytest.fixture
def services(config, chain, store, executor):
    return build_services(config, chain=chain, store=store, executor=executor)


@pytest.fixture
def issued(services):
    """A fresh awaiting position (issuer response dict)."""
    return services.issuer.issue()


@pytest.fixture
def funded(services, chain, issued):
    """A funded_locked position (pipeline not run)."""
    tx = chain.add_deposit(issued["deposit_address"], units(150))
    position = services.store.get_by_ref(issued["ref"])
    services.store.mark_funded(position.id, tx, Decimal("150"), units(150),
                               utc_from_timestamp(GENESIS_TS + 3 * (HEAD_BLOCK - 10)))
    return services.store.get_by_ref(issued["ref"])
