from decimal import Decimal
from types import SimpleNamespace

import pytest
import requests
from web3.exceptions import TransactionNotFound

from fundnet.chain import (TRANSFER_TOPIC, ChainClient, address_topic, decode_transfer,
                           from_units, to_hex, to_units)
from fundnet.errors import InfrastructureError

TOKEN = "0x55d398326f99059ff775485246999027b3197955"
SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"


def transfer_log(value, token=TOKEN, topic=TRANSFER_TOPIC, data=None):
    return {
        "address": token,
        "topics": [topic, address_topic(SENDER), address_topic(RECIPIENT)],
        "data": data if data is not None else "0x" + format(value, "064x"),
    }


def test_decode_transfer():
    assert decode_transfer(transfer_log(150 * 10 ** 18)) == {
        "token": TOKEN, "from": SENDER, "to": RECIPIENT, "value": 150 * 10 ** 18,
    }


@pytest.mark.parametrize("entry", [
    transfer_log(1, topic="0x" + "00" * 32),
    transfer_log(1, data="0x1234"),
    {"address": TOKEN, "topics": [TRANSFER_TOPIC], "data": "0x" + "00" * 32},
    {"address": TOKEN, "topics": [], "data": "0x"},
])
def test_decode_transfer_rejects_non_transfers(entry):
    assert decode_transfer(entry) is None


def test_unit_conversion():
    assert to_units(150 * 10 ** 18, 18) == Decimal(150)
    assert to_units(1, 6) == Decimal("0.000001")
    assert from_units(Decimal("150"), 6) == 150_000_000
    assert from_units(Decimal("1.2345679"), 6) == 1_234_567


def test_hex_helpers():
    assert to_hex(b"\xab\xcd") == "0xabcd"
    assert to_hex("ABCD") == "0xabcd"
    assert address_topic(RECIPIENT) == "0x" + "0" * 24 + RECIPIENT[2:]


class FakeEth:
    def __init__(self):
        self.receipts = {}
        self.failures = 0
        self.block_calls = 0

    def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"not found: {tx_hash}")
        return self.receipts[tx_hash]

    @property
    def block_number(self):
        self.block_calls += 1
        if self.failures:
            self.failures -= 1
            raise requests.exceptions.ConnectionError("connection reset")
        return 1234


def _client(eth, attempts=3):
    return ChainClient(SimpleNamespace(eth=eth), chain_id=56, attempts=attempts, backoff=0)


def test_receipt_is_normalised():
    eth = FakeEth()
    eth.receipts["0xaa"] = {
        "transactionHash": b"\xaa" * 32,
        "status": 1,
        "blockNumber": 10,
        "logs": [{
            "address": TOKEN.upper().replace("0X", "0x"),
            "topics": [bytes.fromhex(TRANSFER_TOPIC[2:])],
            "data": b"\x00" * 32,
            "transactionHash": b"\xaa" * 32,
            "blockNumber": 10,
            "logIndex": 3,
        }],
    }
    receipt = _client(eth).get_receipt("0xaa")

    assert receipt["transaction_hash"] == "0x" + "aa" * 32
    assert receipt["logs"][0]["address"] == TOKEN
    assert receipt["logs"][0]["topics"] == [TRANSFER_TOPIC]
    assert receipt["logs"][0]["log_index"] == 3


def test_missing_receipt_is_none():
    assert _client(FakeEth()).get_receipt("0xbb") is None


def test_reads_retry_then_raise_infrastructure():
    eth = FakeEth()
    eth.failures = 2
    assert _client(eth).block_number() == 1234
    assert eth.block_calls == 3

    eth.failures = 5
    with pytest.raises(InfrastructureError, match="eth_blockNumber"):
        _client(eth, attempts=2).block_number()


def test_token_balance_reads_balance_of():
    seen = []

    class Fn:
        def __init__(self, owner):
            seen.append(owner)

        def call(self):
            return 150 * 10 ** 18

    contract = SimpleNamespace(functions=SimpleNamespace(balanceOf=Fn))
    eth = SimpleNamespace(contract=lambda address, abi: contract)

    assert _client(eth).token_balance(TOKEN, RECIPIENT) == 150 * 10 ** 18
    assert seen[0].lower() == RECIPIENT
