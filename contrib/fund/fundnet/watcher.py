"""
Fund Network SDK - Chain Watcher

Fallback deposit detection when nobody submits a tx hash. Scans the last
FUND_WATCH_BLOCKS blocks in FUND_WATCH_CHUNK-sized eth_getLogs ranges,
oldest -> newest, for Transfer logs to each awaiting position's deposit
address. First in-bounds transfer wins.

Commits use the same conditional update as confirm: a position that has moved
past awaiting_funds, or already has a deposit tx, is never touched.
"""

import logging
from typing import Dict, List, Optional

from .chain import decode_transfer
from .config import FundConfig
from .errors import NotFoundError
from .fund_types import (
    FundingPosition, normalize_address, normalize_ref, utc_from_timestamp,
)
from .position_store import PositionStore
from .verifier import deposit_amount

log = logging.getLogger(__name__)

CHECKED_TRAIL = 25


class ChainWatcher:
    """
    Usage:
        result = watcher.scan()                       # all awaiting positions (batch)
        result = watcher.scan(ref="FN-3FA91C0B")      # one position
    """

    def __init__(self, config: FundConfig, store: PositionStore, chain, gate, pipeline=None):
        self.config = config
        self.store = store
        self.chain = chain
        self.gate = gate
        self.pipeline = pipeline

    def _candidates(self, ref: Optional[str], address: Optional[str]) -> List[FundingPosition]:
        if ref or address:
            position = (self.store.get_by_ref(normalize_ref(ref)) if ref
                        else self.store.get_by_address(normalize_address(address)))
            if not position:
                raise NotFoundError("Position not found", position_ref=ref, address=address)
            return [position]
        return self.store.list_awaiting(self.config.watch_batch)

    def _find_deposit(self, position: FundingPosition, token: str,
                      from_block: int, to_block: int, checked: List[Dict]) -> Optional[Dict]:
        cursor = from_block
        while cursor <= to_block:
            end = min(cursor + self.config.watch_chunk - 1, to_block)
            logs = self.chain.get_transfer_logs(token, position.deposit_address, cursor, end)
            checked.append({
                "ref": position.position_ref,
                "chunk_from": cursor,
                "chunk_to": end,
                "logs": len(logs),
            })

            for entry in logs:
                transfer = decode_transfer(entry)
                if not transfer or transfer["token"] != token.lower() \
                        or transfer["to"] != position.deposit_address.lower():
                    continue
                amount = deposit_amount(transfer["value"], self.config.deposit_token_decimals)
                if not position.accepts(amount):
                    log.debug(f"{position.position_ref}: skip out-of-bounds transfer {amount} "
                              f"in {entry['transaction_hash'][:18]}...")
                    continue
                return {
                    "tx_hash": entry["transaction_hash"],
                    "block_number": entry["block_number"],
                    "amount": amount,
                    "raw": transfer["value"],
                }

            cursor = end + 1
        return None

    def scan(self, ref: Optional[str] = None, address: Optional[str] = None) -> Dict:
        self.gate.check()
        token = self.config.require("deposit_token")

        positions = self._candidates(ref, address)
        latest = self.chain.block_number()
        from_block = max(latest - self.config.watch_blocks, 0)

        updates = []
        checked: List[Dict] = []

        for position in positions:
            # Never touch beyond awaiting_funds
            if not position.is_awaiting:
                continue

            found = self._find_deposit(position, token, from_block, latest, checked)
            if not found:
                continue

            funded_at = utc_from_timestamp(self.chain.get_block_timestamp(found["block_number"]))
            won = self.store.mark_funded(position.id, found["tx_hash"], found["amount"],
                                         found["raw"], funded_at)
            if not won:
                log.info(f"{position.position_ref}: already advanced by another caller")
                continue

            log.info(f"{position.position_ref}: watcher funded {found['amount']} "
                     f"via {found['tx_hash'][:18]}...")

            update = {
                "id": position.id,
                "position_ref": position.position_ref,
                "deposit_address": position.deposit_address,
                "deposit_tx_hash": found["tx_hash"],
                "funded_amount": str(found["amount"]),
                "funded_at": funded_at.isoformat(),
                "status": "funded_locked",
            }
            if self.pipeline is not None:
                update["pipeline"] = self.pipeline.after_funded(position.position_ref)
            updates.append(update)

        return {
            "ok": True,
            "scanned": len(positions),
            "watch_blocks": self.config.watch_blocks,
            "chunk_size": self.config.watch_chunk,
            "from_block": from_block,
            "to_block": latest,
            "updates": updates,
            "checked": checked[:CHECKED_TRAIL],
        }
