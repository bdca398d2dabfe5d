"""
Fund Network SDK - Service wiring

build_services(config) assembles store, vault, chain client, gate, pipeline
and the stage components once, so the HTTP server and the daemon share the
same graph. Read-side operations (positions, summary, bind) live here too.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .chain import ChainClient
from .config import FundConfig
from .errors import ValidationError
from .fund_types import normalize_ref
from .gate import build_gate
from .issuer import PositionIssuer
from .key_vault import KeyVault, mask_secret
from .minter import CustodyMinter
from .outbox import TxOutbox
from .pipeline import BackgroundExecutor, InlineExecutor, Pipeline
from .position_store import PositionStore
from .signer import Signer
from .sweeper import TreasurySweeper
from .verifier import DepositVerifier
from .watcher import ChainWatcher

log = logging.getLogger(__name__)

MAX_REFS = 200


def _clean_refs(refs: Iterable) -> List[str]:
    if refs is None:
        return []
    if isinstance(refs, str) or not isinstance(refs, (list, tuple)):
        raise ValidationError("refs must be a list")
    cleaned = [normalize_ref(str(r)) for r in refs if str(r).strip()]
    if len(cleaned) > MAX_REFS:
        raise ValidationError(f"Too many refs (max {MAX_REFS})")
    return cleaned


def _clean_owner(owner_id) -> Optional[str]:
    if owner_id is None:
        return None
    if not isinstance(owner_id, str):
        raise ValidationError("Bad owner")
    return owner_id.strip() or None


@dataclass
class FundServices:
    config: FundConfig
    store: PositionStore
    chain: object
    gate: object
    pipeline: Pipeline
    issuer: PositionIssuer
    verifier: DepositVerifier
    watcher: ChainWatcher
    sweeper: TreasurySweeper
    minter: CustodyMinter

    def bind(self, owner_id, refs) -> Dict:
        """Attach an owner identity to the listed positions."""
        self.gate.check()
        owner_id = _clean_owner(owner_id)
        if not owner_id:
            raise ValidationError("Missing owner")
        refs = _clean_refs(refs)
        if not refs:
            raise ValidationError("Missing refs")

        bound = self.store.bind_owner(refs, owner_id)
        log.info(f"Bound {len(bound)}/{len(refs)} position(s) to owner {mask_secret(owner_id, 4, 2)}")
        return {"ok": True, "bound_owner_id": owner_id, "bound_count": len(bound), "refs": bound}

    def list_positions(self, refs=None, owner_id=None) -> Dict:
        owner_id = _clean_owner(owner_id)
        if owner_id:
            positions = self.store.list_by_owner(owner_id)
            mode = "owner"
        else:
            positions = self.store.list_by_refs(_clean_refs(refs))
            mode = "refs"
        return {"ok": True, "mode": mode, "positions": [p.to_dict() for p in positions]}

    def summary(self, owner_id=None) -> Dict:
        result = self.store.summary(_clean_owner(owner_id))
        result["ok"] = True
        return result

    def chain_health(self) -> Dict:
        if not self.chain.is_connected():
            return {"ok": False, "error": "Not connected to chain"}
        return {"ok": True, "chain_id": self.config.chain_id, "block": self.chain.block_number()}


def build_services(config: FundConfig, chain=None, store: Optional[PositionStore] = None,
                   executor=None) -> FundServices:
    store = store or PositionStore.from_url(config.database_url)
    chain = chain or ChainClient.from_config(config)
    vault = KeyVault(config.key_enc_secret)
    gate = build_gate(config)
    signer = Signer(vault, store)

    if executor is None:
        if config.pipeline_mode == "background":
            executor = BackgroundExecutor(config.stage_attempts, config.rpc_backoff)
        else:
            executor = InlineExecutor(config.stage_attempts, config.rpc_backoff)

    outbox = TxOutbox(store, chain)
    sweeper = TreasurySweeper(config, store, chain, signer, outbox)
    minter = CustodyMinter(config, store, chain, signer, gate, outbox)
    pipeline = Pipeline(sweeper, minter, executor)

    return FundServices(
        config=config,
        store=store,
        chain=chain,
        gate=gate,
        pipeline=pipeline,
        issuer=PositionIssuer(config, store, vault, gate),
        verifier=DepositVerifier(config, store, chain, pipeline),
        watcher=ChainWatcher(config, store, chain, gate, pipeline),
        sweeper=sweeper,
        minter=minter,
    )
