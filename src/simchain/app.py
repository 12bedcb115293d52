# src/simchain/app.py
from __future__ import annotations

"""Reference application.

SimApp is the composition root: it allocates storage, builds the keeper
graph, instantiates the modules and hands them, with one ordering per
lifecycle phase, to the Manager. A driver (tests, the HTTP layer, a
consensus engine) then calls init_chain once and begin_block / end_block /
commit once per height.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from simchain.modules import auth, bank, consensus, crisis, genutil, staking
from simchain.runtime.app_config import AppConfig, load_app_config, validate_app_config
from simchain.runtime.codec import JsonCodec
from simchain.runtime.errors import ConfigurationError, InvariantViolation, PhaseExecutionError
from simchain.runtime.invariants import InvariantResult
from simchain.runtime.keeper_graph import KeeperGraph
from simchain.runtime.manager import LifecyclePhase, Manager
from simchain.runtime.metrics import inc_counter
from simchain.runtime.namespaces import NamespaceAllocator
from simchain.runtime.router import ServiceRouter
from simchain.runtime.sqlite_db import open_sqlite_store
from simchain.runtime.store import BackingStore, MemoryKVStore
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import (
    BeginRequest,
    BeginResponse,
    CommitInfo,
    Context,
    EndRequest,
    EndResponse,
    InitChainRequest,
    InitGenesisResponse,
)

log = logging.getLogger("simchain.app")

Json = Dict[str, Any]

MODULE_ACCOUNT_PERMS: Dict[str, Tuple[str, ...]] = {
    auth.FEE_COLLECTOR: (),
    auth.BONDED_POOL: (auth.BURNER, auth.STAKING),
    auth.NOT_BONDED_POOL: (auth.BURNER, auth.STAKING),
}

# Construction order; also the order services are registered in.
ORDER_CONSTRUCTION: Tuple[str, ...] = (
    genutil.MODULE_NAME,
    auth.MODULE_NAME,
    bank.MODULE_NAME,
    staking.MODULE_NAME,
    crisis.MODULE_NAME,
    consensus.MODULE_NAME,
)

ORDER_BEGIN: Tuple[str, ...] = (
    consensus.MODULE_NAME,
    staking.MODULE_NAME,
    auth.MODULE_NAME,
    bank.MODULE_NAME,
    crisis.MODULE_NAME,
    genutil.MODULE_NAME,
)

ORDER_END: Tuple[str, ...] = (
    consensus.MODULE_NAME,
    crisis.MODULE_NAME,
    staking.MODULE_NAME,
    auth.MODULE_NAME,
    bank.MODULE_NAME,
    genutil.MODULE_NAME,
)

# auth before bank before staking (the bonded pool must be funded before
# staking checks it); crisis after everything whose invariants it asserts;
# genutil last so gen-txs see the complete genesis state.
ORDER_INIT_GENESIS: Tuple[str, ...] = (
    consensus.MODULE_NAME,
    auth.MODULE_NAME,
    bank.MODULE_NAME,
    staking.MODULE_NAME,
    crisis.MODULE_NAME,
    genutil.MODULE_NAME,
)

_META_LAST_HEIGHT = "last_height"
_META_APP_HASH = "app_hash"
_META_CHAIN_ID = "chain_id"


def _open_store(cfg: AppConfig) -> BackingStore:
    if not (cfg.db_path or "").strip():
        return MemoryKVStore()
    return open_sqlite_store(cfg.db_path)


class SimApp:
    def __init__(self, cfg: Optional[AppConfig] = None, *, store: Optional[BackingStore] = None) -> None:
        self.cfg = cfg or load_app_config()
        validate_app_config(self.cfg)

        self.store: BackingStore = store if store is not None else _open_store(self.cfg)
        self.codec = JsonCodec()
        self.router = ServiceRouter()

        graph = KeeperGraph(NamespaceAllocator(self.store))
        graph.add(
            auth.MODULE_NAME,
            lambda s, d: auth.AccountKeeper(s, module_perms=MODULE_ACCOUNT_PERMS),
            store=auth.MODULE_NAME,
        )
        graph.add(
            bank.MODULE_NAME,
            lambda s, d: bank.BankKeeper(s, account_keeper=d[auth.MODULE_NAME]),
            depends_on=(auth.MODULE_NAME,),
            store=bank.MODULE_NAME,
        )
        graph.add(
            staking.MODULE_NAME,
            lambda s, d: staking.StakingKeeper(s, account_keeper=d[auth.MODULE_NAME], bank_keeper=d[bank.MODULE_NAME]),
            depends_on=(auth.MODULE_NAME, bank.MODULE_NAME),
            store=staking.MODULE_NAME,
        )
        graph.add(
            crisis.MODULE_NAME,
            lambda s, d: crisis.CrisisKeeper(
                s,
                bank_keeper=d[bank.MODULE_NAME],
                inv_check_period=self.cfg.inv_check_period,
                skip_genesis_invariants=self.cfg.skip_genesis_invariants,
            ),
            depends_on=(bank.MODULE_NAME,),
            store=crisis.MODULE_NAME,
        )
        graph.add(
            consensus.MODULE_NAME,
            lambda s, d: consensus.ConsensusParamsKeeper(s, authority=self.cfg.authority),
            store=consensus.MODULE_NAME,
        )
        self.keepers = graph.build()

        self.account_keeper: auth.AccountKeeper = self.keepers[auth.MODULE_NAME]
        self.bank_keeper: bank.BankKeeper = self.keepers[bank.MODULE_NAME]
        self.staking_keeper: staking.StakingKeeper = self.keepers[staking.MODULE_NAME]
        self.crisis_keeper: crisis.CrisisKeeper = self.keepers[crisis.MODULE_NAME]
        self.consensus_keeper: consensus.ConsensusParamsKeeper = self.keepers[consensus.MODULE_NAME]

        built = {
            genutil.MODULE_NAME: genutil.new_module(staking_keeper=self.staking_keeper, deliver=self.router.route_msg),
            auth.MODULE_NAME: auth.new_module(self.account_keeper),
            bank.MODULE_NAME: bank.new_module(self.bank_keeper),
            staking.MODULE_NAME: staking.new_module(self.staking_keeper),
            crisis.MODULE_NAME: crisis.new_module(self.crisis_keeper),
            consensus.MODULE_NAME: consensus.new_module(self.consensus_keeper),
        }
        self.manager = Manager(
            [built[n] for n in ORDER_CONSTRUCTION],
            order_init_genesis=self.cfg.order_init_genesis or ORDER_INIT_GENESIS,
            order_begin=self.cfg.order_begin or ORDER_BEGIN,
            order_end=self.cfg.order_end or ORDER_END,
        )
        self.manager.register_invariants(self.crisis_keeper.registry)
        self.manager.register_services(self.router)

        self._block_ctx: Optional[Context] = None
        self._block_time_ms = 0
        # True once a completed genesis or step is waiting for commit().
        self._uncommitted = False
        self._app_hash = self.store.get_meta(_META_APP_HASH) or ""

        last = self.store.get_meta(_META_LAST_HEIGHT)
        if last is not None:
            stored_chain = self.store.get_meta(_META_CHAIN_ID) or ""
            if stored_chain and stored_chain != self.cfg.chain_id:
                raise ConfigurationError(
                    "chain_id_mismatch", "store_belongs_to_other_chain", {"store": stored_chain, "config": self.cfg.chain_id}
                )
            self.manager.resume(int(last))

        log_event(log, "app_constructed", chain_id=self.cfg.chain_id, modules=list(ORDER_CONSTRUCTION), resumed=last is not None)

    # ----------------------------
    # Helpers
    # ----------------------------

    @property
    def chain_id(self) -> str:
        return self.cfg.chain_id

    @property
    def last_height(self) -> int:
        return self.manager.last_height

    @property
    def app_hash(self) -> str:
        return self._app_hash

    def _ctx(self, height: int, time_ms: int = 0) -> Context:
        return Context(chain_id=self.cfg.chain_id, height=int(height), time_ms=int(time_ms), logger=log)

    # ----------------------------
    # Genesis
    # ----------------------------

    def default_genesis(self) -> Json:
        return self.manager.default_genesis(self.codec)

    def init_chain(self, req: InitChainRequest) -> InitGenesisResponse:
        if req.chain_id != self.cfg.chain_id:
            raise ConfigurationError("chain_id_mismatch", "init_chain_for_other_chain", {"request": req.chain_id, "config": self.cfg.chain_id})
        app_state = self.codec.decode_app_state(req.app_state_bytes)
        ctx = self._ctx(req.initial_height, req.time_ms)
        res = self.manager.init_genesis(ctx, self.codec, app_state, initial_height=req.initial_height)
        self._uncommitted = True
        log_event(log, "chain_initialized", chain_id=req.chain_id, validator_updates=len(res.validator_updates))
        return res

    def export_genesis(self) -> Json:
        ctx = self._ctx(self.last_height, self._block_time_ms)
        return {
            "chain_id": self.cfg.chain_id,
            "initial_height": self.last_height + 1,
            "app_state": self.manager.export_genesis(ctx, self.codec),
        }

    # ----------------------------
    # Steps
    # ----------------------------

    def begin_block(self, height: int, *, time_ms: int = 0, proposer: str = "") -> BeginResponse:
        ctx = self._ctx(height, time_ms)
        res = self.manager.begin_phase(ctx, BeginRequest(height=int(height), time_ms=int(time_ms), proposer=proposer))
        self._block_ctx = ctx
        self._block_time_ms = int(time_ms)
        return res

    def deliver_msg(self, msg_type: str, payload: Json) -> Tuple[Json, List[Json]]:
        """Route one message inside the open step. Returns (result, events)."""
        if self.manager.phase != LifecyclePhase.IN_BEGIN or self._block_ctx is None:
            raise PhaseExecutionError("step_out_of_order", "deliver_outside_open_step", {"msg_type": msg_type})
        ctx = self._ctx(self._block_ctx.height, self._block_ctx.time_ms)
        try:
            out = self.router.route_msg(ctx, msg_type, payload)
        except InvariantViolation as e:
            self.manager.halt("invariant_broken_by_msg", msg_type=msg_type, height=ctx.height, violation=e.reason)
            raise
        inc_counter("msgs_delivered_total")
        return out, [ev.with_module(msg_type.split("/", 1)[0]).to_json() for ev in ctx.drain_events()]

    def end_block(self, height: int) -> EndResponse:
        ctx = self._block_ctx if self._block_ctx is not None else self._ctx(height)
        res = self.manager.end_phase(ctx, EndRequest(height=int(height)))
        self._block_ctx = None
        self._uncommitted = True
        return res

    def commit(self) -> CommitInfo:
        phase = self.manager.phase
        if phase not in (LifecyclePhase.GENESIS_INITIALIZED, LifecyclePhase.STEP_COMPLETED):
            raise PhaseExecutionError("step_out_of_order", "commit_without_completed_step", {"phase": phase.value})
        if not self._uncommitted:
            raise PhaseExecutionError("step_out_of_order", "step_already_committed", {"height": self.manager.last_height})
        h = self.manager.last_height
        app_hash = self.store.root_hash()
        self.store.commit({_META_LAST_HEIGHT: str(h), _META_APP_HASH: app_hash, _META_CHAIN_ID: self.cfg.chain_id})
        self._app_hash = app_hash
        self._uncommitted = False
        inc_counter("commits_total")
        log_event(log, "committed", height=h, app_hash=app_hash)
        return CommitInfo(height=h, app_hash=app_hash)

    # ----------------------------
    # Reads
    # ----------------------------

    def query(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Json:
        return self.router.query(self._ctx(self.last_height, self._block_time_ms), path, dict(params or {}))

    def check_invariants(self) -> List[InvariantResult]:
        """Run every registered invariant without halting."""
        return self.crisis_keeper.check_all(self._ctx(self.last_height, self._block_time_ms))

    def status(self) -> Json:
        m = self.manager
        return {
            "chain_id": self.cfg.chain_id,
            "phase": m.phase.value,
            "halted": m.halted,
            "last_height": m.last_height,
            "app_hash": self._app_hash,
            "modules": list(m.module_names),
            "order_init_genesis": list(m.order_init_genesis),
            "order_begin": list(m.order_begin),
            "order_end": list(m.order_end),
            "invariants": len(self.crisis_keeper.registry),
        }
