# src/simchain/runtime/manager.py
from __future__ import annotations

"""Lifecycle orchestrator.

The Manager owns the module set and one explicit ordering per lifecycle
phase, and fans each chain event out to the modules in that order:

    Constructed -> GenesisInitialized -> {Begin <-> End}*

Ordering is data, validated once at construction. A module missing from an
ordering simply does not take part in that phase. Execution is strictly
sequential; the first module failure halts the step and latches the Manager
into HALTED so no later step can run on partially-applied state.
"""

import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel

from simchain.runtime.codec import JsonCodec
from simchain.runtime.errors import (
    ConfigurationError,
    GenesisDecodeError,
    OrchestratorError,
    PhaseExecutionError,
)
from simchain.runtime.invariants import InvariantRegistry
from simchain.runtime.metrics import inc_counter, set_gauge
from simchain.runtime.module import Capability, Module
from simchain.runtime.router import ServiceRouter
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import (
    BeginRequest,
    BeginResponse,
    Context,
    EndRequest,
    EndResponse,
    Event,
    InitGenesisResponse,
    PhaseResult,
    ValidatorUpdate,
)

log = logging.getLogger("simchain.manager")

Json = Dict[str, Any]


class LifecyclePhase(str, Enum):
    CONSTRUCTED = "constructed"
    GENESIS_INITIALIZED = "genesis_initialized"
    IN_BEGIN = "in_begin"
    IN_END = "in_end"
    STEP_COMPLETED = "step_completed"
    HALTED = "halted"


def _validate_order(kind: str, order: Sequence[str], known: Mapping[str, Module]) -> Tuple[str, ...]:
    if isinstance(order, str):
        raise ConfigurationError("invalid_order", "order_must_be_a_sequence", {"phase": kind})
    seen = set()
    for name in order:
        if name not in known:
            raise ConfigurationError("unknown_module_in_order", "order_names_unregistered_module", {"phase": kind, "module": name})
        if name in seen:
            raise ConfigurationError("duplicate_module_in_order", "module_listed_twice", {"phase": kind, "module": name})
        seen.add(name)
    return tuple(order)


def _as_updates(raw: Any) -> Tuple[ValidatorUpdate, ...]:
    if not raw:
        return ()
    return tuple(raw)


class Manager:
    """Drives registered modules through genesis, begin and end phases."""

    def __init__(
        self,
        modules: Sequence[Module],
        *,
        order_init_genesis: Optional[Sequence[str]] = None,
        order_begin: Optional[Sequence[str]] = None,
        order_end: Optional[Sequence[str]] = None,
        order_export_genesis: Optional[Sequence[str]] = None,
    ) -> None:
        by_name: Dict[str, Module] = {}
        for m in modules:
            if not isinstance(m, Module):
                raise ConfigurationError("invalid_module", "not_a_module_record", {"type": type(m).__name__})
            if m.name in by_name:
                raise ConfigurationError("duplicate_module", "module_registered_twice", {"module": m.name})
            by_name[m.name] = m

        self._modules: Tuple[Module, ...] = tuple(modules)
        self._by_name: Dict[str, Module] = by_name
        # Capability sets are read exactly once, here.
        self._caps: Dict[str, FrozenSet[Capability]] = {m.name: m.capabilities for m in self._modules}

        names = tuple(by_name.keys())
        self._order_init_genesis = _validate_order("init_genesis", order_init_genesis if order_init_genesis is not None else names, by_name)
        self._order_begin = _validate_order("begin", order_begin if order_begin is not None else names, by_name)
        self._order_end = _validate_order("end", order_end if order_end is not None else names, by_name)
        self._order_export_genesis = _validate_order(
            "export_genesis",
            order_export_genesis if order_export_genesis is not None else self._order_init_genesis,
            by_name,
        )

        self._phase = LifecyclePhase.CONSTRUCTED
        self._genesis_done = False
        self._services_registered = False
        self._invariants_registered = False
        self._last_height = 0
        self._open_height: Optional[int] = None

        self._log_omissions()

    def _log_omissions(self) -> None:
        for kind, cap, order in (
            ("init_genesis", Capability.INIT_GENESIS, self._order_init_genesis),
            ("begin", Capability.BEGIN_PHASE, self._order_begin),
            ("end", Capability.END_PHASE, self._order_end),
        ):
            omitted = [m.name for m in self._modules if cap in self._caps[m.name] and m.name not in order]
            if omitted:
                log_event(log, "phase_order_omits_modules", level=logging.DEBUG, phase=kind, modules=omitted)

    # ----------------------------
    # Introspection
    # ----------------------------

    @property
    def modules(self) -> Tuple[Module, ...]:
        return self._modules

    @property
    def module_names(self) -> Tuple[str, ...]:
        return tuple(m.name for m in self._modules)

    def module(self, name: str) -> Module:
        m = self._by_name.get(name)
        if m is None:
            raise ConfigurationError("unknown_module", "module_not_registered", {"module": name})
        return m

    def capabilities(self, name: str) -> FrozenSet[Capability]:
        self.module(name)
        return self._caps[name]

    @property
    def order_init_genesis(self) -> Tuple[str, ...]:
        return self._order_init_genesis

    @property
    def order_begin(self) -> Tuple[str, ...]:
        return self._order_begin

    @property
    def order_end(self) -> Tuple[str, ...]:
        return self._order_end

    @property
    def order_export_genesis(self) -> Tuple[str, ...]:
        return self._order_export_genesis

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def halted(self) -> bool:
        return self._phase == LifecyclePhase.HALTED

    @property
    def last_height(self) -> int:
        return self._last_height

    def halt(self, reason: str, **fields: Any) -> None:
        """Latch HALTED from outside a phase, e.g. when a delivered message breaks an invariant."""
        if self._phase == LifecyclePhase.HALTED:
            return
        self._halt(reason, **fields)

    def _halt(self, reason: str, **fields: Any) -> None:
        self._phase = LifecyclePhase.HALTED
        inc_counter("manager_halts_total")
        log_event(log, "manager_halted", level=logging.ERROR, reason=reason, **fields)

    def _require_not_halted(self, op: str) -> None:
        if self._phase == LifecyclePhase.HALTED:
            raise PhaseExecutionError("halted", "manager_halted_after_failure", {"operation": op})

    # ----------------------------
    # Registration
    # ----------------------------

    def register_services(self, router: ServiceRouter) -> None:
        """Let every module publish its handlers, once, in construction order."""
        if self._services_registered:
            raise ConfigurationError("services_already_registered", "register_services_called_twice", None)
        self._services_registered = True
        for m in self._modules:
            if m.register_services is not None:
                m.register_services(router)
        log_event(log, "services_registered", msg_types=list(router.msg_types()), queries=list(router.query_paths()))

    def register_invariants(self, registry: InvariantRegistry) -> None:
        if self._invariants_registered:
            raise ConfigurationError("invariants_already_registered", "register_invariants_called_twice", None)
        self._invariants_registered = True
        for m in self._modules:
            if m.register_invariants is not None:
                m.register_invariants(registry)

    # ----------------------------
    # Genesis
    # ----------------------------

    def default_genesis(self, codec: JsonCodec) -> Json:
        out: Json = {}
        for m in self._modules:
            if m.genesis is not None:
                out[m.name] = codec.encode(m.genesis.default())
        return out

    def validate_genesis(self, codec: JsonCodec, genesis_state: Mapping[str, Any]) -> Dict[str, BaseModel]:
        """Decode every slice that genesis would consume, without touching state."""
        if not isinstance(genesis_state, Mapping):
            raise GenesisDecodeError("genesis_decode_failed", "genesis_state_not_mapping", {"type": type(genesis_state).__name__})
        decoded: Dict[str, BaseModel] = {}
        for name in self._order_init_genesis:
            m = self._by_name[name]
            if m.genesis is None:
                continue
            raw = genesis_state.get(name)
            if raw is None:
                continue
            decoded[name] = codec.decode(m.genesis.schema, raw, module=name)
        return decoded

    def init_genesis(
        self,
        ctx: Context,
        codec: JsonCodec,
        genesis_state: Mapping[str, Any],
        *,
        initial_height: int = 1,
    ) -> InitGenesisResponse:
        """Run every module's genesis in genesis order.

        The first step after genesis must be at initial_height or later.
        """
        if int(initial_height) < 1:
            raise ConfigurationError("invalid_initial_height", "initial_height_must_be_positive", {"initial_height": initial_height})
        if self._genesis_done:
            raise ConfigurationError("genesis_already_initialized", "init_genesis_called_twice", {"phase": self._phase.value})
        self._require_not_halted("init_genesis")
        self._genesis_done = True

        unknown = sorted(k for k in genesis_state.keys() if k not in self._by_name) if isinstance(genesis_state, Mapping) else []
        if unknown:
            log_event(log, "genesis_unknown_modules_ignored", level=logging.WARNING, modules=unknown)

        try:
            decoded = self.validate_genesis(codec, genesis_state)
        except GenesisDecodeError as e:
            self._halt("genesis_decode_failed", details=e.details)
            raise

        updates: Tuple[ValidatorUpdate, ...] = ()
        updates_from = ""
        for name in self._order_init_genesis:
            m = self._by_name[name]
            if m.genesis is None or name not in decoded:
                continue
            try:
                out = _as_updates(m.genesis.init(ctx, decoded[name]))
            except OrchestratorError as e:
                self._halt("init_genesis_failed", module=name, code=e.code)
                raise
            except Exception as e:
                self._halt("init_genesis_failed", module=name, error=str(e))
                raise PhaseExecutionError(
                    "phase_failed",
                    type(e).__name__,
                    {"phase": "init_genesis", "module": name, "error": str(e)},
                ) from e

            if out:
                if updates:
                    self._halt("multiple_validator_updates", modules=[updates_from, name])
                    raise ConfigurationError(
                        "multiple_validator_updates",
                        "init_genesis_updates_from_more_than_one_module",
                        {"modules": [updates_from, name]},
                    )
                updates = out
                updates_from = name

        self._phase = LifecyclePhase.GENESIS_INITIALIZED
        self._last_height = int(initial_height) - 1
        log_event(
            log,
            "genesis_initialized",
            modules=list(decoded.keys()),
            validator_updates=len(updates),
            initial_height=int(initial_height),
        )
        return InitGenesisResponse(validator_updates=updates)

    def export_genesis(self, ctx: Context, codec: JsonCodec) -> Json:
        out: Json = {}
        for name in self._order_export_genesis:
            m = self._by_name[name]
            if m.genesis is None or m.genesis.export is None:
                continue
            out[name] = codec.encode(m.genesis.export(ctx))
        return out

    # ----------------------------
    # Steps
    # ----------------------------

    def _run_phase(self, kind: str, order: Sequence[str], ctx: Context, req: Any) -> List[Tuple[str, PhaseResult]]:
        results: List[Tuple[str, PhaseResult]] = []
        for name in order:
            m = self._by_name[name]
            handler = m.begin_phase if kind == "begin" else m.end_phase
            if handler is None:
                continue
            try:
                out = handler(ctx, req)
            except OrchestratorError as e:
                self._halt(f"{kind}_phase_failed", module=name, height=int(req.height), code=e.code)
                raise
            except Exception as e:
                self._halt(f"{kind}_phase_failed", module=name, height=int(req.height), error=str(e))
                raise PhaseExecutionError(
                    "phase_failed",
                    type(e).__name__,
                    {"phase": kind, "module": name, "height": int(req.height), "error": str(e)},
                ) from e

            # Events come from the handler's result and from the context sink.
            emitted = ctx.drain_events()
            res = out if isinstance(out, PhaseResult) else PhaseResult()
            events = tuple(ev.with_module(name) for ev in (*emitted, *res.events))
            results.append((name, PhaseResult(events=events, validator_updates=_as_updates(res.validator_updates))))
        return results

    def begin_phase(self, ctx: Context, req: BeginRequest) -> BeginResponse:
        self._require_not_halted("begin_phase")
        h = int(req.height)
        if self._phase == LifecyclePhase.CONSTRUCTED:
            raise PhaseExecutionError("step_out_of_order", "genesis_not_initialized", {"height": h})
        if self._phase in (LifecyclePhase.IN_BEGIN, LifecyclePhase.IN_END):
            raise PhaseExecutionError("step_out_of_order", "begin_while_step_open", {"height": h, "open_height": self._open_height})
        if h <= self._last_height:
            raise PhaseExecutionError("step_out_of_order", "height_not_increasing", {"height": h, "last_height": self._last_height})

        self._phase = LifecyclePhase.IN_BEGIN
        self._open_height = h
        results = self._run_phase("begin", self._order_begin, ctx, req)
        inc_counter("begin_phase_total")

        events: List[Event] = []
        for _, res in results:
            events.extend(res.events)
        return BeginResponse(events=tuple(events))

    def end_phase(self, ctx: Context, req: EndRequest) -> EndResponse:
        self._require_not_halted("end_phase")
        h = int(req.height)
        if self._phase != LifecyclePhase.IN_BEGIN or self._open_height != h:
            raise PhaseExecutionError("step_out_of_order", "end_without_matching_begin", {"height": h, "open_height": self._open_height})

        self._phase = LifecyclePhase.IN_END
        results = self._run_phase("end", self._order_end, ctx, req)

        events: List[Event] = []
        updates: Tuple[ValidatorUpdate, ...] = ()
        updates_from = ""
        for name, res in results:
            events.extend(res.events)
            if not res.validator_updates:
                continue
            if updates:
                self._halt("multiple_validator_updates", modules=[updates_from, name], height=h)
                raise PhaseExecutionError(
                    "multiple_validator_updates",
                    "end_phase_updates_from_more_than_one_module",
                    {"modules": [updates_from, name], "height": h},
                )
            updates = res.validator_updates
            updates_from = name

        self._phase = LifecyclePhase.STEP_COMPLETED
        self._last_height = h
        self._open_height = None
        inc_counter("end_phase_total")
        set_gauge("height", h)
        return EndResponse(events=tuple(events), validator_updates=updates)

    def resume(self, last_height: int) -> None:
        """Restart path: genesis ran in an earlier process; continue after last_height."""
        if self._phase != LifecyclePhase.CONSTRUCTED:
            raise ConfigurationError("resume_after_start", "resume_requires_fresh_manager", {"phase": self._phase.value})
        self._genesis_done = True
        self._last_height = int(last_height)
        self._phase = LifecyclePhase.STEP_COMPLETED
        log_event(log, "manager_resumed", last_height=int(last_height))
