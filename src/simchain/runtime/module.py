# src/simchain/runtime/module.py
from __future__ import annotations

"""Module capability records.

A module is described once, up front, by which lifecycle handlers it
provides. The Manager reads the record at construction time and never probes
module objects for methods while a chain is running.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, FrozenSet, Iterable, Optional, Sequence, Tuple, Type

from pydantic import BaseModel

from simchain.runtime.types import BeginRequest, Context, EndRequest, PhaseResult, ValidatorUpdate

if TYPE_CHECKING:  # pragma: no cover
    from simchain.runtime.invariants import InvariantRegistry
    from simchain.runtime.router import ServiceRouter


class Capability(str, Enum):
    INIT_GENESIS = "init_genesis"
    EXPORT_GENESIS = "export_genesis"
    BEGIN_PHASE = "begin_phase"
    END_PHASE = "end_phase"
    REGISTER_SERVICES = "register_services"
    REGISTER_INVARIANTS = "register_invariants"


InitGenesisFn = Callable[[Context, Any], Optional[Iterable[ValidatorUpdate]]]
ExportGenesisFn = Callable[[Context], BaseModel]
BeginPhaseFn = Callable[[Context, BeginRequest], Optional[PhaseResult]]
EndPhaseFn = Callable[[Context, EndRequest], Optional[PhaseResult]]
RegisterServicesFn = Callable[["ServiceRouter"], None]
RegisterInvariantsFn = Callable[["InvariantRegistry"], None]


@dataclass(frozen=True)
class GenesisHandler:
    """Genesis capability: the slice schema plus the init (and optional export) callables."""

    schema: Type[BaseModel]
    init: InitGenesisFn
    export: Optional[ExportGenesisFn] = None

    def default(self) -> BaseModel:
        return self.schema()


@dataclass(frozen=True)
class Module:
    name: str
    depends_on: Tuple[str, ...] = ()
    genesis: Optional[GenesisHandler] = None
    begin_phase: Optional[BeginPhaseFn] = None
    end_phase: Optional[EndPhaseFn] = None
    register_services: Optional[RegisterServicesFn] = None
    register_invariants: Optional[RegisterInvariantsFn] = None
    # Free-form handle to the module's keeper, for introspection and tests.
    keeper: Any = field(default=None, compare=False, repr=False)

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        caps = set()
        if self.genesis is not None:
            caps.add(Capability.INIT_GENESIS)
            if self.genesis.export is not None:
                caps.add(Capability.EXPORT_GENESIS)
        if self.begin_phase is not None:
            caps.add(Capability.BEGIN_PHASE)
        if self.end_phase is not None:
            caps.add(Capability.END_PHASE)
        if self.register_services is not None:
            caps.add(Capability.REGISTER_SERVICES)
        if self.register_invariants is not None:
            caps.add(Capability.REGISTER_INVARIANTS)
        return frozenset(caps)

    def implements(self, cap: Capability) -> bool:
        return cap in self.capabilities


def module_names(modules: Sequence[Module]) -> Tuple[str, ...]:
    return tuple(m.name for m in modules)
