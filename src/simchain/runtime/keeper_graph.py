# src/simchain/runtime/keeper_graph.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from simchain.runtime.errors import ConfigurationError
from simchain.runtime.namespaces import NamespaceAllocator, StorageHandle
from simchain.runtime.structured_logging import log_event

log = logging.getLogger("simchain.keepers")

# factory(store_handle_or_None, deps) -> keeper
KeeperFactory = Callable[[Optional[StorageHandle], Mapping[str, Any]], Any]


@dataclass(frozen=True)
class KeeperSpec:
    name: str
    factory: KeeperFactory
    depends_on: Tuple[str, ...] = ()
    # Name of the namespace to allocate; None for keepers without storage.
    store: Optional[str] = None


def topo_order(specs: Sequence[KeeperSpec]) -> Tuple[str, ...]:
    """Dependency-first order over specs.

    Ties are broken by declaration order so the result is reproducible.
    Unknown dependencies and cycles are ConfigurationErrors.
    """
    names = [s.name for s in specs]
    by_name = {s.name: s for s in specs}

    for s in specs:
        for dep in s.depends_on:
            if dep not in by_name:
                raise ConfigurationError("unknown_dependency", "keeper_dependency_not_declared", {"keeper": s.name, "dependency": dep})
            if dep == s.name:
                raise ConfigurationError("dependency_cycle", "keeper_depends_on_itself", {"keeper": s.name})

    remaining: Dict[str, int] = {n: len(set(by_name[n].depends_on)) for n in names}
    dependents: Dict[str, List[str]] = {n: [] for n in names}
    for s in specs:
        for dep in set(s.depends_on):
            dependents[dep].append(s.name)

    order: List[str] = []
    ready = [n for n in names if remaining[n] == 0]
    while ready:
        n = ready.pop(0)
        order.append(n)
        for d in dependents[n]:
            remaining[d] -= 1
            if remaining[d] == 0:
                ready.append(d)
        # keep declaration order among ready nodes
        ready.sort(key=names.index)

    if len(order) != len(names):
        cycle = [n for n in names if n not in order]
        raise ConfigurationError("dependency_cycle", "keeper_graph_not_acyclic", {"keepers": cycle})
    return tuple(order)


class KeeperGraph:
    """Declares keepers with their dependencies, then builds them once.

    build() allocates every namespace up front, then constructs keepers in
    dependency order, handing each one only the keepers it declared.
    """

    def __init__(self, allocator: NamespaceAllocator) -> None:
        self._allocator = allocator
        self._specs: List[KeeperSpec] = []
        self._keepers: Dict[str, Any] = {}
        self._handles: Dict[str, StorageHandle] = {}
        self._order: Tuple[str, ...] = ()
        self._built = False

    def add(
        self,
        name: str,
        factory: KeeperFactory,
        *,
        depends_on: Sequence[str] = (),
        store: Optional[str] = None,
    ) -> "KeeperGraph":
        if self._built:
            raise ConfigurationError("graph_sealed", "keeper_added_after_build", {"keeper": name})
        if any(s.name == name for s in self._specs):
            raise ConfigurationError("duplicate_keeper", "keeper_already_declared", {"keeper": name})
        self._specs.append(KeeperSpec(name=str(name), factory=factory, depends_on=tuple(depends_on), store=store))
        return self

    @property
    def order(self) -> Tuple[str, ...]:
        return self._order

    @property
    def handles(self) -> Mapping[str, StorageHandle]:
        return MappingProxyType(self._handles)

    def build(self) -> Mapping[str, Any]:
        if self._built:
            raise ConfigurationError("graph_sealed", "keeper_graph_already_built", None)

        order = topo_order(self._specs)
        by_name = {s.name: s for s in self._specs}

        stores = [by_name[n].store for n in order if by_name[n].store]
        handles = self._allocator.allocate(stores) if stores else {}

        for n in order:
            spec = by_name[n]
            deps = MappingProxyType({d: self._keepers[d] for d in spec.depends_on})
            handle = handles.get(spec.store) if spec.store else None
            if handle is not None:
                self._handles[n] = handle
            self._keepers[n] = spec.factory(handle, deps)

        self._order = order
        self._built = True
        log_event(log, "keepers_built", order=list(order), namespaces=sorted(handles.keys()))
        return MappingProxyType(self._keepers)

    def get(self, name: str) -> Any:
        if name not in self._keepers:
            raise ConfigurationError("unknown_keeper", "keeper_not_built", {"keeper": name})
        return self._keepers[name]
