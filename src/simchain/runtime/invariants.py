# src/simchain/runtime/invariants.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Tuple

from simchain.runtime.errors import ConfigurationError, InvariantViolation
from simchain.runtime.metrics import inc_counter
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import Context

log = logging.getLogger("simchain.invariants")

# check(ctx) -> (message, broken)
InvariantFn = Callable[[Context], Tuple[str, bool]]


def invariant_route(module: str, name: str) -> str:
    return f"{module}/{name}"


@dataclass(frozen=True)
class Invariant:
    module: str
    name: str
    check: InvariantFn

    @property
    def route(self) -> str:
        return invariant_route(self.module, self.name)


@dataclass(frozen=True)
class InvariantResult:
    module: str
    name: str
    broken: bool
    message: str

    @property
    def route(self) -> str:
        return invariant_route(self.module, self.name)

    def to_json(self) -> dict:
        return {"route": self.route, "broken": bool(self.broken), "message": self.message}


class InvariantRegistry:
    """Ordered collection of named consistency checks.

    Invariants run only on demand. Whether a broken result halts the chain is
    the caller's decision, not the registry's.
    """

    def __init__(self) -> None:
        self._invariants: List[Invariant] = []
        self._by_module: Dict[str, List[Invariant]] = {}
        self._by_route: Dict[str, Invariant] = {}

    def register(self, module_name: str, invariant_name: str, check: InvariantFn) -> Invariant:
        module_name = str(module_name or "").strip()
        invariant_name = str(invariant_name or "").strip()
        if not module_name or not invariant_name:
            raise ConfigurationError(
                "invalid_invariant", "empty_invariant_name", {"module": module_name, "name": invariant_name}
            )
        route = invariant_route(module_name, invariant_name)
        if route in self._by_route:
            raise ConfigurationError("duplicate_invariant", "invariant_already_registered", {"route": route})
        if not callable(check):
            raise ConfigurationError("invalid_invariant", "check_not_callable", {"route": route})

        inv = Invariant(module=module_name, name=invariant_name, check=check)
        self._invariants.append(inv)
        self._by_module.setdefault(module_name, []).append(inv)
        self._by_route[route] = inv
        return inv

    def __len__(self) -> int:
        return len(self._invariants)

    def invariants(self) -> Tuple[Invariant, ...]:
        return tuple(self._invariants)

    def routes(self) -> Tuple[str, ...]:
        return tuple(i.route for i in self._invariants)

    def for_module(self, module_name: str) -> Tuple[Invariant, ...]:
        return tuple(self._by_module.get(str(module_name), ()))

    def _run_one(self, ctx: Context, inv: Invariant) -> InvariantResult:
        try:
            message, broken = inv.check(ctx)
        except Exception as e:
            # A check that cannot complete is reported as broken state.
            log_event(log, "invariant_check_raised", route=inv.route, error=f"{type(e).__name__}: {e}")
            return InvariantResult(inv.module, inv.name, True, f"invariant check raised {type(e).__name__}: {e}")
        if broken:
            inc_counter("invariant_broken_total")
        return InvariantResult(inv.module, inv.name, bool(broken), str(message or ""))

    def run(self, ctx: Context, route: str) -> InvariantResult:
        inv = self._by_route.get(str(route))
        if inv is None:
            raise ConfigurationError("unknown_invariant", "invariant_route_not_registered", {"route": route})
        return self._run_one(ctx, inv)

    def run_all(self, ctx: Context) -> List[InvariantResult]:
        """Run every invariant in registration order. Never short-circuits."""
        inc_counter("invariant_runs_total")
        return [self._run_one(ctx, inv) for inv in self._invariants]


def broken_results(results: Iterable[InvariantResult]) -> List[InvariantResult]:
    return [r for r in results if r.broken]


def assert_invariants(results: Iterable[InvariantResult], *, height: int = 0) -> None:
    """Halt policy helper: raise InvariantViolation if any result is broken."""
    broken = broken_results(results)
    if not broken:
        return
    log_event(log, "invariants_broken", height=int(height), routes=[r.route for r in broken])
    raise InvariantViolation(
        "invariant_broken",
        ",".join(r.route for r in broken),
        {"height": int(height), "broken": [r.to_json() for r in broken]},
    )
