# src/simchain/modules/crisis.py
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

from pydantic import Field

from simchain.modules import auth, bank
from simchain.modules.errors import ModuleError
from simchain.runtime.codec import StrictModel
from simchain.runtime.invariants import InvariantFn, InvariantRegistry, InvariantResult, assert_invariants
from simchain.runtime.module import GenesisHandler, Module
from simchain.runtime.namespaces import StorageHandle
from simchain.runtime.router import ServiceRouter
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import Context, EndRequest, Event

Json = Dict[str, Any]

MODULE_NAME = "crisis"

log = logging.getLogger("simchain.crisis")

_K_CONSTANT_FEE = b"constant_fee"


class GenesisState(StrictModel):
    constant_fee: bank.Coin = Field(default_factory=lambda: bank.Coin(denom="stake", amount=1000))


class CrisisKeeper:
    """Owns the invariant registry and the policy for acting on it.

    Any broken invariant halts the chain: assert_all() raises
    InvariantViolation, which the Manager treats as fatal.
    """

    def __init__(
        self,
        store: StorageHandle,
        *,
        bank_keeper: bank.BankKeeper,
        inv_check_period: int = 0,
        skip_genesis_invariants: bool = False,
        fee_collector_name: str = auth.FEE_COLLECTOR,
    ) -> None:
        if int(inv_check_period) < 0:
            raise ValueError("inv_check_period must be >= 0")
        self._store = store
        self._bk = bank_keeper
        self._period = int(inv_check_period)
        self._skip_genesis = bool(skip_genesis_invariants)
        self._fee_collector = str(fee_collector_name)
        self.registry = InvariantRegistry()

    @property
    def inv_check_period(self) -> int:
        return self._period

    @property
    def skip_genesis_invariants(self) -> bool:
        return self._skip_genesis

    def register_route(self, module_name: str, route: str, check: InvariantFn) -> None:
        self.registry.register(module_name, route, check)

    def get_constant_fee(self) -> bank.Coin:
        raw = self._store.get_json(_K_CONSTANT_FEE)
        return bank.Coin.model_validate(raw) if raw is not None else GenesisState().constant_fee

    def set_constant_fee(self, fee: bank.Coin) -> None:
        self._store.set_json(_K_CONSTANT_FEE, fee.model_dump(mode="json"))

    def check_all(self, ctx: Context) -> List[InvariantResult]:
        return self.registry.run_all(ctx)

    def assert_all(self, ctx: Context) -> None:
        start = time.monotonic()
        results = self.check_all(ctx)
        log_event(
            log,
            "invariants_asserted",
            height=int(ctx.height),
            count=len(results),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        assert_invariants(results, height=ctx.height)

    def verify_invariant(self, ctx: Context, *, sender: str, module_name: str, route: str) -> InvariantResult:
        """Charge the constant fee, then run one invariant.

        A broken result raises InvariantViolation; SimApp.deliver_msg latches
        the Manager into HALTED so the step is never committed.
        """
        full = f"{module_name}/{route}"
        if full not in self.registry.routes():
            raise ModuleError("unknown_invariant", "invariant_route_not_registered", {"route": full})

        fee = self.get_constant_fee()
        if fee.amount > 0:
            self._bk.send_coins_from_account_to_module(ctx, sender, self._fee_collector, {fee.denom: fee.amount})

        res = self.registry.run(ctx, full)
        ctx.emit(Event.new("invariant", route=res.route, sender=sender))
        assert_invariants([res], height=ctx.height)
        return res

    def init_genesis(self, ctx: Context, gs: GenesisState) -> None:
        self.set_constant_fee(gs.constant_fee)
        if not self._skip_genesis:
            self.assert_all(ctx)

    def export_genesis(self, ctx: Context) -> GenesisState:
        return GenesisState(constant_fee=self.get_constant_fee())

    def end_phase(self, ctx: Context, req: EndRequest) -> None:
        if self._period == 0 or int(req.height) % self._period != 0:
            return
        self.assert_all(ctx)


def new_module(keeper: CrisisKeeper) -> Module:
    def init_genesis(ctx: Context, gs: GenesisState) -> None:
        keeper.init_genesis(ctx, gs)

    def register_services(router: ServiceRouter) -> None:
        def msg_verify_invariant(ctx: Context, payload: Json) -> Json:
            sender = auth.require_address(payload.get("sender"), "sender")
            module_name = str(payload.get("invariant_module_name") or "")
            route = str(payload.get("invariant_route") or "")
            if not module_name or not route:
                raise ModuleError("invalid_msg", "invariant_route_required", {"payload": payload})
            res = keeper.verify_invariant(ctx, sender=sender, module_name=module_name, route=route)
            return {"result": res.to_json()}

        router.add_msg_handler(MODULE_NAME, "MsgVerifyInvariant", msg_verify_invariant)
        router.add_query_handler(
            MODULE_NAME, "constant_fee", lambda ctx, p: {"constant_fee": keeper.get_constant_fee().model_dump()}
        )
        router.add_query_handler(MODULE_NAME, "invariants", lambda ctx, p: {"routes": list(keeper.registry.routes())})

    return Module(
        name=MODULE_NAME,
        depends_on=(bank.MODULE_NAME,),
        genesis=GenesisHandler(schema=GenesisState, init=init_genesis, export=keeper.export_genesis),
        end_phase=keeper.end_phase,
        register_services=register_services,
        keeper=keeper,
    )
