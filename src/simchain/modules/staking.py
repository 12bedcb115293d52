# src/simchain/modules/staking.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field, field_validator, model_validator

from simchain.crypto.sig import is_valid_ed25519_pubkey
from simchain.modules import auth, bank
from simchain.modules.errors import ModuleError
from simchain.runtime.codec import StrictModel
from simchain.runtime.invariants import InvariantRegistry
from simchain.runtime.module import GenesisHandler, Module
from simchain.runtime.namespaces import StorageHandle
from simchain.runtime.router import ServiceRouter
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import BeginRequest, Context, EndRequest, Event, PhaseResult, ValidatorUpdate

Json = Dict[str, Any]

MODULE_NAME = "staking"

log = logging.getLogger("simchain.staking")

_K_PARAMS = b"params"
_K_VALIDATORS = b"validators/"
_K_LAST_POWER = b"last_power/"
_K_HISTORICAL = b"historical/"


def _validate_pubkey(v: Any) -> str:
    s = str(v or "").strip()
    if not is_valid_ed25519_pubkey(s):
        raise ValueError("pubkey must be a 32-byte ed25519 public key (hex or base64)")
    return s


class Params(StrictModel):
    bond_denom: str = "stake"
    max_validators: int = Field(default=100, ge=1)
    power_reduction: int = Field(default=1, ge=1)
    historical_entries: int = Field(default=100, ge=0)

    @field_validator("bond_denom")
    @classmethod
    def _denom(cls, v: str) -> str:
        return bank.validate_denom(v)


class GenesisValidator(StrictModel):
    operator: str
    pubkey: str
    tokens: int = Field(ge=0)
    moniker: str = ""

    @field_validator("operator")
    @classmethod
    def _op(cls, v: str) -> str:
        return auth.validate_address(v)

    @field_validator("pubkey")
    @classmethod
    def _pk(cls, v: str) -> str:
        return _validate_pubkey(v)


class GenesisState(StrictModel):
    params: Params = Field(default_factory=Params)
    validators: List[GenesisValidator] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "GenesisState":
        ops = set()
        pks = set()
        for v in self.validators:
            if v.operator in ops:
                raise ValueError(f"duplicate validator operator: {v.operator}")
            if v.pubkey in pks:
                raise ValueError(f"duplicate validator pubkey: {v.pubkey}")
            ops.add(v.operator)
            pks.add(v.pubkey)
        return self


class StakingKeeper:
    """Validator set bookkeeping.

    Bonded tokens live in the bonded pool module account. The last applied
    power of each validator is persisted so every end phase reports only the
    diff against the previous set.
    """

    def __init__(self, store: StorageHandle, *, account_keeper: auth.AccountKeeper, bank_keeper: bank.BankKeeper) -> None:
        self._store = store
        self._ak = account_keeper
        self._bk = bank_keeper

    # ----------------------------
    # Params
    # ----------------------------

    def get_params(self) -> Params:
        raw = self._store.get_json(_K_PARAMS)
        return Params.model_validate(raw) if raw is not None else Params()

    def set_params(self, params: Params) -> None:
        self._store.set_json(_K_PARAMS, params.model_dump(mode="json"))

    # ----------------------------
    # Validators
    # ----------------------------

    def get_validator(self, operator: str) -> Optional[Json]:
        return self._store.get_json(_K_VALIDATORS + str(operator).encode("utf-8"))

    def set_validator(self, v: Json) -> None:
        self._store.set_json(_K_VALIDATORS + str(v["operator"]).encode("utf-8"), v)

    def validators(self) -> List[Json]:
        return [v for _, v in self._store.iterate_json(_K_VALIDATORS)]

    def power(self, v: Json) -> int:
        return int(v.get("tokens", 0)) // self.get_params().power_reduction

    def total_bonded_tokens(self) -> int:
        return sum(int(v.get("tokens", 0)) for v in self.validators())

    def bonded_pool_address(self) -> str:
        return self._ak.module_address(auth.BONDED_POOL)

    def create_validator(self, ctx: Context, *, operator: str, pubkey: str, amount: int, moniker: str = "") -> Json:
        operator = auth.require_address(operator, "operator")
        try:
            pubkey = _validate_pubkey(pubkey)
        except ValueError as e:
            raise ModuleError("invalid_pubkey", "pubkey_not_ed25519", {"operator": operator}) from e
        amount = int(amount)
        if amount <= 0:
            raise ModuleError("invalid_amount", "self_bond_must_be_positive", {"amount": amount})
        if self.get_validator(operator) is not None:
            raise ModuleError("validator_exists", "operator_already_registered", {"operator": operator})
        if any(v["pubkey"] == pubkey for v in self.validators()):
            raise ModuleError("validator_exists", "pubkey_already_registered", {"pubkey": pubkey})

        denom = self.get_params().bond_denom
        self._bk.send_coins_from_account_to_module(ctx, operator, auth.BONDED_POOL, {denom: amount})
        v = {"operator": operator, "pubkey": pubkey, "tokens": amount, "moniker": str(moniker or "")}
        self.set_validator(v)
        ctx.emit(Event.new("create_validator", validator=operator, amount=f"{amount}{denom}"))
        return v

    # ----------------------------
    # Validator set updates
    # ----------------------------

    def _last_powers(self) -> Dict[str, int]:
        n = len(_K_LAST_POWER)
        return {k[n:].decode("utf-8"): int(p) for k, p in self._store.iterate_json(_K_LAST_POWER)}

    def apply_and_return_validator_set_updates(self) -> List[ValidatorUpdate]:
        """Recompute the active set and return what changed since the last call.

        Active set: the max_validators highest-power validators with power > 0,
        ties broken by operator. Updates for the active set come first in rank
        order, then removals (power 0) sorted by operator.
        """
        params = self.get_params()
        ranked = sorted(
            (v for v in self.validators() if self.power(v) > 0),
            key=lambda v: (-self.power(v), v["operator"]),
        )[: params.max_validators]

        last = self._last_powers()
        updates: List[ValidatorUpdate] = []
        active = set()
        for v in ranked:
            op = v["operator"]
            p = self.power(v)
            active.add(op)
            if last.get(op) != p:
                updates.append(ValidatorUpdate(pubkey=v["pubkey"], power=p))
                self._store.set_json(_K_LAST_POWER + op.encode("utf-8"), p)

        for op in sorted(set(last) - active):
            v = self.get_validator(op)
            if v is not None:
                updates.append(ValidatorUpdate(pubkey=v["pubkey"], power=0))
            self._store.delete(_K_LAST_POWER + op.encode("utf-8"))

        if updates:
            log_event(log, "validator_set_updated", updates=len(updates), active=len(active))
        return updates

    # ----------------------------
    # Historical info
    # ----------------------------

    @staticmethod
    def _hist_key(height: int) -> bytes:
        return _K_HISTORICAL + f"{int(height):020d}".encode("utf-8")

    def track_historical_info(self, ctx: Context) -> None:
        entries = self.get_params().historical_entries
        if entries == 0:
            return
        h = int(ctx.height)
        prune = h - entries
        if prune > 0:
            for k, _ in list(self._store.iterate(_K_HISTORICAL)):
                if k >= self._hist_key(prune + 1):
                    break
                self._store.delete(k)

        last = self._last_powers()
        self._store.set_json(
            self._hist_key(h),
            {
                "height": h,
                "time_ms": int(ctx.time_ms),
                "validators": [{"operator": op, "power": last[op]} for op in sorted(last)],
            },
        )

    def get_historical_info(self, height: int) -> Optional[Json]:
        return self._store.get_json(self._hist_key(height))

    # ----------------------------
    # Genesis
    # ----------------------------

    def init_genesis(self, ctx: Context, gs: GenesisState) -> List[ValidatorUpdate]:
        self.set_params(gs.params)
        # Registers the pool account even when genesis has no validators.
        self._ak.get_module_account(auth.BONDED_POOL)
        self._ak.get_module_account(auth.NOT_BONDED_POOL)

        bonded = 0
        for gv in gs.validators:
            self.set_validator(gv.model_dump())
            bonded += gv.tokens

        pool = self._bk.get_balance(self.bonded_pool_address(), gs.params.bond_denom)
        if pool != bonded:
            raise ModuleError(
                "invalid_genesis",
                "bonded_pool_balance_mismatch",
                {"pool": pool, "bonded_tokens": bonded, "denom": gs.params.bond_denom},
            )
        return self.apply_and_return_validator_set_updates()

    def export_genesis(self, ctx: Context) -> GenesisState:
        return GenesisState.model_validate(
            {"params": self.get_params().model_dump(), "validators": self.validators()}
        )

    # ----------------------------
    # Invariants
    # ----------------------------

    def bonded_pool_invariant(self, ctx: Context) -> Tuple[str, bool]:
        denom = self.get_params().bond_denom
        pool = self._bk.get_balance(self.bonded_pool_address(), denom)
        bonded = self.total_bonded_tokens()
        if pool == bonded:
            return "", False
        return f"bonded pool balance {pool}{denom} != bonded tokens {bonded}{denom}", True


def new_module(keeper: StakingKeeper) -> Module:
    def init_genesis(ctx: Context, gs: GenesisState) -> List[ValidatorUpdate]:
        return keeper.init_genesis(ctx, gs)

    def begin_phase(ctx: Context, req: BeginRequest) -> None:
        keeper.track_historical_info(ctx)

    def end_phase(ctx: Context, req: EndRequest) -> PhaseResult:
        return PhaseResult(validator_updates=tuple(keeper.apply_and_return_validator_set_updates()))

    def register_services(router: ServiceRouter) -> None:
        def msg_create_validator(ctx: Context, payload: Json) -> Json:
            v = keeper.create_validator(
                ctx,
                operator=str(payload.get("operator") or ""),
                pubkey=str(payload.get("pubkey") or ""),
                amount=int(payload.get("amount") or 0),
                moniker=str(payload.get("moniker") or ""),
            )
            return {"validator": v}

        def q_validator(ctx: Context, params: Json) -> Json:
            v = keeper.get_validator(str(params.get("operator") or ""))
            if v is None:
                raise ModuleError("not_found", "validator_not_found", {"operator": params.get("operator")})
            return {"validator": v}

        def q_historical(ctx: Context, params: Json) -> Json:
            h = int(params.get("height") or 0)
            info = keeper.get_historical_info(h)
            if info is None:
                raise ModuleError("not_found", "historical_info_not_found", {"height": h})
            return {"historical_info": info}

        router.add_msg_handler(MODULE_NAME, "MsgCreateValidator", msg_create_validator)
        router.add_query_handler(MODULE_NAME, "validators", lambda ctx, p: {"validators": keeper.validators()})
        router.add_query_handler(MODULE_NAME, "validator", q_validator)
        router.add_query_handler(MODULE_NAME, "historical_info", q_historical)
        router.add_query_handler(MODULE_NAME, "params", lambda ctx, p: {"params": keeper.get_params().model_dump()})

    def register_invariants(registry: InvariantRegistry) -> None:
        registry.register(MODULE_NAME, "bonded-pool-balance", keeper.bonded_pool_invariant)

    return Module(
        name=MODULE_NAME,
        depends_on=(auth.MODULE_NAME, bank.MODULE_NAME),
        genesis=GenesisHandler(schema=GenesisState, init=init_genesis, export=keeper.export_genesis),
        begin_phase=begin_phase,
        end_phase=end_phase,
        register_services=register_services,
        register_invariants=register_invariants,
        keeper=keeper,
    )
