# src/simchain/modules/bank.py
from __future__ import annotations

import re
from typing import Any, Dict, Iterator, List, Mapping, Tuple

from pydantic import Field, field_validator, model_validator

from simchain.modules import auth
from simchain.modules.errors import ModuleError
from simchain.runtime.codec import StrictModel
from simchain.runtime.invariants import InvariantRegistry
from simchain.runtime.module import GenesisHandler, Module
from simchain.runtime.namespaces import StorageHandle
from simchain.runtime.router import ServiceRouter
from simchain.runtime.types import Context, Event

Json = Dict[str, Any]
Coins = Dict[str, int]

MODULE_NAME = "bank"

_DENOM_RE = re.compile(r"^[a-z][a-z0-9]{1,127}$")

_K_PARAMS = b"params"
_K_BALANCES = b"balances/"
_K_SUPPLY = b"supply/"


def validate_denom(denom: Any) -> str:
    s = str(denom or "").strip()
    if not _DENOM_RE.match(s):
        raise ValueError(f"invalid denom: {denom!r}")
    return s


class Coin(StrictModel):
    denom: str
    amount: int = Field(ge=0)

    @field_validator("denom")
    @classmethod
    def _denom(cls, v: str) -> str:
        return validate_denom(v)


def coins_from_list(items: Any) -> Coins:
    """Normalize [{"denom","amount"}, ...] (or a denom->amount mapping) into Coins."""
    out: Coins = {}
    if isinstance(items, Mapping):
        items = [{"denom": k, "amount": v} for k, v in items.items()]
    if not isinstance(items, list):
        raise ModuleError("invalid_coins", "coins_must_be_list", {"type": type(items).__name__})
    for it in items:
        if not isinstance(it, Mapping):
            raise ModuleError("invalid_coins", "coin_must_be_object", {"coin": it})
        try:
            denom = validate_denom(it.get("denom"))
            amount = int(it.get("amount"))
        except (TypeError, ValueError) as e:
            raise ModuleError("invalid_coins", "coin_malformed", {"coin": it, "error": str(e)}) from e
        if amount < 0:
            raise ModuleError("invalid_coins", "negative_amount", {"coin": it})
        out[denom] = out.get(denom, 0) + amount
    return out


def coins_to_list(coins: Mapping[str, int]) -> List[Json]:
    return [{"denom": d, "amount": int(coins[d])} for d in sorted(coins) if int(coins[d]) != 0]


class Params(StrictModel):
    default_send_enabled: bool = True


class Balance(StrictModel):
    address: str
    coins: List[Coin] = Field(default_factory=list)

    @field_validator("address")
    @classmethod
    def _addr(cls, v: str) -> str:
        return auth.validate_address(v)


class GenesisState(StrictModel):
    params: Params = Field(default_factory=Params)
    balances: List[Balance] = Field(default_factory=list)
    # Empty supply means "sum of balances".
    supply: List[Coin] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "GenesisState":
        seen = set()
        for b in self.balances:
            if b.address in seen:
                raise ValueError(f"duplicate balance entry in genesis: {b.address}")
            seen.add(b.address)
        return self


class BankKeeper:
    """Balances and total supply.

    Every balance change goes through _add/_sub so supply only moves on mint
    and burn.
    """

    def __init__(self, store: StorageHandle, *, account_keeper: auth.AccountKeeper) -> None:
        self._store = store
        self._ak = account_keeper

    @property
    def account_keeper(self) -> auth.AccountKeeper:
        return self._ak

    # ----------------------------
    # Params
    # ----------------------------

    def get_params(self) -> Params:
        raw = self._store.get_json(_K_PARAMS)
        return Params.model_validate(raw) if raw is not None else Params()

    def set_params(self, params: Params) -> None:
        self._store.set_json(_K_PARAMS, params.model_dump(mode="json"))

    # ----------------------------
    # Balances
    # ----------------------------

    @staticmethod
    def _bal_key(address: str, denom: str) -> bytes:
        return _K_BALANCES + f"{address}/{denom}".encode("utf-8")

    def get_balance(self, address: str, denom: str) -> int:
        return int(self._store.get_json(self._bal_key(address, denom), 0))

    def _set_balance(self, address: str, denom: str, amount: int) -> None:
        key = self._bal_key(address, denom)
        if int(amount) == 0:
            self._store.delete(key)
        else:
            self._store.set_json(key, int(amount))

    def get_all_balances(self, address: str) -> Coins:
        out: Coins = {}
        prefix = _K_BALANCES + f"{address}/".encode("utf-8")
        for k, v in self._store.iterate_json(prefix):
            out[k[len(prefix):].decode("utf-8")] = int(v)
        return out

    def iterate_all_balances(self) -> Iterator[Tuple[str, str, int]]:
        """Yield (address, denom, amount) in key order."""
        n = len(_K_BALANCES)
        for k, v in self._store.iterate_json(_K_BALANCES):
            addr, _, denom = k[n:].decode("utf-8").partition("/")
            yield addr, denom, int(v)

    def _add(self, address: str, coins: Mapping[str, int]) -> None:
        for denom, amt in coins.items():
            self._set_balance(address, denom, self.get_balance(address, denom) + int(amt))

    def _sub(self, address: str, coins: Mapping[str, int]) -> None:
        for denom, amt in coins.items():
            have = self.get_balance(address, denom)
            if have < int(amt):
                raise ModuleError(
                    "insufficient_funds",
                    "balance_too_low",
                    {"address": address, "denom": denom, "have": have, "need": int(amt)},
                )
        for denom, amt in coins.items():
            self._set_balance(address, denom, self.get_balance(address, denom) - int(amt))

    # ----------------------------
    # Supply
    # ----------------------------

    def get_supply(self, denom: str) -> int:
        return int(self._store.get_json(_K_SUPPLY + denom.encode("utf-8"), 0))

    def _set_supply(self, denom: str, amount: int) -> None:
        key = _K_SUPPLY + denom.encode("utf-8")
        if int(amount) == 0:
            self._store.delete(key)
        else:
            self._store.set_json(key, int(amount))

    def total_supply(self) -> Coins:
        n = len(_K_SUPPLY)
        return {k[n:].decode("utf-8"): int(v) for k, v in self._store.iterate_json(_K_SUPPLY)}

    # ----------------------------
    # Transfers
    # ----------------------------

    def send_coins(self, ctx: Context, from_addr: str, to_addr: str, coins: Mapping[str, int]) -> None:
        if not self.get_params().default_send_enabled:
            raise ModuleError("send_disabled", "transfers_disabled", None)
        self._sub(from_addr, coins)
        self._ak.ensure_account(to_addr)
        self._add(to_addr, coins)
        ctx.emit(Event.new("transfer", sender=from_addr, recipient=to_addr, amount=_fmt(coins)))

    def send_coins_from_account_to_module(self, ctx: Context, from_addr: str, module_name: str, coins: Mapping[str, int]) -> None:
        acct = self._ak.get_module_account(module_name)
        self._sub(from_addr, coins)
        self._add(acct["address"], coins)
        ctx.emit(Event.new("transfer", sender=from_addr, recipient=acct["address"], amount=_fmt(coins)))

    def send_coins_from_module_to_account(self, ctx: Context, module_name: str, to_addr: str, coins: Mapping[str, int]) -> None:
        acct = self._ak.get_module_account(module_name)
        self._sub(acct["address"], coins)
        self._ak.ensure_account(to_addr)
        self._add(to_addr, coins)
        ctx.emit(Event.new("transfer", sender=acct["address"], recipient=to_addr, amount=_fmt(coins)))

    def mint_coins(self, ctx: Context, module_name: str, coins: Mapping[str, int]) -> None:
        if not self._ak.has_permission(module_name, auth.MINTER):
            raise ModuleError("unauthorized", "module_lacks_minter_permission", {"module": module_name})
        acct = self._ak.get_module_account(module_name)
        self._add(acct["address"], coins)
        for denom, amt in coins.items():
            self._set_supply(denom, self.get_supply(denom) + int(amt))
        ctx.emit(Event.new("mint", module=module_name, amount=_fmt(coins)))

    def burn_coins(self, ctx: Context, module_name: str, coins: Mapping[str, int]) -> None:
        if not self._ak.has_permission(module_name, auth.BURNER):
            raise ModuleError("unauthorized", "module_lacks_burner_permission", {"module": module_name})
        acct = self._ak.get_module_account(module_name)
        self._sub(acct["address"], coins)
        for denom, amt in coins.items():
            self._set_supply(denom, self.get_supply(denom) - int(amt))
        ctx.emit(Event.new("burn", module=module_name, amount=_fmt(coins)))

    # ----------------------------
    # Genesis
    # ----------------------------

    def init_genesis(self, ctx: Context, gs: GenesisState) -> None:
        self.set_params(gs.params)
        computed: Coins = {}
        for b in gs.balances:
            coins = coins_from_list([c.model_dump() for c in b.coins])
            self._add(b.address, coins)
            for denom, amt in coins.items():
                computed[denom] = computed.get(denom, 0) + amt

        if gs.supply:
            declared = coins_from_list([c.model_dump() for c in gs.supply])
            if {d: a for d, a in declared.items() if a} != {d: a for d, a in computed.items() if a}:
                raise ModuleError(
                    "invalid_genesis",
                    "supply_does_not_match_balances",
                    {"declared": coins_to_list(declared), "computed": coins_to_list(computed)},
                )
        for denom, amt in computed.items():
            self._set_supply(denom, amt)

    def export_genesis(self, ctx: Context) -> GenesisState:
        by_addr: Dict[str, Coins] = {}
        for addr, denom, amt in self.iterate_all_balances():
            by_addr.setdefault(addr, {})[denom] = amt
        return GenesisState.model_validate(
            {
                "params": self.get_params().model_dump(),
                "balances": [{"address": a, "coins": coins_to_list(c)} for a, c in sorted(by_addr.items())],
                "supply": coins_to_list(self.total_supply()),
            }
        )

    # ----------------------------
    # Invariants
    # ----------------------------

    def total_supply_invariant(self, ctx: Context) -> Tuple[str, bool]:
        summed: Coins = {}
        for _, denom, amt in self.iterate_all_balances():
            summed[denom] = summed.get(denom, 0) + amt
        supply = self.total_supply()
        if summed == supply:
            return "", False
        return f"sum of balances {coins_to_list(summed)} != total supply {coins_to_list(supply)}", True

    def nonnegative_outstanding_invariant(self, ctx: Context) -> Tuple[str, bool]:
        bad = [f"{addr}:{amt}{denom}" for addr, denom, amt in self.iterate_all_balances() if amt < 0]
        if not bad:
            return "", False
        return "negative balances: " + ", ".join(bad), True


def _fmt(coins: Mapping[str, int]) -> str:
    return ",".join(f"{int(coins[d])}{d}" for d in sorted(coins))


def new_module(keeper: BankKeeper) -> Module:
    def init_genesis(ctx: Context, gs: GenesisState) -> None:
        keeper.init_genesis(ctx, gs)

    def register_services(router: ServiceRouter) -> None:
        def msg_send(ctx: Context, payload: Json) -> Json:
            from_addr = auth.require_address(payload.get("from_address"), "from_address")
            to_addr = auth.require_address(payload.get("to_address"), "to_address")
            coins = coins_from_list(payload.get("amount"))
            if not coins or not any(coins.values()):
                raise ModuleError("invalid_coins", "empty_amount", None)
            keeper.send_coins(ctx, from_addr, to_addr, coins)
            return {}

        def q_balance(ctx: Context, params: Json) -> Json:
            addr = str(params.get("address") or "")
            denom = str(params.get("denom") or "")
            return {"balance": {"denom": denom, "amount": keeper.get_balance(addr, denom)}}

        router.add_msg_handler(MODULE_NAME, "MsgSend", msg_send)
        router.add_query_handler(MODULE_NAME, "balance", q_balance)
        router.add_query_handler(
            MODULE_NAME,
            "all_balances",
            lambda ctx, p: {"balances": coins_to_list(keeper.get_all_balances(str(p.get("address") or "")))},
        )
        router.add_query_handler(MODULE_NAME, "supply", lambda ctx, p: {"supply": coins_to_list(keeper.total_supply())})
        router.add_query_handler(MODULE_NAME, "params", lambda ctx, p: {"params": keeper.get_params().model_dump()})

    def register_invariants(registry: InvariantRegistry) -> None:
        registry.register(MODULE_NAME, "nonnegative-outstanding", keeper.nonnegative_outstanding_invariant)
        registry.register(MODULE_NAME, "total-supply", keeper.total_supply_invariant)

    return Module(
        name=MODULE_NAME,
        depends_on=(auth.MODULE_NAME,),
        genesis=GenesisHandler(schema=GenesisState, init=init_genesis, export=keeper.export_genesis),
        register_services=register_services,
        register_invariants=register_invariants,
        keeper=keeper,
    )
