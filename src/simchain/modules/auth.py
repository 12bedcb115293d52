# src/simchain/modules/auth.py
from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from pydantic import Field, field_validator, model_validator

from simchain.modules.errors import ModuleError
from simchain.runtime.codec import StrictModel
from simchain.runtime.module import GenesisHandler, Module
from simchain.runtime.namespaces import StorageHandle
from simchain.runtime.router import ServiceRouter
from simchain.runtime.types import Context

Json = Dict[str, Any]

MODULE_NAME = "auth"

# Module account names
FEE_COLLECTOR = "fee_collector"
BONDED_POOL = "bonded_tokens_pool"
NOT_BONDED_POOL = "not_bonded_tokens_pool"

# Module account permissions
MINTER = "minter"
BURNER = "burner"
STAKING = "staking"

_ADDRESS_RE = re.compile(r"^[a-z0-9]{3,64}$")

_K_PARAMS = b"params"
_K_NEXT_NUMBER = b"next_account_number"
_K_ACCOUNTS = b"accounts/"


def validate_address(address: Any) -> str:
    s = str(address or "").strip()
    if not _ADDRESS_RE.match(s):
        raise ValueError(f"invalid address: {address!r}")
    return s


def require_address(address: Any, field: str) -> str:
    """validate_address for message handlers: failures surface as ModuleError."""
    try:
        return validate_address(address)
    except ValueError as e:
        raise ModuleError("invalid_address", f"{field}_not_a_valid_address", {field: address}) from e


class Params(StrictModel):
    max_memo_characters: int = Field(default=256, ge=0)
    tx_sig_limit: int = Field(default=7, ge=1)


class GenesisAccount(StrictModel):
    address: str
    account_number: Optional[int] = Field(default=None, ge=0)
    pubkey: str = ""

    @field_validator("address")
    @classmethod
    def _addr(cls, v: str) -> str:
        return validate_address(v)


class GenesisState(StrictModel):
    params: Params = Field(default_factory=Params)
    accounts: List[GenesisAccount] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "GenesisState":
        seen = set()
        numbers = set()
        for a in self.accounts:
            if a.address in seen:
                raise ValueError(f"duplicate account in genesis: {a.address}")
            seen.add(a.address)
            if a.account_number is not None:
                if a.account_number in numbers:
                    raise ValueError(f"duplicate account_number in genesis: {a.account_number}")
                numbers.add(a.account_number)
        return self


class AccountKeeper:
    """Accounts and module accounts.

    Module accounts get deterministic addresses derived from their name and
    carry the permissions configured at construction.
    """

    def __init__(
        self,
        store: StorageHandle,
        *,
        module_perms: Mapping[str, Sequence[str]],
        address_prefix: str = "sim",
    ) -> None:
        self._store = store
        self._perms: Dict[str, Tuple[str, ...]] = {str(k): tuple(v or ()) for k, v in module_perms.items()}
        self._prefix = str(address_prefix)

    # ----------------------------
    # Params
    # ----------------------------

    def get_params(self) -> Params:
        raw = self._store.get_json(_K_PARAMS)
        return Params.model_validate(raw) if raw is not None else Params()

    def set_params(self, params: Params) -> None:
        self._store.set_json(_K_PARAMS, params.model_dump(mode="json"))

    # ----------------------------
    # Accounts
    # ----------------------------

    def _next_number(self) -> int:
        n = int(self._store.get_json(_K_NEXT_NUMBER, 0))
        self._store.set_json(_K_NEXT_NUMBER, n + 1)
        return n

    def get_account(self, address: str) -> Optional[Json]:
        return self._store.get_json(_K_ACCOUNTS + str(address).encode("utf-8"))

    def has_account(self, address: str) -> bool:
        return self._store.has(_K_ACCOUNTS + str(address).encode("utf-8"))

    def set_account(self, acct: Json) -> None:
        addr = validate_address(acct.get("address"))
        self._store.set_json(_K_ACCOUNTS + addr.encode("utf-8"), acct)

    def new_account(self, address: str, *, pubkey: str = "", account_number: Optional[int] = None) -> Json:
        addr = validate_address(address)
        if self.has_account(addr):
            raise ModuleError("account_exists", "account_already_exists", {"address": addr})
        if account_number is None:
            account_number = self._next_number()
        else:
            # keep the counter ahead of explicitly numbered genesis accounts
            nxt = int(self._store.get_json(_K_NEXT_NUMBER, 0))
            if account_number >= nxt:
                self._store.set_json(_K_NEXT_NUMBER, account_number + 1)
        acct: Json = {"address": addr, "account_number": int(account_number), "pubkey": str(pubkey or "")}
        self.set_account(acct)
        return acct

    def ensure_account(self, address: str) -> Json:
        acct = self.get_account(address)
        if acct is not None:
            return acct
        return self.new_account(address)

    def iterate_accounts(self) -> Iterator[Json]:
        for _, acct in self._store.iterate_json(_K_ACCOUNTS):
            yield acct

    # ----------------------------
    # Module accounts
    # ----------------------------

    def module_address(self, name: str) -> str:
        return self._prefix + hashlib.sha256(("module:" + str(name)).encode("utf-8")).hexdigest()[:40]

    def permissions(self, name: str) -> Tuple[str, ...]:
        if name not in self._perms:
            raise ModuleError("unknown_module_account", "module_account_not_configured", {"name": name})
        return self._perms[name]

    def has_permission(self, name: str, perm: str) -> bool:
        return perm in self._perms.get(name, ())

    def get_module_account(self, name: str) -> Json:
        perms = self.permissions(name)
        addr = self.module_address(name)
        acct = self.get_account(addr)
        if acct is not None:
            return acct
        acct = self.new_account(addr)
        acct["module"] = str(name)
        acct["permissions"] = list(perms)
        self.set_account(acct)
        return acct

    def module_account_names(self) -> Tuple[str, ...]:
        return tuple(self._perms.keys())

    # ----------------------------
    # Genesis
    # ----------------------------

    def init_genesis(self, ctx: Context, gs: GenesisState) -> None:
        self.set_params(gs.params)
        for a in gs.accounts:
            self.new_account(a.address, pubkey=a.pubkey, account_number=a.account_number)
        for name in self._perms:
            self.get_module_account(name)

    def export_genesis(self, ctx: Context) -> GenesisState:
        accounts = [
            {"address": a["address"], "account_number": a["account_number"], "pubkey": a.get("pubkey", "")}
            for a in self.iterate_accounts()
            if not a.get("module")
        ]
        return GenesisState.model_validate({"params": self.get_params().model_dump(), "accounts": accounts})


def new_module(keeper: AccountKeeper) -> Module:
    def init_genesis(ctx: Context, gs: GenesisState) -> None:
        keeper.init_genesis(ctx, gs)

    def register_services(router: ServiceRouter) -> None:
        def q_account(ctx: Context, params: Json) -> Json:
            acct = keeper.get_account(str(params.get("address") or ""))
            if acct is None:
                raise ModuleError("not_found", "account_not_found", {"address": params.get("address")})
            return {"account": acct}

        router.add_query_handler(MODULE_NAME, "account", q_account)
        router.add_query_handler(MODULE_NAME, "accounts", lambda ctx, p: {"accounts": list(keeper.iterate_accounts())})
        router.add_query_handler(MODULE_NAME, "params", lambda ctx, p: {"params": keeper.get_params().model_dump()})
        router.add_query_handler(
            MODULE_NAME,
            "module_account",
            lambda ctx, p: {"account": keeper.get_module_account(str(p.get("name") or ""))},
        )

    return Module(
        name=MODULE_NAME,
        genesis=GenesisHandler(schema=GenesisState, init=init_genesis, export=keeper.export_genesis),
        register_services=register_services,
        keeper=keeper,
    )
