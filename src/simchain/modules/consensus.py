# src/simchain/modules/consensus.py
from __future__ import annotations

from typing import Any, Dict, List

from pydantic import Field

from simchain.modules.errors import ModuleError
from simchain.runtime.codec import StrictModel
from simchain.runtime.module import GenesisHandler, Module
from simchain.runtime.namespaces import StorageHandle
from simchain.runtime.router import ServiceRouter
from simchain.runtime.types import Context, Event

Json = Dict[str, Any]

MODULE_NAME = "consensus"

_K_PARAMS = b"params"


class BlockParams(StrictModel):
    max_bytes: int = Field(default=22020096, gt=0)
    max_gas: int = Field(default=-1, ge=-1)


class EvidenceParams(StrictModel):
    max_age_num_blocks: int = Field(default=100000, gt=0)
    max_age_duration_ms: int = Field(default=172800000, gt=0)
    max_bytes: int = Field(default=1048576, ge=0)


class ValidatorParams(StrictModel):
    pub_key_types: List[str] = Field(default_factory=lambda: ["ed25519"], min_length=1)


class ConsensusParams(StrictModel):
    block: BlockParams = Field(default_factory=BlockParams)
    evidence: EvidenceParams = Field(default_factory=EvidenceParams)
    validator: ValidatorParams = Field(default_factory=ValidatorParams)


class GenesisState(StrictModel):
    params: ConsensusParams = Field(default_factory=ConsensusParams)


class ConsensusParamsKeeper:
    """Chain-wide consensus parameters, updatable only by the authority."""

    def __init__(self, store: StorageHandle, *, authority: str) -> None:
        self._store = store
        self._authority = str(authority)

    @property
    def authority(self) -> str:
        return self._authority

    def get_params(self) -> ConsensusParams:
        raw = self._store.get_json(_K_PARAMS)
        return ConsensusParams.model_validate(raw) if raw is not None else ConsensusParams()

    def set_params(self, params: ConsensusParams) -> None:
        self._store.set_json(_K_PARAMS, params.model_dump(mode="json"))

    def update_params(self, ctx: Context, *, authority: str, params: Any) -> ConsensusParams:
        if str(authority) != self._authority:
            raise ModuleError("unauthorized", "invalid_authority", {"expected": self._authority, "got": authority})
        try:
            p = ConsensusParams.model_validate(params)
        except ValueError as e:
            raise ModuleError("invalid_params", "consensus_params_invalid", {"error": str(e)}) from e
        self.set_params(p)
        ctx.emit(Event.new("update_consensus_params", authority=authority))
        return p


def new_module(keeper: ConsensusParamsKeeper) -> Module:
    def init_genesis(ctx: Context, gs: GenesisState) -> None:
        keeper.set_params(gs.params)

    def export_genesis(ctx: Context) -> GenesisState:
        return GenesisState(params=keeper.get_params())

    def register_services(router: ServiceRouter) -> None:
        def msg_update_params(ctx: Context, payload: Json) -> Json:
            p = keeper.update_params(ctx, authority=str(payload.get("authority") or ""), params=payload.get("params"))
            return {"params": p.model_dump()}

        router.add_msg_handler(MODULE_NAME, "MsgUpdateParams", msg_update_params)
        router.add_query_handler(MODULE_NAME, "params", lambda ctx, p: {"params": keeper.get_params().model_dump()})

    return Module(
        name=MODULE_NAME,
        genesis=GenesisHandler(schema=GenesisState, init=init_genesis, export=export_genesis),
        register_services=register_services,
        keeper=keeper,
    )
