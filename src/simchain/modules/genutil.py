# src/simchain/modules/genutil.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

from pydantic import Field

from simchain.crypto.sig import canonical_msg_bytes, verify_ed25519_signature
from simchain.modules import staking
from simchain.modules.errors import ModuleError
from simchain.runtime.codec import StrictModel
from simchain.runtime.module import GenesisHandler, Module
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import Context, ValidatorUpdate

Json = Dict[str, Any]

MODULE_NAME = "genutil"

GENTX_MSG_TYPE = "staking/MsgCreateValidator"

log = logging.getLogger("simchain.genutil")

# deliver(ctx, msg_type, payload) -> result
DeliverFn = Callable[[Context, str, Json], Json]


class GenTx(StrictModel):
    msg_type: str
    payload: Dict[str, Any]
    sig: str


class GenesisState(StrictModel):
    gen_txs: List[GenTx] = Field(default_factory=list)


def verify_gentx(tx: GenTx) -> None:
    """Only validator creation is allowed; the self-bond key signs the payload."""
    if tx.msg_type != GENTX_MSG_TYPE:
        raise ModuleError("invalid_gentx", "unsupported_msg_type", {"msg_type": tx.msg_type})
    pubkey = str(tx.payload.get("pubkey") or "")
    message = canonical_msg_bytes(msg_type=tx.msg_type, payload=tx.payload)
    if not verify_ed25519_signature(message=message, sig=tx.sig, pubkey=pubkey):
        raise ModuleError(
            "invalid_gentx",
            "bad_signature",
            {"operator": tx.payload.get("operator"), "pubkey": pubkey},
        )


def deliver_gentxs(ctx: Context, txs: List[GenTx], deliver: DeliverFn) -> None:
    for i, tx in enumerate(txs):
        verify_gentx(tx)
        deliver(ctx, tx.msg_type, dict(tx.payload))
        log_event(log, "gentx_delivered", index=i, operator=tx.payload.get("operator"))


def new_module(*, staking_keeper: staking.StakingKeeper, deliver: DeliverFn) -> Module:
    """genutil keeps no state of its own.

    When genesis carries gen-txs they are delivered through the message
    router and the resulting validator set becomes the genesis set.
    """

    def init_genesis(ctx: Context, gs: GenesisState) -> List[ValidatorUpdate]:
        if not gs.gen_txs:
            return []
        deliver_gentxs(ctx, gs.gen_txs, deliver)
        return staking_keeper.apply_and_return_validator_set_updates()

    return Module(
        name=MODULE_NAME,
        depends_on=(staking.MODULE_NAME,),
        genesis=GenesisHandler(schema=GenesisState, init=init_genesis),
    )
