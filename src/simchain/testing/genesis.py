# src/simchain/testing/genesis.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from simchain.app import SimApp
from simchain.modules import auth
from simchain.testing.keys import pubkey_for
from simchain.runtime.types import InitChainRequest, InitGenesisResponse

Json = Dict[str, Any]


def build_app_state(
    app: SimApp,
    *,
    balances: Optional[Mapping[str, int]] = None,
    validators: Sequence[Tuple[str, int]] = (),
    gen_txs: Sequence[Json] = (),
    denom: str = "stake",
    constant_fee: int = 1000,
) -> Json:
    """Genesis app state for tests.

    balances: address -> amount of denom.
    validators: (operator, tokens) pairs bonded at genesis; the bonded pool
    is funded to match and consensus keys come from simchain.testing.keys.
    """
    state = app.default_genesis()
    bal = dict(balances or {})

    vals: List[Json] = []
    bonded = 0
    for operator, tokens in validators:
        vals.append({"operator": operator, "pubkey": pubkey_for(operator), "tokens": int(tokens), "moniker": operator})
        bonded += int(tokens)
    if bonded:
        pool = app.account_keeper.module_address(auth.BONDED_POOL)
        bal[pool] = bal.get(pool, 0) + bonded

    state["auth"]["accounts"] = [{"address": a} for a in sorted(balances or {})]
    state["bank"]["balances"] = [
        {"address": a, "coins": [{"denom": denom, "amount": int(amt)}]} for a, amt in sorted(bal.items())
    ]
    state["staking"]["params"]["bond_denom"] = denom
    state["staking"]["validators"] = vals
    state["crisis"]["constant_fee"] = {"denom": denom, "amount": int(constant_fee)}
    state["genutil"] = {"gen_txs": list(gen_txs)}
    return state


def init_app(app: SimApp, app_state: Json, *, time_ms: int = 0, initial_height: int = 1) -> InitGenesisResponse:
    req = InitChainRequest(
        chain_id=app.chain_id,
        app_state_bytes=json.dumps(app_state).encode("utf-8"),
        time_ms=int(time_ms),
        initial_height=int(initial_height),
    )
    return app.init_chain(req)
