from __future__ import annotations

import pytest

from simchain.modules import auth, bank, consensus, crisis, staking
from simchain.modules.errors import ModuleError
from simchain.runtime.errors import InvariantViolation
from simchain.runtime.namespaces import NamespaceAllocator
from simchain.runtime.store import MemoryKVStore
from simchain.runtime.types import Context, EndRequest
from simchain.testing.keys import pubkey_for

PERMS = {
    auth.FEE_COLLECTOR: (),
    auth.BONDED_POOL: (auth.BURNER, auth.STAKING),
    auth.NOT_BONDED_POOL: (auth.BURNER, auth.STAKING),
    "mint": (auth.MINTER,),
}


def _ctx(height: int = 1) -> Context:
    return Context(chain_id="sim-test", height=height)


@pytest.fixture()
def keepers():
    h = NamespaceAllocator(MemoryKVStore()).allocate(["auth", "bank", "staking", "crisis", "consensus"])
    ak = auth.AccountKeeper(h["auth"], module_perms=PERMS)
    bk = bank.BankKeeper(h["bank"], account_keeper=ak)
    sk = staking.StakingKeeper(h["staking"], account_keeper=ak, bank_keeper=bk)
    ck = crisis.CrisisKeeper(h["crisis"], bank_keeper=bk, inv_check_period=2)
    pk = consensus.ConsensusParamsKeeper(h["consensus"], authority="gov")
    return ak, bk, sk, ck, pk


def test_accounts_get_sequential_numbers_and_module_accounts_are_stable(keepers) -> None:
    ak, *_ = keepers
    assert ak.new_account("alice")["account_number"] == 0
    assert ak.new_account("bob")["account_number"] == 1
    assert ak.ensure_account("alice")["account_number"] == 0

    fee = ak.get_module_account(auth.FEE_COLLECTOR)
    assert fee["address"] == ak.module_address(auth.FEE_COLLECTOR)
    assert fee["permissions"] == []
    assert ak.get_module_account(auth.FEE_COLLECTOR) == fee
    assert ak.has_permission(auth.BONDED_POOL, auth.STAKING)
    assert not ak.has_permission(auth.FEE_COLLECTOR, auth.MINTER)

    with pytest.raises(ModuleError):
        ak.get_module_account("unknown")
    with pytest.raises(ModuleError):
        ak.new_account("alice")


def test_explicit_genesis_account_numbers_keep_counter_ahead(keepers) -> None:
    ak, *_ = keepers
    gs = auth.GenesisState.model_validate({"accounts": [{"address": "carol", "account_number": 7}]})
    ak.init_genesis(_ctx(0), gs)
    assert ak.new_account("dave")["account_number"] > 7
    exported = ak.export_genesis(_ctx(0))
    assert [a.address for a in exported.accounts] == ["carol", "dave"]


def test_bank_send_mint_burn_and_supply(keepers) -> None:
    ak, bk, *_ = keepers
    ctx = _ctx()
    bk.init_genesis(ctx, bank.GenesisState.model_validate({"balances": [{"address": "alice", "coins": [{"denom": "stake", "amount": 100}]}]}))
    assert bk.total_supply() == {"stake": 100}

    bk.send_coins(ctx, "alice", "bob", {"stake": 30})
    assert bk.get_balance("alice", "stake") == 70
    assert bk.get_all_balances("bob") == {"stake": 30}
    assert ak.has_account("bob")
    assert [ev.type for ev in ctx.drain_events()] == ["transfer"]

    with pytest.raises(ModuleError) as ei:
        bk.send_coins(ctx, "bob", "alice", {"stake": 31})
    assert ei.value.code == "insufficient_funds"
    assert bk.get_balance("bob", "stake") == 30

    bk.mint_coins(ctx, "mint", {"stake": 50})
    assert bk.total_supply() == {"stake": 150}
    with pytest.raises(ModuleError):
        bk.mint_coins(ctx, auth.FEE_COLLECTOR, {"stake": 1})

    bk.send_coins_from_module_to_account(ctx, "mint", "alice", {"stake": 50})
    bk.send_coins_from_account_to_module(ctx, "alice", auth.BONDED_POOL, {"stake": 20})
    bk.burn_coins(ctx, auth.BONDED_POOL, {"stake": 20})
    assert bk.total_supply() == {"stake": 130}
    assert bk.total_supply_invariant(ctx) == ("", False)
    assert bk.nonnegative_outstanding_invariant(ctx) == ("", False)


def test_bank_genesis_rejects_supply_that_does_not_match_balances(keepers) -> None:
    _, bk, *_ = keepers
    gs = bank.GenesisState.model_validate(
        {
            "balances": [{"address": "alice", "coins": [{"denom": "stake", "amount": 10}]}],
            "supply": [{"denom": "stake", "amount": 11}],
        }
    )
    with pytest.raises(ModuleError) as ei:
        bk.init_genesis(_ctx(0), gs)
    assert ei.value.reason == "supply_does_not_match_balances"


def test_coins_parsing() -> None:
    assert bank.coins_from_list([{"denom": "stake", "amount": 1}, {"denom": "stake", "amount": "2"}]) == {"stake": 3}
    assert bank.coins_from_list({"atom": 4}) == {"atom": 4}
    assert bank.coins_to_list({"b": 1, "a": 0, "c": 2}) == [{"denom": "b", "amount": 1}, {"denom": "c", "amount": 2}]
    with pytest.raises(ModuleError):
        bank.coins_from_list([{"denom": "stake", "amount": -1}])
    with pytest.raises(ModuleError):
        bank.coins_from_list([{"denom": "BAD", "amount": 1}])
    with pytest.raises(ModuleError):
        bank.coins_from_list("stake")


def test_staking_reports_only_power_diffs(keepers) -> None:
    ak, bk, sk, *_ = keepers
    ctx = _ctx()
    bk.init_genesis(
        ctx,
        bank.GenesisState.model_validate(
            {
                "balances": [
                    {"address": "val1", "coins": [{"denom": "stake", "amount": 100}]},
                    {"address": "val2", "coins": [{"denom": "stake", "amount": 100}]},
                ]
            }
        ),
    )
    sk.set_params(staking.Params(max_validators=1))

    sk.create_validator(ctx, operator="val1", pubkey=pubkey_for("val1"), amount=10)
    sk.create_validator(ctx, operator="val2", pubkey=pubkey_for("val2"), amount=20)
    assert bk.get_balance(sk.bonded_pool_address(), "stake") == 30
    assert sk.bonded_pool_invariant(ctx) == ("", False)

    first = sk.apply_and_return_validator_set_updates()
    assert [(u.pubkey, u.power) for u in first] == [(pubkey_for("val2"), 20)]
    assert sk.apply_and_return_validator_set_updates() == []

    # val1 outranks val2 once it has more tokens: val1 in, val2 out.
    v1 = sk.get_validator("val1")
    v1["tokens"] = 50
    sk.set_validator(v1)
    second = sk.apply_and_return_validator_set_updates()
    assert [(u.pubkey, u.power) for u in second] == [(pubkey_for("val1"), 50), (pubkey_for("val2"), 0)]


def test_create_validator_rejects_bad_input(keepers) -> None:
    _, bk, sk, *_ = keepers
    ctx = _ctx()
    bk.init_genesis(ctx, bank.GenesisState.model_validate({"balances": [{"address": "val1", "coins": [{"denom": "stake", "amount": 5}]}]}))

    with pytest.raises(ModuleError) as ei:
        sk.create_validator(ctx, operator="val1", pubkey="not-a-key", amount=1)
    assert ei.value.code == "invalid_pubkey"
    with pytest.raises(ModuleError):
        sk.create_validator(ctx, operator="val1", pubkey=pubkey_for("val1"), amount=0)
    with pytest.raises(ModuleError) as ei:
        sk.create_validator(ctx, operator="val1", pubkey=pubkey_for("val1"), amount=6)
    assert ei.value.code == "insufficient_funds"
    assert sk.validators() == []


def test_historical_info_is_pruned(keepers) -> None:
    _, _, sk, *_ = keepers
    sk.set_params(staking.Params(historical_entries=2))
    for h in (1, 2, 3):
        sk.track_historical_info(Context(chain_id="sim-test", height=h, time_ms=h * 1000))
    assert sk.get_historical_info(1) is None
    assert sk.get_historical_info(2)["time_ms"] == 2000
    assert sk.get_historical_info(3)["height"] == 3


def test_staking_genesis_rejects_unfunded_bonded_pool(keepers) -> None:
    _, _, sk, *_ = keepers
    gs = staking.GenesisState.model_validate(
        {"validators": [{"operator": "val1", "pubkey": pubkey_for("val1"), "tokens": 10}]}
    )
    with pytest.raises(ModuleError) as ei:
        sk.init_genesis(_ctx(0), gs)
    assert ei.value.reason == "bonded_pool_balance_mismatch"


def test_staking_genesis_schema_rejects_bad_pubkey() -> None:
    with pytest.raises(ValueError):
        staking.GenesisState.model_validate({"validators": [{"operator": "val1", "pubkey": "xyz", "tokens": 1}]})


def test_crisis_asserts_on_its_period_and_charges_fee_for_verify(keepers) -> None:
    ak, bk, _, ck, _ = keepers
    broken = {"on": False}
    ck.register_route("bank", "probe", lambda ctx: ("probe broken", broken["on"]))
    ctx = _ctx()
    bk.init_genesis(ctx, bank.GenesisState.model_validate({"balances": [{"address": "alice", "coins": [{"denom": "stake", "amount": 5000}]}]}))
    ck.init_genesis(ctx, crisis.GenesisState())

    res = ck.verify_invariant(ctx, sender="alice", module_name="bank", route="probe")
    assert not res.broken
    assert bk.get_balance("alice", "stake") == 4000
    assert bk.get_balance(ak.module_address(auth.FEE_COLLECTOR), "stake") == 1000

    with pytest.raises(ModuleError):
        ck.verify_invariant(ctx, sender="alice", module_name="bank", route="missing")
    assert bk.get_balance("alice", "stake") == 4000

    broken["on"] = True
    ck.end_phase(_ctx(3), EndRequest(height=3))  # off-period: no check
    with pytest.raises(InvariantViolation):
        ck.end_phase(_ctx(4), EndRequest(height=4))


def test_consensus_params_update_requires_authority(keepers) -> None:
    *_, pk = keepers
    ctx = _ctx()
    new = consensus.ConsensusParams().model_dump()
    new["block"]["max_gas"] = 1000

    with pytest.raises(ModuleError) as ei:
        pk.update_params(ctx, authority="alice", params=new)
    assert ei.value.code == "unauthorized"

    pk.update_params(ctx, authority="gov", params=new)
    assert pk.get_params().block.max_gas == 1000

    new["block"]["max_bytes"] = 0
    with pytest.raises(ModuleError) as ei:
        pk.update_params(ctx, authority="gov", params=new)
    assert ei.value.code == "invalid_params"
