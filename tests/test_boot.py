from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import pytest

from simchain.app import SimApp
from simchain.boot import build_simapp, load_genesis_file
from simchain.runtime.app_config import default_app_config
from simchain.runtime.manager import LifecyclePhase
from simchain.testing.genesis import build_app_state


def _write_genesis(path: Path, chain_id: str) -> None:
    cfg = dataclasses.replace(default_app_config(), chain_id=chain_id, db_path="")
    scratch = SimApp(cfg)
    doc = {
        "chain_id": chain_id,
        "initial_height": 1,
        "app_state": build_app_state(scratch, balances={"alice": 700}, validators=[("val1", 100)]),
    }
    path.write_text(json.dumps(doc), encoding="utf-8")


def test_fresh_store_runs_genesis_then_restart_resumes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SIMCHAIN_GENESIS_PATH", raising=False)
    gpath = tmp_path / "genesis.json"
    _write_genesis(gpath, "sim-boot")
    cfg = dataclasses.replace(default_app_config(), chain_id="sim-boot", mode="dev", db_path=str(tmp_path / "db" / "simchain.db"))

    app = build_simapp(cfg, genesis_path=str(gpath))
    assert app.manager.phase == LifecyclePhase.GENESIS_INITIALIZED
    assert app.bank_keeper.get_balance("alice", "stake") == 700
    assert app.app_hash

    # The genesis file is not read again once state is committed.
    gpath.unlink()
    again = build_simapp(cfg, genesis_path=str(gpath))
    assert again.manager.phase == LifecyclePhase.STEP_COMPLETED
    assert again.app_hash == app.app_hash
    assert again.bank_keeper.get_balance("alice", "stake") == 700


def test_genesis_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    gpath = tmp_path / "genesis.json"
    _write_genesis(gpath, "sim-env")
    monkeypatch.setenv("SIMCHAIN_GENESIS_PATH", str(gpath))
    cfg = dataclasses.replace(default_app_config(), chain_id="sim-env", db_path="")

    app = build_simapp(cfg)
    assert app.query("bank/balance", {"address": "alice", "denom": "stake"})["balance"]["amount"] == 700


def test_without_genesis_the_app_waits(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SIMCHAIN_GENESIS_PATH", raising=False)
    cfg = dataclasses.replace(default_app_config(), db_path="")
    app = build_simapp(cfg)
    assert app.manager.phase == LifecyclePhase.CONSTRUCTED


def test_load_genesis_file_validates_shape(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_genesis_file(str(tmp_path / "missing.json"))

    p = tmp_path / "list.json"
    p.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_genesis_file(str(p))

    p.write_text(json.dumps({"app_state": []}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_genesis_file(str(p))
