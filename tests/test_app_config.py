from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from simchain.env import load_dotenv_if_present
from simchain.runtime.app_config import (
    apply_app_config_to_env,
    default_app_config,
    load_app_config,
    read_app_config_file,
    validate_app_config,
)


def test_defaults_are_valid_and_production_safe(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SIMCHAIN_CONFIG_PATH", raising=False)
    cfg = load_app_config()
    assert cfg == default_app_config()
    assert cfg.mode == "prod"
    assert cfg.inv_check_period == 0
    assert cfg.order_begin is None


def test_json_config_file(tmp_path: Path) -> None:
    p = tmp_path / "app.json"
    p.write_text(
        json.dumps(
            {
                "chain_id": "sim-json",
                "mode": "DEV",
                "db_path": "",
                "inv_check_period": 5,
                "order_begin": ["staking", "consensus"],
            }
        ),
        encoding="utf-8",
    )
    cfg = read_app_config_file(str(p))
    assert cfg.chain_id == "sim-json"
    assert cfg.mode == "dev"
    assert cfg.db_path == ""
    assert cfg.inv_check_period == 5
    assert cfg.order_begin == ("staking", "consensus")
    assert cfg.order_end is None


def test_yaml_config_file_via_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "app.yaml"
    p.write_text(
        "chain_id: sim-yaml\n"
        "mode: testnet\n"
        "skip_genesis_invariants: yes\n"
        "api_port: 9090\n"
        "order_end:\n"
        "  - crisis\n"
        "  - staking\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SIMCHAIN_CONFIG_PATH", str(p))
    cfg = load_app_config()
    assert cfg.chain_id == "sim-yaml"
    assert cfg.skip_genesis_invariants is True
    assert cfg.api_port == 9090
    assert cfg.order_end == ("crisis", "staking")


@pytest.mark.parametrize(
    "raw",
    [
        {"mode": "yolo"},
        {"inv_check_period": -1},
        {"api_port": 70000},
        {"order_begin": "staking"},
        {"order_begin": ["staking", ""]},
    ],
)
def test_invalid_config_fails_fast(tmp_path: Path, raw) -> None:
    p = tmp_path / "bad.json"
    p.write_text(json.dumps(raw), encoding="utf-8")
    with pytest.raises(ValueError):
        read_app_config_file(str(p))


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_app_config_file(str(p))


def test_apply_to_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for k in ("SIMCHAIN_CHAIN_ID", "SIMCHAIN_MODE", "SIMCHAIN_DB_PATH", "SIMCHAIN_LOG_LEVEL"):
        monkeypatch.setenv(k, "placeholder")
    cfg = default_app_config()
    validate_app_config(cfg)
    apply_app_config_to_env(cfg)
    assert os.environ["SIMCHAIN_CHAIN_ID"] == "sim-dev"
    assert os.environ["SIMCHAIN_MODE"] == "prod"


def test_dotenv_loads_once_without_overriding(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import simchain.env as env_mod

    p = tmp_path / ".env"
    p.write_text("SIMCHAIN_TEST_FROM_DOTENV=file\nSIMCHAIN_TEST_PRESET=file\n", encoding="utf-8")
    monkeypatch.setattr(env_mod, "_LOADED", False)
    # set-then-delete so teardown removes whatever the dotenv load adds
    monkeypatch.setenv("SIMCHAIN_TEST_FROM_DOTENV", "unset")
    monkeypatch.delenv("SIMCHAIN_TEST_FROM_DOTENV")
    monkeypatch.setenv("SIMCHAIN_TEST_PRESET", "process")

    assert load_dotenv_if_present(str(p)) is True
    assert os.environ["SIMCHAIN_TEST_FROM_DOTENV"] == "file"
    assert os.environ["SIMCHAIN_TEST_PRESET"] == "process"
    assert load_dotenv_if_present(str(p)) is False
