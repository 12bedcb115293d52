# src/simchain/runtime/app_config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_order(v: Any) -> Optional[Tuple[str, ...]]:
    if v is None:
        return None
    if not isinstance(v, (list, tuple)):
        raise ValueError(f"module orderings must be lists of module names; got: {v!r}")
    return tuple(str(x).strip() for x in v)


@dataclass(frozen=True)
class AppConfig:
    chain_id: str
    mode: str  # "dev" | "testnet" | "prod"

    # Empty db_path keeps all module state in memory.
    db_path: str

    # 0 disables periodic invariant checks in the crisis end phase.
    inv_check_period: int
    skip_genesis_invariants: bool

    # Address allowed to update consensus params.
    authority: str

    api_host: str
    api_port: int

    log_level: str

    # Optional overrides of the application's phase orderings.
    order_begin: Optional[Tuple[str, ...]] = None
    order_end: Optional[Tuple[str, ...]] = None
    order_init_genesis: Optional[Tuple[str, ...]] = None


_ALLOWED_MODES = {"dev", "testnet", "prod"}


def validate_app_config(cfg: AppConfig) -> None:
    """Fail-fast validation for operator config."""

    if not isinstance(cfg.chain_id, str) or not cfg.chain_id.strip():
        raise ValueError("chain_id must be a non-empty string")

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if int(cfg.inv_check_period) < 0:
        raise ValueError(f"inv_check_period must be >= 0; got: {cfg.inv_check_period}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")

    if not isinstance(cfg.authority, str) or not cfg.authority.strip():
        raise ValueError("authority must be a non-empty string")

    for name, order in (
        ("order_begin", cfg.order_begin),
        ("order_end", cfg.order_end),
        ("order_init_genesis", cfg.order_init_genesis),
    ):
        if order is not None and any(not x for x in order):
            raise ValueError(f"{name} must not contain empty module names")


def default_app_config() -> AppConfig:
    return AppConfig(
        chain_id="sim-dev",
        # Production-safe default: no silent drop into a permissive posture.
        mode="prod",
        db_path="./data/simchain.db",
        inv_check_period=0,
        skip_genesis_invariants=False,
        authority="sim1authority",
        api_host="127.0.0.1",
        api_port=8080,
        log_level="INFO",
    )


def _read_raw(p: Path) -> Any:
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        return yaml.safe_load(text)
    return json.loads(text)


def read_app_config_file(path: str) -> AppConfig:
    p = Path(path)
    raw = _read_raw(p)
    if not isinstance(raw, dict):
        raise ValueError("app config must be a mapping")

    d = default_app_config()

    cfg = AppConfig(
        chain_id=_as_str(raw.get("chain_id"), d.chain_id),
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=str(raw["db_path"]) if "db_path" in raw and raw["db_path"] is not None else d.db_path,
        inv_check_period=_as_int(raw.get("inv_check_period"), d.inv_check_period),
        skip_genesis_invariants=_as_bool(raw.get("skip_genesis_invariants"), d.skip_genesis_invariants),
        authority=_as_str(raw.get("authority"), d.authority),
        api_host=_as_str(raw.get("api_host"), d.api_host),
        api_port=_as_int(raw.get("api_port"), d.api_port),
        log_level=_as_str(raw.get("log_level"), d.log_level),
        order_begin=_as_order(raw.get("order_begin")),
        order_end=_as_order(raw.get("order_end")),
        order_init_genesis=_as_order(raw.get("order_init_genesis")),
    )

    validate_app_config(cfg)
    return cfg


def load_app_config(*, config_path: Optional[str] = None) -> AppConfig:
    p = config_path or os.environ.get("SIMCHAIN_CONFIG_PATH")
    if p:
        return read_app_config_file(p)

    cfg = default_app_config()
    validate_app_config(cfg)
    return cfg


def apply_app_config_to_env(cfg: AppConfig) -> None:
    validate_app_config(cfg)
    os.environ["SIMCHAIN_CHAIN_ID"] = cfg.chain_id
    os.environ["SIMCHAIN_MODE"] = (cfg.mode or "prod").strip().lower()
    os.environ["SIMCHAIN_DB_PATH"] = cfg.db_path
    os.environ["SIMCHAIN_LOG_LEVEL"] = cfg.log_level
