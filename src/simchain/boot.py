# src/simchain/boot.py
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from simchain.app import SimApp
from simchain.runtime.app_config import AppConfig, load_app_config
from simchain.runtime.manager import LifecyclePhase
from simchain.runtime.structured_logging import log_event
from simchain.runtime.types import InitChainRequest

log = logging.getLogger("simchain.boot")

Json = Dict[str, Any]


def load_genesis_file(path: str) -> Json:
    """Read a genesis document.

    Supported input shape:
      { "chain_id": "...", "initial_height": 1, "app_state": { "<module>": {...}, ... } }
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(str(p))
    obj = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("genesis document must be a JSON object")
    if not isinstance(obj.get("app_state", {}), dict):
        raise ValueError("genesis app_state must be a JSON object")
    return obj


def init_chain_from_document(app: SimApp, doc: Json) -> None:
    chain_id = str(doc.get("chain_id") or app.chain_id)
    req = InitChainRequest(
        chain_id=chain_id,
        app_state_bytes=json.dumps(doc.get("app_state") or {}).encode("utf-8"),
        time_ms=int(doc.get("genesis_time_ms") or 0),
        initial_height=int(doc.get("initial_height") or 1),
    )
    app.init_chain(req)
    app.commit()


def build_simapp(cfg: Optional[AppConfig] = None, *, genesis_path: Optional[str] = None) -> SimApp:
    """Build a SimApp from config and, on a fresh store, run genesis.

    genesis_path defaults to SIMCHAIN_GENESIS_PATH. A store that already has
    committed state resumes instead and the genesis file is not read.
    """
    app = SimApp(cfg or load_app_config())
    if app.manager.phase != LifecyclePhase.CONSTRUCTED:
        return app

    gp = genesis_path or (os.environ.get("SIMCHAIN_GENESIS_PATH") or "").strip()
    if not gp:
        log_event(log, "genesis_pending", level=logging.WARNING, chain_id=app.chain_id)
        return app

    init_chain_from_document(app, load_genesis_file(gp))
    log_event(log, "genesis_loaded", path=gp, app_hash=app.app_hash)
    return app
