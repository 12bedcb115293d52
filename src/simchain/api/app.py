# src/simchain/api/app.py
from __future__ import annotations

import os

from fastapi import FastAPI

from simchain.api.errors import install_error_handlers
from simchain.api.routes_public import public_router
from simchain.api.structured_logging import RequestLogMiddleware
from simchain.boot import build_simapp as _build_simapp
from simchain.runtime.app_config import apply_app_config_to_env, load_app_config
from simchain.runtime.structured_logging import configure_structured_logging


def build_simapp():
    # Indirection point; tests monkeypatch simchain.api.app.build_simapp.
    return _build_simapp()


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Read-only HTTP surface over one SimApp.

    With boot_runtime the app config is loaded and exported to the
    environment, and the SimApp is built (running genesis from
    SIMCHAIN_GENESIS_PATH on a fresh store). Without it, app.state.simapp is
    left as None and every chain route answers 503 until a caller attaches one.
    """
    if boot_runtime:
        apply_app_config_to_env(load_app_config())

    configure_structured_logging()
    prod = os.environ.get("SIMCHAIN_MODE", "prod").strip().lower() == "prod"
    docs = {"docs_url": None, "redoc_url": None, "openapi_url": None} if prod else {}

    app = FastAPI(title="simchain node API", **docs)
    app.state.simapp = build_simapp() if boot_runtime else None

    app.add_middleware(RequestLogMiddleware)
    install_error_handlers(app)
    app.include_router(public_router)
    return app
