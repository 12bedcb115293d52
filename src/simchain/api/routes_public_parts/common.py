# src/simchain/api/routes_public_parts/common.py
from __future__ import annotations

from fastapi import Request

from simchain.api.errors import ApiError
from simchain.app import SimApp


def _simapp(request: Request) -> SimApp:
    app = getattr(request.app.state, "simapp", None)
    if app is None:
        raise ApiError.unavailable("not_ready", "simapp not attached to app.state", {})
    return app
