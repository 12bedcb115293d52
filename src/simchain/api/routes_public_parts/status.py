# src/simchain/api/routes_public_parts/status.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from simchain.api.routes_public_parts.common import _simapp

router = APIRouter()

Json = Dict[str, Any]


@router.get("/status")
def status(request: Request) -> Json:
    """
    Node status summary: chain id, lifecycle phase, last committed height
    and app hash, and the configured module orderings.

    Mounted under /v1 by routes_public.py, so the full path is:
      GET /v1/status
    """
    out: Json = {"ok": True}
    out.update(_simapp(request).status())
    return out
