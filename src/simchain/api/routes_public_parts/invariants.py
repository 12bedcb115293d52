# src/simchain/api/routes_public_parts/invariants.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from simchain.api.routes_public_parts.common import _simapp

router = APIRouter()

Json = Dict[str, Any]


@router.get("/invariants")
def invariants(request: Request) -> Json:
    """Run every registered invariant against committed state. Read-only: never halts."""
    app = _simapp(request)
    results = [r.to_json() for r in app.check_invariants()]
    return {
        "ok": True,
        "height": app.last_height,
        "broken": sum(1 for r in results if r["broken"]),
        "results": results,
    }
