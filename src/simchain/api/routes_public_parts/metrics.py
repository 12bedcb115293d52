# src/simchain/api/routes_public_parts/metrics.py
from __future__ import annotations

from fastapi import APIRouter, Request, Response

from simchain.runtime.metrics import format_prometheus, metrics_enabled, set_gauge

router = APIRouter()

_PROM_TEXT = "text/plain; version=0.0.4"


@router.get("/metrics")
def metrics(request: Request) -> Response:
    """Lifecycle counters (phases, halts, commits, invariant checks) as Prometheus text.

    Served at the root, not under /v1. Answers 404 unless
    SIMCHAIN_METRICS_ENABLED is set.
    """
    if not metrics_enabled():
        return Response(status_code=404, content="not_found\n", media_type="text/plain")
    simapp = getattr(request.app.state, "simapp", None)
    if simapp is not None:
        set_gauge("last_committed_height", int(simapp.last_height))
        set_gauge("halted", int(bool(simapp.manager.halted)))
    return Response(content=format_prometheus(), media_type=_PROM_TEXT)
