# src/simchain/api/routes_public.py
from __future__ import annotations

from fastapi import APIRouter

from simchain.api.routes_public_parts.invariants import router as invariants_router
from simchain.api.routes_public_parts.metrics import router as metrics_router
from simchain.api.routes_public_parts.query import router as query_router
from simchain.api.routes_public_parts.status import router as status_router

public_router = APIRouter()

public_router.include_router(status_router, prefix="/v1", tags=["status"])
public_router.include_router(query_router, prefix="/v1", tags=["query"])
public_router.include_router(invariants_router, prefix="/v1", tags=["invariants"])

# Ops
public_router.include_router(metrics_router, prefix="", tags=["metrics"])
