# src/simchain/api/routes_public_parts/query.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from simchain.api.errors import ApiError
from simchain.api.routes_public_parts.common import _simapp

router = APIRouter()

Json = Dict[str, Any]


@router.get("/query/{module}/{path:path}")
def query(module: str, path: str, request: Request) -> Json:
    """Dispatch to a query handler a module registered on the service router.

    Query-string parameters become the handler's params, e.g.
      GET /v1/query/bank/balance?address=...&denom=stake
    """
    module = module.strip()
    path = path.strip("/")
    if not module or not path:
        raise ApiError.bad_request("invalid_path", "query path must be /v1/query/<module>/<path>", {})

    app = _simapp(request)
    res = app.query(f"{module}/{path}", dict(request.query_params))
    return {"ok": True, "height": app.last_height, "result": res}
