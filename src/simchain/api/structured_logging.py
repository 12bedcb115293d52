# src/simchain/api/structured_logging.py
from __future__ import annotations

import logging
import os
import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from simchain.runtime.structured_logging import log_event

_FALSY = {"0", "false", "no", "n", "off"}


def _last_height(request: Request) -> Optional[int]:
    simapp = getattr(request.app.state, "simapp", None)
    return None if simapp is None else int(simapp.last_height)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One http_request log line per request, tagged with the chain height it was served at.

    SIMCHAIN_LOG_REQUESTS=0 turns it off. The caller's x-request-id is echoed
    back, or a fresh one is minted.
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = (os.environ.get("SIMCHAIN_LOG_REQUESTS") or "1").strip().lower() not in _FALSY
        self._logger = logging.getLogger("simchain.http")

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        started = time.monotonic()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id

        status = 500
        err: Optional[str] = None
        try:
            response = await call_next(request)
            status = int(response.status_code)
            response.headers.setdefault("x-request-id", request_id)
            return response
        except Exception as e:
            err = type(e).__name__
            raise
        finally:
            log_event(
                self._logger,
                "http_request",
                level=logging.WARNING if status >= 500 else logging.INFO,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=status,
                height=_last_height(request),
                duration_ms=int((time.monotonic() - started) * 1000),
                error=err,
            )
