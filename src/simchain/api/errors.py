# src/simchain/api/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from simchain.modules.errors import ModuleError
from simchain.runtime.errors import (
    ConfigurationError,
    InvariantViolation,
    OrchestratorError,
    PhaseExecutionError,
    RoutingError,
)


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def unavailable(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(503, code, message, details or {})


def _body(code: str, message: str, details: Any) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message, "details": details if details is not None else {}}}


def _orchestrator_status(e: OrchestratorError) -> int:
    if isinstance(e, RoutingError):
        return 404
    if isinstance(e, (InvariantViolation, PhaseExecutionError)):
        return 503
    if isinstance(e, ConfigurationError):
        return 500
    return 400


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=_body(exc.code, exc.message, exc.details))

    @app.exception_handler(OrchestratorError)
    async def _orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        return JSONResponse(status_code=_orchestrator_status(exc), content=_body(exc.code, exc.reason, exc.details))

    @app.exception_handler(ModuleError)
    async def _module_error(request: Request, exc: ModuleError) -> JSONResponse:
        status = 404 if exc.code == "not_found" else 400
        return JSONResponse(status_code=status, content=_body(exc.code, exc.reason, exc.details))
