# src/simchain/runtime/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class OrchestratorError(Exception):
    """Canonical error type for orchestrator failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ConfigurationError(OrchestratorError):
    """Startup-time wiring error. Never recovered; the process must not start."""


class GenesisDecodeError(OrchestratorError):
    """A genesis payload (or one module's slice of it) could not be decoded."""


class PhaseExecutionError(OrchestratorError):
    """A module failed inside a lifecycle phase. The step must not be committed."""


class InvariantViolation(OrchestratorError):
    """One or more registered invariants reported broken state."""


class RoutingError(OrchestratorError):
    """No handler is registered for a message type or query path."""


__all__ = [
    "OrchestratorError",
    "ConfigurationError",
    "GenesisDecodeError",
    "PhaseExecutionError",
    "InvariantViolation",
    "RoutingError",
]
