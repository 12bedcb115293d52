# src/simchain/modules/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ModuleError(Exception):
    """Business-rule failure raised by a keeper or message handler."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"
