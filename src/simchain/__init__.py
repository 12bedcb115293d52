"""simchain: module lifecycle orchestration for replicated state machines."""

from __future__ import annotations

__version__ = "0.1.0"
