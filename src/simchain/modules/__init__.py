# src/simchain/modules/__init__.py
"""Reference modules wired by simchain.app.SimApp.

Each module file exposes a genesis schema, a keeper, and new_module(...)
returning the capability record the Manager drives.
"""

from __future__ import annotations

__all__ = [
    "auth",
    "bank",
    "consensus",
    "crisis",
    "genutil",
    "staking",
]
