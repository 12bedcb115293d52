# src/simchain/runtime/__init__.py
"""Orchestrator core: storage namespaces, modules, keepers, invariants and the manager.

NOTE: Keep this package import-safe (no imports of simchain.modules or simchain.app).
"""

from __future__ import annotations
