# src/simchain/runtime/metrics.py
from __future__ import annotations

"""Process-local lifecycle counters and gauges.

The Manager counts phases and halts, the registry counts invariant checks,
the app counts commits and delivered messages. Values are plain integers;
/metrics renders them as Prometheus text when SIMCHAIN_METRICS_ENABLED is on.
"""

import os
import threading
import time
from typing import Dict, List

_TRUTHY = {"1", "true", "yes", "y", "on"}

_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_started_ms = int(time.time() * 1000)


def metrics_enabled() -> bool:
    return (os.environ.get("SIMCHAIN_METRICS_ENABLED") or "").strip().lower() in _TRUTHY


def _name(name: str) -> str:
    return str(name or "").strip()


def inc_counter(name: str, value: int = 1) -> None:
    n = _name(name)
    if n:
        with _lock:
            _counters[n] = _counters.get(n, 0) + int(value)


def set_gauge(name: str, value: int) -> None:
    n = _name(name)
    if n:
        with _lock:
            _gauges[n] = int(value)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(_name(name), 0)


def snapshot() -> dict:
    now = int(time.time() * 1000)
    with _lock:
        return {
            "ts_ms": now,
            "uptime_ms": now - _started_ms,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
        }


def reset() -> None:
    """Tests only."""
    with _lock:
        _counters.clear()
        _gauges.clear()


def format_prometheus(prefix: str = "simchain_") -> str:
    pre = _name(prefix) or "simchain_"
    snap = snapshot()
    lines: List[str] = [f"# TYPE {pre}uptime_ms gauge", f"{pre}uptime_ms {snap['uptime_ms']}"]
    for kind, values in (("counter", snap["counters"]), ("gauge", snap["gauges"])):
        for k in sorted(values):
            lines.append(f"# TYPE {pre}{k} {kind}")
            lines.append(f"{pre}{k} {values[k]}")
    return "\n".join(lines) + "\n"
