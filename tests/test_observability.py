from __future__ import annotations

import json
import logging
from typing import List

from simchain.runtime import metrics
from simchain.runtime.structured_logging import log_event


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.lines: List[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(record.getMessage())


def _logger(name: str) -> tuple[logging.Logger, _Capture]:
    lg = logging.getLogger(name)
    lg.setLevel(logging.DEBUG)
    cap = _Capture()
    lg.handlers = [cap]
    lg.propagate = False
    return lg, cap


def test_log_event_emits_one_json_line() -> None:
    lg, cap = _logger("simchain.test.jsonl")
    log_event(lg, "committed", height=3, app_hash="ab")

    obj = json.loads(cap.lines[0])
    assert obj["event"] == "committed"
    assert obj["height"] == 3
    assert "ts_ms" in obj


def test_log_event_falls_back_for_unserializable_fields() -> None:
    lg, cap = _logger("simchain.test.fallback")
    log_event(lg, "odd", thing=object())
    assert cap.lines[0].startswith("event=odd thing=")


def test_log_event_respects_level() -> None:
    lg, cap = _logger("simchain.test.level")
    lg.setLevel(logging.WARNING)
    log_event(lg, "quiet", level=logging.DEBUG)
    assert cap.lines == []


def test_prometheus_text_lists_counters_and_gauges() -> None:
    metrics.inc_counter("end_phase_total")
    metrics.inc_counter("end_phase_total", 2)
    metrics.set_gauge("height", 9)
    metrics.inc_counter("")

    text = metrics.format_prometheus()
    assert "simchain_end_phase_total 3\n" in text
    assert "simchain_height 9\n" in text
    assert metrics.get_counter("end_phase_total") == 3
    assert metrics.snapshot()["gauges"] == {"height": 9}
