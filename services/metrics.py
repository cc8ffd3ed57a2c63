from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Optional

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"

_HELP = {
    "http_requests_total": "HTTP requests by route template and status.",
    "payout_attempts_total": "Payout attempt outcomes (create/retry/reuse/skip/queued/failed).",
    "payout_status_updates_total": "Payout status writes, split by whether the guard applied them.",
    "payout_sweep_runs_total": "Retry sweep passes by result.",
    "payout_webhook_events_total": "Chapa webhook deliveries by kind, signature validity and outcome.",
}

LabelKey = tuple[tuple[str, str], ...]

_lock = Lock()
_counters: dict[str, dict[LabelKey, int]] = defaultdict(dict)


def _key(labels: Optional[dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _inc(name: str, labels: Optional[dict[str, str]] = None, value: int = 1) -> None:
    key = _key(labels)
    with _lock:
        series = _counters[name]
        series[key] = series.get(key, 0) + value


def increment_http_requests(route: str, status: int) -> None:
    _inc("http_requests_total", {"route": route, "status": str(status)})


def increment_payout_attempt(result: str) -> None:
    _inc("payout_attempts_total", {"result": result})


def increment_payout_status_update(status: str, applied: bool) -> None:
    _inc("payout_status_updates_total", {"status": status, "applied": _flag(applied)})


def increment_sweep_run(result: str) -> None:
    _inc("payout_sweep_runs_total", {"result": result})


def increment_webhook_event(kind: str, signature_valid: bool, applied: bool) -> None:
    _inc(
        "payout_webhook_events_total",
        {"kind": kind, "signature_valid": _flag(signature_valid), "applied": _flag(applied)},
    )


def counter_value(name: str, labels: Optional[dict[str, str]] = None) -> int:
    with _lock:
        return _counters.get(name, {}).get(_key(labels), 0)


def reset_metrics() -> None:
    with _lock:
        _counters.clear()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def render_prometheus() -> str:
    lines: list[str] = []
    with _lock:
        for name in sorted(_counters):
            series = _counters[name]
            if not series:
                continue
            if name in _HELP:
                lines.append(f"# HELP {name} {_HELP[name]}")
            lines.append(f"# TYPE {name} counter")
            for labels, value in sorted(series.items()):
                label_str = ",".join(f'{k}="{_escape(v)}"' for k, v in labels)
                lines.append(f"{name}{{{label_str}}} {value}" if label_str else f"{name} {value}")
    return "\n".join(lines) + ("\n" if lines else "")
