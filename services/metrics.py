from __future__ import annotations

from threading import Lock
from typing import Tuple


_lock = Lock()
_counters: dict[str, dict[Tuple[Tuple[str, str], ...], int]] = {}


def _inc(name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        series = _counters.setdefault(name, {})
        series[key] = int(series.get(key, 0)) + int(value)


def increment_http_requests(route: str, status: int) -> None:
    _inc("http_requests_total", {"route": route, "status": str(status)})


def increment_escrow_operation(operation: str, result: str) -> None:
    _inc("escrow_operations_total", {"operation": operation, "result": result})


def increment_lock_retry(operation: str) -> None:
    _inc("escrow_lock_retries_total", {"operation": operation})


def increment_notification_failure() -> None:
    _inc("notification_failures_total")


def increment_idempotency_replay(operation: str) -> None:
    _inc("idempotency_replays_total", {"operation": operation})


def increment_reconcile_item(category: str) -> None:
    _inc("reconcile_items_total", {"category": category})


def counter_value(name: str, labels: dict[str, str] | None = None) -> int:
    key = tuple(sorted((labels or {}).items()))
    with _lock:
        return int(_counters.get(name, {}).get(key, 0))


def render_prometheus() -> str:
    lines: list[str] = []
    with _lock:
        for name, series in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for labels, value in sorted(series.items()):
                if labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in labels)
                    lines.append(f"{name}{{{label_str}}} {value}")
                else:
                    lines.append(f"{name} {value}")
    return "\n".join(lines) + ("\n" if lines else "")
