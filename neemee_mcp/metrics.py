"""In-process counters rendered as Prometheus text.

Counters live in a module-level registry that ``initialize_app`` installs when
the server starts. The ``record_*`` helpers do nothing until a registry is
installed, so library code can call them unconditionally.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Callable, Iterable, Mapping

TOOL_NAMES = (
    "create_note",
    "update_note",
    "delete_note",
    "search_notes",
    "search_notebooks",
    "create_notebook",
    "update_notebook",
    "delete_notebook",
)
AUTH_OUTCOMES = ("hit", "miss", "rejected")


@dataclass(frozen=True)
class MetricsSnapshot:
    operations: Mapping[str, int]
    errors: Mapping[str, int]
    auth: Mapping[str, int]
    uptime_seconds: float


class _Family:
    """One labelled counter with optional zero-valued seed labels."""

    def __init__(self, normalise: Callable[[str], str], seeds: Iterable[str] = ()) -> None:
        self._normalise = normalise
        self._seeds = tuple(seeds)
        self._values: Counter[str] = Counter()

    def add(self, label: str, count: int) -> None:
        key = self._normalise(label)
        if count > 0 and key:
            self._values[key] += count

    def values(self) -> dict[str, int]:
        merged = dict.fromkeys(self._seeds, 0)
        merged.update(self._values)
        return merged

    def clear(self) -> None:
        self._values.clear()


class MetricsRegistry:
    """Thread-safe tool, error and auth counters."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._operations = _Family(lambda label: label.strip().lower(), TOOL_NAMES)
        self._errors = _Family(lambda label: label.strip().upper())
        self._auth = _Family(lambda label: label.strip().lower() or "unknown", AUTH_OUTCOMES)
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        with self._lock:
            self._operations.add(name, count)

    def record_error(self, code: str, *, count: int = 1) -> None:
        with self._lock:
            self._errors.add(code, count)

    def record_auth(self, outcome: str, *, count: int = 1) -> None:
        with self._lock:
            self._auth.add(outcome, count)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                operations=self._operations.values(),
                errors=self._errors.values(),
                auth=self._auth.values(),
                uptime_seconds=max(monotonic() - self._started_at, 0.0),
            )

    def reset(self) -> None:
        with self._lock:
            for family in (self._operations, self._errors, self._auth):
                family.clear()
            self._started_at = monotonic()


_active: MetricsRegistry | None = None
_active_lock = RLock()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Make ``registry`` the target of the ``record_*`` helpers; ``None`` disables them."""

    global _active
    with _active_lock:
        _active = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _active_lock:
        return _active


def record_operation(name: str, *, count: int = 1) -> None:
    if (registry := get_registry_optional()) is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    if (registry := get_registry_optional()) is not None:
        registry.record_error(code, count=count)


def record_auth(outcome: str, *, count: int = 1) -> None:
    if (registry := get_registry_optional()) is not None:
        registry.record_auth(outcome, count=count)


def _metric_block(name: str, kind: str, help_text: str, samples: Iterable[tuple[str, float | int]]) -> list[str]:
    block = [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"]
    block.extend(f"{name}{labels} {value}" for labels, value in samples)
    return block


def format_prometheus(
    snapshot: MetricsSnapshot,
    *,
    notes_current: int | None = None,
    notebooks_current: int | None = None,
) -> str:
    """Render ``snapshot`` in text exposition format 0.0.4.

    The note and notebook gauges are omitted when the counts are unknown,
    which is the case for the remote backend.
    """

    errors = snapshot.errors or {"none": 0}
    lines = _metric_block(
        "neemee_mcp_ops_total",
        "counter",
        "Tool calls completed successfully, by tool.",
        ((f'{{op="{op}"}}', snapshot.operations[op]) for op in sorted(snapshot.operations)),
    )
    lines += _metric_block(
        "neemee_mcp_errors_total",
        "counter",
        "Errors returned, grouped by error code.",
        ((f'{{code="{code}"}}', errors[code]) for code in sorted(errors)),
    )
    lines += _metric_block(
        "neemee_mcp_auth_total",
        "counter",
        "API key authentications by cache outcome.",
        ((f'{{outcome="{outcome}"}}', snapshot.auth[outcome]) for outcome in sorted(snapshot.auth)),
    )
    if notes_current is not None:
        lines += _metric_block(
            "neemee_mcp_notes_current", "gauge", "Stored note count across tenants.", [("", notes_current)]
        )
    if notebooks_current is not None:
        lines += _metric_block(
            "neemee_mcp_notebooks_current", "gauge", "Stored notebook count across tenants.", [("", notebooks_current)]
        )
    lines += _metric_block(
        "neemee_mcp_uptime_seconds", "gauge", "Seconds since the server started.", [("", f"{snapshot.uptime_seconds:.6f}")]
    )
    return "\n".join(lines) + "\n"
