from __future__ import annotations

from typing import Iterable, Mapping, Optional


# Labels carried on the `up` series for billing/display only; they are not
# present on node-exporter metrics and would make every selector match nothing.
LEGACY_EXCLUDED_LABELS = frozenset({"__name__", "expiry", "price", "info", "cycle", "job", "cpu"})
EXCLUDED_LABELS = LEGACY_EXCLUDED_LABELS | {"reset_day"}


def parse_excluded_labels(value: Optional[str]) -> frozenset[str]:
    """Parse PROMETHEUS_EXCLUDED_LABELS; empty means the default set."""
    if not value:
        return EXCLUDED_LABELS
    items = {part.strip() for part in value.split(",") if part.strip()}
    return frozenset(items) or EXCLUDED_LABELS


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def build_filter(labels: Mapping[str, str], exclude: Iterable[str] = EXCLUDED_LABELS) -> str:
    """Turn a host label set into `k="v",k2="v2"` for use inside a selector."""
    skip = set(exclude)
    terms = [f"{k}={_quote(str(v))}" for k, v in sorted(labels.items()) if k not in skip]
    return ",".join(terms)


def selector(metric: str, *matchers: str) -> str:
    """Compose `metric{a, b}` from matcher fragments, dropping empty ones.

    With no non-empty fragment the bare metric name is returned.
    """
    parts = [m for m in matchers if m]
    if not parts:
        return metric
    return f"{metric}{{{', '.join(parts)}}}"
