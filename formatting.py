from __future__ import annotations

import datetime as dt


KIB = 1024.0
MIB = KIB * 1024
GIB = MIB * 1024
TIB = GIB * 1024

_UNITS = ((TIB, "TiB"), (GIB, "GiB"), (MIB, "MiB"), (KIB, "KiB"))


def _scaled(value: float, suffix: str) -> str:
    for threshold, unit in _UNITS:
        if value >= threshold:
            return f"{value / threshold:.2f} {unit}{suffix}"
    return f"{value:.2f} B{suffix}"


def format_bytes(n: float) -> str:
    """Render a byte count with binary (1024-based) units, e.g. '1.00 GiB'."""
    return _scaled(float(n), "")


def format_bytes_per_second(n: float) -> str:
    return _scaled(float(n), "/s")


def format_duration(d: dt.timedelta) -> str:
    """Compact duration used for uptime and for PromQL range windows.

    Anything of a day or longer renders as whole days only, so 25h is '1d'.
    """
    total_seconds = int(d.total_seconds())
    hours = total_seconds // 3600
    minutes = (total_seconds // 60) % 60
    seconds = total_seconds % 60

    if hours >= 24:
        return f"{hours // 24}d"
    if minutes > 0:
        return f"{hours}h{minutes}m"
    if seconds > 0:
        return f"{hours}h{minutes}m{seconds}s"
    return f"{hours}h"


def format_time_left(d: dt.timedelta) -> str:
    # 365-day years and 30-day months, same approximation as the renewal line
    if d.total_seconds() < 0:
        return "expired"
    total_hours = d.total_seconds() / 3600
    years = int(total_hours / (24 * 365))
    months = int(total_hours / (24 * 30) - years * 12)
    days = int(total_hours / 24) - years * 365 - months * 30
    if days < 0:
        days = 0
    return f"{years}y {months}m {days}d"


def format_percent(value: float) -> str:
    return f"{value:.2f}%"
