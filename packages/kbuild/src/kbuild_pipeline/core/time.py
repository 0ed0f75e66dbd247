from __future__ import annotations

import time
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def utc_stamp() -> str:
    """Compact sortable UTC timestamp, e.g. 20210522T101500Z."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def format_duration_ms(ms: int) -> str:
    """Short human-readable duration: `850 ms`, `12.40 s`, `41m 07s`."""
    if ms < 1000:
        return f"{ms} ms"
    if ms < 60_000:
        return f"{ms / 1000:.2f} s"
    minutes, rest = divmod(ms // 1000, 60)
    return f"{minutes}m {rest:02d}s"
