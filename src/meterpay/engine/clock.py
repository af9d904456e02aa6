"""Timestamps. Every time-gated rule is evaluated against an explicit ``now``."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def timestamp_now() -> int:
    """Current UTC time as integer UNIX seconds."""
    return int(datetime.now(timezone.utc).timestamp())


def resolve_now(now: Optional[int]) -> int:
    return timestamp_now() if now is None else int(now)
