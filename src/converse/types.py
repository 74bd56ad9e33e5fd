"""
Core types for the converse cache service.

This module defines small shared data structures:
- Helper functions for ID generation and timestamps
- Frozen dataclasses for authenticated callers
- Mutable dataclasses for per-process counters (CacheStats)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from uuid6 import uuid7


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "req")

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def epoch_seconds() -> float:
    """Wall clock seconds used for cache entry timestamps."""
    return time.time()


@dataclass(frozen=True)
class Caller:
    """An authenticated caller.

    auth_id is the identity provider's subject; token is forwarded to the
    data backend so queries run as the caller.
    """

    auth_id: str
    token: str


@dataclass
class CacheStats:
    """Per-process hit/miss counters for the cache facade."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=utc_now)

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from cache (0.0 when idle)."""
        if self.lookups == 0:
            return 0.0
        return self.hits / self.lookups

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 4),
            "started_at": self.started_at.isoformat(),
        }
