"""Rolling-buffer sample type."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Sample:
    """One committed ``(timestamp, value)`` point.

    ``timestamp`` is epoch milliseconds, ``value`` is always finite.
    """

    timestamp: int
    value: float
