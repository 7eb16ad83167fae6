"""Normalization helpers.

Centralizes numeric hygiene and timestamp handling so the rolling buffer
only ever receives finite values at epoch-millisecond timestamps.
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from entityfeed._constants import UNAVAILABLE_STATES
from entityfeed.models.sample import Sample

if TYPE_CHECKING:
    from entityfeed.models.state import EntityState


def safe_float(value: Any) -> float | None:
    """Parse *value* as a finite float.

    Only real numbers and numeric strings qualify.  Booleans, ``None``,
    placeholder states (``"unavailable"``, ``"unknown"``), NaN and
    infinities all yield ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.lower() in UNAVAILABLE_STATES:
            return None
        try:
            result = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(result):
        return None
    return result


def now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


def to_epoch_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


def extract_value(state: EntityState, attribute: str | None = None) -> float | None:
    """Numeric value of *state*, or of one of its attributes."""
    if attribute:
        return safe_float(state.attributes.get(attribute))
    return safe_float(state.state)


def extract_timestamp_ms(state: EntityState, attribute: str | None = None) -> int | None:
    """Sample timestamp for *state*.

    Attribute-only changes leave ``last_changed`` untouched, so attribute
    tracking keys off ``last_updated`` instead.
    """
    moment = state.updated_at if attribute else state.changed_at
    if moment is None:
        return None
    return to_epoch_ms(moment)


def samples_from_history(
    records: Iterable[EntityState],
    *,
    attribute: str | None = None,
    start_ms: int | None = None,
    end_ms: int | None = None,
) -> list[Sample]:
    """Convert history records into samples sorted by timestamp.

    Records without a numeric value or a timestamp are dropped, as are
    records outside ``[start_ms, end_ms]`` when bounds are given.
    """
    samples: list[Sample] = []
    for record in records:
        value = extract_value(record, attribute)
        if value is None:
            continue
        timestamp = extract_timestamp_ms(record, attribute)
        if timestamp is None:
            continue
        if start_ms is not None and timestamp < start_ms:
            continue
        if end_ms is not None and timestamp > end_ms:
            continue
        samples.append(Sample(timestamp, value))
    samples.sort(key=lambda sample: sample.timestamp)
    return samples
