"""Data source configuration records."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from entityfeed._constants import (
    COALESCE_FLOOR_MS,
    COALESCE_RATIO,
    DEFAULT_HISTORY_HOURS,
    DEFAULT_MIN_EMIT_MS,
    DEFAULT_WINDOW_SECONDS,
    MAX_BUFFER_CAPACITY,
    MAX_DELAY_COALESCE_FACTOR,
    MAX_HISTORY_HOURS,
    MIN_BUFFER_CAPACITY,
    MIN_EMIT_FLOOR_MS,
    MIN_HISTORY_HOURS,
    SAMPLES_PER_SECOND,
)
from entityfeed.exceptions import SourceConfigError


_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr|d|day)s?$", re.IGNORECASE)

_UNIT_MS: dict[str, int] = {
    "s": 1000,
    "sec": 1000,
    "m": 60 * 1000,
    "min": 60 * 1000,
    "h": 60 * 60 * 1000,
    "hr": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "day": 24 * 60 * 60 * 1000,
}


def parse_duration_ms(value: str) -> float | None:
    """Parse ``"90s"``, ``"5m"``, ``"2h"`` or ``"1d"`` into milliseconds."""
    match = _DURATION_RE.match(value.strip())
    if match is None:
        return None
    return float(match.group(1)) * _UNIT_MS[match.group(2).lower()]


@dataclass(frozen=True, slots=True)
class TimingPolicy:
    """Resolved emission timing for one data source (milliseconds)."""

    min_emit_ms: float
    coalesce_ms: float
    max_delay_ms: float
    emit_on_same_value: bool


class HistoryConfig(BaseModel):
    """History preload settings.

    ``hours`` is clamped to the 1..168 range the recorder is queried with.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    preload: bool = Field(default=False, validation_alias=AliasChoices("preload", "enabled"))
    hours: float = DEFAULT_HISTORY_HOURS

    @field_validator("hours", mode="before")
    @classmethod
    def _clamp_hours(cls, value: Any) -> float:
        hours = _finite_or_none(value)
        if hours is None:
            return DEFAULT_HISTORY_HOURS
        if hours <= 0:
            return DEFAULT_HISTORY_HOURS
        return max(MIN_HISTORY_HOURS, min(MAX_HISTORY_HOURS, hours))


def _finite_or_none(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except TypeError as exc:
        raise ValueError(f"expected a number, got {type(value).__name__}") from exc
    return number if math.isfinite(number) else None


class SourceConfig(BaseModel):
    """Configuration record for one data source.

    Both the camelCase keys used by card configurations (``minEmitMs``)
    and snake_case spellings (``min_emit_ms``) are accepted.  Timing
    fields left unset resolve to defaults derived from each other, see
    :meth:`timing_policy`.

    Parameters
    ----------
    entity : str
        Entity to track.  Must be non-blank.
    attribute : str or None
        Track this attribute instead of the state string.
    window_seconds : float or str or None
        Retention horizon; a number of seconds or a duration such as
        ``"5m"``.  Sizes the rolling buffer.
    min_emit_ms : float or None
        Minimum spacing between flushes.
    coalesce_ms : float or None
        Quiet period before a pending update is flushed.
    max_delay_ms : float or None
        Hard bound on how long a pending update may be withheld.
    emit_on_same_value : bool
        Whether a repeated value still produces an emission.
    history : HistoryConfig or None
        Optional history preload.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    entity: str = Field(validation_alias=AliasChoices("entity", "entity_id"))
    attribute: str | None = None
    window_seconds: float | str | None = Field(
        default=None,
        validation_alias=AliasChoices("window_seconds", "windowSeconds"),
    )
    min_emit_ms: float | None = Field(
        default=None,
        validation_alias=AliasChoices("minEmitMs", "min_emit_ms", "sampleMs"),
    )
    coalesce_ms: float | None = Field(default=None, validation_alias=AliasChoices("coalesceMs", "coalesce_ms"))
    max_delay_ms: float | None = Field(default=None, validation_alias=AliasChoices("maxDelayMs", "max_delay_ms"))
    emit_on_same_value: bool = Field(
        default=True,
        validation_alias=AliasChoices("emitOnSameValue", "emit_on_same_value"),
    )
    history: HistoryConfig | None = None

    @field_validator("entity")
    @classmethod
    def _require_entity(cls, value: str) -> str:
        if not value:
            raise ValueError("entity must be non-empty")
        return value

    @field_validator("attribute")
    @classmethod
    def _blank_attribute_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("min_emit_ms", "coalesce_ms", "max_delay_ms", mode="before")
    @classmethod
    def _timing_number(cls, value: Any) -> float | None:
        return _finite_or_none(value)

    @field_validator("window_seconds", mode="before")
    @classmethod
    def _window_number_or_duration(cls, value: Any) -> float | str | None:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            if parse_duration_ms(value) is None:
                raise ValueError(f"unrecognised window duration: {value!r}")
            return value.strip()
        return _finite_or_none(value)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | SourceConfig, *, source_name: str = "") -> SourceConfig:
        """Validate a plain configuration record.

        Raises
        ------
        SourceConfigError
            If the record is malformed.
        """
        if isinstance(data, SourceConfig):
            return data
        if not isinstance(data, Mapping):
            raise SourceConfigError(
                f"Source {source_name!r} configuration must be a mapping, got {type(data).__name__}",
                source_name=source_name,
            )
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise SourceConfigError(f"Invalid configuration for source {source_name!r}: {exc}", source_name=source_name) from exc

    @property
    def window_seconds_resolved(self) -> float:
        """Retention window in seconds (at least 1)."""
        value = self.window_seconds
        if isinstance(value, str):
            ms = parse_duration_ms(value)
            seconds = math.floor(ms / 1000) if ms is not None else DEFAULT_WINDOW_SECONDS
        elif value is None:
            seconds = DEFAULT_WINDOW_SECONDS
        else:
            seconds = value
        return max(1.0, float(seconds))

    @property
    def buffer_capacity(self) -> int:
        """Rolling buffer size: ~10 points per window second, bounded."""
        wanted = math.floor(self.window_seconds_resolved * SAMPLES_PER_SECOND)
        return min(MAX_BUFFER_CAPACITY, max(MIN_BUFFER_CAPACITY, wanted))

    @property
    def preload_history(self) -> bool:
        return self.history is not None and self.history.preload

    def timing_policy(self) -> TimingPolicy:
        """Resolve timing knobs, applying defaults and floors.

        ``max_delay_ms`` never drops below ``min_emit_ms``, so a max-delay
        flush can not outpace the emission rate limit.
        """
        min_emit = self.min_emit_ms if self.min_emit_ms is not None else DEFAULT_MIN_EMIT_MS
        min_emit = max(float(MIN_EMIT_FLOOR_MS), min_emit)

        if self.coalesce_ms is not None:
            coalesce = max(float(COALESCE_FLOOR_MS), self.coalesce_ms)
        else:
            coalesce = max(float(COALESCE_FLOOR_MS), float(round(min_emit * COALESCE_RATIO)))

        if self.max_delay_ms is not None:
            max_delay = max(min_emit, self.max_delay_ms)
        else:
            max_delay = max(min_emit, coalesce * MAX_DELAY_COALESCE_FACTOR)

        return TimingPolicy(
            min_emit_ms=min_emit,
            coalesce_ms=coalesce,
            max_delay_ms=max_delay,
            emit_on_same_value=self.emit_on_same_value,
        )
