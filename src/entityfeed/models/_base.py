"""Base model and timestamp helpers for Home Assistant payloads.

Every host payload model inherits from :class:`FeedBaseModel` which is
frozen, ignores unknown keys, and keeps the original payload in ``raw``.
Home Assistant timestamps are ISO-8601 strings; :data:`HassTimestamp`
coerces them (and epoch numbers) to timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_hass_timestamp(value: Any) -> datetime | None:
    """Convert an ISO-8601 string or epoch number (s or ms) to a UTC datetime.

    Returns ``None`` for ``None``, empty strings and unparseable values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    if isinstance(value, str):
        text = value.strip().strip('"')
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return None


HassTimestamp = Annotated[datetime | None, BeforeValidator(parse_hass_timestamp)]
"""Annotated type that coerces Home Assistant timestamps to UTC datetimes."""


class FeedBaseModel(BaseModel):
    """Base for host payload models.

    * unknown keys are ignored
    * instances are frozen
    * the original payload dict is stashed in ``raw``
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict, repr=False)
    """Original payload dict."""

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        if "raw" in values:
            return values
        return {**values, "raw": dict(values)}
