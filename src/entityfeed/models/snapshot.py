"""Values handed to pipeline consumers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from entityfeed.models.sample import Sample
from entityfeed.models.state import EntityState


@dataclass(frozen=True, slots=True)
class SourceUpdate:
    """One flushed emission of a data source."""

    source: str
    entity_id: str
    timestamp: int
    value: float
    state: EntityState | None = None

    @property
    def sample(self) -> Sample:
        return Sample(self.timestamp, self.value)


@dataclass(frozen=True, slots=True)
class OverlayUpdate:
    """Emission as delivered to an overlay callback.

    ``history`` holds the buffered samples (oldest first) for sparkline
    overlays and is ``None`` for every other overlay type.  ``replay`` is
    set on the one-off delivery of already-buffered data right after
    subscribing.
    """

    overlay_id: str
    overlay_type: str
    source_id: str
    entity_id: str
    timestamp: int
    value: float
    history: tuple[Sample, ...] | None = None
    replay: bool = False


class Overlay(BaseModel):
    """Minimal overlay descriptor: which source an overlay reads from.

    Extra keys of the overlay definition are kept and ignored here.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str
    source: str | None = None
    type: str = ""

    @field_validator("id")
    @classmethod
    def _require_id(cls, value: str) -> str:
        overlay_id = value.strip()
        if not overlay_id:
            raise ValueError("overlay id must be non-empty")
        return overlay_id

    @field_validator("source")
    @classmethod
    def _blank_source_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def wants_history(self) -> bool:
        return self.type == "sparkline"


class EntitySnapshot(BaseModel):
    """Latest known state of a tracked entity.

    Parameters
    ----------
    entity_id : str
        Tracked entity.
    state : str
        Latest committed value rendered as a string, ``"unavailable"``
        when nothing has been committed yet.
    value : float or None
        Latest committed numeric value.
    timestamp : int or None
        Epoch milliseconds of the latest committed sample.
    attributes : dict
        Attributes of the most recent host state seen for the entity.
    last_changed : datetime or None
        Host ``last_changed`` of that state.
    source : str
        Name of the data source that produced the snapshot.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    entity_id: str
    state: str
    value: float | None = None
    timestamp: int | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    last_changed: datetime | None = None
    source: str = ""


class SourceStats(BaseModel):
    """Counters and state of one data source, for introspection."""

    model_config = ConfigDict(extra="forbid")

    name: str
    entity_id: str
    received: int = 0
    invalid: int = 0
    filtered: int = 0
    skipped_same_value: int = 0
    coalesced: int = 0
    throttled: int = 0
    emits: int = 0
    max_delay_flushes: int = 0
    history_loaded: int = 0
    live_failures: int = 0
    subscribers: int = 0
    started: bool = False
    live: bool = False
    pending: bool = False
    destroyed: bool = False
    policy: dict[str, float | bool] = Field(default_factory=dict)
    buffer: dict[str, float | int] = Field(default_factory=dict)
