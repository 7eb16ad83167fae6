"""Data models for host payloads, configuration and pipeline output."""

from entityfeed.models._base import FeedBaseModel, HassTimestamp, parse_hass_timestamp
from entityfeed.models.sample import Sample
from entityfeed.models.snapshot import EntitySnapshot, Overlay, OverlayUpdate, SourceStats, SourceUpdate
from entityfeed.models.source_config import HistoryConfig, SourceConfig, TimingPolicy
from entityfeed.models.state import EntityState, HistoryRecord, StateChangedEvent

__all__ = [
    "EntitySnapshot",
    "EntityState",
    "FeedBaseModel",
    "HassTimestamp",
    "HistoryConfig",
    "HistoryRecord",
    "Overlay",
    "OverlayUpdate",
    "Sample",
    "SourceConfig",
    "SourceStats",
    "SourceUpdate",
    "StateChangedEvent",
    "TimingPolicy",
    "parse_hass_timestamp",
]
