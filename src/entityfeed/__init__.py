"""entityfeed - Real-time Home Assistant entity data pipeline."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("entityfeed")
except PackageNotFoundError:
    __version__ = "0+local"
from entityfeed._retry import RetryPolicy
from entityfeed.buffer import RollingBuffer
from entityfeed.client import HassClient, HostPlatform
from entityfeed.config import HassConfig, MqttSettings
from entityfeed.exceptions import (
    EntityFeedApiError,
    EntityFeedAuthenticationError,
    EntityFeedConfigError,
    EntityFeedError,
    EntityFeedTransportError,
    PipelineClosedError,
    SourceConfigError,
)
from entityfeed.manager import DataSourceManager
from entityfeed.models import (
    EntitySnapshot,
    EntityState,
    HistoryConfig,
    HistoryRecord,
    Overlay,
    OverlayUpdate,
    Sample,
    SourceConfig,
    SourceStats,
    SourceUpdate,
    StateChangedEvent,
    TimingPolicy,
)
from entityfeed.registry import PipelineRegistry
from entityfeed.source import DataSource

__all__ = [
    "__version__",
    "DataSource",
    "DataSourceManager",
    "EntityFeedApiError",
    "EntityFeedAuthenticationError",
    "EntityFeedConfigError",
    "EntityFeedError",
    "EntityFeedTransportError",
    "EntitySnapshot",
    "EntityState",
    "HassClient",
    "HassConfig",
    "HistoryConfig",
    "HistoryRecord",
    "HostPlatform",
    "MqttSettings",
    "Overlay",
    "OverlayUpdate",
    "PipelineClosedError",
    "PipelineRegistry",
    "RetryPolicy",
    "RollingBuffer",
    "Sample",
    "SourceConfig",
    "SourceConfigError",
    "SourceStats",
    "SourceUpdate",
    "StateChangedEvent",
    "TimingPolicy",
]
