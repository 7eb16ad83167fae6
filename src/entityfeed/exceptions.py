"""Custom exception hierarchy for entityfeed."""

from __future__ import annotations


class EntityFeedError(Exception):
    """Base exception for all entityfeed errors."""


class EntityFeedConfigError(EntityFeedError):
    """Invalid or missing configuration."""


class SourceConfigError(EntityFeedConfigError):
    """A data source configuration record is malformed.

    Raised when the :class:`~entityfeed.source.DataSource` is constructed,
    so a misconfigured source fails immediately instead of silently
    never producing data.  Sibling sources are unaffected.
    """

    def __init__(self, message: str, *, source_name: str = "") -> None:
        self.source_name = source_name
        super().__init__(message)


class EntityFeedTransportError(EntityFeedError):
    """Network-level failure (HTTP, WebSocket or MQTT)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class EntityFeedApiError(EntityFeedError):
    """The host platform answered with an error result."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)


class EntityFeedAuthenticationError(EntityFeedApiError):
    """Access token missing, invalid or revoked."""


class PipelineClosedError(EntityFeedError):
    """Operation attempted on a destroyed manager or data source."""
