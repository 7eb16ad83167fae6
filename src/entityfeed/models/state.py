"""Home Assistant entity state payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from entityfeed.models._base import FeedBaseModel, HassTimestamp


class EntityState(FeedBaseModel):
    """A state object as delivered by the WebSocket, REST and history APIs.

    History responses built with ``minimal_response`` omit ``entity_id``
    and ``attributes`` on all but the first record, so both are optional.

    Parameters
    ----------
    entity_id : str
        Entity identifier, e.g. ``sensor.cpu_temperature``.
    state : str
        Raw state string.  Numeric sensors still report strings.
    attributes : dict
        Attribute mapping (may be empty).
    last_changed : datetime or None
        When ``state`` last changed.
    last_updated : datetime or None
        When ``state`` or any attribute last changed.
    """

    entity_id: str = ""
    state: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    last_changed: HassTimestamp = None
    last_updated: HassTimestamp = None

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("attributes", mode="before")
    @classmethod
    def _coerce_attributes(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @property
    def changed_at(self) -> datetime | None:
        """``last_changed`` falling back to ``last_updated``."""
        return self.last_changed or self.last_updated

    @property
    def updated_at(self) -> datetime | None:
        """``last_updated`` falling back to ``last_changed``."""
        return self.last_updated or self.last_changed


HistoryRecord = EntityState
"""History records share the state object shape."""


class StateChangedEvent(FeedBaseModel):
    """Payload of a ``state_changed`` event.

    ``new_state`` is ``None`` when the entity was removed.
    """

    entity_id: str
    new_state: EntityState | None = None
    old_state: EntityState | None = None

    @field_validator("entity_id")
    @classmethod
    def _normalize_entity_id(cls, value: str) -> str:
        entity_id = value.strip()
        if not entity_id:
            raise ValueError("entity_id must be non-empty")
        return entity_id
