from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pytest

from entityfeed._retry import RetryPolicy
from entityfeed.exceptions import EntityFeedTransportError
from entityfeed.models.state import EntityState, StateChangedEvent

NOW_MS = 1_700_000_000_000


def iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat()


def make_state(
    entity_id: str,
    state: Any,
    *,
    changed_ms: int | None = None,
    updated_ms: int | None = None,
    attributes: dict[str, Any] | None = None,
) -> EntityState:
    payload: dict[str, Any] = {"entity_id": entity_id, "state": state, "attributes": attributes or {}}
    if changed_ms is not None:
        payload["last_changed"] = iso(changed_ms)
    if updated_ms is not None or changed_ms is not None:
        payload["last_updated"] = iso(updated_ms if updated_ms is not None else changed_ms)  # type: ignore[arg-type]
    return EntityState.model_validate(payload)


@dataclass
class FakeHost:
    """In-memory stand-in for :class:`entityfeed.client.HassClient`."""

    history: list[EntityState] = field(default_factory=list)
    current: dict[str, EntityState] = field(default_factory=dict)
    history_error: Exception | None = None
    subscribe_failures: int = 0
    callbacks: dict[str, list[Callable[[StateChangedEvent], None]]] = field(default_factory=dict)
    history_calls: list[tuple[str, datetime, datetime, bool]] = field(default_factory=list)
    subscribe_calls: int = 0

    async def subscribe_entity(
        self,
        entity_id: str,
        callback: Callable[[StateChangedEvent], None],
    ) -> Callable[[], None]:
        self.subscribe_calls += 1
        if self.subscribe_failures > 0:
            self.subscribe_failures -= 1
            raise EntityFeedTransportError("WebSocket connect failed: refused")
        self.callbacks.setdefault(entity_id, []).append(callback)

        def unsubscribe() -> None:
            registered = self.callbacks.get(entity_id, [])
            if callback in registered:
                registered.remove(callback)

        return unsubscribe

    async def fetch_history(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        *,
        attributes: bool = False,
    ) -> list[EntityState]:
        self.history_calls.append((entity_id, start, end, attributes))
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def get_state(self, entity_id: str) -> EntityState | None:
        return self.current.get(entity_id)

    def subscriber_count(self, entity_id: str) -> int:
        return len(self.callbacks.get(entity_id, []))

    def emit(
        self,
        entity_id: str,
        state: Any,
        *,
        changed_ms: int | None = None,
        updated_ms: int | None = None,
        attributes: dict[str, Any] | None = None,
        deliver_to: str | None = None,
    ) -> None:
        """Push a ``state_changed`` event to the callbacks of *deliver_to* (default: *entity_id*)."""
        new_state = make_state(
            entity_id,
            state,
            changed_ms=changed_ms,
            updated_ms=updated_ms,
            attributes=attributes,
        )
        event = StateChangedEvent(entity_id=entity_id, new_state=new_state)
        for callback in list(self.callbacks.get(deliver_to or entity_id, [])):
            callback(event)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def fixed_clock() -> Callable[[], int]:
    return lambda: NOW_MS


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, base_delay=0.01, max_delay=0.02, jitter=0.0)
