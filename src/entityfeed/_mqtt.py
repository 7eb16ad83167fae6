"""MQTT statestream live feed: topic parsing, state assembly and runtime.

Home Assistant's ``mqtt_statestream`` integration publishes one topic per
state field::

    <base>/<domain>/<object_id>/state          raw state string
    <base>/<domain>/<object_id>/last_changed   JSON string
    <base>/<domain>/<object_id>/last_updated   JSON string
    <base>/<domain>/<object_id>/<attribute>    JSON value

The runtime hands each message to the event loop; the assembler folds
them into ``state_changed``-shaped events.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, cast

import paho.mqtt.client as mqtt

from entityfeed.config import MqttSettings
from entityfeed.exceptions import EntityFeedTransportError
from entityfeed.models.state import EntityState, StateChangedEvent

_TIMESTAMP_KEYS = frozenset({"last_changed", "last_updated"})


@dataclass(frozen=True)
class StatestreamMessage:
    """One decoded statestream publication."""

    entity_id: str
    key: str
    payload: Any


def parse_statestream_topic(topic: str, base_topic: str) -> tuple[str, str] | None:
    """Split a statestream topic into ``(entity_id, key)``.

    Returns ``None`` for topics outside *base_topic* or with the wrong depth.
    """
    prefix = base_topic.rstrip("/") + "/"
    if not topic.startswith(prefix):
        return None
    parts = topic[len(prefix) :].split("/")
    if len(parts) != 3 or not all(parts):
        return None
    domain, object_id, key = parts
    return f"{domain}.{object_id}", key


def decode_statestream_payload(payload: bytes) -> Any:
    """Decode a payload: JSON where possible, plain text otherwise."""
    text = payload.decode("utf-8", errors="replace").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _EntityCache:
    state: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    last_changed: datetime | None = None
    last_updated: datetime | None = None


class StatestreamAssembler:
    """Folds statestream messages into :class:`StateChangedEvent` objects.

    ``state`` and attribute messages produce an event; timestamp messages
    only refresh the cached metadata.  Timestamps trail the state topic,
    so a new state is stamped with its arrival time.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entities: dict[str, _EntityCache] = {}

    def handle(self, message: StatestreamMessage) -> StateChangedEvent | None:
        cache = self._entities.setdefault(message.entity_id, _EntityCache())
        old = self._snapshot(message.entity_id, cache) if cache.state is not None else None

        if message.key in _TIMESTAMP_KEYS:
            moment = EntityState.model_validate({message.key: message.payload})
            if message.key == "last_changed":
                cache.last_changed = moment.last_changed or cache.last_changed
            else:
                cache.last_updated = moment.last_updated or cache.last_updated
            return None

        now = self._clock()
        if message.key == "state":
            text = message.payload if isinstance(message.payload, str) else json.dumps(message.payload)
            if text != cache.state:
                cache.last_changed = now
            cache.state = text
        else:
            cache.attributes[message.key] = message.payload
            if cache.state is None:
                return None
        cache.last_updated = now

        return StateChangedEvent(
            entity_id=message.entity_id,
            new_state=self._snapshot(message.entity_id, cache),
            old_state=old,
        )

    @staticmethod
    def _snapshot(entity_id: str, cache: _EntityCache) -> EntityState:
        return EntityState(
            entity_id=entity_id,
            state=cache.state or "",
            attributes=dict(cache.attributes),
            last_changed=cache.last_changed,
            last_updated=cache.last_updated,
        )


class MqttStatestreamRuntime:
    """Threaded paho-mqtt runtime that posts statestream messages onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        on_message: Callable[[StatestreamMessage], None],
        client_id: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._settings = settings
        self._on_message = on_message
        self._client_id = client_id
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def topic(self) -> str:
        return self._settings.base_topic.rstrip("/") + "/#"

    def start(self) -> None:
        """Connect and subscribe to the statestream topic tree (blocking)."""
        self.stop()
        settings = self._settings
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s topic=%s",
            settings.host,
            settings.port,
            self.topic,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
        )
        client.enable_logger(self._logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected; subscribing topic=%s", self.topic)
            c.subscribe(self.topic, qos=0)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                parsed = parse_statestream_topic(msg.topic, settings.base_topic)
                if parsed is None:
                    return
                entity_id, key = parsed
                message = StatestreamMessage(
                    entity_id=entity_id,
                    key=key,
                    payload=decode_statestream_payload(msg.payload),
                )
                self._loop.call_soon_threadsafe(self._on_message, message)
            except Exception:
                self._logger.debug("MQTT payload parse failure topic=%s", msg.topic, exc_info=True)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                # paho's network loop reconnects on its own.
                self._logger.warning("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(settings.host, settings.port, keepalive=settings.keepalive)
        except OSError as exc:
            raise EntityFeedTransportError(
                f"MQTT connect to {settings.host}:{settings.port} failed: {exc}",
                endpoint=f"{settings.host}:{settings.port}",
            ) from exc
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
