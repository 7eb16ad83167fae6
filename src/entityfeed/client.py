"""High-level async client for the Home Assistant host platform."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from entityfeed._mqtt import MqttStatestreamRuntime, StatestreamAssembler, StatestreamMessage
from entityfeed._redact import redact_for_log
from entityfeed._retry import RetryPolicy
from entityfeed._transport import RestTransport, Transport
from entityfeed._websocket import HassWebSocketFeed
from entityfeed.config import HassConfig
from entityfeed.exceptions import EntityFeedConfigError, EntityFeedError, EntityFeedTransportError
from entityfeed.models.state import EntityState, HistoryRecord, StateChangedEvent

_logger = logging.getLogger(__name__)

EventCallback = Callable[[StateChangedEvent], None]


class HostPlatform(Protocol):
    """What a :class:`~entityfeed.source.DataSource` needs from its host."""

    async def subscribe_entity(self, entity_id: str, callback: EventCallback) -> Callable[[], None]:
        ...

    async def fetch_history(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        *,
        attributes: bool = False,
    ) -> list[HistoryRecord]:
        ...

    async def get_state(self, entity_id: str) -> EntityState | None:
        ...


def parse_history_response(payload: Any, entity_id: str) -> list[HistoryRecord]:
    """Flatten a ``/api/history/period`` response for *entity_id*.

    The response is a list with one list of records per entity.  Minimal
    responses only carry ``entity_id`` on the first record of each list,
    so the id is filled in for the rest.  Unparseable records are skipped.
    """
    if not isinstance(payload, list):
        return []
    records: list[HistoryRecord] = []
    for group in payload:
        if not isinstance(group, list):
            continue
        for raw in group:
            if not isinstance(raw, dict):
                continue
            if raw.get("entity_id", entity_id) != entity_id:
                break
            try:
                records.append(HistoryRecord.model_validate({**raw, "entity_id": entity_id}))
            except ValidationError:
                _logger.debug("Skipping unparseable history record for %s", entity_id, exc_info=True)
    return records


class HassClient:
    """Async client for the Home Assistant REST, WebSocket and MQTT feeds.

    Usage::

        async with HassClient(config) as client:
            manager = DataSourceManager(client)
            await manager.initialize_from_config(sources)
    """

    def __init__(
        self,
        config: HassConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport: Transport | None = transport
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws_feed: HassWebSocketFeed | None = None
        self._mqtt_runtime: MqttStatestreamRuntime | None = None
        self._assembler = StatestreamAssembler()
        self._callbacks: dict[str, list[EventCallback]] = {}
        self._live_lock = asyncio.Lock()

    @property
    def config(self) -> HassConfig:
        return self._config

    @property
    def live_connected(self) -> bool:
        if self._ws_feed is not None:
            return self._ws_feed.is_connected
        return self._mqtt_runtime is not None and self._mqtt_runtime.is_running

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> HassClient:
        self._loop = asyncio.get_running_loop()
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        if self._transport is None:
            self._transport = RestTransport(self._config, self._http_session)
        _logger.debug("Client opened with %s", redact_for_log(self._config))
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the live feed and release the HTTP session."""
        self._callbacks.clear()
        ws_feed = self._ws_feed
        self._ws_feed = None
        if ws_feed is not None:
            await ws_feed.close()
        self._stop_mqtt()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None
        self._loop = None

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise EntityFeedError("Client not initialized. Use 'async with HassClient(...) as client:'")
        return self._transport

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def get_state(self, entity_id: str) -> EntityState | None:
        """Fetch the current state of *entity_id*, or ``None`` if unknown."""
        payload = await self._require_transport().get_json(f"/api/states/{quote(entity_id)}")
        if not isinstance(payload, dict):
            return None
        try:
            return EntityState.model_validate(payload)
        except ValidationError as exc:
            raise EntityFeedTransportError(
                f"Unparseable state for {entity_id}",
                endpoint=f"/api/states/{entity_id}",
            ) from exc

    async def fetch_history(
        self,
        entity_id: str,
        start: datetime,
        end: datetime,
        *,
        attributes: bool = False,
    ) -> list[HistoryRecord]:
        """Fetch recorded states of *entity_id* between *start* and *end*.

        Parameters
        ----------
        entity_id : str
            Entity to query.
        start, end : datetime
            Timezone-aware bounds of the period.
        attributes : bool
            Request full records with attributes.  Otherwise the minimal,
            attribute-free response is requested.
        """
        endpoint = f"/api/history/period/{quote(start.isoformat())}"
        params = {"filter_entity_id": entity_id, "end_time": end.isoformat()}
        if not attributes:
            params["minimal_response"] = ""
            params["no_attributes"] = ""
        payload = await self._require_transport().get_json(endpoint, params)
        records = parse_history_response(payload, entity_id)
        _logger.debug("History for %s: %d records", entity_id, len(records))
        return records

    # ------------------------------------------------------------------
    # Live feed
    # ------------------------------------------------------------------

    async def subscribe_entity(self, entity_id: str, callback: EventCallback) -> Callable[[], None]:
        """Deliver ``state_changed`` events of *entity_id* to *callback*.

        The shared live feed is started on first use.  Returns a synchronous,
        idempotent unsubscribe callable.

        Raises
        ------
        EntityFeedTransportError
            If the live feed cannot be established.
        """
        self._callbacks.setdefault(entity_id, []).append(callback)

        def unsubscribe() -> None:
            current = self._callbacks.get(entity_id)
            if current is None or callback not in current:
                return
            current.remove(callback)
            if not current:
                del self._callbacks[entity_id]

        # registered first; events can arrive right behind the subscribe result
        try:
            await self._ensure_live()
        except BaseException:
            unsubscribe()
            raise
        return unsubscribe

    async def _ensure_live(self) -> None:
        self._require_transport()
        async with self._live_lock:
            if self._config.live_transport == "websocket":
                await self._ensure_websocket()
            elif self._config.live_transport == "mqtt":
                await self._ensure_mqtt_started()
            else:
                raise EntityFeedConfigError(f"Unknown live transport {self._config.live_transport!r}")

    async def _ensure_websocket(self) -> None:
        if self._ws_feed is None:
            assert self._http_session is not None  # noqa: S101
            self._ws_feed = HassWebSocketFeed(
                config=self._config,
                http_session=self._http_session,
                on_event=self._dispatch,
                retry_policy=RetryPolicy.from_config(self._config),
            )
        await self._ws_feed.ensure_connected()

    async def _ensure_mqtt_started(self) -> None:
        if self._mqtt_runtime is not None and self._mqtt_runtime.is_running:
            return
        loop = self._loop or asyncio.get_running_loop()
        runtime = MqttStatestreamRuntime(
            loop=loop,
            settings=self._config.mqtt,
            on_message=self._on_statestream_message,
            logger=_logger,
        )
        # paho's connect() blocks on the socket.
        await loop.run_in_executor(None, runtime.start)
        self._mqtt_runtime = runtime

    def _stop_mqtt(self) -> None:
        runtime = self._mqtt_runtime
        self._mqtt_runtime = None
        if runtime is not None:
            runtime.stop()

    def _on_statestream_message(self, message: StatestreamMessage) -> None:
        """Handle a statestream message (called on the loop via call_soon_threadsafe)."""
        event = self._assembler.handle(message)
        if event is not None and event.entity_id in self._callbacks:
            self._dispatch(event)

    def _dispatch(self, event: StateChangedEvent) -> None:
        for callback in list(self._callbacks.get(event.entity_id, ())):
            try:
                callback(event)
            except Exception:
                _logger.warning("Entity callback failed for %s", event.entity_id, exc_info=True)
