"""Home Assistant WebSocket live feed.

Owns:
- the authenticated WebSocket connection
- one shared ``subscribe_events`` subscription for ``state_changed``
- bounded reconnection after the connection drops
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any

import aiohttp
from pydantic import ValidationError

from entityfeed._constants import STATE_CHANGED_EVENT
from entityfeed._redact import redact_for_log
from entityfeed._retry import RetryPolicy, retry_async
from entityfeed.config import HassConfig
from entityfeed.exceptions import (
    EntityFeedApiError,
    EntityFeedAuthenticationError,
    EntityFeedError,
    EntityFeedTransportError,
)
from entityfeed.models.state import StateChangedEvent

_logger = logging.getLogger(__name__)


class HassWebSocketFeed:
    """Delivers every ``state_changed`` event to *on_event* on the event loop."""

    def __init__(
        self,
        *,
        config: HassConfig,
        http_session: aiohttp.ClientSession,
        on_event: Callable[[StateChangedEvent], None],
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._on_event = on_event
        self._retry_policy = retry_policy or RetryPolicy.from_config(config)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._next_id = 1
        self._subscription_id: int | None = None
        self._subscribed = False
        self._lock = asyncio.Lock()
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed and self._subscribed

    async def ensure_connected(self) -> None:
        """Connect and subscribe unless already connected."""
        async with self._lock:
            if self.is_connected:
                return
            self._closing = False
            await self._open()

    async def close(self) -> None:
        self._closing = True
        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None:
            reconnect.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect
        await self._teardown()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _open(self) -> None:
        url = self._config.websocket_url
        _logger.debug("WebSocket connect requested url=%s", url)
        try:
            ws = await self._http.ws_connect(url, heartbeat=30.0)
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise EntityFeedTransportError(f"WebSocket connect failed: {exc}", endpoint=url) from exc

        try:
            await self._authenticate(ws)
        except BaseException:
            await ws.close()
            raise

        self._ws = ws
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))
        # events can arrive right behind the result frame
        self._subscription_id = self._allocate_id()
        try:
            await self._command(
                {"type": "subscribe_events", "event_type": STATE_CHANGED_EVENT},
                message_id=self._subscription_id,
            )
        except BaseException:
            await self._teardown()
            raise
        self._subscribed = True
        _logger.debug("WebSocket subscribed to %s id=%s", STATE_CHANGED_EVENT, self._subscription_id)

    async def _authenticate(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        timeout = self._config.request_timeout
        try:
            hello = await ws.receive_json(timeout=timeout)
            if hello.get("type") != "auth_required":
                raise EntityFeedTransportError(f"Unexpected WebSocket greeting: {hello.get('type')!r}")
            auth = {"type": "auth", "access_token": self._config.access_token}
            _logger.debug("WebSocket send %s", redact_for_log(auth))
            await ws.send_json(auth)
            reply = await ws.receive_json(timeout=timeout)
        except (aiohttp.ClientError, TimeoutError, TypeError, ValueError) as exc:
            raise EntityFeedTransportError(f"WebSocket handshake failed: {exc}") from exc

        if reply.get("type") == "auth_invalid":
            raise EntityFeedAuthenticationError(
                f"WebSocket authentication rejected: {reply.get('message', '')}",
                code="auth_invalid",
            )
        if reply.get("type") != "auth_ok":
            raise EntityFeedTransportError(f"Unexpected WebSocket auth reply: {reply.get('type')!r}")
        _logger.debug("WebSocket authenticated ha_version=%s", reply.get("ha_version"))

    async def _teardown(self) -> None:
        ws = self._ws
        reader = self._reader
        self._ws = None
        self._reader = None
        self._subscription_id = None
        self._subscribed = False
        self._fail_pending(EntityFeedTransportError("WebSocket closed"))
        if ws is not None and not ws.closed:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

    def _fail_pending(self, exc: Exception) -> None:
        pending = self._pending
        self._pending = {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    def _allocate_id(self) -> int:
        message_id = self._next_id
        self._next_id += 1
        return message_id

    async def _command(self, payload: dict[str, Any], *, message_id: int | None = None) -> dict[str, Any]:
        """Send a command and wait for its ``result`` message."""
        ws = self._ws
        if ws is None or ws.closed:
            raise EntityFeedTransportError("WebSocket is not connected")
        if message_id is None:
            message_id = self._allocate_id()
        message = {"id": message_id, **payload}
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            _logger.debug("WebSocket send %s", redact_for_log(message))
            await ws.send_json(message)
            result = await asyncio.wait_for(future, self._config.request_timeout)
        except TimeoutError as exc:
            raise EntityFeedTransportError(f"WebSocket command {payload.get('type')!r} timed out") from exc
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise EntityFeedTransportError(f"WebSocket send failed: {exc}") from exc
        finally:
            self._pending.pop(message_id, None)

        if not result.get("success", False):
            error = result.get("error") or {}
            raise EntityFeedApiError(
                f"WebSocket command {payload.get('type')!r} failed: {error.get('message', '')}",
                code=str(error.get("code", "")),
                endpoint=str(payload.get("type", "")),
            )
        return result

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        payload = json.loads(msg.data)
                    except json.JSONDecodeError:
                        _logger.debug("WebSocket frame is not JSON", exc_info=True)
                        continue
                    self.handle_payload(payload)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            if self._ws is ws:
                self._on_disconnect()

    def handle_payload(self, payload: Any) -> None:
        """Route one decoded frame (a message or a list of messages)."""
        messages = payload if isinstance(payload, list) else [payload]
        for message in messages:
            if isinstance(message, dict):
                self._handle_message(message)

    def _handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        msg_id = message.get("id")

        if msg_type == "result" and isinstance(msg_id, int):
            future = self._pending.get(msg_id)
            if future is not None and not future.done():
                future.set_result(message)
            return

        if msg_type != "event" or msg_id != self._subscription_id:
            return

        event = message.get("event")
        if not isinstance(event, dict) or event.get("event_type") != STATE_CHANGED_EVENT:
            return
        data = event.get("data")
        if not isinstance(data, dict):
            return
        try:
            parsed = StateChangedEvent.model_validate(data)
        except ValidationError:
            _logger.debug("Unparseable state_changed payload", exc_info=True)
            return
        try:
            self._on_event(parsed)
        except Exception:
            _logger.warning("state_changed handler failed for %s", parsed.entity_id, exc_info=True)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _on_disconnect(self) -> None:
        self._ws = None
        self._subscription_id = None
        self._subscribed = False
        self._fail_pending(EntityFeedTransportError("WebSocket connection lost"))
        if self._closing:
            return
        _logger.warning("WebSocket connection lost; reconnecting")
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        def _log_retry(attempt: int, exc: BaseException, delay: float) -> None:
            _logger.debug("WebSocket reconnect attempt=%d failed (%s); next in %.1fs", attempt, exc, delay)

        async def _attempt() -> None:
            async with self._lock:
                if self._closing or self.is_connected:
                    return
                await self._open()

        try:
            await retry_async(
                _attempt,
                self._retry_policy,
                retry_on=(EntityFeedTransportError,),
                on_retry=_log_retry,
            )
        except EntityFeedError:
            _logger.warning(
                "WebSocket reconnect gave up after %d attempts; sources keep their buffered data",
                self._retry_policy.attempts,
                exc_info=True,
            )
