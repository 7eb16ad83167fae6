from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from entityfeed._websocket import HassWebSocketFeed
from entityfeed.client import HassClient, parse_history_response
from entityfeed.config import HassConfig
from entityfeed.exceptions import EntityFeedAuthenticationError, EntityFeedTransportError
from entityfeed.models.state import StateChangedEvent

TOKEN = "good-token"
ENTITY = "sensor.cpu_temperature"

_STATE = {
    "entity_id": ENTITY,
    "state": "48.2",
    "attributes": {"unit_of_measurement": "°C"},
    "last_changed": "2024-05-01T12:00:00+00:00",
    "last_updated": "2024-05-01T12:00:00+00:00",
}

_HISTORY = [
    [
        {**_STATE, "state": "47.0", "last_changed": "2024-05-01T11:00:00+00:00"},
        {"state": "47.5", "last_changed": "2024-05-01T11:30:00+00:00"},
        {"state": "48.2", "last_changed": "2024-05-01T12:00:00+00:00"},
    ]
]


def _authorized(request: web.Request) -> bool:
    return request.headers.get("Authorization") == f"Bearer {TOKEN}"


async def _states(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"message": "Unauthorized"}, status=401)
    if request.match_info["entity_id"] != ENTITY:
        return web.json_response({"message": "Entity not found."}, status=404)
    return web.json_response(_STATE)


async def _history(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"message": "Unauthorized"}, status=401)
    request.app["history_requests"].append((request.match_info["start"], dict(request.query)))
    return web.json_response(_HISTORY)


async def _broken(_request: web.Request) -> web.Response:
    return web.Response(status=500, text="boom")


async def _websocket(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    await ws.send_json({"type": "auth_required", "ha_version": "2024.5.0"})
    auth = await ws.receive_json()
    if auth.get("access_token") != TOKEN:
        await ws.send_json({"type": "auth_invalid", "message": "Invalid access token or password"})
        await ws.close()
        return ws
    await ws.send_json({"type": "auth_ok", "ha_version": "2024.5.0"})

    subscribe = await ws.receive_json()
    request.app["ws_commands"].append(subscribe)
    await ws.send_json({"id": subscribe["id"], "type": "result", "success": True, "result": None})
    for entity_id, state in ((ENTITY, "49.0"), ("sensor.other", "1"), (ENTITY, "49.5")):
        await ws.send_json(
            {
                "id": subscribe["id"],
                "type": "event",
                "event": {
                    "event_type": "state_changed",
                    "data": {
                        "entity_id": entity_id,
                        "old_state": None,
                        "new_state": {**_STATE, "entity_id": entity_id, "state": state},
                    },
                },
            }
        )
    async for _msg in ws:
        pass
    return ws


def _app() -> web.Application:
    app = web.Application()
    app["history_requests"] = []
    app["ws_commands"] = []
    app.router.add_get("/api/states/{entity_id}", _states)
    app.router.add_get("/api/history/period/{start}", _history)
    app.router.add_get("/api/broken", _broken)
    app.router.add_get("/api/websocket", _websocket)
    return app


@contextlib.asynccontextmanager
async def _serve(app: web.Application) -> AsyncIterator[TestServer]:
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def _config(server: TestServer, token: str = TOKEN) -> HassConfig:
    return HassConfig(
        access_token=token,
        base_url=str(server.make_url("/")),
        request_timeout=5.0,
        reconnect_attempts=1,
    )


@pytest.mark.asyncio
async def test_get_state_and_missing_entity() -> None:
    async with _serve(_app()) as server, HassClient(_config(server)) as client:
        state = await client.get_state(ENTITY)
        assert state is not None
        assert state.state == "48.2"
        assert state.attributes["unit_of_measurement"] == "°C"

        assert await client.get_state("sensor.missing") is None


@pytest.mark.asyncio
async def test_rejected_token_raises_authentication_error() -> None:
    async with _serve(_app()) as server, HassClient(_config(server, token="wrong")) as client:
        with pytest.raises(EntityFeedAuthenticationError):
            await client.get_state(ENTITY)


@pytest.mark.asyncio
async def test_server_error_raises_transport_error() -> None:
    async with _serve(_app()) as server, HassClient(_config(server)) as client:
        transport = client._require_transport()  # type: ignore[attr-defined]
        with pytest.raises(EntityFeedTransportError) as excinfo:
            await transport.get_json("/api/broken")
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_fetch_history_requests_minimal_response() -> None:
    app = _app()
    end = datetime(2024, 5, 1, 12, 30, tzinfo=UTC)
    async with _serve(app) as server, HassClient(_config(server)) as client:
        records = await client.fetch_history(ENTITY, end - timedelta(hours=6), end)

    assert [record.state for record in records] == ["47.0", "47.5", "48.2"]
    assert all(record.entity_id == ENTITY for record in records)

    start, query = app["history_requests"][0]
    assert start == "2024-05-01T06:30:00+00:00"
    assert query["filter_entity_id"] == ENTITY
    assert query["end_time"] == end.isoformat()
    assert "minimal_response" in query
    assert "no_attributes" in query


@pytest.mark.asyncio
async def test_fetch_history_with_attributes_requests_full_records() -> None:
    app = _app()
    end = datetime(2024, 5, 1, 12, 30, tzinfo=UTC)
    async with _serve(app) as server, HassClient(_config(server)) as client:
        await client.fetch_history(ENTITY, end - timedelta(hours=1), end, attributes=True)

    _start, query = app["history_requests"][0]
    assert "minimal_response" not in query
    assert "no_attributes" not in query


def test_parse_history_response_skips_other_entities_and_garbage() -> None:
    payload: list[Any] = [
        [{"entity_id": "sensor.other", "state": "1"}, {"state": "2"}],
        [{"entity_id": ENTITY, "state": "5"}, "garbage", {"state": "6"}],
        "not-a-list",
    ]
    records = parse_history_response(payload, ENTITY)
    assert [record.state for record in records] == ["5", "6"]
    assert parse_history_response(None, ENTITY) == []


@pytest.mark.asyncio
async def test_websocket_feed_authenticates_and_delivers_events() -> None:
    app = _app()
    received: list[StateChangedEvent] = []
    done = asyncio.Event()

    def on_event(event: StateChangedEvent) -> None:
        received.append(event)
        if len(received) == 3:
            done.set()

    async with _serve(app) as server, aiohttp.ClientSession() as session:
        feed = HassWebSocketFeed(config=_config(server), http_session=session, on_event=on_event)
        await feed.ensure_connected()
        assert feed.is_connected
        await asyncio.wait_for(done.wait(), 5.0)
        await feed.close()
        assert not feed.is_connected

    assert app["ws_commands"] == [{"id": 1, "type": "subscribe_events", "event_type": "state_changed"}]
    assert [event.entity_id for event in received] == [ENTITY, "sensor.other", ENTITY]
    assert received[0].new_state is not None and received[0].new_state.state == "49.0"


@pytest.mark.asyncio
async def test_websocket_feed_rejects_bad_token() -> None:
    async with _serve(_app()) as server, aiohttp.ClientSession() as session:
        feed = HassWebSocketFeed(config=_config(server, token="wrong"), http_session=session, on_event=lambda _e: None)
        with pytest.raises(EntityFeedAuthenticationError):
            await feed.ensure_connected()
        assert not feed.is_connected


@pytest.mark.asyncio
async def test_client_dispatches_events_by_entity() -> None:
    received: list[str] = []
    done = asyncio.Event()

    def on_event(event: StateChangedEvent) -> None:
        assert event.new_state is not None
        received.append(event.new_state.state)
        if len(received) == 2:
            done.set()

    async with _serve(_app()) as server, HassClient(_config(server)) as client:
        unsubscribe = await client.subscribe_entity(ENTITY, on_event)
        assert client.live_connected
        await asyncio.wait_for(done.wait(), 5.0)
        unsubscribe()
        unsubscribe()

    assert received == ["49.0", "49.5"]


@pytest.mark.asyncio
async def test_handle_payload_routes_results_and_ignores_noise(caplog: pytest.LogCaptureFixture) -> None:
    events: list[StateChangedEvent] = []

    def on_event(event: StateChangedEvent) -> None:
        if event.entity_id == "sensor.explode":
            raise RuntimeError("handler bug")
        events.append(event)

    feed = HassWebSocketFeed(
        config=HassConfig(access_token=TOKEN),
        http_session=None,  # type: ignore[arg-type]
        on_event=on_event,
    )
    feed._subscription_id = 7  # type: ignore[attr-defined]
    future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
    feed._pending[3] = future  # type: ignore[attr-defined]

    def event(entity_id: str, *, sub_id: int = 7) -> dict[str, Any]:
        return {
            "id": sub_id,
            "type": "event",
            "event": {"event_type": "state_changed", "data": {"entity_id": entity_id, "new_state": _STATE}},
        }

    with caplog.at_level(logging.WARNING, logger="entityfeed._websocket"):
        feed.handle_payload(
            [
                {"id": 3, "type": "result", "success": True, "result": None},
                event(ENTITY),
                event(ENTITY, sub_id=99),
                {"id": 7, "type": "event", "event": {"event_type": "call_service", "data": {}}},
                {"id": 7, "type": "event", "event": {"event_type": "state_changed", "data": {"entity_id": ""}}},
                event("sensor.explode"),
                "garbage",
            ]
        )
        feed.handle_payload(event("sensor.single"))

    assert future.result()["success"] is True
    assert [e.entity_id for e in events] == [ENTITY, "sensor.single"]
    assert "state_changed handler failed for sensor.explode" in caplog.text
