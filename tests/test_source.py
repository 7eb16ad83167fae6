from __future__ import annotations

import asyncio
import logging
from itertools import pairwise

import pytest
from conftest import NOW_MS, FakeHost, make_state

from entityfeed._retry import RetryPolicy
from entityfeed.exceptions import EntityFeedTransportError, PipelineClosedError, SourceConfigError
from entityfeed.models.snapshot import SourceUpdate
from entityfeed.source import DataSource, format_value

ENTITY = "sensor.cpu_temperature"


def _source(host: FakeHost, **config: object) -> DataSource:
    record: dict[str, object] = {"entity": ENTITY}
    record.update(config)
    return DataSource("cpu", record, host, clock=lambda: NOW_MS)


def _collect(source: DataSource) -> list[SourceUpdate]:
    updates: list[SourceUpdate] = []
    source.subscribe(updates.append)
    return updates


def test_invalid_config_raises_source_config_error(host: FakeHost) -> None:
    with pytest.raises(SourceConfigError) as excinfo:
        DataSource("broken", {"attribute": "temperature"}, host)
    assert excinfo.value.source_name == "broken"


def test_policy_resolution_from_camel_case(host: FakeHost) -> None:
    source = _source(host, minEmitMs=250, coalesceMs=120, maxDelayMs=800)
    assert source.policy.min_emit_ms == 250
    assert source.policy.coalesce_ms == 120
    assert source.policy.max_delay_ms == 800
    assert source.buffer.capacity == 600


@pytest.mark.asyncio
async def test_burst_is_coalesced_into_one_emission(host: FakeHost) -> None:
    source = _source(host, minEmitMs=50, coalesceMs=30, maxDelayMs=500)
    updates = _collect(source)
    assert await source.start() is True

    for value in range(10):
        host.emit(ENTITY, value)
    await asyncio.sleep(0.15)

    assert len(updates) == 1
    assert updates[0].value == 9.0
    assert source.get_stats().coalesced == 9


@pytest.mark.asyncio
async def test_max_delay_bounds_a_continuous_stream(host: FakeHost) -> None:
    source = _source(host, minEmitMs=50, coalesceMs=60, maxDelayMs=100)
    loop = asyncio.get_running_loop()
    emitted_at: list[float] = []
    source.subscribe(lambda _update: emitted_at.append(loop.time()))
    await source.start()

    started = loop.time()
    for value in range(150):
        host.emit(ENTITY, value)
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.15)

    # the coalesce timer keeps being restarted, so the stream is paced by max-delay flushes
    assert len(emitted_at) >= 10
    assert emitted_at[0] - started <= 0.1 + 0.05
    assert max(b - a for a, b in pairwise(emitted_at)) <= 0.1 + 0.05
    assert source.get_stats().max_delay_flushes >= 10


@pytest.mark.asyncio
async def test_twenty_events_in_a_hundred_ms_are_coalesced(host: FakeHost) -> None:
    source = _source(host, minEmitMs=100, coalesceMs=30)
    updates = _collect(source)
    await source.start()

    for value in range(20):
        host.emit(ENTITY, value)
        await asyncio.sleep(0.005)
    await asyncio.sleep(0.3)

    assert 1 <= len(updates) < 10
    assert updates[-1].value == 19.0


@pytest.mark.asyncio
async def test_min_emit_spacing_defers_flush(host: FakeHost) -> None:
    source = _source(host, minEmitMs=200, coalesceMs=20, maxDelayMs=200)
    loop = asyncio.get_running_loop()
    emitted_at: list[float] = []
    source.subscribe(lambda _update: emitted_at.append(loop.time()))
    await source.start()

    host.emit(ENTITY, 1)
    await asyncio.sleep(0.06)
    host.emit(ENTITY, 2)
    await asyncio.sleep(0.3)

    assert len(emitted_at) == 2
    assert emitted_at[1] - emitted_at[0] >= 0.2 - 0.002
    assert source.get_stats().throttled >= 1
    assert source.last() is not None and source.last().value == 2.0  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_same_value_is_skipped_when_disabled(host: FakeHost) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40, emitOnSameValue=False)
    updates = _collect(source)
    await source.start()

    host.emit(ENTITY, 5)
    await asyncio.sleep(0.06)
    host.emit(ENTITY, 5)
    await asyncio.sleep(0.06)
    host.emit(ENTITY, 6)
    await asyncio.sleep(0.06)

    assert [update.value for update in updates] == [5.0, 6.0]
    assert source.get_stats().skipped_same_value == 1


@pytest.mark.asyncio
async def test_same_value_is_emitted_by_default(host: FakeHost) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    updates = _collect(source)
    await source.start()

    host.emit(ENTITY, 5)
    await asyncio.sleep(0.06)
    host.emit(ENTITY, 5)
    await asyncio.sleep(0.06)

    assert [update.value for update in updates] == [5.0, 5.0]


@pytest.mark.asyncio
async def test_events_for_other_entities_are_ignored(host: FakeHost) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    updates = _collect(source)
    await source.start()

    host.emit("sensor.gpu_temperature", 55, deliver_to=ENTITY)
    await asyncio.sleep(0.06)

    assert updates == []
    assert source.get_stats().filtered == 1
    assert len(source.buffer) == 0


@pytest.mark.asyncio
async def test_non_numeric_states_are_dropped(host: FakeHost) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    updates = _collect(source)
    await source.start()

    for state in ("unavailable", "unknown", "warm", "nan", None):
        host.emit(ENTITY, state)
    await asyncio.sleep(0.06)

    assert updates == []
    assert source.get_stats().invalid == 5


@pytest.mark.asyncio
async def test_destroy_cancels_pending_timers(host: FakeHost) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=30, maxDelayMs=60)
    updates = _collect(source)
    await source.start()

    host.emit(ENTITY, 1)
    assert source.get_stats().pending is True
    source.destroy()
    source.destroy()

    assert source._coalesce_handle is None  # type: ignore[attr-defined]
    assert source._max_delay_handle is None  # type: ignore[attr-defined]
    assert host.subscriber_count(ENTITY) == 0
    await asyncio.sleep(0.1)
    assert updates == []

    source.on_raw_event(NOW_MS, 3.0)
    assert source.get_stats().received == 1
    with pytest.raises(PipelineClosedError):
        source.subscribe(lambda _update: None)
    with pytest.raises(PipelineClosedError):
        await source.start()


@pytest.mark.asyncio
async def test_destroy_from_subscriber_stops_fan_out(host: FakeHost) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    calls: list[str] = []

    def first(_update: SourceUpdate) -> None:
        calls.append("first")
        source.destroy()

    source.subscribe(first)
    source.subscribe(lambda _update: calls.append("second"))
    await source.start()

    host.emit(ENTITY, 1)
    await asyncio.sleep(0.06)

    assert calls == ["first"]
    assert source.destroyed


@pytest.mark.asyncio
async def test_subscriber_errors_do_not_stop_fan_out(host: FakeHost, caplog: pytest.LogCaptureFixture) -> None:
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)

    def broken(_update: SourceUpdate) -> None:
        raise RuntimeError("boom")

    source.subscribe(broken)
    updates = _collect(source)
    await source.start()

    with caplog.at_level(logging.WARNING, logger="entityfeed.source"):
        host.emit(ENTITY, 1)
        await asyncio.sleep(0.06)

    assert [update.value for update in updates] == [1.0]
    assert "Subscriber of cpu failed" in caplog.text


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(host: FakeHost) -> None:
    source = _source(host)
    unsubscribe = source.subscribe(lambda _update: None)
    assert source.subscriber_count == 1
    unsubscribe()
    unsubscribe()
    assert source.subscriber_count == 0


@pytest.mark.asyncio
async def test_history_preload_is_chronological(host: FakeHost) -> None:
    hour_ms = 3600 * 1000
    host.history = [
        make_state(ENTITY, "71.0", changed_ms=NOW_MS - 1 * hour_ms),
        make_state(ENTITY, "70.0", changed_ms=NOW_MS - 3 * hour_ms),
        make_state(ENTITY, "unavailable", changed_ms=NOW_MS - 2 * hour_ms),
        make_state(ENTITY, "69.0", changed_ms=NOW_MS - 5 * hour_ms),
        make_state(ENTITY, "50.0", changed_ms=NOW_MS - 9 * hour_ms),
    ]
    source = _source(host, history={"preload": True, "hours": 6})
    updates = _collect(source)

    assert await source.start() is True

    timestamps, values = source.get_arrays()
    assert values == [69.0, 70.0, 71.0]
    assert timestamps == sorted(timestamps)
    assert updates == []
    assert source.get_stats().history_loaded == 3

    entity_id, start, end, attributes = host.history_calls[0]
    assert entity_id == ENTITY
    assert attributes is False
    assert (end - start).total_seconds() == 6 * 3600


@pytest.mark.asyncio
async def test_history_hours_are_clamped(host: FakeHost) -> None:
    source = _source(host, history={"enabled": True, "hours": 500}, attribute="temperature")
    await source.start()

    _entity_id, start, end, attributes = host.history_calls[0]
    assert (end - start).total_seconds() == 168 * 3600
    assert attributes is True


@pytest.mark.asyncio
async def test_history_failure_does_not_block_live(host: FakeHost) -> None:
    host.history_error = EntityFeedTransportError("HTTP 500 from /api/history/period", status_code=500)
    source = _source(host, history={"preload": True})

    assert await source.start() is True
    assert source.live
    assert host.subscriber_count(ENTITY) == 1


@pytest.mark.asyncio
async def test_current_state_seeds_buffer_without_emission(host: FakeHost) -> None:
    host.current[ENTITY] = make_state(ENTITY, "42.5", changed_ms=NOW_MS - 1000, attributes={"unit": "°C"})
    source = _source(host)
    updates = _collect(source)

    await source.start()

    snapshot = source.get_entity()
    assert snapshot is not None
    assert snapshot.value == 42.5
    assert snapshot.state == "42.5"
    assert snapshot.timestamp == NOW_MS - 1000
    assert snapshot.attributes == {"unit": "°C"}
    assert updates == []


@pytest.mark.asyncio
async def test_older_live_timestamp_is_raised_to_newest_sample(host: FakeHost) -> None:
    host.current[ENTITY] = make_state(ENTITY, "40", changed_ms=NOW_MS)
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    updates = _collect(source)
    await source.start()

    host.emit(ENTITY, "41", changed_ms=NOW_MS - 5000)
    await asyncio.sleep(0.06)

    assert updates[0].timestamp == NOW_MS
    timestamps, _values = source.get_arrays()
    assert timestamps == [NOW_MS, NOW_MS]


@pytest.mark.asyncio
async def test_attribute_tracking_uses_last_updated(host: FakeHost) -> None:
    source = _source(host, attribute="temperature", minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    updates = _collect(source)
    await source.start()

    host.emit(
        ENTITY,
        "heat",
        changed_ms=NOW_MS - 60_000,
        updated_ms=NOW_MS - 1000,
        attributes={"temperature": 21.5},
    )
    await asyncio.sleep(0.06)

    assert updates[0].value == 21.5
    assert updates[0].timestamp == NOW_MS - 1000


@pytest.mark.asyncio
async def test_live_failure_is_retried_while_buffered_data_stays_usable(
    host: FakeHost,
    fast_retry: RetryPolicy,
) -> None:
    host.subscribe_failures = 1
    host.current[ENTITY] = make_state(ENTITY, "30", changed_ms=NOW_MS)
    source = DataSource("cpu", {"entity": ENTITY}, host, clock=lambda: NOW_MS, retry_policy=fast_retry)

    assert await source.start() is False
    assert not source.live
    assert source.get_entity() is not None

    await asyncio.sleep(0.1)

    assert source.live
    assert host.subscribe_calls == 2
    assert source.get_stats().live_failures == 1
    source.destroy()


@pytest.mark.asyncio
async def test_live_retry_gives_up_after_bounded_attempts(
    host: FakeHost,
    fast_retry: RetryPolicy,
    caplog: pytest.LogCaptureFixture,
) -> None:
    host.subscribe_failures = 100
    source = DataSource("cpu", {"entity": ENTITY}, host, clock=lambda: NOW_MS, retry_policy=fast_retry)

    with caplog.at_level(logging.WARNING, logger="entityfeed.source"):
        assert await source.start() is False
        await asyncio.sleep(0.2)

    assert not source.live
    assert host.subscribe_calls == fast_retry.attempts
    assert "Giving up on live updates" in caplog.text


def test_format_value() -> None:
    assert format_value(74.0) == "74"
    assert format_value(76.5) == "76.5"
    assert format_value(-3.0) == "-3"


@pytest.mark.asyncio
async def test_restart_keeps_buffered_history_in_order(host: FakeHost) -> None:
    hour_ms = 3600 * 1000
    host.history = [
        make_state(ENTITY, "69.0", changed_ms=NOW_MS - 3 * hour_ms),
        make_state(ENTITY, "70.0", changed_ms=NOW_MS - 2 * hour_ms),
    ]
    host.current[ENTITY] = make_state(ENTITY, "71.0", changed_ms=NOW_MS - 1 * hour_ms)
    source = _source(host, history={"preload": True})

    assert await source.start() is True
    source.stop()
    assert await source.start() is True

    timestamps, values = source.get_arrays()
    assert values == [69.0, 70.0, 71.0]
    assert timestamps == [NOW_MS - 3 * hour_ms, NOW_MS - 2 * hour_ms, NOW_MS - 1 * hour_ms]
    assert source.get_stats().history_loaded == 2
    assert len(host.history_calls) == 2


@pytest.mark.asyncio
async def test_restart_appends_only_newer_history(host: FakeHost) -> None:
    hour_ms = 3600 * 1000
    host.history = [make_state(ENTITY, "69.0", changed_ms=NOW_MS - 3 * hour_ms)]
    source = _source(host, history={"preload": True})
    await source.start()
    source.stop()

    host.history.append(make_state(ENTITY, "72.0", changed_ms=NOW_MS - 1 * hour_ms))
    await source.start()

    _timestamps, values = source.get_arrays()
    assert values == [69.0, 72.0]


@pytest.mark.asyncio
async def test_dropped_state_does_not_leak_into_snapshot(host: FakeHost) -> None:
    host.current[ENTITY] = make_state(ENTITY, "42.5", changed_ms=NOW_MS - 1000, attributes={"unit": "°C"})
    source = _source(host, minEmitMs=10, coalesceMs=20, maxDelayMs=40)
    await source.start()

    host.emit(ENTITY, "unavailable", changed_ms=NOW_MS, attributes={"restored": True})
    await asyncio.sleep(0.06)

    snapshot = source.get_entity()
    assert snapshot is not None
    assert snapshot.value == 42.5
    assert snapshot.attributes == {"unit": "°C"}
    assert snapshot.last_changed is not None
    assert int(snapshot.last_changed.timestamp() * 1000) == NOW_MS - 1000


@pytest.mark.asyncio
async def test_stop_during_live_handshake_reports_not_live(host: FakeHost) -> None:
    source = _source(host)
    subscribe = host.subscribe_entity

    async def subscribe_then_stop(entity_id, callback):  # type: ignore[no-untyped-def]
        unsubscribe = await subscribe(entity_id, callback)
        source.stop()
        return unsubscribe

    host.subscribe_entity = subscribe_then_stop  # type: ignore[method-assign]

    assert await source.start() is False
    assert not source.live
    assert host.subscriber_count(ENTITY) == 0
