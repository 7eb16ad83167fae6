"""Per-entity data source: live feed, coalescing, throttling and buffering.

A :class:`DataSource` owns one :class:`~entityfeed.buffer.RollingBuffer`
and turns a bursty stream of host state changes into a bounded stream of
emissions:

- events arriving within ``coalesce_ms`` of each other collapse into one
  pending update (last value wins)
- a pending update is never withheld longer than ``max_delay_ms``
- consecutive flushes are at least ``min_emit_ms`` apart

Timers are ``loop.call_later`` handles on the running event loop; every
callback runs on that loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from entityfeed._retry import RetryPolicy, retry_async
from entityfeed.buffer import RollingBuffer
from entityfeed.client import HostPlatform
from entityfeed.exceptions import EntityFeedError, EntityFeedTransportError, PipelineClosedError
from entityfeed.ingestion.normalize import (
    extract_timestamp_ms,
    extract_value,
    now_ms,
    samples_from_history,
)
from entityfeed.models.sample import Sample
from entityfeed.models.snapshot import EntitySnapshot, SourceStats, SourceUpdate
from entityfeed.models.source_config import SourceConfig, TimingPolicy
from entityfeed.models.state import EntityState, StateChangedEvent

_logger = logging.getLogger(__name__)

SourceCallback = Callable[[SourceUpdate], None]

_COALESCE = "coalesce"
_MAX_DELAY = "max_delay"


def format_value(value: float) -> str:
    """Render a committed value the way Home Assistant renders states."""
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


@dataclasses.dataclass(slots=True)
class _Pending:
    timestamp: int
    value: float
    state: EntityState | None


@dataclasses.dataclass(slots=True)
class _Counters:
    received: int = 0
    invalid: int = 0
    filtered: int = 0
    skipped_same_value: int = 0
    coalesced: int = 0
    throttled: int = 0
    emits: int = 0
    max_delay_flushes: int = 0
    history_loaded: int = 0
    live_failures: int = 0


class DataSource:
    """Coalescing, rate-limited time series of one host entity.

    Parameters
    ----------
    name : str
        Source name, unique within a manager.
    config : SourceConfig or Mapping
        Source record.  Mappings are validated immediately.
    host : HostPlatform
        Provides history, current state and the live subscription.
    clock : callable
        Wall clock in epoch milliseconds.  Used for history bounds,
        window slicing and events without a host timestamp.
    retry_policy : RetryPolicy or None
        Backoff for re-establishing a failed live subscription.

    Raises
    ------
    SourceConfigError
        If *config* is malformed.
    """

    def __init__(
        self,
        name: str,
        config: SourceConfig | Mapping[str, Any],
        host: HostPlatform,
        *,
        clock: Callable[[], int] = now_ms,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._name = name
        self._config = SourceConfig.from_mapping(config, source_name=name)
        self._policy: TimingPolicy = self._config.timing_policy()
        self._host = host
        self._clock = clock
        self._retry_policy = retry_policy or RetryPolicy()
        self._buffer = RollingBuffer(self._config.buffer_capacity, clock=clock)

        self._subscribers: list[SourceCallback] = []
        self._pending: _Pending | None = None
        self._coalesce_handle: asyncio.TimerHandle | None = None
        self._max_delay_handle: asyncio.TimerHandle | None = None
        self._last_flush_at: float | None = None
        self._current: SourceUpdate | None = None
        self._latest_state: EntityState | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe_live: Callable[[], None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._started = False
        self._destroyed = False
        self._counters = _Counters()

    def __repr__(self) -> str:
        return f"DataSource(name={self._name!r}, entity_id={self.entity_id!r}, samples={len(self._buffer)})"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def entity_id(self) -> str:
        return self._config.entity

    @property
    def config(self) -> SourceConfig:
        return self._config

    @property
    def policy(self) -> TimingPolicy:
        return self._policy

    @property
    def buffer(self) -> RollingBuffer:
        return self._buffer

    @property
    def started(self) -> bool:
        return self._started

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def live(self) -> bool:
        """Whether the live host subscription is currently established."""
        return self._unsubscribe_live is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Preload history, seed the current state and go live.

        Returns ``True`` once the live subscription is up.  When it can not
        be established the source keeps its buffered data, retries in the
        background and ``False`` is returned.  Transport failures are
        logged, never raised.

        Raises
        ------
        PipelineClosedError
            If the source was destroyed.
        """
        if self._destroyed:
            raise PipelineClosedError(f"Data source {self._name!r} is destroyed")
        if self._started:
            return self.live
        self._started = True
        self._loop = asyncio.get_running_loop()

        if self._config.preload_history:
            await self._preload_history()
        await self._seed_current_state()

        if not self._started:
            return False
        try:
            live = await self._subscribe_live()
        except EntityFeedError as exc:
            self._counters.live_failures += 1
            _logger.warning("Live subscription for %s (%s) failed: %s", self._name, self.entity_id, exc)
            if isinstance(exc, EntityFeedTransportError):
                self._schedule_live_retry()
            return False
        if live:
            _logger.debug("Data source %s live on %s", self._name, self.entity_id)
        return live

    def stop(self) -> None:
        """Drop the live subscription, pending update and timers.

        Buffered data and subscribers are kept.  Safe to call repeatedly
        and from inside subscriber callbacks.
        """
        self._started = False
        self._cancel_timers()
        self._pending = None
        retry_task = self._retry_task
        self._retry_task = None
        if retry_task is not None and not retry_task.done():
            retry_task.cancel()
        unsubscribe = self._unsubscribe_live
        self._unsubscribe_live = None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                _logger.warning("Unsubscribing %s from the host failed", self.entity_id, exc_info=True)

    def destroy(self) -> None:
        """Stop the source for good and release buffer and subscribers."""
        if self._destroyed:
            return
        self.stop()
        self._destroyed = True
        self._subscribers.clear()
        self._buffer.clear()
        self._current = None
        self._latest_state = None
        _logger.debug("Data source %s destroyed", self._name)

    # ------------------------------------------------------------------
    # Startup stages
    # ------------------------------------------------------------------

    async def _preload_history(self) -> None:
        history = self._config.history
        hours = history.hours if history is not None else 0.0
        end_ms = self._clock()
        start_ms = end_ms - int(hours * 3600 * 1000)
        end = datetime.fromtimestamp(end_ms / 1000, tz=UTC)
        start = end - timedelta(hours=hours)
        try:
            records = await self._host.fetch_history(
                self.entity_id,
                start,
                end,
                attributes=self._config.attribute is not None,
            )
        except EntityFeedError as exc:
            _logger.warning("History preload for %s failed: %s", self.entity_id, exc)
            return
        if self._destroyed:
            return

        samples = samples_from_history(
            records,
            attribute=self._config.attribute,
            start_ms=start_ms,
            end_ms=end_ms,
        )
        # on a restart the buffer already holds the older part of the period
        samples = [sample for sample in samples if self._is_newer(sample.timestamp)]
        for sample in samples:
            self._commit(sample.timestamp, sample.value, None)
        self._counters.history_loaded += len(samples)
        _logger.debug(
            "History preload for %s: %d records, %d samples buffered",
            self.entity_id,
            len(records),
            len(samples),
        )

    async def _seed_current_state(self) -> None:
        try:
            state = await self._host.get_state(self.entity_id)
        except EntityFeedError as exc:
            _logger.debug("Current state of %s unavailable: %s", self.entity_id, exc)
            return
        if state is None or self._destroyed:
            return
        value = extract_value(state, self._config.attribute)
        if value is None:
            return
        timestamp = extract_timestamp_ms(state, self._config.attribute) or self._clock()
        if self._is_newer(timestamp):
            self._commit(timestamp, value, state)

    async def _subscribe_live(self) -> bool:
        unsubscribe = await self._host.subscribe_entity(self.entity_id, self.handle_event)
        if not self._started or self._destroyed:
            # stopped while the host was subscribing
            unsubscribe()
            return False
        self._unsubscribe_live = unsubscribe
        return True

    def _is_newer(self, timestamp: int) -> bool:
        last = self._buffer.last()
        return last is None or timestamp > last.timestamp

    def _schedule_live_retry(self) -> None:
        policy = self._retry_policy
        if policy.attempts <= 1 or self._loop is None:
            return
        if self._retry_task is None or self._retry_task.done():
            self._retry_task = self._loop.create_task(self._retry_live())

    async def _retry_live(self) -> None:
        """Keep retrying the live subscription after the first attempt failed."""
        policy = self._retry_policy
        remaining = dataclasses.replace(
            policy,
            attempts=policy.attempts - 1,
            base_delay=min(policy.base_delay * 2, policy.max_delay),
        )

        def _log_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self._counters.live_failures += 1
            _logger.debug("Live retry %d for %s failed (%s); next in %.1fs", attempt + 1, self.entity_id, exc, delay)

        await asyncio.sleep(policy.base_delay)
        try:
            await retry_async(
                self._subscribe_live,
                remaining,
                retry_on=(EntityFeedTransportError,),
                on_retry=_log_retry,
            )
        except EntityFeedError:
            self._counters.live_failures += 1
            _logger.warning(
                "Giving up on live updates for %s after %d attempts; serving buffered data",
                self.entity_id,
                policy.attempts,
                exc_info=True,
            )
            return
        if self.live:
            _logger.info("Live subscription for %s restored", self.entity_id)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def subscribe(self, callback: SourceCallback) -> Callable[[], None]:
        """Register *callback* for every emission.

        Returns an idempotent unsubscribe callable.

        Raises
        ------
        PipelineClosedError
            If the source was destroyed.
        """
        if self._destroyed:
            raise PipelineClosedError(f"Data source {self._name!r} is destroyed")
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def handle_event(self, event: StateChangedEvent) -> None:
        """Feed one host ``state_changed`` event into the state machine."""
        if self._destroyed or not self._started:
            return
        if event.entity_id != self.entity_id:
            self._counters.filtered += 1
            return
        state = event.new_state
        if state is None:
            self._counters.invalid += 1
            return
        value = extract_value(state, self._config.attribute)
        if value is None:
            self._counters.invalid += 1
            _logger.debug("Dropping non-numeric state %r for %s", state.state, self.entity_id)
            return
        timestamp = extract_timestamp_ms(state, self._config.attribute)
        self.on_raw_event(timestamp if timestamp is not None else self._clock(), value, state)

    def on_raw_event(self, timestamp: int, value: float, state: EntityState | None = None) -> None:
        """Feed one already-extracted ``(timestamp, value)`` pair."""
        if self._destroyed or not self._started:
            return
        self._counters.received += 1

        if not self._policy.emit_on_same_value and self._pending is None:
            last = self._buffer.last()
            if last is not None and last.value == value:
                self._counters.skipped_same_value += 1
                return

        if self._pending is not None:
            self._counters.coalesced += 1
        self._pending = _Pending(int(timestamp), float(value), state)

        loop = self._require_loop()
        if self._coalesce_handle is not None:
            self._coalesce_handle.cancel()
        self._coalesce_handle = loop.call_later(self._policy.coalesce_ms / 1000, self._on_timer, _COALESCE)
        if self._max_delay_handle is None:
            self._max_delay_handle = loop.call_later(self._policy.max_delay_ms / 1000, self._on_timer, _MAX_DELAY)

    def _on_timer(self, reason: str) -> None:
        if reason == _COALESCE:
            self._coalesce_handle = None
        else:
            self._max_delay_handle = None
        if self._destroyed or not self._started:
            return
        self._flush(reason)

    def _flush(self, reason: str) -> None:
        pending = self._pending
        if pending is None:
            self._cancel_timers()
            return

        loop = self._require_loop()
        now = loop.time()
        if self._last_flush_at is not None:
            remaining_ms = self._policy.min_emit_ms - (now - self._last_flush_at) * 1000
            if remaining_ms > 0:
                self._counters.throttled += 1
                delay = remaining_ms / 1000
                if reason == _COALESCE:
                    self._coalesce_handle = loop.call_later(delay, self._on_timer, _COALESCE)
                else:
                    self._max_delay_handle = loop.call_later(delay, self._on_timer, _MAX_DELAY)
                return

        self._cancel_timers()
        self._pending = None
        self._last_flush_at = now
        self._counters.emits += 1
        if reason == _MAX_DELAY:
            self._counters.max_delay_flushes += 1

        update = self._commit(pending.timestamp, pending.value, pending.state)
        self._notify(update)

    def _commit(self, timestamp: int, value: float, state: EntityState | None) -> SourceUpdate:
        last = self._buffer.last()
        if last is not None and timestamp < last.timestamp:
            timestamp = last.timestamp
        self._buffer.push(timestamp, value)
        if state is not None:
            self._latest_state = state
        update = SourceUpdate(
            source=self._name,
            entity_id=self.entity_id,
            timestamp=timestamp,
            value=value,
            state=state,
        )
        self._current = update
        return update

    def _notify(self, update: SourceUpdate) -> None:
        for callback in list(self._subscribers):
            if self._destroyed:
                break
            try:
                callback(update)
            except Exception:
                _logger.warning("Subscriber of %s failed", self._name, exc_info=True)

    def _cancel_timers(self) -> None:
        for handle in (self._coalesce_handle, self._max_delay_handle):
            if handle is not None:
                handle.cancel()
        self._coalesce_handle = None
        self._max_delay_handle = None

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get_current_data(self) -> SourceUpdate | None:
        """Latest committed update, or ``None`` before any data."""
        return self._current

    def get_entity(self) -> EntitySnapshot | None:
        """Snapshot of the latest committed value, or ``None`` before any data."""
        current = self._current
        if current is None:
            return None
        state = self._latest_state
        return EntitySnapshot(
            entity_id=self.entity_id,
            state=format_value(current.value),
            value=current.value,
            timestamp=current.timestamp,
            attributes=dict(state.attributes) if state is not None else {},
            last_changed=state.last_changed if state is not None else None,
            source=self._name,
        )

    def get_arrays(self) -> tuple[list[int], list[float]]:
        return self._buffer.get_arrays()

    def slice_since(self, window_ms: float) -> tuple[list[int], list[float]]:
        return self._buffer.slice_since(window_ms)

    def last(self) -> Sample | None:
        return self._buffer.last()

    def last_timestamp(self) -> int | None:
        current = self._current
        return current.timestamp if current is not None else None

    def get_stats(self) -> SourceStats:
        counters = self._counters
        return SourceStats(
            name=self._name,
            entity_id=self.entity_id,
            received=counters.received,
            invalid=counters.invalid,
            filtered=counters.filtered,
            skipped_same_value=counters.skipped_same_value,
            coalesced=counters.coalesced,
            throttled=counters.throttled,
            emits=counters.emits,
            max_delay_flushes=counters.max_delay_flushes,
            history_loaded=counters.history_loaded,
            live_failures=counters.live_failures,
            subscribers=len(self._subscribers),
            started=self._started,
            live=self.live,
            pending=self._pending is not None,
            destroyed=self._destroyed,
            policy=dataclasses.asdict(self._policy),
            buffer=self._buffer.stats(),
        )
