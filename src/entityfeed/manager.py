"""Registry of data sources and the consumer-facing query surface."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from entityfeed._retry import RetryPolicy
from entityfeed.client import HostPlatform
from entityfeed.exceptions import PipelineClosedError, SourceConfigError
from entityfeed.ingestion.normalize import now_ms
from entityfeed.models.snapshot import EntitySnapshot, Overlay, OverlayUpdate, SourceStats, SourceUpdate
from entityfeed.models.source_config import SourceConfig
from entityfeed.source import DataSource

if TYPE_CHECKING:
    from entityfeed.registry import PipelineRegistry

_logger = logging.getLogger(__name__)

OverlayCallback = Callable[[Overlay, OverlayUpdate], None]
EntityChangeListener = Callable[[list[str]], None]


@dataclasses.dataclass(slots=True)
class _OverlayBinding:
    overlay: Overlay
    callback: OverlayCallback
    source: DataSource
    unsubscribe: Callable[[], None]
    replay_handle: asyncio.Handle | None = None


class DataSourceManager:
    """Owns every :class:`DataSource` of one pipeline.

    Consumers only talk to the manager: they look up entity snapshots,
    bind overlays to sources and listen for batched entity changes.

    Parameters
    ----------
    host : HostPlatform
        Shared by all sources.
    name : str
        Name under which the manager is registered in *registry*.
    registry : PipelineRegistry or None
        Optional introspection registry.
    clock : callable
        Wall clock in epoch milliseconds, passed to every source.
    retry_policy : RetryPolicy or None
        Live-subscription backoff, passed to every source.
    """

    def __init__(
        self,
        host: HostPlatform,
        *,
        name: str = "default",
        registry: PipelineRegistry | None = None,
        clock: Callable[[], int] = now_ms,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._host = host
        self._name = name
        self._registry = registry
        self._clock = clock
        self._retry_policy = retry_policy
        self._sources: dict[str, DataSource] = {}
        self._source_unsubscribes: dict[str, Callable[[], None]] = {}
        self._entity_index: dict[str, list[str]] = {}
        self._overlays: dict[str, _OverlayBinding] = {}
        self._listeners: list[EntityChangeListener] = []
        self._changed: dict[str, None] = {}
        self._batch_handle: asyncio.Handle | None = None
        self._destroyed = False
        if registry is not None:
            registry.register(name, self)

    def __repr__(self) -> str:
        return f"DataSourceManager(name={self._name!r}, sources={list(self._sources)})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def sources(self) -> dict[str, DataSource]:
        return dict(self._sources)

    def _require_open(self, operation: str) -> None:
        if self._destroyed:
            raise PipelineClosedError(f"{operation} called on destroyed manager {self._name!r}")

    # ------------------------------------------------------------------
    # Source lifecycle
    # ------------------------------------------------------------------

    async def initialize_from_config(self, config_map: Mapping[str, Any]) -> int:
        """Create and start every source of *config_map* concurrently.

        A malformed record or a failing start only affects its own source.

        Returns
        -------
        int
            Number of sources registered and started.

        Raises
        ------
        PipelineClosedError
            If the manager was destroyed.
        """
        self._require_open("initialize_from_config")
        results = await asyncio.gather(
            *(self._create_isolated(name, config) for name, config in config_map.items()),
        )
        started = sum(1 for ok in results if ok)
        _logger.info("Manager %s started %d of %d data sources", self._name, started, len(results))
        return started

    async def _create_isolated(self, name: str, config: Any) -> bool:
        try:
            await self.create_data_source(name, config)
        except SourceConfigError as exc:
            _logger.error("Skipping data source %s: %s", name, exc)
            return False
        except PipelineClosedError:
            return False
        except Exception:
            _logger.exception("Data source %s failed to start", name)
            self._remove_source(name)
            return False
        return True

    async def create_data_source(self, name: str, config: SourceConfig | Mapping[str, Any]) -> DataSource:
        """Create, register and start one source.

        The existing source is returned when *name* is already taken.

        Raises
        ------
        SourceConfigError
            If *config* is malformed.
        PipelineClosedError
            If the manager was destroyed.
        """
        self._require_open("create_data_source")
        existing = self._sources.get(name)
        if existing is not None:
            return existing

        source = DataSource(name, config, self._host, clock=self._clock, retry_policy=self._retry_policy)
        self._sources[name] = source
        self._entity_index.setdefault(source.entity_id, []).append(name)
        self._source_unsubscribes[name] = source.subscribe(self._on_source_update)

        await source.start()
        if self._destroyed:
            source.destroy()
            raise PipelineClosedError(f"Manager {self._name!r} destroyed while starting {name!r}")
        return source

    def _remove_source(self, name: str) -> None:
        source = self._sources.pop(name, None)
        unsubscribe = self._source_unsubscribes.pop(name, None)
        if unsubscribe is not None:
            unsubscribe()
        if source is None:
            return
        names = self._entity_index.get(source.entity_id)
        if names is not None and name in names:
            names.remove(name)
            if not names:
                del self._entity_index[source.entity_id]
        source.destroy()

    def get_source(self, name: str) -> DataSource | None:
        return self._sources.get(name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entity(self, entity_id: str) -> EntitySnapshot | None:
        """Latest snapshot of *entity_id* (or of the source named so).

        When several sources track the entity, the one holding the newest
        sample wins.
        """
        names = self._entity_index.get(entity_id)
        if names:
            candidates = [self._sources[name] for name in names]
        elif entity_id in self._sources:
            candidates = [self._sources[entity_id]]
        else:
            return None

        best: DataSource | None = None
        best_ts = -1
        for source in candidates:
            ts = source.last_timestamp()
            if ts is not None and ts > best_ts:
                best, best_ts = source, ts
        return best.get_entity() if best is not None else None

    def list_ids(self) -> list[str]:
        """Tracked entity ids in registration order."""
        return list(self._entity_index)

    # ------------------------------------------------------------------
    # Overlays
    # ------------------------------------------------------------------

    def subscribe_overlay(
        self,
        overlay: Overlay | Mapping[str, Any],
        callback: OverlayCallback,
    ) -> Callable[[], None] | None:
        """Deliver every emission of the overlay's source to *callback*.

        Sparkline overlays also receive the buffered history.  If the source
        already holds data, *callback* is replayed once on the next loop
        iteration.  Returns an unsubscribe callable, or ``None`` when the
        overlay does not name a known source.

        Raises
        ------
        PipelineClosedError
            If the manager was destroyed.
        """
        self._require_open("subscribe_overlay")
        if not isinstance(overlay, Overlay):
            try:
                overlay = Overlay.model_validate(dict(overlay))
            except (ValidationError, TypeError, ValueError) as exc:
                _logger.warning("Ignoring malformed overlay %r: %s", overlay, exc)
                return None

        if overlay.source is None:
            _logger.warning("Overlay %s names no data source", overlay.id)
            return None
        source = self._sources.get(overlay.source)
        if source is None:
            _logger.warning("Overlay %s references unknown data source %s", overlay.id, overlay.source)
            return None

        self.unsubscribe_overlay(overlay.id)
        bound = overlay

        def on_update(update: SourceUpdate) -> None:
            callback(bound, self._overlay_update(bound, source, update, replay=False))

        binding = _OverlayBinding(
            overlay=overlay,
            callback=callback,
            source=source,
            unsubscribe=source.subscribe(on_update),
        )
        self._overlays[overlay.id] = binding

        if source.get_current_data() is not None:
            loop = asyncio.get_running_loop()
            binding.replay_handle = loop.call_soon(self._replay_overlay, binding)

        def unsubscribe() -> None:
            if self._overlays.get(bound.id) is binding:
                self.unsubscribe_overlay(bound.id)

        return unsubscribe

    def unsubscribe_overlay(self, overlay_id: str) -> bool:
        binding = self._overlays.pop(overlay_id, None)
        if binding is None:
            return False
        if binding.replay_handle is not None:
            binding.replay_handle.cancel()
        binding.unsubscribe()
        return True

    def _replay_overlay(self, binding: _OverlayBinding) -> None:
        binding.replay_handle = None
        if self._destroyed or self._overlays.get(binding.overlay.id) is not binding:
            return
        current = binding.source.get_current_data()
        if current is None:
            return
        try:
            binding.callback(binding.overlay, self._overlay_update(binding.overlay, binding.source, current, replay=True))
        except Exception:
            _logger.warning("Overlay %s replay failed", binding.overlay.id, exc_info=True)

    @staticmethod
    def _overlay_update(overlay: Overlay, source: DataSource, update: SourceUpdate, *, replay: bool) -> OverlayUpdate:
        history = tuple(source.buffer.samples()) if overlay.wants_history else None
        return OverlayUpdate(
            overlay_id=overlay.id,
            overlay_type=overlay.type,
            source_id=source.name,
            entity_id=update.entity_id,
            timestamp=update.timestamp,
            value=update.value,
            history=history,
            replay=replay,
        )

    # ------------------------------------------------------------------
    # Entity change listeners
    # ------------------------------------------------------------------

    def add_entity_change_listener(self, callback: EntityChangeListener) -> Callable[[], None]:
        """Call *callback* with the entity ids changed since the last batch.

        Batches are flushed once per event loop iteration.

        Raises
        ------
        PipelineClosedError
            If the manager was destroyed.
        """
        self._require_open("add_entity_change_listener")
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _on_source_update(self, update: SourceUpdate) -> None:
        if self._destroyed:
            return
        self._changed[update.entity_id] = None
        if self._batch_handle is None:
            self._batch_handle = asyncio.get_running_loop().call_soon(self._flush_changes)

    def _flush_changes(self) -> None:
        self._batch_handle = None
        if self._destroyed or not self._changed:
            return
        changed = list(self._changed)
        self._changed.clear()
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception:
                _logger.warning("Entity change listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, SourceStats]:
        return {name: source.get_stats() for name, source in self._sources.items()}

    def debug_dump(self) -> dict[str, Any]:
        """JSON-friendly view of the whole manager."""
        return {
            "name": self._name,
            "destroyed": self._destroyed,
            "entities": {entity: list(names) for entity, names in self._entity_index.items()},
            "overlays": {overlay_id: binding.source.name for overlay_id, binding in self._overlays.items()},
            "listeners": len(self._listeners),
            "sources": {name: stats.model_dump() for name, stats in self.get_stats().items()},
        }

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def destroy(self) -> None:
        """Tear down every source, overlay and listener.  Idempotent."""
        if self._destroyed:
            return
        self._destroyed = True
        if self._batch_handle is not None:
            self._batch_handle.cancel()
            self._batch_handle = None
        for overlay_id in list(self._overlays):
            self.unsubscribe_overlay(overlay_id)
        for name in list(self._sources):
            self._remove_source(name)
        self._sources.clear()
        self._source_unsubscribes.clear()
        self._entity_index.clear()
        self._listeners.clear()
        self._changed.clear()
        if self._registry is not None:
            self._registry.unregister(self._name, self)
        _logger.debug("Manager %s destroyed", self._name)
