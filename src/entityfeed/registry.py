"""Named registry of running pipelines, for debugging and introspection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from entityfeed.manager import DataSourceManager

_logger = logging.getLogger(__name__)


class PipelineRegistry:
    """Maps pipeline names to their :class:`DataSourceManager`.

    Managers register themselves when constructed with ``registry=`` and
    unregister on ``destroy()``.
    """

    def __init__(self) -> None:
        self._managers: dict[str, DataSourceManager] = {}

    def __len__(self) -> int:
        return len(self._managers)

    def __contains__(self, name: object) -> bool:
        return name in self._managers

    def register(self, name: str, manager: DataSourceManager) -> None:
        previous = self._managers.get(name)
        if previous is not None and previous is not manager:
            _logger.warning("Replacing registered pipeline %s", name)
        self._managers[name] = manager

    def unregister(self, name: str, manager: DataSourceManager | None = None) -> bool:
        """Remove *name*; with *manager* given, only if it is still the registered one."""
        current = self._managers.get(name)
        if current is None or (manager is not None and current is not manager):
            return False
        del self._managers[name]
        return True

    def get(self, name: str) -> DataSourceManager | None:
        return self._managers.get(name)

    def names(self) -> list[str]:
        return list(self._managers)

    def describe(self) -> dict[str, dict[str, Any]]:
        """``debug_dump()`` of every registered manager."""
        return {name: manager.debug_dump() for name, manager in self._managers.items()}
