"""Bounded retry with exponential backoff for live subscriptions."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from entityfeed.config import HassConfig

T = TypeVar("T")

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failed connection is retried."""

    attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: HassConfig) -> RetryPolicy:
        return cls(
            attempts=config.reconnect_attempts,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
        )

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts (without jitter)."""
        result: list[float] = []
        delay = self.base_delay
        for _ in range(max(0, self.attempts - 1)):
            result.append(min(delay, self.max_delay))
            delay = min(delay * 2, self.max_delay)
        return result


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: Iterable[type[BaseException]] = (Exception,),
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Await *func* until it succeeds or *policy* runs out of attempts.

    The last exception is re-raised once every attempt has failed.
    ``asyncio.CancelledError`` is never retried.
    """
    retry_types = tuple(retry_on)
    delays = policy.delays()
    for attempt in range(policy.attempts):
        try:
            return await func()
        except retry_types as exc:
            if attempt >= len(delays):
                raise
            base = delays[attempt]
            sleep_for = base + random.uniform(0, base * policy.jitter)
            if on_retry is not None:
                try:
                    on_retry(attempt + 1, exc, sleep_for)
                except Exception:
                    _logger.debug("on_retry callback failed", exc_info=True)
            await asyncio.sleep(sleep_for)
    raise RuntimeError("retry policy allows no attempts")
