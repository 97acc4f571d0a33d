"""Keyed cancel-and-reschedule debouncing of async writes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

_P = TypeVar("_P")


class Debouncer(Generic[_P]):
    """Coalesce bursts of `schedule` calls per key into one delayed write.

    Each key owns at most one timer task. Scheduling again before the timer
    fires cancels it and starts a new one with the latest payload, so the
    write happens `delay_seconds` after the last call.
    """

    def __init__(
        self,
        write: Callable[[str, _P], Awaitable[None]],
        *,
        delay_seconds: float,
    ) -> None:
        self._write = write
        self.delay_seconds = delay_seconds
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._pending: dict[str, _P] = {}

    @property
    def pending_keys(self) -> frozenset[str]:
        return frozenset(self._pending)

    def schedule(self, key: str, payload: _P) -> None:
        self._pending[key] = payload
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._timers[key] = asyncio.create_task(self._fire_after_delay(key))

    def cancel(self, key: str) -> bool:
        """Drop a pending write; True if one was pending."""

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        return self._pending.pop(key, None) is not None

    async def flush(self) -> int:
        """Write every pending payload now; returns the number of writes."""

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        pending, self._pending = self._pending, {}
        for key, payload in pending.items():
            await self._safe_write(key, payload)
        return len(pending)

    async def aclose(self) -> None:
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()
        self._pending.clear()

    async def _fire_after_delay(self, key: str) -> None:
        await asyncio.sleep(self.delay_seconds)
        self._timers.pop(key, None)
        if key not in self._pending:
            return
        await self._safe_write(key, self._pending.pop(key))

    async def _safe_write(self, key: str, payload: _P) -> None:
        try:
            await self._write(key, payload)
        except Exception:  # noqa: BLE001
            logger.warning("Debounced write failed for %s", key, exc_info=True)
