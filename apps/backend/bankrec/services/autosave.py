"""Debounced, single-flight auto-save."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from bankrec.config import settings
from bankrec.logger import get_logger

logger = get_logger(__name__)


class AutoSaver:
    """Debounce mutations into saves that never overlap.

    ``touch()`` (re)starts the timer. When it fires, or when ``flush()`` is
    awaited directly, the save callable runs under a lock; a mutation made
    while a save is in flight marks the state dirty again and triggers one
    follow-up save instead of a concurrent one.
    """

    def __init__(
        self,
        save: Callable[[], Awaitable[Any]],
        delay_seconds: float | None = None,
    ) -> None:
        self._save = save
        self._delay = settings.autosave_delay_seconds if delay_seconds is None else delay_seconds
        self._lock = asyncio.Lock()
        self._timer: asyncio.Task[None] | None = None
        self._dirty = False
        self.save_count = 0

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def saving(self) -> bool:
        return self._lock.locked()

    def touch(self) -> None:
        """Record a mutation and restart the debounce timer."""
        self._dirty = True
        self.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire_later())

    def cancel(self) -> None:
        """Drop the pending timer; a save already running is left alone."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _fire_later(self) -> None:
        await asyncio.sleep(self._delay)
        # Past this point touch() no longer cancels this task
        if self._timer is asyncio.current_task():
            self._timer = None
        try:
            await self.flush()
        except Exception:
            logger.exception("Debounced auto-save failed")

    async def flush(self) -> Any:
        """Save now if anything changed; waits for a save already in flight."""
        self.cancel()
        result = None
        async with self._lock:
            while self._dirty:
                self._dirty = False
                try:
                    result = await self._save()
                except Exception:
                    self._dirty = True
                    raise
                self.save_count += 1
        return result

    async def close(self) -> Any:
        """Flush outstanding changes and stop the timer."""
        return await self.flush()
