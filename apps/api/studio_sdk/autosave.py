"""Single-timer debounce for session saves."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from config import settings

logger = logging.getLogger(__name__)

SaveCallback = Callable[[Dict[str, Any]], Awaitable[Any]]


class DebouncedSessionSaver:
    """
    Persist session state after a quiet period.

    Every `schedule()` cancels the pending timer and arms a new one, so a burst
    of mutations produces one write carrying the latest snapshot. Losing the
    last unsaved snapshot on a crash is accepted.
    """

    def __init__(self, save: SaveCallback, delay_seconds: Optional[float] = None):
        self._save = save
        self._delay = settings.SESSION_SAVE_DEBOUNCE_SECONDS if delay_seconds is None else delay_seconds
        self._timer: Optional[asyncio.Task] = None
        self._snapshot: Optional[Dict[str, Any]] = None
        self._closed = False
        self.saves = 0

    @property
    def pending(self) -> bool:
        return self._snapshot is not None

    def schedule(self, snapshot: Dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("Saver is closed")
        self._snapshot = dict(snapshot)
        if self._timer and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._fire_later())

    async def _fire_later(self) -> None:
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            return
        await self._write()

    async def _write(self) -> None:
        snapshot, self._snapshot = self._snapshot, None
        if snapshot is None:
            return
        try:
            await self._save(snapshot)
            self.saves += 1
        except Exception as exc:
            logger.warning("Debounced session save failed: %s", exc)

    async def flush(self) -> None:
        """Write the pending snapshot now instead of waiting out the timer."""
        if self._timer and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        await self._write()

    async def close(self) -> None:
        await self.flush()
        self._closed = True
