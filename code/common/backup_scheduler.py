# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional


class CheckpointScheduler:
    """
    Periodically persists a crawl by calling `snapshot_fn`, which writes the
    backup and returns its path.

    - interval_minutes: run every N minutes; 0 or less disables the loop,
      `run_now()` still works
    - a failed checkpoint is logged and the loop keeps going
    """

    def __init__(
        self,
        interval_minutes: int,
        snapshot_fn: Callable[[], Awaitable[Path]],
        logger: Optional[logging.Logger] = None,
        on_complete: Optional[Callable[[Path], Awaitable[None] | None]] = None,
        name: str = "checkpoint",
    ) -> None:
        self.interval_minutes = interval_minutes
        self.snapshot_fn = snapshot_fn
        self.log = logger or logging.getLogger("hof.checkpoint")
        self.on_complete = on_complete
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._stop_evt = asyncio.Event()
        self._lock = asyncio.Lock()
        self.last_path: Optional[Path] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduler as a background asyncio task."""
        if self.running:
            self.log.debug("start: scheduler already running")
            return
        if not self.interval_minutes or self.interval_minutes <= 0:
            self.log.debug("periodic checkpoints disabled")
            return
        self._stop_evt.clear()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        self.log.info("checkpoint scheduler started (every=%dm)", self.interval_minutes)

    async def stop(self) -> None:
        """Signal the scheduler to stop and await the task."""
        self._stop_evt.set()
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            self.log.debug("checkpoint scheduler stopped")

    async def run_now(self) -> Path:
        """Writes a checkpoint immediately; errors propagate to the caller."""
        out = await self._checkpoint_once()
        await self._notify(out)
        return out

    async def _notify(self, out: Path) -> None:
        if not self.on_complete:
            return
        try:
            res = self.on_complete(out)
            if asyncio.iscoroutine(res):
                await res
        except Exception as e:
            self.log.exception("on_complete failed after checkpoint: %s", e)

    async def _run_loop(self) -> None:
        interval = max(1.0, float(self.interval_minutes * 60))
        while not self._stop_evt.is_set():
            try:
                await asyncio.wait_for(self._stop_evt.wait(), timeout=interval)
                self.log.debug("run_loop: stop signaled during wait")
                return
            except asyncio.TimeoutError:
                pass

            try:
                out = await self._checkpoint_once()
            except Exception as e:
                self.last_error = str(e)
                self.log.exception("checkpoint failed: %s", e)
                continue
            await self._notify(out)

    async def _checkpoint_once(self) -> Path:
        async with self._lock:
            t0 = time.monotonic()
            out = await self.snapshot_fn()
            self.last_path = out
            self.last_error = None
            self.log.debug(
                "checkpoint finished in %.2fs -> %s", time.monotonic() - t0, out.name
            )
            return out
