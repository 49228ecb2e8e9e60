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
import logging
import random
from typing import Awaitable, Callable, List, Optional, Tuple

from common.constants import FAILURE_THRESHOLD, RELOG_BACKOFF_RANGE, RELOG_SETTLE_SECONDS
from crawler.queue import CrawlAction, WorkQueue
from crawler.session import CrawlerError, CrawlerState, GameSession, GameState

Relogin = Callable[[], Awaitable[Tuple[GameSession, GameState]]]


class FailureSupervisor:
    """
    Counts consecutive generic failures of one server. At the threshold the
    shared session is write-locked, which halts every worker, and a fresh
    login is retried until it succeeds. Afterwards the units that failed in
    the meantime are replayed if their epoch is still current.
    """

    def __init__(
        self,
        queue: WorkQueue,
        state: CrawlerState,
        relogin: Relogin,
        *,
        threshold: int = FAILURE_THRESHOLD,
        backoff_range: Tuple[float, float] = RELOG_BACKOFF_RANGE,
        settle_delay: float = RELOG_SETTLE_SECONDS,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.queue = queue
        self.state = state
        self.relogin = relogin
        self.threshold = max(1, threshold)
        self.backoff_range = backoff_range
        self.settle_delay = settle_delay
        self._rng = rng or random.Random()
        self.logger = (logger or logging.getLogger("hof")).getChild("supervisor")

        self._failures: List[CrawlAction] = []
        self._revived = asyncio.Event()
        self._revived.set()
        self._task: Optional[asyncio.Task] = None
        self.revivals = 0

    @property
    def failure_count(self) -> int:
        return len(self._failures)

    @property
    def reviving(self) -> bool:
        return not self._revived.is_set()

    def record_success(self) -> None:
        if self._failures and not self.reviving:
            self._failures.clear()

    def record_failure(self, action: CrawlAction, kind: CrawlerError) -> bool:
        """Returns True when this failure started a relog."""
        if kind is not CrawlerError.GENERIC:
            return False
        self._failures.append(action)
        if self.reviving or len(self._failures) < self.threshold:
            return False

        self.logger.warning(
            "crawler looks dead, logging in again",
            extra={"failures": len(self._failures)},
        )
        self._revived.clear()
        self._task = asyncio.create_task(self._revive(), name="crawler-relog")
        return True

    async def wait_revived(self) -> None:
        await self._revived.wait()

    async def _revive(self) -> None:
        try:
            async with self.state.session_lock.write():
                attempt = 0
                while True:
                    attempt += 1
                    await asyncio.sleep(self._rng.uniform(*self.backoff_range))
                    try:
                        session, game_state = await self.relogin()
                        break
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        self.logger.error("relog attempt %d failed: %s", attempt, e)
                self.state.replace(session, game_state)
                # Give the server a moment before the workers resume
                await asyncio.sleep(self.settle_delay)

            failed, self._failures = self._failures, []
            replayed = self.queue.replay_failed(failed)
            self.revivals += 1
            self.logger.info(
                "crawler revived after %d attempt(s), replayed %d of %d failed actions",
                attempt,
                replayed,
                len(failed),
            )
        finally:
            self._revived.set()

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # A task cancelled before its first step never reaches its finally
        self._revived.set()
