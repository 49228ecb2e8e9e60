# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio, time
from enum import Enum
from typing import Tuple, Dict, Optional

from common.constants import FETCH_DELAY_SECONDS

class ActionType(Enum):
    HOF_PAGE = "hof_page"
    VIEW_PLAYER = "view_player"
    LOGIN = "login"

class RateLimiter:
    """
    Token bucket holding up to `max_rate` commands per `time_window` seconds,
    plus a cooldown set after the server answered with a rate limit.
    """

    def __init__(self, max_rate: int, time_window: float):
        self._capacity = float(max(1, max_rate))
        self._per_token = time_window / self._capacity
        self._tokens = self._capacity
        self._stamp = time.monotonic()
        self._lock = asyncio.Lock()
        self._cooldown_until = 0.0

    def _refill(self, now: float) -> None:
        if self._per_token <= 0:
            self._tokens = self._capacity
        else:
            gained = (now - self._stamp) / self._per_token
            self._tokens = min(self._capacity, self._tokens + gained)
        self._stamp = now

    async def acquire(self):
        async with self._lock:
            pause = self._cooldown_until - time.monotonic()
            if pause > 0:
                await asyncio.sleep(pause)

            now = time.monotonic()
            self._refill(now)
            if self._tokens < 1.0:
                await asyncio.sleep((1.0 - self._tokens) * self._per_token)
                self._refill(time.monotonic())
            self._tokens = max(0.0, self._tokens - 1.0)

    def backoff(self, seconds: float):
        until = time.monotonic() + max(0.0, seconds)
        self._cooldown_until = max(self._cooldown_until, until)

    def reset(self):
        self._cooldown_until = 0.0

    def remaining_cooldown(self) -> float:
        return max(0.0, self._cooldown_until - time.monotonic())


class RateLimitManager:
    """
    Token buckets for remote commands.

    HOF_PAGE and VIEW_PLAYER are keyed per worker identity so every identity
    keeps its own spacing between fetches; LOGIN is shared by the server.
    """

    PER_IDENTITY = (ActionType.HOF_PAGE, ActionType.VIEW_PLAYER)

    def __init__(self, config: Dict[ActionType, Tuple[int, float]] = None):
        cfg = config or {
            ActionType.HOF_PAGE: (1, FETCH_DELAY_SECONDS),
            ActionType.VIEW_PLAYER: (1, FETCH_DELAY_SECONDS),
            ActionType.LOGIN: (1, 1.0),
        }
        self._config = cfg
        self._shared: Dict[ActionType, RateLimiter] = {
            a: RateLimiter(*cfg[a]) for a in cfg if a not in self.PER_IDENTITY
        }
        self._keyed: Dict[Tuple[ActionType, str], RateLimiter] = {}

    def _get(self, action: ActionType, key: str | None = None) -> Optional[RateLimiter]:
        if action not in self.PER_IDENTITY:
            return self._shared.get(action)
        if key is None or action not in self._config:
            return None
        lim = self._keyed.get((action, key))
        if lim is None:
            lim = self._keyed[(action, key)] = RateLimiter(*self._config[action])
        return lim

    async def acquire(self, action: ActionType, key: str = None):
        lim = self._get(action, key)
        if lim:
            await lim.acquire()

    def penalize(self, action: ActionType, seconds: float, key: str | None = None):
        lim = self._get(action, key)
        if lim:
            lim.backoff(seconds)

    def reset(self, action: ActionType, key: str | None = None):
        lim = self._get(action, key)
        if lim:
            lim.reset()

    def remaining(self, action: ActionType, key: str | None = None) -> float:
        lim = self._get(action, key)
        return lim.remaining_cooldown() if lim else 0.0

    def forget(self, key: str) -> None:
        """Drops the buckets of a retired worker identity."""
        for action in self.PER_IDENTITY:
            self._keyed.pop((action, key), None)
