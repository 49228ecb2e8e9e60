# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
The shared work queue of one server.

Every work unit (a leaderboard page or an account name) lives in exactly one
of todo, in-flight or invalid. All transitions happen under a single lock and
nothing is awaited while it is held. Every action carries the epoch (que_id)
it was issued under; results from an older epoch are ignored.
"""

from __future__ import annotations

import itertools
import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Tuple, Union

from common.constants import LEVEL_CEILING, LEVEL_FLOOR, PAGE_SIZE
from crawler.session import CrawlerError

if TYPE_CHECKING:
    from crawler.backup import HofBackup, RestoreData
    from scrapbook.players import PlayerDatabase

logger = logging.getLogger("hof.queue")

_que_ids = itertools.count(1)


def new_que_id() -> int:
    return next(_que_ids)


class CrawlingOrder(Enum):
    RANDOM = "Random"
    TOP_DOWN = "TopDown"
    BOTTOM_UP = "BottomUp"

    @classmethod
    def parse(cls, raw) -> "CrawlingOrder":
        if isinstance(raw, cls):
            return raw
        key = str(raw or "").strip().lower().replace("_", "").replace("-", "").replace(" ", "")
        for order in cls:
            if order.value.lower() == key:
                return order
        raise ValueError(f"unknown crawling order: {raw!r}")

    def apply_order(self, pages: List[int], rng: Optional[random.Random] = None) -> None:
        """Reorders `pages` in place. Pages are popped from the end."""
        if self is CrawlingOrder.RANDOM:
            (rng or random).shuffle(pages)
        elif self is CrawlingOrder.TOP_DOWN:
            pages.sort(reverse=True)
        else:
            pages.sort()


@dataclass(frozen=True)
class Wait:
    pass


@dataclass(frozen=True)
class InitTodo:
    que_id: int


@dataclass(frozen=True)
class PageAction:
    page: int
    que_id: int


@dataclass(frozen=True)
class CharacterAction:
    name: str
    que_id: int


CrawlAction = Union[Wait, InitTodo, PageAction, CharacterAction]

WAIT = Wait()


def is_digit_name(name: str) -> bool:
    """Such names would be looked up as player ids by the server."""
    return name.isascii() and name.isdigit()


def clamp_level_range(min_level: int, max_level: int) -> Tuple[int, int]:
    min_level = max(LEVEL_FLOOR, int(min_level))
    max_level = min(LEVEL_CEILING, max(min_level, int(max_level)))
    return min_level, max_level


class WorkQueue:
    def __init__(
        self,
        que_id: Optional[int] = None,
        *,
        todo_pages: Iterable[int] = (),
        invalid_pages: Iterable[int] = (),
        todo_accounts: Iterable[str] = (),
        invalid_accounts: Iterable[str] = (),
        order: CrawlingOrder = CrawlingOrder.RANDOM,
        min_level: int = LEVEL_FLOOR,
        max_level: int = LEVEL_CEILING,
        lvl_skipped_accounts: Optional[Dict[int, List[str]]] = None,
        init_pending: bool = False,
        rng: Optional[random.Random] = None,
    ):
        self._lock = threading.Lock()
        self._rng = rng
        self._load(
            que_id if que_id is not None else new_que_id(),
            todo_pages=todo_pages,
            invalid_pages=invalid_pages,
            todo_accounts=todo_accounts,
            invalid_accounts=invalid_accounts,
            order=order,
            min_level=min_level,
            max_level=max_level,
            lvl_skipped_accounts=lvl_skipped_accounts,
            init_pending=init_pending,
        )

    def _load(
        self,
        que_id: int,
        *,
        todo_pages,
        invalid_pages,
        todo_accounts,
        invalid_accounts,
        order,
        min_level,
        max_level,
        lvl_skipped_accounts,
        init_pending,
    ) -> None:
        self._que_id = que_id
        self._order = CrawlingOrder.parse(order)
        self._min_level, self._max_level = clamp_level_range(min_level, max_level)
        self._init_pending = init_pending

        self._invalid_pages: set[int] = set(invalid_pages)
        self._in_flight_pages: set[int] = set()
        self._todo_pages: List[int] = []
        for page in dict.fromkeys(todo_pages):
            if page not in self._invalid_pages:
                self._todo_pages.append(page)

        self._invalid_accounts: set[str] = set(invalid_accounts)
        self._in_flight_accounts: set[str] = set()
        self._todo_accounts: List[str] = []
        self._todo_account_set: set[str] = set()
        self._account_levels: Dict[str, int] = {}
        for name in todo_accounts:
            if name not in self._invalid_accounts and name not in self._todo_account_set:
                self._todo_accounts.append(name)
                self._todo_account_set.add(name)

        self._skipped: Dict[int, List[str]] = {}
        self._skipped_names: Dict[str, int] = {}
        for level, names in (lvl_skipped_accounts or {}).items():
            for name in names:
                self._park(name, int(level))

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------
    @property
    def que_id(self) -> int:
        return self._que_id

    @property
    def order(self) -> CrawlingOrder:
        return self._order

    @property
    def min_level(self) -> int:
        return self._min_level

    @property
    def max_level(self) -> int:
        return self._max_level

    def is_current(self, que_id: int) -> bool:
        return que_id == self._que_id

    # ------------------------------------------------------------------
    # internal helpers (lock held)
    # ------------------------------------------------------------------
    def _park(self, name: str, level: int) -> None:
        if name in self._skipped_names:
            return
        self._skipped.setdefault(level, []).append(name)
        self._skipped_names[name] = level

    def _push_todo_account(self, name: str, level: Optional[int] = None) -> None:
        self._todo_accounts.append(name)
        self._todo_account_set.add(name)
        if level is not None:
            self._account_levels[name] = level

    def _in_range(self, level: int) -> bool:
        return self._min_level <= level <= self._max_level

    def _discover(self, name: str, level: Optional[int]) -> bool:
        if (
            name in self._todo_account_set
            or name in self._in_flight_accounts
            or name in self._invalid_accounts
            or name in self._skipped_names
        ):
            return False
        if level is not None and not self._in_range(level):
            self._park(name, level)
            return False
        self._push_todo_account(name, level)
        return True

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def next_action(self) -> CrawlAction:
        with self._lock:
            while self._todo_accounts:
                name = self._todo_accounts.pop()
                self._todo_account_set.discard(name)
                if not name or is_digit_name(name):
                    self._account_levels.pop(name, None)
                    self._invalid_accounts.add(name)
                    continue
                # The level stays known while in flight so a retry can be parked
                self._in_flight_accounts.add(name)
                return CharacterAction(name, self._que_id)

            if self._todo_pages:
                page = self._todo_pages.pop()
                self._in_flight_pages.add(page)
                return PageAction(page, self._que_id)

            if self._init_pending:
                self._init_pending = False
                return InitTodo(self._que_id)
            return WAIT

    def init_todo(self, total_pages: int, que_id: int) -> bool:
        """Fills todo with every page not yet seen in this epoch."""
        with self._lock:
            if que_id != self._que_id:
                return False
            known = set(self._todo_pages) | self._in_flight_pages | self._invalid_pages
            self._todo_pages.extend(p for p in range(max(0, total_pages)) if p not in known)
            self._order.apply_order(self._todo_pages, self._rng)
            return True

    def complete_page(
        self, page: int, que_id: int, entries: Iterable[Tuple[str, Optional[int]]] = ()
    ) -> Optional[int]:
        """
        Finishes a page and queues the names it listed. Returns how many
        names were added to todo, or None when the result is stale.
        """
        with self._lock:
            if que_id != self._que_id:
                return None
            self._in_flight_pages.discard(page)
            added = 0
            for name, level in entries:
                if self._discover(name, level):
                    added += 1
            return added

    def complete_account(
        self, name: str, que_id: int, apply: Optional[Callable[[], None]] = None
    ) -> bool:
        """
        Finishes an account. `apply` runs under the queue lock only when the
        epoch is still current, so a reset cannot interleave with it.
        """
        with self._lock:
            if que_id != self._que_id:
                return False
            self._in_flight_accounts.discard(name)
            self._account_levels.pop(name, None)
            if apply is not None:
                apply()
            return True

    def mark_missing(self, name: str, que_id: int) -> bool:
        """The server knows no player with this name."""
        with self._lock:
            if que_id != self._que_id:
                return False
            self._in_flight_accounts.discard(name)
            self._account_levels.pop(name, None)
            self._invalid_accounts.add(name)
            return True

    def fail(self, action: CrawlAction, kind: CrawlerError) -> bool:
        """
        Rate limited units go back to todo, everything else becomes invalid
        for this epoch. Returns False when nothing was changed, i.e. the
        action is stale or its unit is no longer in flight.
        """
        with self._lock:
            if isinstance(action, Wait) or action.que_id != self._que_id:
                return False
            if isinstance(action, InitTodo):
                self._init_pending = True
                return True
            if isinstance(action, PageAction):
                if action.page not in self._in_flight_pages:
                    return False
                self._in_flight_pages.discard(action.page)
                if kind is CrawlerError.RATE_LIMIT:
                    self._todo_pages.append(action.page)
                else:
                    self._invalid_pages.add(action.page)
                return True
            if action.name not in self._in_flight_accounts:
                return False
            self._in_flight_accounts.discard(action.name)
            if kind is CrawlerError.RATE_LIMIT:
                self._push_todo_account(action.name)
            else:
                self._invalid_accounts.add(action.name)
            return True

    def replay_failed(self, actions: Iterable[CrawlAction]) -> int:
        """Moves failed units of the current epoch back from invalid to todo."""
        replayed = 0
        with self._lock:
            for action in actions:
                if isinstance(action, Wait) or action.que_id != self._que_id:
                    continue
                if isinstance(action, InitTodo):
                    self._init_pending = True
                    replayed += 1
                elif isinstance(action, PageAction):
                    page = action.page
                    self._invalid_pages.discard(page)
                    if page in self._in_flight_pages or page in self._todo_pages:
                        continue
                    self._todo_pages.append(page)
                    replayed += 1
                else:
                    name = action.name
                    self._invalid_accounts.discard(name)
                    if name in self._in_flight_accounts or name in self._todo_account_set:
                        continue
                    self._push_todo_account(name)
                    replayed += 1
        return replayed

    def set_level_range(self, min_level: int, max_level: int) -> None:
        with self._lock:
            self._min_level, self._max_level = clamp_level_range(min_level, max_level)

            for level in [lvl for lvl in self._skipped if self._in_range(lvl)]:
                for name in self._skipped.pop(level):
                    del self._skipped_names[name]
                    if name not in self._invalid_accounts and name not in self._in_flight_accounts:
                        self._push_todo_account(name, level)

            keep: List[str] = []
            for name in self._todo_accounts:
                level = self._account_levels.get(name)
                if level is not None and not self._in_range(level):
                    self._todo_account_set.discard(name)
                    del self._account_levels[name]
                    self._park(name, level)
                else:
                    keep.append(name)
            self._todo_accounts = keep
            logger.debug("level range set to %d..%d", self._min_level, self._max_level)

    def set_order(self, order: CrawlingOrder) -> None:
        with self._lock:
            self._order = CrawlingOrder.parse(order)
            self._order.apply_order(self._todo_pages, self._rng)

    def apply_order(self) -> None:
        with self._lock:
            self._order.apply_order(self._todo_pages, self._rng)

    def reset(self, data: "RestoreData", on_reset: Optional[Callable[[], None]] = None) -> None:
        """Swaps in restored contents under a new epoch."""
        with self._lock:
            if on_reset is not None:
                on_reset()
            self._load(
                data.que_id,
                todo_pages=data.todo_pages,
                invalid_pages=data.invalid_pages,
                todo_accounts=data.todo_accounts,
                invalid_accounts=data.invalid_accounts,
                order=data.order,
                min_level=data.min_level,
                max_level=data.max_level,
                lvl_skipped_accounts=data.lvl_skipped_accounts,
                init_pending=data.init_pending,
            )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def count_remaining(self) -> int:
        """Estimate: a page counts as a full page of accounts."""
        with self._lock:
            return (
                len(self._todo_pages) * PAGE_SIZE
                + len(self._todo_accounts)
                + len(self._in_flight_pages) * PAGE_SIZE
                + len(self._in_flight_accounts)
            )

    def is_finished(self) -> bool:
        with self._lock:
            return not (
                self._todo_pages
                or self._todo_accounts
                or self._in_flight_pages
                or self._in_flight_accounts
                or self._init_pending
            )

    def snapshot_sets(self) -> dict:
        with self._lock:
            return {
                "todo_pages": list(self._todo_pages),
                "in_flight_pages": set(self._in_flight_pages),
                "invalid_pages": set(self._invalid_pages),
                "todo_accounts": list(self._todo_accounts),
                "in_flight_accounts": set(self._in_flight_accounts),
                "invalid_accounts": set(self._invalid_accounts),
                "lvl_skipped_accounts": {k: list(v) for k, v in self._skipped.items()},
            }

    def create_backup(self, player_db: "PlayerDatabase") -> "HofBackup":
        """In-flight units are saved as todo so a restart does not lose them."""
        from crawler.backup import HofBackup

        with self._lock:
            todo_pages = list(self._todo_pages) + sorted(self._in_flight_pages)
            todo_accounts = list(self._todo_accounts) + sorted(self._in_flight_accounts)
            invalid_pages = sorted(self._invalid_pages)
            invalid_accounts = sorted(self._invalid_accounts)
            skipped = {k: list(v) for k, v in self._skipped.items()}
            order = self._order
            min_level, max_level = self._min_level, self._max_level

        return HofBackup.from_records(
            player_db.records(),
            todo_pages=todo_pages,
            invalid_pages=invalid_pages,
            todo_accounts=todo_accounts,
            invalid_accounts=invalid_accounts,
            order=order,
            min_level=min_level,
            max_level=max_level,
            lvl_skipped_accounts=skipped,
        )
