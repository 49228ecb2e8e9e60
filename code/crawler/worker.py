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
import math
import time
from enum import Enum
from typing import Callable, Iterable, Optional

from common.constants import (
    FETCH_DELAY_SECONDS,
    IDLE_SLEEP_SECONDS,
    PAGE_SIZE,
    RATE_LIMIT_PENALTY_SECONDS,
)
from common.logging_setup import server_var, worker_var
from common.rate_limiter import ActionType, RateLimitManager
from crawler.queue import CharacterAction, CrawlAction, InitTodo, PageAction, Wait, WorkQueue
from crawler.session import (
    Command,
    CrawlerError,
    CrawlerState,
    GameStateError,
    HallOfFamePage,
    Response,
    ViewPlayer,
    classify_error,
    hall_of_fame_entries,
)
from crawler.supervisor import FailureSupervisor
from scrapbook.players import PlayerDatabase, PlayerRecord

CharacterCallback = Callable[[PlayerRecord], None]


class CrawlOutcome(Enum):
    IDLE = "idle"
    TODO_INITIALIZED = "todo_initialized"
    PAGE_CRAWLED = "page_crawled"
    CHARACTER_CRAWLED = "character_crawled"
    NO_PLAYER = "no_player"
    FAILED = "failed"
    STALE = "stale"
    HALTED = "halted"


FETCHED = (
    CrawlOutcome.PAGE_CRAWLED,
    CrawlOutcome.CHARACTER_CRAWLED,
    CrawlOutcome.NO_PLAYER,
    CrawlOutcome.FAILED,
    CrawlOutcome.STALE,
    CrawlOutcome.TODO_INITIALIZED,
)


class CrawlWorker:
    """
    One worker identity: pop an action, run it against the shared session,
    report the result. Nothing a remote command raises escapes `crawl_once`
    except cancellation.
    """

    def __init__(
        self,
        name: str,
        queue: WorkQueue,
        state: CrawlerState,
        player_db: PlayerDatabase,
        supervisor: FailureSupervisor,
        *,
        limiter: Optional[RateLimitManager] = None,
        on_character: Iterable[CharacterCallback] = (),
        idle_sleep: float = IDLE_SLEEP_SECONDS,
        fetch_delay: float = FETCH_DELAY_SECONDS,
        server_name: str = "-",
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.queue = queue
        self.state = state
        self.player_db = player_db
        self.supervisor = supervisor
        self.limiter = limiter
        self.on_character = list(on_character)
        self.idle_sleep = idle_sleep
        self.fetch_delay = fetch_delay
        self.server_name = server_name
        self.logger = (logger or logging.getLogger("hof")).getChild("worker")

        self.stop_event = asyncio.Event()
        self.crawled = 0

    def stop(self) -> None:
        """The current action is finished before the loop exits."""
        self.stop_event.set()

    async def run(self) -> None:
        server_var.set(self.server_name)
        worker_var.set(self.name)
        self.logger.debug("worker started")
        try:
            while not self.stop_event.is_set():
                outcome = await self.crawl_once()
                if outcome in FETCHED and self.fetch_delay > 0:
                    await asyncio.sleep(self.fetch_delay)
        finally:
            if self.limiter is not None:
                self.limiter.forget(self.name)
            self.logger.debug("worker stopped", extra={"crawled": self.crawled})

    async def crawl_once(self) -> CrawlOutcome:
        if self.supervisor.reviving:
            await self.supervisor.wait_revived()
            return CrawlOutcome.HALTED

        action = self.queue.next_action()
        if isinstance(action, Wait):
            await asyncio.sleep(self.idle_sleep)
            return CrawlOutcome.IDLE
        if isinstance(action, InitTodo):
            return await self._init_todo(action)
        if isinstance(action, PageAction):
            return await self._crawl_page(action)
        return await self._crawl_character(action)

    # ------------------------------------------------------------------
    async def _execute(self, action: CrawlAction, command: Command, kind: ActionType) -> Response:
        if self.limiter is not None:
            await self.limiter.acquire(kind, self.name)
        return await self.state.execute(command)

    def _report_failure(self, action: CrawlAction, exc: Exception, kind: ActionType) -> CrawlOutcome:
        error = classify_error(exc)
        if error is CrawlerError.RATE_LIMIT and self.limiter is not None:
            self.limiter.penalize(kind, RATE_LIMIT_PENALTY_SECONDS, self.name)

        applied = self.queue.fail(action, error)
        if error is CrawlerError.GENERIC:
            self.logger.warning("%s failed: %s", _describe(action), exc)
        else:
            self.logger.debug("%s failed (%s): %s", _describe(action), error.value, exc)
        if applied:
            self.supervisor.record_failure(action, error)
        return CrawlOutcome.FAILED

    async def _init_todo(self, action: InitTodo) -> CrawlOutcome:
        with self.state.state_lock:
            total = self.state.game_state.players_total
        if total is None:
            try:
                await self._execute(action, HallOfFamePage(0), ActionType.HOF_PAGE)
            except asyncio.CancelledError:
                self.queue.fail(action, CrawlerError.RATE_LIMIT)
                raise
            except Exception as e:
                return self._report_failure(action, e, ActionType.HOF_PAGE)
            with self.state.state_lock:
                total = self.state.game_state.players_total
            if total is None:
                # Counts towards a relog like any other broken reply
                return self._report_failure(
                    action,
                    GameStateError("server did not report a player total"),
                    ActionType.HOF_PAGE,
                )
            self.supervisor.record_success()

        pages = math.ceil(total / PAGE_SIZE)
        if not self.queue.init_todo(pages, action.que_id):
            return CrawlOutcome.STALE
        self.logger.info("initialized %d pages for %d players", pages, total)
        return CrawlOutcome.TODO_INITIALIZED

    async def _crawl_page(self, action: PageAction) -> CrawlOutcome:
        started = time.monotonic()
        try:
            resp = await self._execute(action, HallOfFamePage(action.page), ActionType.HOF_PAGE)
            entries = hall_of_fame_entries(resp)
        except asyncio.CancelledError:
            self.queue.fail(action, CrawlerError.RATE_LIMIT)
            raise
        except Exception as e:
            return self._report_failure(action, e, ActionType.HOF_PAGE)

        self.supervisor.record_success()
        added = self.queue.complete_page(action.page, action.que_id, entries)
        if added is None:
            return CrawlOutcome.STALE
        self.logger.debug(
            "crawled page %d (%d new accounts)",
            action.page,
            added,
            extra={"page": action.page, "took_ms": int((time.monotonic() - started) * 1000)},
        )
        return CrawlOutcome.PAGE_CRAWLED

    async def _crawl_character(self, action: CharacterAction) -> CrawlOutcome:
        name = action.name
        try:
            await self._execute(action, ViewPlayer(name), ActionType.VIEW_PLAYER)
        except asyncio.CancelledError:
            self.queue.fail(action, CrawlerError.RATE_LIMIT)
            raise
        except Exception as e:
            if classify_error(e) is CrawlerError.NOT_FOUND:
                self.queue.mark_missing(name, action.que_id)
                self.logger.debug("no player named %s", name)
                return CrawlOutcome.NO_PLAYER
            return self._report_failure(action, e, ActionType.VIEW_PLAYER)

        self.supervisor.record_success()
        with self.state.state_lock:
            record = self.state.game_state.lookup_name(name)
            self.state.game_state.forget(name)

        if record is None:
            if not self.queue.mark_missing(name, action.que_id):
                return CrawlOutcome.STALE
            self.logger.warning("no player result for %s", name, extra={"account": name})
            return CrawlOutcome.NO_PLAYER

        if not self.queue.complete_account(
            name, action.que_id, lambda: self.player_db.upsert(record)
        ):
            return CrawlOutcome.STALE

        self.crawled += 1
        self.logger.debug(
            "crawled %s (lvl %d, %d items)",
            record.name,
            record.level,
            len(record.equipment),
            extra={"account": name},
        )
        for callback in self.on_character:
            try:
                callback(record)
            except Exception:
                self.logger.exception("character callback failed")
        return CrawlOutcome.CHARACTER_CRAWLED


def _describe(action: CrawlAction) -> str:
    if isinstance(action, PageAction):
        return f"page {action.page}"
    if isinstance(action, CharacterAction):
        return f"account {action.name}"
    return "page count lookup"
