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
import hashlib
import itertools
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from common.backup_scheduler import CheckpointScheduler
from common.config import Config
from common.constants import PAGE_SIZE
from common.logging_setup import server_var
from common.rate_limiter import ActionType, RateLimitManager
from crawler.backup import HofBackup, RestoreData, get_newest_backup, restore_backup
from crawler.queue import CrawlingOrder, WorkQueue
from crawler.session import CrawlerState, GameSession, GameState, SessionFactory
from crawler.supervisor import FailureSupervisor
from crawler.worker import CrawlWorker
from scrapbook.players import PlayerDatabase, PlayerRecord

UpdateCallback = Callable[["ServerCrawl", PlayerRecord], None]


@dataclass(frozen=True)
class ServerIdent:
    id: int
    url: str
    ident: str

    @classmethod
    def from_url(cls, url: str) -> "ServerIdent":
        url = url.strip()
        if url.startswith("https:"):
            url = url[len("https:"):]
        url = url.lower().replace("/", "")
        ident = "".join(c for c in url if c.isalnum())
        digest = hashlib.blake2b(ident.encode("utf-8"), digest_size=8).digest()
        return cls(id=int.from_bytes(digest, "big"), url=url, ident=ident)


class ServerCrawl:
    """
    Everything crawled for one game server: the work queue, the player
    database, the shared crawler session and the worker pool around it.
    """

    WAITING = "waiting"
    RESTORING = "restoring"
    CRAWLING = "crawling"
    FAILED = "failed"
    STOPPED = "stopped"

    def __init__(
        self,
        ident: ServerIdent,
        config: Config,
        *,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.ident = ident
        self.config = config
        self.logger = (logger or logging.getLogger("hof")).getChild("server")
        self._rng = rng or random.Random()

        self.player_db = PlayerDatabase()
        self.queue = WorkQueue(
            order=CrawlingOrder.parse(config.CRAWL_ORDER),
            min_level=config.MIN_LEVEL,
            max_level=config.MAX_LEVEL,
            rng=self._rng,
        )
        self.limiter = RateLimitManager()
        self.state: Optional[CrawlerState] = None
        self.supervisor: Optional[FailureSupervisor] = None
        self.on_update: List[UpdateCallback] = []
        self.status_text = self.WAITING
        self.error: Optional[str] = None
        self.last_update: Optional[datetime] = None

        self._crawler_name: Optional[str] = None
        self._session_factory: Optional[SessionFactory] = None
        self._workers: Dict[int, Tuple[CrawlWorker, asyncio.Task]] = {}
        self._worker_ids = itertools.count(1)

        self.scheduler = CheckpointScheduler(
            config.BACKUP_INTERVAL_MINUTES,
            self.save_backup,
            logger=self.logger.getChild("checkpoint"),
            name=f"checkpoint-{ident.ident}",
        )

    # ------------------------------------------------------------------
    # session
    # ------------------------------------------------------------------
    async def _login(self) -> Tuple[GameSession, GameState]:
        await self.limiter.acquire(ActionType.LOGIN)
        return await CrawlerState.try_login(
            self.ident.url, self._crawler_name, self._session_factory, rng=self._rng
        )

    async def start(self, session_factory: SessionFactory, base_name: Optional[str] = None) -> None:
        """Logs the crawler identity in. Raises when that is impossible."""
        server_var.set(self.ident.ident)
        self._session_factory = session_factory
        self._crawler_name = base_name or self.config.BASE_NAME
        try:
            session, game_state = await self._login()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.status_text = self.FAILED
            self.error = str(e)
            self.logger.exception("could not log in crawler %s: %s", self._crawler_name, e)
            raise

        self.state = CrawlerState(session, game_state)
        self.supervisor = FailureSupervisor(
            self.queue, self.state, self._login, rng=self._rng, logger=self.logger
        )
        self.status_text = self.CRAWLING
        self.logger.info("crawler %s logged in on %s", self._crawler_name, self.ident.url)

    def total_pages(self) -> Optional[int]:
        if self.state is None:
            return None
        with self.state.state_lock:
            total = self.state.game_state.players_total
        return math.ceil(total / PAGE_SIZE) if total is not None else None

    # ------------------------------------------------------------------
    # queue contents
    # ------------------------------------------------------------------
    def _apply(self, data: RestoreData) -> None:
        self.queue.reset(data, on_reset=lambda: self.player_db.adopt(data.player_db))
        self.last_update = datetime.now(timezone.utc)

    async def restore(
        self,
        fetch_online: Optional[bool] = None,
        backup: Optional[HofBackup] = None,
        total_pages: Optional[int] = None,
    ) -> bool:
        """
        Loads the newest backup (local or online) into a fresh epoch, or
        starts from scratch. Returns True when a backup was used.
        """
        prev, self.status_text = self.status_text, self.RESTORING
        if fetch_online is None:
            fetch_online = self.config.AUTO_FETCH_NEWEST
        if backup is None:
            backup = await get_newest_backup(
                self.ident.ident,
                self.config.BACKUP_DIR,
                fetch_online=fetch_online,
                cache_url=self.config.HOF_CACHE_URL,
            )
        if total_pages is None:
            total_pages = self.total_pages()

        if backup is None:
            data = await restore_backup(None, total_pages, self.queue.order, rng=self._rng)
            data.min_level, data.max_level = self.queue.min_level, self.queue.max_level
        else:
            data = await restore_backup(backup, total_pages, rng=self._rng)
        self._apply(data)
        self.status_text = prev
        self.logger.info(
            "restored %d characters (%s)",
            len(self.player_db),
            "backup" if backup is not None else "fresh start",
            extra={"remaining": self.queue.count_remaining(), "que_id": data.que_id},
        )
        return backup is not None

    async def clear(self) -> None:
        """Forgets everything crawled and starts over with a new epoch."""
        data = await restore_backup(None, self.total_pages(), self.queue.order, rng=self._rng)
        data.min_level, data.max_level = self.queue.min_level, self.queue.max_level
        self._apply(data)
        self.logger.info("crawl cleared", extra={"que_id": data.que_id})

    def set_order(self, order: CrawlingOrder) -> None:
        self.queue.set_order(order)

    def set_level_range(self, min_level: int, max_level: int) -> None:
        self.queue.set_level_range(min_level, max_level)

    async def save_backup(self) -> Path:
        backup = self.queue.create_backup(self.player_db)
        return await asyncio.to_thread(backup.write, self.ident.ident, self.config.BACKUP_DIR)

    def start_checkpoints(self) -> None:
        self.scheduler.start()

    # ------------------------------------------------------------------
    # worker pool
    # ------------------------------------------------------------------
    @property
    def threads(self) -> int:
        return sum(1 for w, _ in self._workers.values() if not w.stop_event.is_set())

    def _on_character(self, record: PlayerRecord) -> None:
        self.last_update = datetime.now(timezone.utc)
        for callback in list(self.on_update):
            try:
                callback(self, record)
            except Exception:
                self.logger.exception("update listener failed")

    def _spawn(self) -> None:
        wid = next(self._worker_ids)
        worker = CrawlWorker(
            f"{self._crawler_name}-{wid}",
            self.queue,
            self.state,
            self.player_db,
            self.supervisor,
            limiter=self.limiter,
            on_character=[self._on_character],
            server_name=self.ident.ident,
            logger=self.logger,
        )
        task = asyncio.create_task(worker.run(), name=f"crawl-{self.ident.ident}-{wid}")
        self._workers[wid] = (worker, task)
        task.add_done_callback(lambda t, wid=wid: self._reap(wid, t))

    def _reap(self, wid: int, task: asyncio.Task) -> None:
        self._workers.pop(wid, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("worker %d died: %s", wid, exc, exc_info=exc)

    def set_threads(self, count: int) -> int:
        """Spawns workers or lets the newest ones exit after their current action."""
        if self.state is None or self.supervisor is None:
            raise RuntimeError("crawler is not logged in")
        count = max(0, min(count, self.config.MAX_THREADS))
        active = [wid for wid, (w, _) in sorted(self._workers.items()) if not w.stop_event.is_set()]
        for _ in range(count - len(active)):
            self._spawn()
        for wid in reversed(active[count:]):
            self._workers[wid][0].stop()
        if count != len(active):
            self.logger.info("worker pool resized %d -> %d", len(active), count, extra={"threads": count})
        return count

    async def wait_finished(self, poll: float = 1.0) -> None:
        """Returns once no work is left and no relog is pending."""
        while True:
            # A relog replays failed units, so the queue only looks finished
            if self.supervisor is not None and self.supervisor.reviving:
                await self.supervisor.wait_revived()
                continue
            if self.queue.is_finished():
                return
            await asyncio.sleep(poll)

    async def stop(self, grace: float = 10.0) -> None:
        await self.scheduler.stop()
        tasks = []
        for worker, task in list(self._workers.values()):
            worker.stop()
            tasks.append(task)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if self.supervisor is not None:
            await self.supervisor.stop()
        self.status_text = self.STOPPED

    def status(self) -> dict:
        return {
            "server": self.ident.url,
            "ident": self.ident.ident,
            "status": self.status_text,
            "error": self.error,
            "threads": self.threads,
            "que_id": self.queue.que_id,
            "order": self.queue.order.value,
            "min_level": self.queue.min_level,
            "max_level": self.queue.max_level,
            "crawled": len(self.player_db),
            "remaining": self.queue.count_remaining(),
            "finished": self.queue.is_finished(),
            "reviving": self.supervisor.reviving if self.supervisor else False,
            "failures": self.supervisor.failure_count if self.supervisor else 0,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "last_checkpoint": str(self.scheduler.last_path) if self.scheduler.last_path else None,
        }


class CrawlManager:
    """All servers being crawled, by server id."""

    def __init__(self, config: Config, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger("hof")
        self.servers: Dict[int, ServerCrawl] = {}

    def get_or_create(self, url: str) -> ServerCrawl:
        ident = ServerIdent.from_url(url)
        server = self.servers.get(ident.id)
        if server is None:
            server = ServerCrawl(ident, self.config, logger=self.logger)
            self.servers[ident.id] = server
        return server

    def get(self, server_id: int) -> Optional[ServerCrawl]:
        return self.servers.get(server_id)

    async def stop_all(self) -> None:
        await asyncio.gather(*(s.stop() for s in self.servers.values()), return_exceptions=True)
