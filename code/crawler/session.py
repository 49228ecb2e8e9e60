# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Boundary to the remote game.

The protocol encoding lives in an opaque GameSession supplied by the caller;
this module only defines the two commands the crawler issues, the error
taxonomy and the locks that guard a shared session and its game state.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp

from common.logging_setup import register_secret
from scrapbook.players import CharacterClass, EquipmentIdent, PlayerRecord

logger = logging.getLogger("hof.session")


@dataclass(frozen=True)
class HallOfFamePage:
    page: int


@dataclass(frozen=True)
class ViewPlayer:
    ident: str


Command = Union[HallOfFamePage, ViewPlayer]
Response = Mapping[str, Any]


class SessionError(Exception):
    """Transport or protocol failure."""


class RateLimitedError(SessionError):
    pass


class PlayerNotFoundError(SessionError):
    pass


class GameStateError(SessionError):
    """Response could not be applied to the game state."""


class CrawlerError(Enum):
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    GENERIC = "generic"


def classify_error(exc: BaseException) -> CrawlerError:
    if isinstance(exc, RateLimitedError):
        return CrawlerError.RATE_LIMIT
    if isinstance(exc, PlayerNotFoundError):
        return CrawlerError.NOT_FOUND
    if isinstance(exc, aiohttp.ClientResponseError):
        if exc.status == 429:
            return CrawlerError.RATE_LIMIT
        if exc.status == 404:
            return CrawlerError.NOT_FOUND
    return CrawlerError.GENERIC


class GameSession(abc.ABC):
    """One authenticated connection to a game server."""

    @abc.abstractmethod
    async def login(self) -> Response:
        ...

    @abc.abstractmethod
    async def execute(self, command: Command) -> Response:
        ...

    async def register(self, gender: str, race: str, class_: CharacterClass) -> Response:
        raise SessionError("registration is not supported by this session")


# (server_url, username, password) -> session
SessionFactory = Callable[[str, str, str], Union[GameSession, Awaitable[GameSession]]]


class RWLock:
    """
    Many readers or one writer. A waiting writer blocks new readers so a
    relog is not starved by busy workers.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def write_locked(self) -> bool:
        return self._writer

    @contextlib.asynccontextmanager
    async def read(self):
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._writers_waiting == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def write(self):
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


def _sum_attributes(raw: Any) -> int:
    if raw is None:
        return 0
    if isinstance(raw, Mapping):
        raw = raw.values()
    return sum(int(v) for v in raw)


def parse_other_player(data: Mapping[str, Any], today=None) -> PlayerRecord:
    """Builds a PlayerRecord from an `other_player` response section."""
    try:
        equipment = set()
        for item in data.get("equipment") or []:
            if not item:
                continue
            ident = item.get("ident") if isinstance(item, Mapping) else None
            if ident:
                equipment.add(EquipmentIdent.from_json(ident))
        stats = _sum_attributes(data.get("base_attributes")) + _sum_attributes(
            data.get("bonus_attributes")
        )
        return PlayerRecord(
            uid=int(data["id"]),
            name=str(data["name"]),
            level=int(data["level"]),
            equipment=frozenset(equipment),
            stats=stats,
            fetch_date=today or datetime.now(timezone.utc).date(),
            class_=CharacterClass.parse(data.get("class")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise GameStateError(f"malformed player data: {e}") from e


def hall_of_fame_entries(resp: Response) -> List[Tuple[str, int]]:
    try:
        return [(str(e["name"]), int(e["level"])) for e in resp.get("hall_of_fame") or []]
    except (KeyError, TypeError, ValueError) as e:
        raise GameStateError(f"bad hall_of_fame: {e}") from e


class GameState:
    """
    The slice of the game state the crawler reads: the total player count,
    the last leaderboard page and the last viewed player.
    """

    def __init__(self) -> None:
        self.players_total: Optional[int] = None
        self.hall_of_fame: List[Tuple[str, int]] = []
        self.other_player: Optional[PlayerRecord] = None
        self._lookup: Dict[str, PlayerRecord] = {}

    def update(self, resp: Response) -> None:
        if "players_total" in resp:
            try:
                self.players_total = int(resp["players_total"])
            except (TypeError, ValueError) as e:
                raise GameStateError(f"bad players_total: {e}") from e
        if "hall_of_fame" in resp:
            self.hall_of_fame = hall_of_fame_entries(resp)
        if resp.get("other_player"):
            record = parse_other_player(resp["other_player"])
            self.other_player = record
            self._lookup[record.name.lower()] = record

    def lookup_name(self, name: str) -> Optional[PlayerRecord]:
        return self._lookup.get(name.lower())

    def forget(self, name: str) -> None:
        self._lookup.pop(name.lower(), None)


class CrawlerState:
    """
    A logged-in crawler identity shared by every worker of one server.

    `session_lock` is held for reading around each command and for writing
    while the session is replaced. `state_lock` is a plain mutex around the
    game state so each update is applied atomically.
    """

    RACES = ("human", "elf", "dwarf", "gnome", "orc", "dark_elf", "goblin", "demon")
    GENDERS = ("female", "male")

    def __init__(self, session: GameSession, game_state: Optional[GameState] = None):
        self.session = session
        self.game_state = game_state or GameState()
        self.session_lock = RWLock()
        self.state_lock = threading.Lock()

    def replace(self, session: GameSession, game_state: GameState) -> None:
        """Called with the write lock held."""
        self.session = session
        with self.state_lock:
            self.game_state = game_state

    async def execute(self, command: Command) -> Response:
        async with self.session_lock.read():
            resp = await self.session.execute(command)
        with self.state_lock:
            self.game_state.update(resp)
        return resp

    @staticmethod
    async def try_login(
        server_url: str,
        name: str,
        factory: SessionFactory,
        rng: Optional[random.Random] = None,
    ) -> Tuple[GameSession, GameState]:
        """
        Logs `name` in, registering a new character when the login is
        refused. The password is the reversed name.
        """
        password = name[::-1]
        register_secret(password)
        session = factory(server_url, name, password)
        if asyncio.iscoroutine(session):
            session = await session

        state = GameState()
        try:
            resp = await session.login()
        except SessionError as e:
            logger.debug("login refused for %s (%s), registering", name, e)
            rng = rng or random.Random()
            resp = await session.register(
                rng.choice(CrawlerState.GENDERS),
                rng.choice(CrawlerState.RACES),
                rng.choice(list(CharacterClass)),
            )
        state.update(resp)
        return session, state
