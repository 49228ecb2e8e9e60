import asyncio
import random
from datetime import date
from unittest.mock import MagicMock

import aiohttp
import pytest

from common.logging_setup import _redact_value
from crawler.session import (
    CrawlerError,
    CrawlerState,
    GameState,
    GameStateError,
    HallOfFamePage,
    PlayerNotFoundError,
    RateLimitedError,
    RWLock,
    SessionError,
    ViewPlayer,
    classify_error,
    parse_other_player,
)
from scrapbook.players import CharacterClass

from fakes import FakeSession, item, player_payload, small_world


def response_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(MagicMock(), (), status=status)


def test_classify_error():
    assert classify_error(RateLimitedError()) is CrawlerError.RATE_LIMIT
    assert classify_error(PlayerNotFoundError()) is CrawlerError.NOT_FOUND
    assert classify_error(response_error(429)) is CrawlerError.RATE_LIMIT
    assert classify_error(response_error(404)) is CrawlerError.NOT_FOUND
    assert classify_error(response_error(500)) is CrawlerError.GENERIC
    assert classify_error(SessionError("boom")) is CrawlerError.GENERIC
    assert classify_error(asyncio.TimeoutError()) is CrawlerError.GENERIC


def test_parse_other_player():
    payload = player_payload(5, "Alice", 77, [item(1), item(2)], base=(1, 2, 3, 4, 5), bonus=(10, 10))
    rec = parse_other_player(payload, today=date(2024, 3, 3))
    assert rec.uid == 5
    assert rec.level == 77
    assert rec.equipment == {item(1), item(2)}
    assert rec.stats == 35
    assert rec.fetch_date == date(2024, 3, 3)
    assert rec.class_ is CharacterClass.MAGE


def test_parse_other_player_attribute_mapping():
    payload = player_payload(5, "Alice")
    payload["base_attributes"] = {"str": 5, "dex": 6}
    payload["bonus_attributes"] = None
    assert parse_other_player(payload).stats == 11


def test_malformed_player_raises():
    with pytest.raises(GameStateError):
        parse_other_player({"name": "no id"})


def test_game_state_update_and_lookup():
    gs = GameState()
    gs.update({"players_total": "120", "hall_of_fame": [{"name": "a", "level": 3}]})
    assert gs.players_total == 120
    assert gs.hall_of_fame == [("a", 3)]

    gs.update({"other_player": player_payload(1, "Bob")})
    assert gs.lookup_name("bob").uid == 1
    gs.forget("BOB")
    assert gs.lookup_name("bob") is None

    with pytest.raises(GameStateError):
        gs.update({"hall_of_fame": [{"level": 3}]})


@pytest.mark.asyncio
async def test_execute_updates_game_state():
    state = CrawlerState(small_world())
    resp = await state.execute(HallOfFamePage(0))
    assert resp["hall_of_fame"][0]["name"] == "alice"
    assert state.game_state.players_total == 60
    await state.execute(ViewPlayer("carol"))
    assert state.game_state.lookup_name("carol").level == 60


@pytest.mark.asyncio
async def test_try_login_existing_account():
    created = {}

    def factory(url, name, password):
        created.update(url=url, name=name, password=password)
        return small_world()

    session, gs = await CrawlerState.try_login("s1.example.net", "Crawler7", factory)
    assert created == {"url": "s1.example.net", "name": "Crawler7", "password": "7relwarC"}
    assert session.registered is None
    assert gs.players_total == 60
    assert "7relwarC" not in _redact_value("pw=7relwarC")


@pytest.mark.asyncio
async def test_try_login_registers_when_refused():
    async def factory(url, name, password):
        return FakeSession(players_total=10, fail_login=1)

    session, gs = await CrawlerState.try_login(
        "s1.example.net", "Newbie", factory, rng=random.Random(3)
    )
    gender, race, class_ = session.registered
    assert gender in CrawlerState.GENDERS
    assert race in CrawlerState.RACES
    assert isinstance(class_, CharacterClass)
    assert gs.players_total == 10


@pytest.mark.asyncio
async def test_rwlock_writer_excludes_readers():
    lock = RWLock()
    events = []

    async def reader(tag):
        async with lock.read():
            events.append(("in", tag))
            await asyncio.sleep(0.01)
            events.append(("out", tag))

    async def writer():
        async with lock.write():
            assert lock.write_locked
            events.append(("in", "w"))
            await asyncio.sleep(0.01)
            events.append(("out", "w"))

    r1 = asyncio.create_task(reader("r1"))
    await asyncio.sleep(0)
    w = asyncio.create_task(writer())
    await asyncio.sleep(0)
    r2 = asyncio.create_task(reader("r2"))
    await asyncio.gather(r1, w, r2)

    assert events == [
        ("in", "r1"),
        ("out", "r1"),
        ("in", "w"),
        ("out", "w"),
        ("in", "r2"),
        ("out", "r2"),
    ]
    assert not lock.write_locked
