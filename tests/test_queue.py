import random
from unittest.mock import MagicMock

from crawler.backup import RestoreData
from crawler.queue import (
    WAIT,
    CharacterAction,
    CrawlingOrder,
    InitTodo,
    PageAction,
    WorkQueue,
    is_digit_name,
    new_que_id,
)
from crawler.session import CrawlerError
from common.constants import PAGE_SIZE
from scrapbook.players import PlayerDatabase


def assert_partitioned(q: WorkQueue) -> None:
    s = q.snapshot_sets()
    for todo, in_flight, invalid in (
        (s["todo_pages"], s["in_flight_pages"], s["invalid_pages"]),
        (s["todo_accounts"], s["in_flight_accounts"], s["invalid_accounts"]),
    ):
        assert len(todo) == len(set(todo))
        todo = set(todo)
        assert not todo & in_flight
        assert not todo & invalid
        assert not in_flight & invalid


def empty_restore(**kw) -> RestoreData:
    data = dict(
        que_id=new_que_id(),
        player_db=PlayerDatabase(),
        todo_pages=[],
        invalid_pages=[],
        todo_accounts=[],
        invalid_accounts=[],
        order=CrawlingOrder.RANDOM,
    )
    data.update(kw)
    return RestoreData(**data)


def test_order_parse_accepts_config_spellings():
    assert CrawlingOrder.parse("top_down") is CrawlingOrder.TOP_DOWN
    assert CrawlingOrder.parse("BottomUp") is CrawlingOrder.BOTTOM_UP
    assert CrawlingOrder.parse("random") is CrawlingOrder.RANDOM
    try:
        CrawlingOrder.parse("sideways")
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


def test_apply_order_two_pages():
    pages = [1, 0]
    CrawlingOrder.BOTTOM_UP.apply_order(pages)
    assert pages == [0, 1]
    CrawlingOrder.TOP_DOWN.apply_order(pages)
    assert pages == [1, 0]


def test_random_order_is_a_permutation():
    pages = list(range(20))
    CrawlingOrder.RANDOM.apply_order(pages, random.Random(7))
    assert sorted(pages) == list(range(20))


def test_top_down_crawls_first_page_first():
    q = WorkQueue(todo_pages=[2, 0, 1], order=CrawlingOrder.TOP_DOWN)
    q.apply_order()
    assert q.next_action() == PageAction(0, q.que_id)
    assert q.next_action() == PageAction(1, q.que_id)


def test_bottom_up_crawls_last_page_first():
    q = WorkQueue(todo_pages=[2, 0, 1], order=CrawlingOrder.BOTTOM_UP)
    q.apply_order()
    assert q.next_action() == PageAction(2, q.que_id)


def test_accounts_before_pages_and_wait_when_empty():
    q = WorkQueue(todo_pages=[0], todo_accounts=["anna", "ben"])
    assert q.next_action() == CharacterAction("ben", q.que_id)
    assert q.next_action() == CharacterAction("anna", q.que_id)
    assert q.next_action() == PageAction(0, q.que_id)
    assert q.next_action() is WAIT
    assert_partitioned(q)


def test_digit_only_and_empty_names_become_invalid():
    assert is_digit_name("12345")
    assert not is_digit_name("abc123")
    assert not is_digit_name("١٢٣")

    q = WorkQueue(todo_accounts=["bob", "", "12345"])
    assert q.next_action() == CharacterAction("bob", q.que_id)
    s = q.snapshot_sets()
    assert s["invalid_accounts"] == {"", "12345"}
    assert s["in_flight_accounts"] == {"bob"}


def test_init_todo_is_issued_once():
    q = WorkQueue(init_pending=True, order=CrawlingOrder.BOTTOM_UP)
    assert q.next_action() == InitTodo(q.que_id)
    assert q.next_action() is WAIT
    assert q.is_finished()
    assert q.init_todo(3, q.que_id)
    assert q.snapshot_sets()["todo_pages"] == [0, 1, 2]


def test_failed_init_todo_is_rearmed():
    q = WorkQueue(init_pending=True)
    action = q.next_action()
    assert q.fail(action, CrawlerError.GENERIC)
    assert q.next_action() == InitTodo(q.que_id)


def test_init_todo_skips_known_pages_and_rejects_stale():
    q = WorkQueue(todo_pages=[4], invalid_pages=[1], order=CrawlingOrder.BOTTOM_UP)
    q.next_action()  # page 4 in flight
    assert not q.init_todo(6, q.que_id - 1)
    assert q.init_todo(6, q.que_id)
    s = q.snapshot_sets()
    assert s["todo_pages"] == [0, 2, 3, 5]
    assert s["in_flight_pages"] == {4}
    assert s["invalid_pages"] == {1}


def test_rate_limited_unit_returns_to_todo_exactly_once():
    q = WorkQueue(todo_pages=[0])
    action = q.next_action()
    assert q.fail(action, CrawlerError.RATE_LIMIT)
    assert not q.fail(action, CrawlerError.RATE_LIMIT)
    s = q.snapshot_sets()
    assert s["todo_pages"] == [0]
    assert not s["invalid_pages"]
    assert not s["in_flight_pages"]


def test_rate_limited_account_returns_to_todo():
    q = WorkQueue(todo_accounts=["bob"])
    action = q.next_action()
    assert q.fail(action, CrawlerError.RATE_LIMIT)
    assert q.snapshot_sets()["todo_accounts"] == ["bob"]


def test_rate_limited_account_keeps_its_level():
    q = WorkQueue(todo_pages=[0], min_level=1, max_level=100)
    page = q.next_action()
    q.complete_page(page.page, page.que_id, [("mid", 50)])
    action = q.next_action()
    assert action == CharacterAction("mid", q.que_id)
    assert q.fail(action, CrawlerError.RATE_LIMIT)

    q.set_level_range(60, 100)
    s = q.snapshot_sets()
    assert s["todo_accounts"] == []
    assert s["lvl_skipped_accounts"] == {50: ["mid"]}
    assert_partitioned(q)


def test_generic_failure_invalidates_unit():
    q = WorkQueue(todo_pages=[3], todo_accounts=["bob"])
    account = q.next_action()
    page = q.next_action()
    assert q.fail(account, CrawlerError.GENERIC)
    assert q.fail(page, CrawlerError.NOT_FOUND)
    s = q.snapshot_sets()
    assert s["invalid_accounts"] == {"bob"}
    assert s["invalid_pages"] == {3}
    assert q.is_finished()


def test_stale_results_do_not_touch_the_new_epoch():
    q = WorkQueue(todo_pages=[0], todo_accounts=["bob"])
    account = q.next_action()
    page = q.next_action()

    q.reset(empty_restore(todo_pages=[7]))
    before = q.snapshot_sets()
    apply = MagicMock()

    assert q.complete_page(page.page, page.que_id, [("eve", 10)]) is None
    assert not q.complete_account(account.name, account.que_id, apply)
    assert not q.mark_missing(account.name, account.que_id)
    assert not q.fail(page, CrawlerError.RATE_LIMIT)
    assert q.replay_failed([page, account]) == 0

    apply.assert_not_called()
    assert q.snapshot_sets() == before


def test_reset_runs_callback_and_loads_contents():
    q = WorkQueue(todo_pages=[0, 1])
    on_reset = MagicMock()
    data = empty_restore(todo_accounts=["zed"], invalid_pages=[3], init_pending=True)
    q.reset(data, on_reset=on_reset)
    on_reset.assert_called_once_with()
    assert q.que_id == data.que_id
    s = q.snapshot_sets()
    assert s["todo_pages"] == []
    assert s["todo_accounts"] == ["zed"]
    assert s["invalid_pages"] == {3}
    assert not q.is_finished()


def test_complete_page_queues_only_unseen_names():
    q = WorkQueue(todo_pages=[0], invalid_accounts=["bob"])
    page = q.next_action()
    added = q.complete_page(
        page.page, page.que_id, [("alice", 10), ("bob", 10), ("alice", 10), ("carol", 10)]
    )
    assert added == 2
    s = q.snapshot_sets()
    assert sorted(s["todo_accounts"]) == ["alice", "carol"]
    assert not s["in_flight_pages"]
    assert_partitioned(q)


def test_complete_account_applies_under_current_epoch():
    q = WorkQueue(todo_accounts=["bob"])
    action = q.next_action()
    apply = MagicMock()
    assert q.complete_account(action.name, action.que_id, apply)
    apply.assert_called_once_with()
    assert q.is_finished()


def test_mark_missing_moves_account_to_invalid():
    q = WorkQueue(todo_accounts=["ghost"])
    action = q.next_action()
    assert q.mark_missing(action.name, action.que_id)
    assert q.snapshot_sets()["invalid_accounts"] == {"ghost"}


def test_level_range_parks_and_reinstates_accounts():
    q = WorkQueue(todo_pages=[0], min_level=10, max_level=100)
    page = q.next_action()
    added = q.complete_page(page.page, page.que_id, [("low", 5), ("mid", 50), ("high", 500)])
    assert added == 1
    s = q.snapshot_sets()
    assert s["todo_accounts"] == ["mid"]
    assert s["lvl_skipped_accounts"] == {5: ["low"], 500: ["high"]}

    q.set_level_range(1, 1000)
    s = q.snapshot_sets()
    assert sorted(s["todo_accounts"]) == ["high", "low", "mid"]
    assert s["lvl_skipped_accounts"] == {}

    q.set_level_range(40, 60)
    s = q.snapshot_sets()
    assert s["todo_accounts"] == ["mid"]
    assert s["lvl_skipped_accounts"] == {5: ["low"], 500: ["high"]}
    assert_partitioned(q)


def test_level_range_is_clamped():
    q = WorkQueue()
    q.set_level_range(0, 99999)
    assert (q.min_level, q.max_level) == (1, 9999)
    q.set_level_range(50, 10)
    assert (q.min_level, q.max_level) == (50, 50)


def test_count_remaining_counts_pages_as_full_pages():
    q = WorkQueue(todo_pages=[0, 1], todo_accounts=["a"])
    assert q.count_remaining() == 2 * PAGE_SIZE + 1
    q.next_action()
    q.next_action()
    assert q.count_remaining() == 2 * PAGE_SIZE + 1
    assert not q.is_finished()


def test_replay_failed_moves_current_units_back():
    q = WorkQueue(todo_pages=[0], todo_accounts=["bob"])
    account = q.next_action()
    page = q.next_action()
    q.fail(account, CrawlerError.GENERIC)
    q.fail(page, CrawlerError.GENERIC)

    replayed = q.replay_failed([account, page, PageAction(9, q.que_id + 1000), WAIT])
    assert replayed == 2
    s = q.snapshot_sets()
    assert s["todo_pages"] == [0]
    assert s["todo_accounts"] == ["bob"]
    assert not s["invalid_pages"]
    assert not s["invalid_accounts"]


def test_set_order_reorders_todo():
    q = WorkQueue(todo_pages=[3, 1, 2], order=CrawlingOrder.BOTTOM_UP)
    q.set_order(CrawlingOrder.TOP_DOWN)
    assert q.order is CrawlingOrder.TOP_DOWN
    assert q.snapshot_sets()["todo_pages"] == [3, 2, 1]


def test_backup_saves_in_flight_units_as_todo():
    q = WorkQueue(todo_pages=[0, 1], todo_accounts=["a"], invalid_accounts=["x"], order=CrawlingOrder.TOP_DOWN)
    q.next_action()
    q.next_action()
    backup = q.create_backup(PlayerDatabase())
    assert sorted(backup.todo_pages) == [0, 1]
    assert backup.todo_accounts == ["a"]
    assert backup.invalid_accounts == ["x"]
    assert backup.order is CrawlingOrder.TOP_DOWN
    assert backup.export_time is not None


def test_partition_holds_through_mixed_operations():
    rng = random.Random(99)
    q = WorkQueue(todo_pages=range(10), todo_accounts=["n%d" % i for i in range(10)], rng=rng)
    for _ in range(60):
        action = q.next_action()
        if action is WAIT:
            break
        roll = rng.random()
        if isinstance(action, PageAction):
            if roll < 0.3:
                q.fail(action, CrawlerError.RATE_LIMIT)
            elif roll < 0.5:
                q.fail(action, CrawlerError.GENERIC)
            else:
                q.complete_page(action.page, action.que_id, [("p%d" % action.page, 10)])
        else:
            if roll < 0.3:
                q.fail(action, CrawlerError.RATE_LIMIT)
            elif roll < 0.5:
                q.mark_missing(action.name, action.que_id)
            else:
                q.complete_account(action.name, action.que_id)
        assert_partitioned(q)
