import pytest

from control.cli import build_parser, load_session_factory, main
from crawler.backup import HofBackup

from fakes import small_world_factory


def test_load_session_factory():
    assert load_session_factory("fakes:small_world_factory") is small_world_factory
    with pytest.raises(ValueError):
        load_session_factory("fakes")
    with pytest.raises(ImportError):
        load_session_factory("no_such_module_here:connect")


def test_parser_defaults():
    args = build_parser().parse_args(["--session-factory", "fakes:small_world_factory", "s1.example.net"])
    assert args.servers == ["s1.example.net"]
    assert args.threads is None
    assert args.order is None
    assert not args.no_online


@pytest.mark.parametrize(
    "argv",
    [
        ["s1.example.net"],
        ["--session-factory", "fakes:small_world_factory", "--threads", "0", "s1.example.net"],
        ["--session-factory", "fakes:missing_callable", "s1.example.net"],
        ["--session-factory", "fakes:small_world_factory", "--order", "sideways", "s1.example.net"],
    ],
)
def test_bad_arguments_exit_with_usage_error(argv):
    with pytest.raises(SystemExit) as exc:
        main(argv)
    assert exc.value.code == 2


def test_headless_crawl_writes_backup(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "hof.db"))
    monkeypatch.setenv("BACKUP_INTERVAL_MINUTES", "0")
    monkeypatch.delenv("MAX_THREADS", raising=False)

    code = main(
        [
            "--session-factory",
            "fakes:small_world_factory",
            "--threads",
            "2",
            "--backup-dir",
            str(tmp_path / "backups"),
            "--order",
            "top_down",
            "--no-online",
            "https://s1.example.net/",
        ]
    )
    assert code == 0

    backup = HofBackup.read("s1examplenet", tmp_path / "backups")
    assert {c.name for c in backup.characters} == {"alice", "bob", "carol", "dave"}
    assert backup.todo_pages == []
    assert backup.order.value == "TopDown"
