import pytest

from common.config import Config
from common.db import DBManager


@pytest.fixture
def store():
    db = DBManager(":memory:")
    yield db
    db.close()


@pytest.fixture
def config(store, tmp_path, monkeypatch):
    for key in ("MAX_THREADS", "START_THREADS", "CRAWL_ORDER", "MIN_LEVEL", "MAX_LEVEL", "BASE_NAME"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AUTO_FETCH_NEWEST", "false")
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path))
    monkeypatch.setenv("BACKUP_INTERVAL_MINUTES", "0")
    return Config(db=store)
