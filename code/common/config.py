# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import random
import string
import logging
from typing import Optional

from common.constants import (
    CURRENT_VERSION,
    DEFAULT_BLACKLIST_THRESHOLD,
    DEFAULT_HOF_CACHE_URL,
    LEVEL_CEILING,
    LEVEL_FLOOR,
    PROFILE_BOOL_KEYS,
    PROFILE_INT_KEYS,
    PROFILE_TEXT_KEYS,
)
from common.db import DBManager

logger = logging.getLogger("hof.config")

MAX_THREADS_LIMIT = 50


def random_base_name(rng: Optional[random.Random] = None) -> str:
    """Worker identities are `<base_name><n>`; the base looks like a player name."""
    rng = rng or random.Random()
    name = rng.choice(string.ascii_uppercase)
    for _ in range(rng.randint(6, 8)):
        if rng.random() < 0.5:
            name += rng.choice(string.ascii_lowercase)
        else:
            name += rng.choice(string.digits)
    return name


class Config:
    """
    Read-only view of the crawler settings.

    Every key is looked up in the `app_config` table first, then in the
    environment, then falls back to a default.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, db: Optional[DBManager] = None):
        self.DB_PATH = os.getenv("DB_PATH", os.path.join("data", "hof.db"))
        self.db = db if db is not None else DBManager(self.DB_PATH)

        # --- prefer DB value if set, else environment ---
        def _get_from_db(key: str):
            try:
                return self.db.get_config(key) or None
            except Exception:
                return None

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = _get_from_db(key)
            if v is None or (isinstance(v, str) and v.strip() == ""):
                v = os.getenv(key, env_default)
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        # --- Paths / URLs ---
        self.BACKUP_DIR = _str("BACKUP_DIR", ".") or "."
        self.HOF_CACHE_URL = (
            _str("HOF_CACHE_URL", DEFAULT_HOF_CACHE_URL) or DEFAULT_HOF_CACHE_URL
        ).rstrip("/")

        # --- Crawling ---
        self.MAX_THREADS = max(0, min(MAX_THREADS_LIMIT, _int("MAX_THREADS", "10")))
        self.START_THREADS = max(0, min(self.MAX_THREADS, _int("START_THREADS", "1")))
        self.CRAWL_ORDER = (_str("CRAWL_ORDER", "random") or "random").strip().lower()
        self.MIN_LEVEL = max(LEVEL_FLOOR, _int("MIN_LEVEL", str(LEVEL_FLOOR)))
        self.MAX_LEVEL = min(
            LEVEL_CEILING, max(self.MIN_LEVEL, _int("MAX_LEVEL", str(LEVEL_CEILING)))
        )
        self.BASE_NAME = _str("BASE_NAME") or random_base_name()
        self.AUTO_FETCH_NEWEST = _bool("AUTO_FETCH_NEWEST", "true")
        self.BACKUP_INTERVAL_MINUTES = max(0, _int("BACKUP_INTERVAL_MINUTES", "15"))

        # --- Scrapbook ---
        self.BLACKLIST_THRESHOLD = max(1, _int("BLACKLIST_THRESHOLD", str(DEFAULT_BLACKLIST_THRESHOLD)))

        # --- Logging / misc ---
        self.logger = (logger or logging.getLogger("hof")).getChild(
            self.__class__.__name__
        )
        self.logger.debug(
            "config loaded (%s): threads=%d/%d order=%s levels=%d..%d",
            CURRENT_VERSION,
            self.START_THREADS,
            self.MAX_THREADS,
            self.CRAWL_ORDER,
            self.MIN_LEVEL,
            self.MAX_LEVEL,
        )

    def as_dict(self) -> dict:
        """Snapshot of every profile key, used for startup logging."""
        out = {}
        for key in PROFILE_TEXT_KEYS + PROFILE_INT_KEYS + PROFILE_BOOL_KEYS:
            out[key] = getattr(self, key, None)
        return out
