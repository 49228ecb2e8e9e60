# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across the crawler and the scrapbook optimizer."""

CURRENT_VERSION = "v0.4.0"

# Leaderboard entries per Hall of Fame page
PAGE_SIZE = 51

# Consecutive generic failures before the crawler session is logged in again
FAILURE_THRESHOLD = 10

# Players with fewer items than this (and at least LOW_EQUIPMENT_MIN_LEVEL)
# are kept in the low-equipment bucket
LOW_EQUIPMENT_CUTOFF = 4
LOW_EQUIPMENT_MIN_LEVEL = 100

# Items with a model id at or above this only drop from NPCs
NPC_MODEL_ID_CUTOFF = 100

# Losses to a player before the optimizer skips them
DEFAULT_BLACKLIST_THRESHOLD = 3
OPTIMAL_ORDER_MAX_STEPS = 300
RANKED_TARGET_LIMIT = 100
LURE_TARGET_LIMIT = 20
MAX_LURES_PER_DAY = 5

LEVEL_FLOOR = 1
LEVEL_CEILING = 9999

IDLE_SLEEP_SECONDS = 1.0
FETCH_DELAY_SECONDS = 0.05
RELOG_BACKOFF_RANGE = (1.0, 3.0)
RELOG_SETTLE_SECONDS = 5.0
RATE_LIMIT_PENALTY_SECONDS = 2.0
PROGRESS_LOG_SECONDS = 10.0

BACKUP_SUFFIX = ".zhof"
LEGACY_BACKUP_SUFFIX = ".hof"
DEFAULT_HOF_CACHE_URL = "https://hof-cache.marenga.dev"

PROFILE_TEXT_KEYS = [
    "DB_PATH",
    "BACKUP_DIR",
    "HOF_CACHE_URL",
    "BASE_NAME",
    "CRAWL_ORDER",
]

PROFILE_INT_KEYS = [
    "MAX_THREADS",
    "START_THREADS",
    "BLACKLIST_THRESHOLD",
    "MIN_LEVEL",
    "MAX_LEVEL",
    "BACKUP_INTERVAL_MINUTES",
]

PROFILE_BOOL_KEYS = [
    "AUTO_FETCH_NEWEST",
]
