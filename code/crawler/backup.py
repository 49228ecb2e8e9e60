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
import json
import logging
import os
import re
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from common.constants import (
    BACKUP_SUFFIX,
    CURRENT_VERSION,
    DEFAULT_HOF_CACHE_URL,
    LEGACY_BACKUP_SUFFIX,
    LEVEL_CEILING,
    LEVEL_FLOOR,
)
from crawler.queue import CrawlingOrder, WorkQueue, new_que_id
from scrapbook.players import PlayerDatabase, PlayerRecord

logger = logging.getLogger("hof.backup")

USER_AGENT = f"HoF-Scrapbook/{CURRENT_VERSION}"
_YIELD_EVERY = 10_000
_FRACTION = re.compile(r"(\.\d{6})\d+")


class BackupFormatError(ValueError):
    pass


@dataclass
class HofBackup:
    """
    Snapshot of one server's crawl. Characters are stored without their
    volatile fields (stats, fetch_date).

    `current_page` is only set for legacy backups, which tracked a single
    position instead of page partitions.
    """

    todo_pages: List[int] = field(default_factory=list)
    invalid_pages: List[int] = field(default_factory=list)
    todo_accounts: List[str] = field(default_factory=list)
    invalid_accounts: List[str] = field(default_factory=list)
    order: CrawlingOrder = CrawlingOrder.RANDOM
    export_time: Optional[datetime] = None
    characters: List[PlayerRecord] = field(default_factory=list)
    min_level: int = LEVEL_FLOOR
    max_level: int = LEVEL_CEILING
    lvl_skipped_accounts: Dict[int, List[str]] = field(default_factory=dict)
    current_page: Optional[int] = None

    @classmethod
    def from_records(cls, records: Iterable[PlayerRecord], **kwargs) -> "HofBackup":
        kwargs.setdefault("export_time", datetime.now(timezone.utc))
        return cls(characters=[r.without_volatile() for r in records], **kwargs)

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------
    def to_json(self) -> dict:
        return {
            "todo_pages": list(self.todo_pages),
            "invalid_pages": list(self.invalid_pages),
            "todo_accounts": list(self.todo_accounts),
            "invalid_accounts": list(self.invalid_accounts),
            "order": self.order.value,
            "export_time": self.export_time.isoformat() if self.export_time else None,
            "characters": [c.to_json(volatile=False) for c in self.characters],
            "min_level": self.min_level,
            "max_level": self.max_level,
            "level_skip_bucket": {
                str(level): list(names) for level, names in self.lvl_skipped_accounts.items()
            },
        }

    @classmethod
    def from_json(cls, data: Any) -> "HofBackup":
        if isinstance(data, list) and len(data) == 2:
            current_page, characters = data
            return cls(
                characters=[PlayerRecord.from_json(c) for c in characters],
                current_page=int(current_page),
            )
        if not isinstance(data, dict) or "characters" not in data:
            raise BackupFormatError("not a backup document")

        export_time = data.get("export_time")
        skipped = data.get("level_skip_bucket", data.get("lvl_skipped_accounts")) or {}
        if not isinstance(skipped, dict):
            raise BackupFormatError("level skip bucket is not an object")
        order = data.get("order")
        backup = cls(
            todo_pages=[int(p) for p in data.get("todo_pages") or []],
            invalid_pages=[int(p) for p in data.get("invalid_pages") or []],
            todo_accounts=[str(a) for a in data.get("todo_accounts") or []],
            invalid_accounts=[str(a) for a in data.get("invalid_accounts") or []],
            order=CrawlingOrder.parse(order) if order else CrawlingOrder.RANDOM,
            export_time=_parse_time(export_time) if export_time else None,
            characters=[PlayerRecord.from_json(c) for c in data["characters"] or []],
            min_level=int(data.get("min_level", LEVEL_FLOOR)),
            max_level=int(data.get("max_level", LEVEL_CEILING)),
            lvl_skipped_accounts={int(k): list(v) for k, v in skipped.items()},
        )
        if "current_page" in data:
            # Older object layout that still tracked a single position
            backup.current_page = int(data["current_page"])
        return backup

    # ------------------------------------------------------------------
    # files
    # ------------------------------------------------------------------
    @staticmethod
    def path_for(ident: str, directory: os.PathLike | str = ".", legacy: bool = False) -> Path:
        suffix = LEGACY_BACKUP_SUFFIX if legacy else BACKUP_SUFFIX
        return Path(directory) / f"{ident}{suffix}"

    def write(self, ident: str, directory: os.PathLike | str = ".") -> Path:
        """Writes `{ident}.zhof` atomically. Raises OSError on failure."""
        final = self.path_for(ident, directory)
        final.parent.mkdir(parents=True, exist_ok=True)
        tmp = final.with_name(f".{final.name}.tmp")

        payload = json.dumps(self.to_json(), separators=(",", ":")).encode("utf-8")
        try:
            tmp.write_bytes(zlib.compress(payload))
            tmp.replace(final)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        logger.info(
            "backup written: %s (%d characters, %s bytes)",
            final.name,
            len(self.characters),
            f"{final.stat().st_size:,}",
        )
        return final

    @classmethod
    def read(cls, ident: str, directory: os.PathLike | str = ".") -> Optional["HofBackup"]:
        """
        Tries `{ident}.zhof` (current or legacy layout), then the uncompressed
        `{ident}.hof`. Returns None when nothing usable exists.
        """
        for legacy in (False, True):
            path = cls.path_for(ident, directory, legacy=legacy)
            try:
                raw = path.read_bytes()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("could not read %s: %s", path, e)
                continue
            try:
                if not legacy:
                    raw = zlib.decompress(raw)
                return cls.from_json(json.loads(raw.decode("utf-8")))
            except (
                zlib.error,
                UnicodeDecodeError,
                ValueError,
                KeyError,
                TypeError,
                AttributeError,
            ) as e:
                logger.warning("unusable backup %s: %s", path.name, e)
        return None


def _parse_time(raw: str) -> datetime:
    # Other writers emit nanoseconds
    raw = _FRACTION.sub(r"\1", raw.replace("Z", "+00:00"))
    when = datetime.fromisoformat(raw)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


# ----------------------------------------------------------------------
# online cache
# ----------------------------------------------------------------------
async def fetch_online_hof_date(
    session: aiohttp.ClientSession, ident: str, cache_url: str = DEFAULT_HOF_CACHE_URL
) -> Optional[datetime]:
    url = f"{cache_url.rstrip('/')}/{ident}.version"
    timeout = aiohttp.ClientTimeout(total=8)
    async with session.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout) as resp:
        resp.raise_for_status()
        text = (await resp.text()).strip()
    when = parsedate_to_datetime(text)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


async def fetch_online_hof(
    session: aiohttp.ClientSession,
    ident: str,
    directory: os.PathLike | str = ".",
    cache_url: str = DEFAULT_HOF_CACHE_URL,
) -> Path:
    url = f"{cache_url.rstrip('/')}/{ident}{BACKUP_SUFFIX}"
    timeout = aiohttp.ClientTimeout(total=120)
    async with session.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout) as resp:
        resp.raise_for_status()
        body = await resp.read()

    final = HofBackup.path_for(ident, directory)
    final.parent.mkdir(parents=True, exist_ok=True)
    tmp = final.with_name(f".{final.name}.download")
    tmp.write_bytes(body)
    tmp.replace(final)
    return final


async def get_newest_backup(
    ident: str,
    directory: os.PathLike | str = ".",
    fetch_online: bool = True,
    cache_url: str = DEFAULT_HOF_CACHE_URL,
    session: Optional[aiohttp.ClientSession] = None,
) -> Optional[HofBackup]:
    """
    Local backup, replaced by the shared online one when that is newer or
    when no local backup exists.
    """
    backup = await asyncio.to_thread(HofBackup.read, ident, directory)
    if not fetch_online:
        return backup

    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession()
    try:
        try:
            online_time = await fetch_online_hof_date(session, ident, cache_url)
        except (aiohttp.ClientError, asyncio.TimeoutError, TypeError, ValueError) as e:
            logger.debug("no online backup date for %s: %s", ident, e)
            return backup

        local_time = backup.export_time if backup else None
        if local_time is not None and local_time >= online_time:
            return backup

        logger.info("fetching online backup for %s (%s)", ident, online_time.isoformat())
        try:
            await fetch_online_hof(session, ident, directory, cache_url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning("online backup download failed for %s: %s", ident, e)
            return backup
    finally:
        if owns_session:
            await session.close()

    return await asyncio.to_thread(HofBackup.read, ident, directory) or backup


# ----------------------------------------------------------------------
# restore
# ----------------------------------------------------------------------
@dataclass
class RestoreData:
    que_id: int
    player_db: PlayerDatabase
    todo_pages: List[int]
    invalid_pages: List[int]
    todo_accounts: List[str]
    invalid_accounts: List[str]
    order: CrawlingOrder
    min_level: int = LEVEL_FLOOR
    max_level: int = LEVEL_CEILING
    lvl_skipped_accounts: Dict[int, List[str]] = field(default_factory=dict)
    init_pending: bool = False

    def into_queue(self, rng=None) -> WorkQueue:
        return WorkQueue(
            self.que_id,
            todo_pages=self.todo_pages,
            invalid_pages=self.invalid_pages,
            todo_accounts=self.todo_accounts,
            invalid_accounts=self.invalid_accounts,
            order=self.order,
            min_level=self.min_level,
            max_level=self.max_level,
            lvl_skipped_accounts=self.lvl_skipped_accounts,
            init_pending=self.init_pending,
            rng=rng,
        )


async def restore_backup(
    backup: Optional[HofBackup],
    total_pages: Optional[int],
    order: Optional[CrawlingOrder] = None,
    rng=None,
) -> RestoreData:
    """
    Builds a fresh epoch from a backup, or from scratch when there is none.
    Without a known page total the queue starts empty and asks a worker to
    initialize it.
    """
    init_pending = False
    if backup is None:
        backup = HofBackup(order=order or CrawlingOrder.RANDOM)
        first_page = 0
    else:
        # Legacy backups crawled pages in ascending order up to current_page
        first_page = backup.current_page

    todo_pages = list(backup.todo_pages)
    if first_page is not None:
        if total_pages is None:
            init_pending = True
        else:
            todo_pages = list(range(first_page, total_pages))

    order = CrawlingOrder.parse(order) if order is not None else backup.order
    order.apply_order(todo_pages, rng)

    player_db = PlayerDatabase()
    for idx, record in enumerate(backup.characters):
        if idx % (_YIELD_EVERY + 1) == _YIELD_EVERY:
            await asyncio.sleep(0)
        player_db.upsert(record)

    return RestoreData(
        que_id=new_que_id(),
        player_db=player_db,
        todo_pages=todo_pages,
        invalid_pages=list(backup.invalid_pages),
        todo_accounts=list(backup.todo_accounts),
        invalid_accounts=list(backup.invalid_accounts),
        order=order,
        min_level=backup.min_level,
        max_level=backup.max_level,
        lvl_skipped_accounts={k: list(v) for k, v in backup.lvl_skipped_accounts.items()},
        init_pending=init_pending,
    )
