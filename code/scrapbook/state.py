# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Collection, Dict, Iterable, List, Optional, Set, Tuple, Union

from common.config import Config
from common.constants import (
    DEFAULT_BLACKLIST_THRESHOLD,
    LEVEL_CEILING,
    LURE_TARGET_LIMIT,
    MAX_LURES_PER_DAY,
)
from common.db import DBManager
from scrapbook.optimizer import lure_targets, optimal_order, per_player_missing_counts, rank_targets
from scrapbook.players import AttackTarget, EquipmentIdent, PlayerDatabase, PlayerRecord

logger = logging.getLogger("hof.scrapbook")

ARENA = "arena"
UNDERWORLD = "underworld"


@dataclass
class FightRecord:
    fought_at: datetime
    target_name: str
    won: bool


def _save_settings(store: DBManager, server_id: str, character_name: str, **changes) -> None:
    row = store.get_scrapbook_settings(server_id, character_name)
    current = {
        "max_level": row["max_level"] if row else LEVEL_CEILING,
        "max_attributes": row["max_attributes"] if row else 0,
        "underworld_max_level": row["underworld_max_level"] if row else LEVEL_CEILING,
    }
    current.update(changes)
    store.upsert_scrapbook_settings(server_id, character_name, **current)


def _load_log(store: DBManager, server_id: str, character_name: str, kind: str) -> List[FightRecord]:
    out = []
    for row in store.get_attack_log(server_id, character_name, kind):
        out.append(
            FightRecord(
                fought_at=datetime.fromisoformat(row["fought_at"]),
                target_name=row["target_name"],
                won=bool(row["won"]),
            )
        )
    return out


class ScrapbookState:
    """
    Scrapbook progress of one local character plus its arena filters,
    loss blacklist, current best targets and fight history.
    """

    def __init__(
        self,
        server_id: str,
        character_name: str,
        owned: Iterable[EquipmentIdent] = (),
        *,
        max_level: int = LEVEL_CEILING,
        max_attributes: int = 0,
        blacklist: Optional[Dict[int, Tuple[str, int]]] = None,
        blacklist_threshold: int = DEFAULT_BLACKLIST_THRESHOLD,
        store: Optional[DBManager] = None,
    ):
        self.server_id = server_id
        self.character_name = character_name
        self.owned: Set[EquipmentIdent] = set(owned)
        self.max_level = max_level
        self.max_attributes = max_attributes
        self.blacklist: Dict[int, Tuple[str, int]] = dict(blacklist or {})
        self.blacklist_threshold = max(1, blacklist_threshold)
        self.best: List[AttackTarget] = []
        self.attack_log: List[FightRecord] = []
        self.store = store

    @classmethod
    def load(
        cls,
        store: DBManager,
        server_id: str,
        character_name: str,
        owned: Iterable[EquipmentIdent] = (),
        default_max_level: int = LEVEL_CEILING,
        blacklist_threshold: int = DEFAULT_BLACKLIST_THRESHOLD,
    ) -> "ScrapbookState":
        row = store.get_scrapbook_settings(server_id, character_name)
        state = cls(
            server_id,
            character_name,
            owned,
            max_level=row["max_level"] if row else default_max_level,
            max_attributes=row["max_attributes"] if row else 0,
            blacklist=store.get_blacklist(server_id, character_name),
            blacklist_threshold=blacklist_threshold,
            store=store,
        )
        state.attack_log = _load_log(store, server_id, character_name, ARENA)
        return state

    @classmethod
    def from_config(
        cls,
        config: Config,
        server_id: str,
        character_name: str,
        owned: Iterable[EquipmentIdent] = (),
    ) -> "ScrapbookState":
        return cls.load(
            config.db,
            server_id,
            character_name,
            owned,
            blacklist_threshold=config.BLACKLIST_THRESHOLD,
        )

    def save(self) -> None:
        if self.store is None:
            return
        _save_settings(
            self.store,
            self.server_id,
            self.character_name,
            max_level=self.max_level,
            max_attributes=self.max_attributes,
        )

    def missing_counts(
        self,
        db: PlayerDatabase,
        threshold: Optional[int] = None,
        invalid_names: Collection[str] = (),
    ) -> Dict[int, int]:
        """Players lost to `threshold` times or more are left out."""
        return per_player_missing_counts(
            db,
            self.owned,
            max_level=self.max_level,
            max_attributes=self.max_attributes,
            blacklist=self.blacklist,
            blacklist_threshold=self.blacklist_threshold if threshold is None else threshold,
            invalid_names=invalid_names,
        )

    def update_best(
        self,
        db: PlayerDatabase,
        threshold: Optional[int] = None,
        invalid_names: Collection[str] = (),
    ) -> List[AttackTarget]:
        self.best = rank_targets(self.missing_counts(db, threshold, invalid_names), db)
        return self.best

    def battle_order(
        self,
        db: PlayerDatabase,
        threshold: Optional[int] = None,
        invalid_names: Collection[str] = (),
    ) -> str:
        """Names to fight in order, `/`-separated for pasting into the game."""
        counts = self.missing_counts(db, threshold, invalid_names)
        return "/".join(optimal_order(counts, db, self.owned))

    def record_fight(
        self,
        target: Union[AttackTarget, PlayerRecord],
        won: bool,
        when: Optional[datetime] = None,
    ) -> None:
        info = target.info if isinstance(target, AttackTarget) else target
        when = when or datetime.now(timezone.utc)
        self.attack_log.append(FightRecord(when, info.name, won))

        if won:
            self.owned.update(info.equipment)
        else:
            name, losses = self.blacklist.get(info.uid, (info.name, 0))
            self.blacklist[info.uid] = (info.name, losses + 1)

        if self.store is not None:
            if not won:
                self.store.add_loss(self.server_id, self.character_name, info.uid, info.name)
            self.store.add_attack_log(
                self.server_id,
                self.character_name,
                kind=ARENA,
                target_name=info.name,
                won=won,
                fought_at=when,
            )
        logger.debug("fight against %s: %s", info.name, "won" if won else "lost")

    def clear_blacklist(self) -> None:
        self.blacklist.clear()
        if self.store is not None:
            self.store.clear_blacklist(self.server_id, self.character_name)


class UnderworldState:
    """Lure targets for the underworld, taken from the low-equipment bucket."""

    def __init__(
        self,
        server_id: str,
        character_name: str,
        *,
        max_level: int = LEVEL_CEILING,
        lured_today: int = 0,
        store: Optional[DBManager] = None,
    ):
        self.server_id = server_id
        self.character_name = character_name
        self.max_level = max_level
        self.lured_today = lured_today
        self.best: List[PlayerRecord] = []
        self.attack_log: List[FightRecord] = []
        self.store = store
        self._lured_ids: Set[int] = set()

    @classmethod
    def load(
        cls,
        store: DBManager,
        server_id: str,
        character_name: str,
        lured_today: int = 0,
        default_max_level: int = LEVEL_CEILING,
    ) -> "UnderworldState":
        row = store.get_scrapbook_settings(server_id, character_name)
        state = cls(
            server_id,
            character_name,
            max_level=row["underworld_max_level"] if row else default_max_level,
            lured_today=lured_today,
            store=store,
        )
        state.attack_log = _load_log(store, server_id, character_name, UNDERWORLD)
        return state

    def save(self) -> None:
        if self.store is None:
            return
        _save_settings(
            self.store,
            self.server_id,
            self.character_name,
            underworld_max_level=self.max_level,
        )

    def can_lure(self) -> bool:
        return self.lured_today < MAX_LURES_PER_DAY

    def update_best(self, db: PlayerDatabase, limit: int = LURE_TARGET_LIMIT) -> List[PlayerRecord]:
        self.best = lure_targets(db, self.max_level, limit, exclude_ids=self._lured_ids)
        return self.best

    def record_lure(self, target: PlayerRecord, won: bool, when: Optional[datetime] = None) -> None:
        if not self.can_lure():
            raise RuntimeError(f"already lured {MAX_LURES_PER_DAY} players today")
        when = when or datetime.now(timezone.utc)
        self.lured_today += 1
        self._lured_ids.add(target.uid)
        self.best = [p for p in self.best if p.uid != target.uid]
        self.attack_log.append(FightRecord(when, target.name, won))
        if self.store is not None:
            self.store.add_attack_log(
                self.server_id,
                self.character_name,
                kind=UNDERWORLD,
                target_name=target.name,
                won=won,
                fought_at=when,
            )

    def new_day(self) -> None:
        self.lured_today = 0
        self._lured_ids.clear()
