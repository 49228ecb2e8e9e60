# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from common.constants import LOW_EQUIPMENT_CUTOFF, LOW_EQUIPMENT_MIN_LEVEL


class CharacterClass(Enum):
    WARRIOR = "Warrior"
    MAGE = "Mage"
    SCOUT = "Scout"
    ASSASSIN = "Assassin"
    BATTLE_MAGE = "BattleMage"
    BERSERKER = "Berserker"
    DEMON_HUNTER = "DemonHunter"
    DRUID = "Druid"
    BARD = "Bard"
    NECROMANCER = "Necromancer"

    @classmethod
    def parse(cls, raw: Any) -> Optional["CharacterClass"]:
        if raw is None or raw == "":
            return None
        if isinstance(raw, cls):
            return raw
        try:
            return cls(raw)
        except ValueError:
            pass
        if isinstance(raw, int) and 1 <= raw <= len(cls):
            # Protocol numbers classes starting at 1
            return list(cls)[raw - 1]
        return None


@dataclass(frozen=True)
class EquipmentIdent:
    """Identifies a collectible item independent of its stats."""

    class_: Optional[str]
    typ: str
    model_id: int
    color: int

    def sort_key(self) -> tuple:
        return (self.typ, self.model_id, self.color, self.class_ or "")

    def to_json(self) -> dict:
        return {
            "class": self.class_,
            "typ": self.typ,
            "model_id": self.model_id,
            "color": self.color,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "EquipmentIdent":
        return cls(
            class_=data.get("class"),
            typ=str(data["typ"]),
            model_id=int(data["model_id"]),
            color=int(data.get("color", 0)),
        )


@dataclass
class PlayerRecord:
    uid: int
    name: str
    level: int
    equipment: frozenset = field(default_factory=frozenset)
    stats: Optional[int] = None
    fetch_date: Optional[date] = None
    class_: Optional[CharacterClass] = None

    def is_stale(self, today: Optional[date] = None, max_age_days: int = 7) -> bool:
        if self.fetch_date is None:
            return True
        today = today or date.today()
        return today - self.fetch_date > timedelta(days=max_age_days)

    def without_volatile(self) -> "PlayerRecord":
        return replace(self, stats=None, fetch_date=None)

    def to_json(self, volatile: bool = True) -> dict:
        out = {
            "uid": self.uid,
            "name": self.name,
            "level": self.level,
            "equipment": [e.to_json() for e in sorted(self.equipment, key=EquipmentIdent.sort_key)],
            "class": self.class_.value if self.class_ else None,
        }
        if volatile:
            out["stats"] = self.stats
            out["fetch_date"] = self.fetch_date.isoformat() if self.fetch_date else None
        return out

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PlayerRecord":
        fetch = data.get("fetch_date")
        stats = data.get("stats")
        return cls(
            uid=int(data["uid"]),
            name=str(data["name"]),
            level=int(data["level"]),
            equipment=frozenset(
                EquipmentIdent.from_json(e) for e in data.get("equipment") or []
            ),
            stats=int(stats) if stats is not None else None,
            fetch_date=date.fromisoformat(fetch) if fetch else None,
            class_=CharacterClass.parse(data.get("class")),
        )


@dataclass
class AttackTarget:
    """`missing` is a snapshot taken when the target list was built."""

    missing: int
    info: PlayerRecord


class PlayerDatabase:
    """
    Latest record per player id plus the inverted equipment index
    (item -> owning player ids) and the low-equipment bucket by level.

    Every player id in an owner set belongs to a stored record whose
    equipment contains that item.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._players: Dict[int, PlayerRecord] = {}
        self._by_name: Dict[str, int] = {}
        self._equipment: Dict[EquipmentIdent, set[int]] = {}
        self._low_equipment: Dict[int, set[int]] = {}

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, uid: int) -> bool:
        return uid in self._players

    @staticmethod
    def _is_low_equipment(record: PlayerRecord) -> bool:
        return (
            len(record.equipment) < LOW_EQUIPMENT_CUTOFF
            and record.level >= LOW_EQUIPMENT_MIN_LEVEL
        )

    def upsert(self, record: PlayerRecord) -> None:
        with self._lock:
            old = self._players.get(record.uid)
            if old is not None:
                for item in old.equipment:
                    owners = self._equipment.get(item)
                    if owners is None:
                        continue
                    owners.discard(old.uid)
                    if not owners:
                        del self._equipment[item]
                if self._is_low_equipment(old):
                    bucket = self._low_equipment.get(old.level)
                    if bucket is not None:
                        bucket.discard(old.uid)
                        if not bucket:
                            del self._low_equipment[old.level]
                if self._by_name.get(old.name.lower()) == old.uid:
                    del self._by_name[old.name.lower()]

            for item in record.equipment:
                self._equipment.setdefault(item, set()).add(record.uid)
            if self._is_low_equipment(record):
                self._low_equipment.setdefault(record.level, set()).add(record.uid)
            self._by_name[record.name.lower()] = record.uid
            self._players[record.uid] = record

    def extend(self, records: Iterable[PlayerRecord]) -> int:
        count = 0
        for record in records:
            self.upsert(record)
            count += 1
        return count

    def get(self, uid: int) -> Optional[PlayerRecord]:
        return self._players.get(uid)

    def lookup_name(self, name: str) -> Optional[PlayerRecord]:
        uid = self._by_name.get(name.lower())
        return self._players.get(uid) if uid is not None else None

    def owners(self, item: EquipmentIdent) -> frozenset:
        with self._lock:
            return frozenset(self._equipment.get(item, ()))

    def equipment_index(self) -> Dict[EquipmentIdent, frozenset]:
        """Copy of the inverted index."""
        with self._lock:
            return {item: frozenset(owners) for item, owners in self._equipment.items()}

    def records(self) -> List[PlayerRecord]:
        with self._lock:
            return list(self._players.values())

    def __iter__(self) -> Iterator[PlayerRecord]:
        return iter(self.records())

    def low_equipment(self, max_level: int) -> List[PlayerRecord]:
        """Low-equipment players at or below `max_level`, highest level first."""
        with self._lock:
            out: List[PlayerRecord] = []
            for level in sorted(self._low_equipment, reverse=True):
                if level > max_level:
                    continue
                out.extend(self._players[uid] for uid in self._low_equipment[level])
            return out

    def adopt(self, other: "PlayerDatabase") -> None:
        """Takes over the contents of `other`, which is left empty."""
        with self._lock, other._lock:
            self._players, other._players = other._players, {}
            self._by_name, other._by_name = other._by_name, {}
            self._equipment, other._equipment = other._equipment, {}
            self._low_equipment, other._low_equipment = other._low_equipment, {}

    def clear(self) -> None:
        with self._lock:
            self._players.clear()
            self._by_name.clear()
            self._equipment.clear()
            self._low_equipment.clear()
