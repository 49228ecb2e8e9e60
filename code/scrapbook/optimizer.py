# =============================================================================
#  HoF Scrapbook
#  Copyright (C) 2025 github.com/hof-scrapbook
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Target selection for completing a scrapbook.

All functions work on snapshots: counts are copied before the battle order
simulation mutates them and the live PlayerDatabase is only read.
"""

from __future__ import annotations

from typing import Collection, Dict, Iterable, List, Mapping, Optional, Tuple

from common.constants import (
    LURE_TARGET_LIMIT,
    NPC_MODEL_ID_CUTOFF,
    OPTIMAL_ORDER_MAX_STEPS,
    RANKED_TARGET_LIMIT,
)
from scrapbook.players import AttackTarget, EquipmentIdent, PlayerDatabase, PlayerRecord

# Missing counts above this share the top bucket
_BUCKETS = 11


def _counts_item(item: EquipmentIdent, owned: Collection[EquipmentIdent]) -> bool:
    return item not in owned and item.model_id < NPC_MODEL_ID_CUTOFF


def per_player_missing_counts(
    db: PlayerDatabase,
    owned: Collection[EquipmentIdent],
    *,
    max_level: int,
    max_attributes: int = 0,
    blacklist: Optional[Mapping[int, Tuple[str, int]]] = None,
    blacklist_threshold: int = 1,
    invalid_names: Collection[str] = (),
) -> Dict[int, int]:
    """
    Number of not-yet-owned items per player.

    Players above `max_level`, with more than `max_attributes` total stats
    (0 disables the check), blacklisted at least `blacklist_threshold` times
    or whose name became invalid are dropped.
    """
    counts: Dict[int, int] = {}
    for item, owners in db.equipment_index().items():
        if not _counts_item(item, owned):
            continue
        for uid in owners:
            counts[uid] = counts.get(uid, 0) + 1

    blacklist = blacklist or {}
    invalid = set(invalid_names)
    for uid in list(counts):
        info = db.get(uid)
        if info is None or info.level > max_level:
            del counts[uid]
            continue
        if max_attributes > 0 and info.stats is not None and info.stats > max_attributes:
            del counts[uid]
            continue
        entry = blacklist.get(uid)
        if entry is not None and entry[1] >= blacklist_threshold:
            del counts[uid]
            continue
        if info.name in invalid:
            del counts[uid]
    return counts


def _rank_key(target: AttackTarget) -> tuple:
    info = target.info
    return (-target.missing, info.stats or 0, info.level, info.name, info.uid)


def rank_targets(
    counts: Mapping[int, int],
    db: PlayerDatabase,
    limit: int = RANKED_TARGET_LIMIT,
) -> List[AttackTarget]:
    """
    Best targets first: most missing items, then the weakest (stats, level),
    then name and id for a deterministic order.
    """
    if limit <= 0:
        return []
    buckets: List[List[int]] = [[] for _ in range(_BUCKETS)]
    for uid, count in counts.items():
        if count <= 0:
            continue
        buckets[min(count, _BUCKETS) - 1].append(uid)

    best: List[AttackTarget] = []
    for bucket in reversed(buckets):
        for uid in bucket:
            info = db.get(uid)
            if info is not None:
                best.append(AttackTarget(missing=counts[uid], info=info))
        if len(best) >= limit:
            break
    best.sort(key=_rank_key)
    del best[limit:]
    return best


def optimal_order(
    counts: Mapping[int, int],
    db: PlayerDatabase,
    owned: Iterable[EquipmentIdent],
    max_steps: int = OPTIMAL_ORDER_MAX_STEPS,
) -> List[str]:
    """
    Greedy battle plan: repeatedly fight the best target, pretend its items
    are now owned and lower the count of everyone else holding them.
    """
    counts = dict(counts)
    simulated = set(owned)
    order: List[str] = []

    best = rank_targets(counts, db, 1)
    steps = 0
    while best and steps < max_steps:
        target = best[0]
        if target.missing <= 0:
            break
        steps += 1
        for item in target.info.equipment:
            if not _counts_item(item, simulated):
                continue
            for uid in db.owners(item):
                if uid in counts:
                    counts[uid] = max(0, counts[uid] - 1)
        simulated.update(target.info.equipment)
        # The target has nothing new left even if some items were filtered
        counts.pop(target.info.uid, None)
        order.append(target.info.name)
        best = rank_targets(counts, db, 1)
    return order


def lure_targets(
    db: PlayerDatabase,
    max_level: int,
    limit: int = LURE_TARGET_LIMIT,
    exclude_ids: Collection[int] = (),
) -> List[PlayerRecord]:
    """Low-equipment players for the underworld, highest level first."""
    exclude = set(exclude_ids)
    out: List[PlayerRecord] = []
    for level_group in _group_by_level(db.low_equipment(max_level)):
        level_group.sort(key=lambda p: (p.name, p.uid))
        out.extend(p for p in level_group if p.uid not in exclude)
        if len(out) >= limit:
            break
    return out[:limit]


def _group_by_level(records: List[PlayerRecord]) -> List[List[PlayerRecord]]:
    groups: List[List[PlayerRecord]] = []
    last_level = None
    for record in records:
        if record.level != last_level:
            groups.append([])
            last_level = record.level
        groups[-1].append(record)
    return groups
