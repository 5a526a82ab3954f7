from __future__ import annotations

from typing import Dict, Tuple

from . import config
from .models import FamiliarStats, StatEffects


def stat_bounds(category: str, stat: str) -> Tuple[int, int]:
    return config.STAT_BOUNDS.get(f"{category}.{stat}", config.STAT_BOUNDS["default"])


def clamp_stat(category: str, stat: str, value: float) -> int:
    minimum, maximum = stat_bounds(category, stat)
    return int(max(minimum, min(maximum, round(value))))


def apply_stat_effects(stats: FamiliarStats, effects: StatEffects) -> FamiliarStats:
    """Add each delta to its sub-stat and clamp; unknown names are ignored."""

    payload: Dict[str, Dict[str, int]] = stats.model_dump()
    for category, changes in effects.items():
        current = payload.get(category)
        if current is None:
            continue
        for stat, delta in changes.items():
            if stat not in current:
                continue
            current[stat] = clamp_stat(category, stat, current[stat] + delta)
    return FamiliarStats.model_validate(payload)


def merge_effects(*effects: StatEffects) -> StatEffects:
    merged: StatEffects = {}
    for effect in effects:
        for category, changes in effect.items():
            bucket = merged.setdefault(category, {})
            for stat, delta in changes.items():
                bucket[stat] = bucket.get(stat, 0) + delta
    return merged
