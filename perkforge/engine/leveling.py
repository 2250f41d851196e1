from __future__ import annotations

import logging
import math
from typing import Any

from perkforge.engine.tracker import CharacterTracker
from perkforge.models.perks import ScalingState, coerce_int

log = logging.getLogger(__name__)


def xp_to_reach(start: int, target: int) -> int:
    """XP spent climbing from ``start`` to ``target`` when each level costs ``level * 10``."""
    return 5 * (target * (target - 1) - start * (start - 1))


def advance(scaling: ScalingState) -> int:
    start = scaling.level
    budget = (scaling.xp + 5 * start * (start - 1)) // 5
    target = max(start, (math.isqrt(4 * budget + 1) + 1) // 2)
    if not scaling.uncapped and target >= scaling.max_level:
        target = max(start, scaling.max_level)
        scaling.xp -= xp_to_reach(start, target)
        scaling.xp = min(scaling.xp, target * 10)
    else:
        scaling.xp -= xp_to_reach(start, target)
    scaling.level = target
    return target - start


class LevelingEngine:
    def __init__(self, tracker: CharacterTracker) -> None:
        self.tracker = tracker

    def add_xp(self, perk_name: str, amount: Any) -> ScalingState | None:
        state = self.tracker.state
        perk = state.find_perk(perk_name)
        if perk is None:
            return None
        scaling = perk.scaling
        if not scaling.scaling_active:
            if not perk.qualifies_for_scaling(state.has_gamer):
                log.debug("xp_ignored_dormant perk=%s", perk.name)
                return None
            scaling.scaling_active = True

        gained = max(0, coerce_int(amount))
        scaling.xp += gained
        levels = advance(scaling)
        if levels:
            log.info("perk_level_up perk=%s levels=%s level=%s", perk.name, levels, scaling.level)

        log.info("perk_xp perk=%s gained=%s level=%s xp=%s", perk.name, gained, scaling.level, scaling.xp)
        self.tracker.commit(recompute_economy=False)
        return scaling

    def set_level(self, perk_name: str, level: Any, xp: Any = 0) -> ScalingState | None:
        perk = self.tracker.state.find_perk(perk_name)
        if perk is None:
            return None
        perk.scaling.level = max(1, coerce_int(level, 1))
        perk.scaling.xp = max(0, coerce_int(xp))
        self.tracker.commit(recompute_economy=False)
        return perk.scaling

    def confirm_level(self, perk_name: str, level: Any) -> ScalingState | None:
        """Narrative level-up assertion; only honoured for an active scaffold."""
        perk = self.tracker.state.find_perk(perk_name)
        if perk is None or not perk.scaling.scaling_active:
            return None
        log.info("perk_level_confirmed perk=%s level=%s", perk.name, level)
        return self.set_level(perk.name, level, 0)
