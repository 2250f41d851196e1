from __future__ import annotations

from dataclasses import dataclass

from perkforge.models.perks import CharacterState


@dataclass(frozen=True)
class Economy:
    total_points: int
    spent_points: int
    available_points: int
    threshold_progress: int
    threshold: int

    @property
    def threshold_percent(self) -> int:
        return round(100 * self.threshold_progress / self.threshold)


def compute_economy(state: CharacterState) -> Economy:
    threshold = state.threshold if state.threshold > 0 else 100
    total = state.base_points + state.bonus_points
    spent = sum(perk.cost for perk in state.acquired_perks)
    return Economy(
        total_points=total,
        spent_points=spent,
        available_points=total - spent,
        threshold_progress=total % threshold,
        threshold=threshold,
    )


def recompute(state: CharacterState) -> CharacterState:
    economy = compute_economy(state)
    state.total_points = economy.total_points
    state.spent_points = economy.spent_points
    state.available_points = economy.available_points
    state.threshold_progress = economy.threshold_progress
    return state
