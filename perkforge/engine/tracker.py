from __future__ import annotations

import logging
from typing import Any, Callable

from perkforge.config import Settings
from perkforge.db.gateway import PersistenceGateway
from perkforge.engine.economy import Economy, compute_economy, recompute
from perkforge.engine.render import build_snapshot
from perkforge.models.core import OpResult, Reason
from perkforge.models.perks import CharacterState, clamp, coerce_int

log = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


class CharacterTracker:
    """Owns one character state and the commit cycle every mutation ends with."""

    def __init__(
        self,
        settings: Settings,
        gateway: PersistenceGateway,
        *,
        conversation_id: str | None = None,
        profile: str | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.conversation_id = conversation_id
        self.profile = profile
        self.state = self.fresh_state()
        self._listeners: list[Listener] = []

    def fresh_state(self) -> CharacterState:
        return recompute(CharacterState(threshold=self.settings.threshold_base, bank_max=self.settings.bank_max))

    def load(self) -> CharacterState:
        self.state = recompute(self.gateway.load_state(self.conversation_id, self.profile, self.fresh_state))
        return self.state

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def economy(self) -> Economy:
        return compute_economy(self.state)

    def persist(self) -> None:
        self.gateway.save_state(self.state, self.conversation_id, self.profile)

    def notify(self) -> None:
        if not self._listeners:
            return
        snapshot = build_snapshot(self.state)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.warning("listener_failed", exc_info=True)

    def commit(self, *, recompute_economy: bool = True) -> None:
        if recompute_economy:
            recompute(self.state)
        self.persist()
        self.notify()

    def replace_state(self, state: CharacterState) -> None:
        self.state = state
        self.commit()

    def reset(self) -> OpResult:
        self.replace_state(self.fresh_state())
        log.info("state_reset conversation=%s profile=%s", self.conversation_id, self.profile)
        return OpResult.success(message="Forge progress reset.")

    # ---------- points and meters ----------
    def tick_response(self) -> None:
        self.state.response_count += 1
        self.state.base_points = self.state.response_count * self.settings.cp_per_response
        self.commit()

    def set_available_points(self, target: Any) -> OpResult:
        value = coerce_int(target, default=-1)
        if value < 0:
            return OpResult.fail(Reason.INVALID_VALUE, "Available points must be a non-negative number.")
        recompute(self.state)
        needed = value - self.state.available_points
        self.state.bonus_points = max(0, self.state.bonus_points + needed)
        self.commit()
        return OpResult.success(self.state.available_points, f"Available points now {self.state.available_points}.")

    def add_bonus_points(self, amount: Any) -> OpResult:
        value = coerce_int(amount)
        if value <= 0:
            return OpResult.fail(Reason.INVALID_VALUE, "Bonus must be a positive number.")
        self.state.bonus_points += value
        self.commit()
        return OpResult.success(self.state.available_points, f"+{value} bonus points.")

    def set_corruption(self, value: Any) -> OpResult:
        self.state.corruption = clamp(value)
        self.commit(recompute_economy=False)
        return OpResult.success(self.state.corruption, f"Corruption set to {self.state.corruption}.")

    def set_sanity(self, value: Any) -> OpResult:
        self.state.sanity = clamp(value)
        self.commit(recompute_economy=False)
        return OpResult.success(self.state.sanity, f"Sanity set to {self.state.sanity}.")
