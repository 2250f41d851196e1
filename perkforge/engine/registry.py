from __future__ import annotations

import logging
from typing import Any, Callable

from perkforge.engine.economy import recompute
from perkforge.engine.tracker import CharacterTracker
from perkforge.models.core import OpResult, Reason
from perkforge.models.perks import (
    DEFAULT_MAX_LEVEL,
    GAMER_FLAGS,
    SCALING_FLAGS,
    UNCAPPED_MAX_LEVEL,
    CharacterState,
    PendingMarker,
    Perk,
    PerkDraft,
    ScalingSeed,
    ScalingState,
    coerce_int,
    name_key,
    normalize_flags,
)

log = logging.getLogger(__name__)

CatalogEditHook = Callable[[str, dict[str, Any]], None]


def as_draft(data: PerkDraft | dict[str, Any]) -> PerkDraft:
    if isinstance(data, PerkDraft):
        return data
    return PerkDraft.model_validate(data)


def build_scaffold(seed: ScalingSeed | None, flags: list[str], state: CharacterState) -> ScalingState:
    seed = seed or ScalingSeed()
    uncapped = state.has_uncapped or bool(seed.uncapped) or "UNCAPPED" in flags
    return ScalingState(
        level=max(1, seed.level or 1),
        max_level=UNCAPPED_MAX_LEVEL if uncapped else max(1, seed.max_level or DEFAULT_MAX_LEVEL),
        xp=max(0, seed.xp or 0),
        uncapped=uncapped,
        scaling_active=state.has_gamer or any(flag in flags for flag in SCALING_FLAGS),
    )


def triggers_uncapped(name: str, flags: list[str]) -> bool:
    return "UNCAPPED" in flags or "UNCAPPED" in name.upper()


def triggers_gamer(flags: list[str]) -> bool:
    return any(flag in flags for flag in GAMER_FLAGS)


class PerkRegistry:
    def __init__(self, tracker: CharacterTracker, *, on_catalog_edit: CatalogEditHook | None = None) -> None:
        self.tracker = tracker
        self.on_catalog_edit = on_catalog_edit

    @property
    def state(self) -> CharacterState:
        return self.tracker.state

    def build_perk(self, draft: PerkDraft) -> Perk:
        toggleable = "TOGGLEABLE" in draft.flags
        return Perk(
            name=draft.name,
            cost=draft.cost,
            flags=list(draft.flags),
            description=draft.description,
            scaling_description=dict(draft.scaling_description),
            active=draft.active is not False if toggleable else True,
            scaling=build_scaffold(draft.scaling, draft.flags, self.state),
            db_link_id=draft.db_link_id,
            acquired_response=self.state.response_count,
        )

    def add_perk(self, data: PerkDraft | dict[str, Any]) -> OpResult:
        draft = as_draft(data)
        if not draft.name:
            return OpResult.fail(Reason.NO_NAME, "A perk needs a name.")
        existing = self.state.find_perk(draft.name)
        if existing is not None:
            return OpResult.fail(Reason.ALREADY_ACQUIRED, f"{existing.name} is already acquired.", existing)

        if triggers_uncapped(draft.name, draft.flags) and not self.state.has_uncapped:
            self._apply_uncapped()
        if triggers_gamer(draft.flags) and not self.state.has_gamer:
            self._apply_gamer()

        perk = self.build_perk(draft)
        recompute(self.state)
        if perk.cost > self.state.available_points:
            pending = PendingMarker(
                name=perk.name,
                cost=perk.cost,
                needed=perk.cost - self.state.available_points,
                flags=list(perk.flags),
            )
            self.state.pending_perk = pending
            self.tracker.commit()
            log.info("perk_pending name=%s cost=%s needed=%s", perk.name, perk.cost, pending.needed)
            return OpResult.fail(
                Reason.INSUFFICIENT_FUNDS,
                f"{perk.name} is pending: {pending.needed} more CP needed.",
                pending,
            )

        self.state.acquired_perks.append(perk)
        if perk.toggleable and perk.active:
            self.set_toggle(perk.name, True)
        self.state.log_history("acquired", perk.name, perk.cost)
        pending = self.state.pending_perk
        if pending is not None and name_key(pending.name) == name_key(perk.name):
            self.state.pending_perk = None
        self.tracker.commit()
        log.info("perk_acquired name=%s cost=%s available=%s", perk.name, perk.cost, self.state.available_points)
        return OpResult.success(perk, f"{perk.name} acquired ({perk.cost} CP).")

    def edit_perk(self, name: str, updates: dict[str, Any]) -> OpResult:
        perk = self.state.find_perk(name)
        if perk is None:
            return OpResult.fail(Reason.NOT_FOUND, f"No perk named {name}.")

        flags = normalize_flags(updates["flags"]) if updates.get("flags") is not None else list(perk.flags)
        new_name = str(updates.get("name") or perk.name).strip()
        if name_key(new_name) != name_key(perk.name) and self.state.find_perk(new_name) is not None:
            return OpResult.fail(Reason.ALREADY_ACQUIRED, f"{new_name} is already acquired.")

        cost = max(0, coerce_int(updates["cost"], perk.cost)) if "cost" in updates else perk.cost
        recompute(self.state)
        increase = cost - perk.cost
        if increase > 0 and increase > self.state.available_points:
            needed = increase - self.state.available_points
            return OpResult.fail(
                Reason.INSUFFICIENT_FUNDS,
                f"{perk.name} at {cost} CP needs {needed} more CP.",
                PendingMarker(name=new_name, cost=cost, needed=needed, flags=list(flags)),
            )

        if triggers_uncapped(new_name, flags) and not self.state.has_uncapped:
            self._apply_uncapped()
        if triggers_gamer(flags) and not self.state.has_gamer:
            self._apply_gamer()

        old_name = perk.name
        perk.name = new_name
        perk.cost = cost
        perk.flags = flags
        if updates.get("description") is not None:
            perk.description = str(updates["description"]).strip()
        if isinstance(updates.get("scaling_description"), dict):
            perk.scaling_description = {str(k): str(v) for k, v in updates["scaling_description"].items()}

        seed = ScalingSeed(
            level=updates.get("level", perk.scaling.level),
            xp=updates.get("xp", perk.scaling.xp),
            max_level=perk.scaling.max_level,
            uncapped=perk.scaling.uncapped,
        )
        perk.scaling = build_scaffold(seed, flags, self.state)

        self.set_toggle(old_name, False)
        if perk.toggleable:
            perk.active = bool(updates.get("active", perk.active))
            self.set_toggle(perk.name, perk.active)
        else:
            perk.active = True

        self.state.log_history("edited", perk.name, perk.cost)
        self.tracker.commit()
        log.info("perk_edited name=%s renamed_from=%s", perk.name, old_name)
        if perk.db_link_id and self.on_catalog_edit is not None:
            try:
                self.on_catalog_edit(
                    perk.db_link_id,
                    {
                        "name": perk.name,
                        "cost": perk.cost,
                        "flags": list(perk.flags),
                        "description": perk.description,
                    },
                )
            except Exception:
                log.warning("catalog_propagation_failed id=%s", perk.db_link_id, exc_info=True)
        return OpResult.success(perk, f"{perk.name} saved.")

    def remove_perk(self, name: str) -> OpResult:
        key = name_key(name)
        index = next((i for i, perk in enumerate(self.state.acquired_perks) if perk.name.lower() == key), None)
        if index is None:
            return OpResult.fail(Reason.NOT_FOUND, f"No perk named {name}.")
        perk = self.state.acquired_perks.pop(index)
        self.set_toggle(perk.name, False)
        self.state.log_history("removed", perk.name, perk.cost)
        self.tracker.commit()
        log.info("perk_removed name=%s", perk.name)
        return OpResult.success(perk, f"{perk.name} removed.")

    def toggle_perk(self, name: str) -> OpResult:
        perk = self.state.find_perk(name)
        if perk is None:
            return OpResult.fail(Reason.NOT_FOUND, f"No perk named {name}.")
        if not perk.toggleable:
            return OpResult.fail(Reason.NOT_TOGGLEABLE, f"{perk.name} cannot be toggled.")
        perk.active = not perk.active
        self.set_toggle(perk.name, perk.active)
        self.tracker.commit(recompute_economy=False)
        return OpResult.success({"active": perk.active}, f"{perk.name} {'ON' if perk.active else 'OFF'}.")

    def set_toggle(self, name: str, on: bool) -> None:
        key = name_key(name)
        toggles = [n for n in self.state.active_toggles if n.lower() != key]
        if on:
            toggles.append(name)
        self.state.active_toggles = toggles

    # ---------- global modifiers ----------
    def apply_uncapped(self) -> OpResult:
        if self.state.has_uncapped:
            return OpResult.fail(Reason.ALREADY_ACTIVE, "UNCAPPED is already active.")
        self._apply_uncapped()
        self.tracker.commit(recompute_economy=False)
        return OpResult.success(message="UNCAPPED active: scaling perks have no level ceiling.")

    def apply_gamer(self) -> OpResult:
        if self.state.has_gamer:
            return OpResult.fail(Reason.ALREADY_ACTIVE, "GAMER is already active.")
        self._apply_gamer()
        self.tracker.commit(recompute_economy=False)
        return OpResult.success(message="GAMER active: every perk can now level.")

    def _apply_uncapped(self) -> None:
        self.state.has_uncapped = True
        for perk in self.state.acquired_perks:
            perk.scaling.max_level = UNCAPPED_MAX_LEVEL
            perk.scaling.uncapped = True
            if perk.qualifies_for_scaling(self.state.has_gamer):
                perk.scaling.scaling_active = True
        log.info("global_uncapped_applied perks=%s", len(self.state.acquired_perks))

    def _apply_gamer(self) -> None:
        self.state.has_gamer = True
        for perk in self.state.acquired_perks:
            perk.scaling.scaling_active = True
            if self.state.has_uncapped:
                perk.scaling.max_level = UNCAPPED_MAX_LEVEL
                perk.scaling.uncapped = True
        log.info("global_gamer_applied perks=%s", len(self.state.acquired_perks))

    # ---------- per-perk overrides ----------
    def enable_perk_scaling(self, name: str) -> OpResult:
        perk = self.state.find_perk(name)
        if perk is None:
            return OpResult.fail(Reason.NOT_FOUND, f"No perk named {name}.")
        if perk.scaling.scaling_active:
            return OpResult.fail(Reason.ALREADY_SCALING, f"{perk.name} already scales.")
        if "SCALING" not in perk.flags:
            perk.flags.append("SCALING")
        perk.scaling.scaling_active = True
        self.tracker.commit(recompute_economy=False)
        return OpResult.success(perk.scaling, f"{perk.name} now scales.")

    def enable_perk_uncapped(self, name: str) -> OpResult:
        perk = self.state.find_perk(name)
        if perk is None:
            return OpResult.fail(Reason.NOT_FOUND, f"No perk named {name}.")
        if perk.scaling.uncapped and perk.scaling.scaling_active:
            return OpResult.fail(Reason.ALREADY_UNCAPPED, f"{perk.name} is already uncapped.")
        if "UNCAPPED" not in perk.flags:
            perk.flags.append("UNCAPPED")
        perk.scaling.scaling_active = True
        perk.scaling.uncapped = True
        perk.scaling.max_level = UNCAPPED_MAX_LEVEL
        self.tracker.commit(recompute_economy=False)
        return OpResult.success(perk.scaling, f"{perk.name} is uncapped.")
