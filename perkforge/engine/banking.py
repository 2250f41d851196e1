from __future__ import annotations

import logging
from typing import Any

from perkforge.engine.economy import recompute
from perkforge.engine.registry import PerkRegistry, as_draft
from perkforge.engine.tracker import CharacterTracker
from perkforge.models.core import OpResult, Reason
from perkforge.models.perks import BankedPerk, BankSource, PendingMarker, PerkDraft, name_key

log = logging.getLogger(__name__)


class BankingQueue:
    def __init__(self, tracker: CharacterTracker, registry: PerkRegistry) -> None:
        self.tracker = tracker
        self.registry = registry

    def bank_perk(
        self,
        data: PerkDraft | dict[str, Any],
        constellation_key: str | None = None,
        *,
        source: BankSource = "roll",
    ) -> OpResult:
        draft = as_draft(data)
        state = self.tracker.state
        if not draft.name:
            return OpResult.fail(Reason.NO_NAME, "A perk needs a name.")
        if len(state.banked_perks) >= state.bank_max:
            return OpResult.fail(Reason.BANK_FULL, f"The bank is full ({state.bank_max} perks).")
        if state.find_banked(draft.name) is not None:
            return OpResult.fail(Reason.ALREADY_BANKED, f"{draft.name} is already banked.")
        entry = BankedPerk(
            name=draft.name,
            cost=draft.cost,
            constellation_key=constellation_key,
            flags=list(draft.flags),
            description=draft.description,
            scaling_description=dict(draft.scaling_description),
            scaling=draft.scaling.model_copy() if draft.scaling else None,
            db_link_id=draft.db_link_id,
            source=source,
        )
        state.banked_perks.append(entry)
        self._mirror_pending()
        self.tracker.commit()
        log.info("perk_banked name=%s cost=%s source=%s", entry.name, entry.cost, source)
        return OpResult.success(entry, f"{entry.name} banked ({len(state.banked_perks)}/{state.bank_max}).")

    def acquire_banked(self, name: str) -> OpResult:
        state = self.tracker.state
        entry = state.find_banked(name)
        if entry is None:
            return OpResult.fail(Reason.NOT_FOUND, f"{name} is not banked.")
        recompute(state)
        if entry.cost > state.available_points:
            needed = entry.cost - state.available_points
            return OpResult.fail(
                Reason.INSUFFICIENT_FUNDS,
                f"{entry.name} needs {needed} more CP.",
                PendingMarker(name=entry.name, cost=entry.cost, needed=needed, flags=list(entry.flags)),
            )
        state.banked_perks.remove(entry)
        self._mirror_pending(entry.name)
        result = self.registry.add_perk(entry.to_draft())
        if result.reason == Reason.ALREADY_ACQUIRED:
            self.tracker.commit()
        return result

    def discard_banked(self, name: str) -> OpResult:
        state = self.tracker.state
        entry = state.find_banked(name)
        if entry is None:
            return OpResult.fail(Reason.NOT_FOUND, f"{name} is not banked.")
        state.banked_perks.remove(entry)
        state.log_history("discarded", entry.name, entry.cost)
        self._mirror_pending(entry.name)
        self.tracker.commit()
        return OpResult.success(entry, f"{entry.name} discarded.")

    def check_affordability(self) -> list[BankedPerk]:
        state = recompute(self.tracker.state)
        return [entry for entry in state.banked_perks if entry.cost <= state.available_points]

    def bank_pending(self) -> OpResult:
        pending = self.tracker.state.pending_perk
        if pending is None:
            return OpResult.fail(Reason.NO_PENDING_PERK, "There is no pending perk.")
        return self.bank_perk(
            PerkDraft(name=pending.name, cost=pending.cost, flags=pending.flags),
            source="detected",
        )

    def _mirror_pending(self, removed: str | None = None) -> None:
        state = self.tracker.state
        if not state.banked_perks:
            if removed and state.pending_perk and name_key(state.pending_perk.name) == name_key(removed):
                state.pending_perk = None
            return
        head = state.banked_perks[0]
        recompute(state)
        state.pending_perk = PendingMarker(
            name=head.name,
            cost=head.cost,
            needed=max(0, head.cost - state.available_points),
            flags=list(head.flags),
        )
