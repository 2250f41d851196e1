from __future__ import annotations

import logging
from typing import Any

from perkforge.db.gateway import PersistenceGateway
from perkforge.engine.banking import BankingQueue
from perkforge.engine.catalog import PerkCatalog
from perkforge.engine.registry import PerkRegistry
from perkforge.llm.narrative_parser import parse_generated_perk
from perkforge.llm.prompts import creation_directive
from perkforge.models.catalog import TIER_COST_RANGES
from perkforge.models.core import OpResult, Reason
from perkforge.models.perks import FLAGS, PerkDraft, coerce_int
from perkforge.models.session import RollSession, RollState

log = logging.getLogger(__name__)


class RollController:
    """Single-slot proposal workflow: roll or generate, then acquire, bank or discard."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        catalog: PerkCatalog,
        registry: PerkRegistry,
        bank: BankingQueue,
        *,
        conversation_id: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.catalog = catalog
        self.registry = registry
        self.bank = bank
        self.conversation_id = conversation_id
        self.session = RollSession()

    def load(self) -> RollSession:
        self.session = self.gateway.load_roll_session(self.conversation_id)
        if not self.session.is_idle:
            log.info("roll_session_restored conversation=%s state=%s", self.conversation_id, self.session.state.value)
        return self.session

    def _save(self) -> None:
        self.gateway.save_roll_session(self.conversation_id, self.session)

    def _clear(self) -> None:
        self.session = RollSession()
        self._save()

    def _busy(self) -> OpResult | None:
        if self.session.is_idle:
            return None
        return OpResult.fail(
            Reason.ROLL_PENDING,
            "Resolve the current roll first (acquire, bank or discard).",
            self.session,
        )

    def _pick_constellation(self, key: str | None) -> str | None:
        key = key or self.catalog.random_constellation_key()
        return key if key in self.catalog.constellation_keys() else None

    # ---------- triggers ----------
    def trigger_forge_roll(self, constellation_key: str | None = None) -> OpResult:
        busy = self._busy()
        if busy is not None:
            return busy
        key = self._pick_constellation(constellation_key)
        if key is None:
            return OpResult.fail(Reason.UNKNOWN_CONSTELLATION, f"Unknown constellation {constellation_key}.")
        drawn = self.catalog.draw(key)
        if not drawn.ok:
            if drawn.reason == Reason.EMPTY_CONSTELLATION:
                return OpResult.fail(
                    Reason.EMPTY_CONSTELLATION,
                    f"No perks in {self.catalog.label_for(key)} yet. Try a creation roll.",
                    key,
                )
            return drawn
        entry = drawn.value
        self.session = RollSession(
            state=RollState.PROPOSAL_SHOWN,
            kind="forge",
            proposed_perk=PerkDraft(
                name=entry.name,
                cost=entry.cost,
                flags=list(entry.flags),
                description=entry.description,
                scaling_description=dict(entry.scaling_description),
                db_link_id=entry.id,
            ),
            constellation_key=key,
            constellation_label=self.catalog.label_for(key),
            tier=entry.tier,
            catalog_entry_id=entry.id,
        )
        self._save()
        log.info("forge_roll key=%s perk=%s", key, entry.name)
        return OpResult.success(self.session, f"The forge offers {entry.name} ({entry.cost} CP).")

    def trigger_creation_roll(self, constellation_key: str | None = None, tier: Any = None) -> OpResult:
        busy = self._busy()
        if busy is not None:
            return busy
        key = self._pick_constellation(constellation_key)
        if key is None:
            return OpResult.fail(Reason.UNKNOWN_CONSTELLATION, f"Unknown constellation {constellation_key}.")
        if tier is None:
            tier_value = self.catalog.rng.randint(1, len(TIER_COST_RANGES))
        else:
            tier_value = coerce_int(tier)
            if tier_value not in TIER_COST_RANGES:
                return OpResult.fail(Reason.INVALID_VALUE, f"Tier must be 1-{len(TIER_COST_RANGES)}.")
        label = self.catalog.label_for(key)
        self.session = RollSession(
            state=RollState.AWAITING_GENERATION,
            kind="creation",
            constellation_key=key,
            constellation_label=label,
            tier=tier_value,
            generation_prompt=creation_directive(label, tier_value, self.catalog.domain_for(key), FLAGS),
        )
        self._save()
        log.info("creation_roll key=%s tier=%s", key, tier_value)
        return OpResult.success(self.session, f"Creation roll: a tier {tier_value} {label} perk is being forged.")

    def generation_directive(self) -> str | None:
        if not self.session.awaiting_creation_response:
            return None
        return self.session.generation_prompt

    def try_complete_generation(self, text: str) -> OpResult | None:
        if not self.session.awaiting_creation_response:
            return None
        parsed = parse_generated_perk(text)
        if parsed is None:
            return OpResult.fail(Reason.NO_PROPOSAL, "No perk found in that reply yet; still waiting.")
        strategy, draft = parsed
        self.session.state = RollState.PROPOSAL_SHOWN
        self.session.proposed_perk = draft
        self.session.generation_prompt = None
        self._save()
        log.info("creation_completed strategy=%s perk=%s", strategy, draft.name)
        return OpResult.success(self.session, f"The forge shaped {draft.name} ({draft.cost} CP).")

    # ---------- resolution ----------
    def _proposal(self) -> PerkDraft | None:
        if self.session.state != RollState.PROPOSAL_SHOWN:
            return None
        return self.session.proposed_perk

    def _catalogued(self, draft: PerkDraft) -> PerkDraft:
        entry_id = self.session.catalog_entry_id or self.catalog.register(self.session.constellation_key, draft)
        return draft.model_copy(update={"db_link_id": entry_id})

    def acquire(self) -> OpResult:
        draft = self._proposal()
        if draft is None:
            return OpResult.fail(Reason.NO_PROPOSAL, "There is no perk on offer.")
        draft = self._catalogued(draft)
        result = self.registry.add_perk(draft)
        if result.reason == Reason.INSUFFICIENT_FUNDS:
            needed = result.value.needed
            banked = self.bank.bank_perk(draft, self.session.constellation_key, source=self._bank_source())
            if not banked.ok:
                return banked
            self._clear()
            return OpResult.success(banked.value, f"Need {needed} more CP; {draft.name} was banked instead.")
        if result.reason == Reason.ALREADY_ACQUIRED:
            self._clear()
            return OpResult.success(result.value, f"{draft.name} is already yours.")
        if result.ok:
            self._clear()
        return result

    def bank_proposal(self) -> OpResult:
        draft = self._proposal()
        if draft is None:
            return OpResult.fail(Reason.NO_PROPOSAL, "There is no perk on offer.")
        draft = self._catalogued(draft)
        result = self.bank.bank_perk(draft, self.session.constellation_key, source=self._bank_source())
        if result.ok:
            self._clear()
        return result

    def discard(self) -> OpResult:
        if self.session.is_idle:
            return OpResult.fail(Reason.NO_PROPOSAL, "There is no perk on offer.")
        name = self.session.proposed_perk.name if self.session.proposed_perk else "the creation roll"
        self._clear()
        log.info("roll_discarded perk=%s", name)
        return OpResult.success(message=f"Discarded {name}.")

    def cancel(self) -> None:
        if self.session.is_idle:
            return
        log.info("roll_cancelled conversation=%s state=%s", self.conversation_id, self.session.state.value)
        self._clear()

    def bind(self, conversation_id: str | None) -> None:
        self.cancel()
        self.conversation_id = conversation_id
        self.session = self.gateway.load_roll_session(conversation_id)
        self.cancel()

    def _bank_source(self) -> str:
        return "roll" if self.session.kind == "forge" else "generation"
