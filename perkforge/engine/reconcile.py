from __future__ import annotations

import logging
from dataclasses import dataclass, field

from perkforge.config import Settings
from perkforge.engine.leveling import LevelingEngine
from perkforge.engine.registry import PerkRegistry
from perkforge.engine.roll_session import RollController
from perkforge.engine.tracker import CharacterTracker
from perkforge.llm.narrative_parser import (
    ParsedCheckpoint,
    extract_checkpoint,
    find_inline_perks,
    find_level_confirmations,
    find_xp_awards,
)
from perkforge.models.perks import UNCAPPED_MAX_LEVEL, PendingMarker, Perk, PerkDraft, clamp

log = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    processed: bool = True
    checkpoint_synced: bool = False
    added: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    xp_applied: list[tuple[str, int]] = field(default_factory=list)
    levels_confirmed: list[tuple[str, int]] = field(default_factory=list)


class ReconciliationController:
    def __init__(
        self,
        settings: Settings,
        tracker: CharacterTracker,
        registry: PerkRegistry,
        leveling: LevelingEngine,
        roll: RollController,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.registry = registry
        self.leveling = leveling
        self.roll = roll

    def process_message(self, text: str) -> ReconcileReport:
        if not self.settings.tracking_enabled:
            return ReconcileReport(processed=False)
        report = ReconcileReport()

        if self.settings.auto_parse_forge:
            checkpoint = extract_checkpoint(text)
            if checkpoint is not None:
                self._sync_checkpoint(checkpoint, report)
                report.checkpoint_synced = True

        for draft in find_inline_perks(text):
            if self.tracker.state.find_perk(draft.name) is not None:
                continue
            self._add_detected(draft, report, channel="inline")

        for name, amount in find_xp_awards(text):
            if self.leveling.add_xp(name, amount) is not None:
                report.xp_applied.append((name, amount))
        for name, level in find_level_confirmations(text):
            if self.leveling.confirm_level(name, level) is not None:
                report.levels_confirmed.append((name, level))

        self.tracker.tick_response()
        log.info(
            "message_processed checkpoint=%s added=%s xp=%s responses=%s",
            report.checkpoint_synced,
            len(report.added),
            len(report.xp_applied),
            self.tracker.state.response_count,
        )
        return report

    def _add_detected(self, draft: PerkDraft, report: ReconcileReport, *, channel: str) -> None:
        if self.roll.session.proposes(draft.name):
            log.info("detected_perk_deferred channel=%s name=%s", channel, draft.name)
            report.skipped.append(draft.name)
            return
        result = self.registry.add_perk(draft)
        if result.ok:
            report.added.append(draft.name)
        elif result.value is not None and isinstance(result.value, PendingMarker):
            report.pending.append(draft.name)

    def _sync_checkpoint(self, checkpoint: ParsedCheckpoint, report: ReconcileReport) -> None:
        state = self.tracker.state
        state.corruption = clamp(checkpoint.corruption)
        state.sanity = clamp(checkpoint.sanity)

        for draft in checkpoint.perks:
            existing = state.find_perk(draft.name)
            if existing is None:
                self._add_detected(draft, report, channel="checkpoint")
                continue
            self._merge_perk(existing, draft)

        if checkpoint.pending_perk_name and state.find_perk(checkpoint.pending_perk_name) is None:
            state.pending_perk = PendingMarker(
                name=checkpoint.pending_perk_name,
                cost=checkpoint.pending_cost,
                needed=checkpoint.pending_remaining,
            )
        self.tracker.commit()
        log.info("checkpoint_synced perks=%s corruption=%s sanity=%s", len(checkpoint.perks), state.corruption, state.sanity)

    def _merge_perk(self, perk: Perk, draft: PerkDraft) -> None:
        seed = draft.scaling
        if seed is not None:
            scaling = perk.scaling
            if seed.uncapped:
                scaling.uncapped = True
                scaling.max_level = UNCAPPED_MAX_LEVEL
            elif seed.max_level and not scaling.uncapped:
                scaling.max_level = max(1, seed.max_level)
            if seed.level:
                scaling.level = max(1, seed.level)
            if seed.xp is not None:
                scaling.xp = seed.xp
        if draft.active is not None and perk.toggleable:
            perk.active = draft.active
            self.registry.set_toggle(perk.name, perk.active)
