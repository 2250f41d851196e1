from __future__ import annotations

import json
import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from perkforge import __version__
from perkforge.config import Settings
from perkforge.db.gateway import PersistenceGateway, state_from_document, state_to_document
from perkforge.db.migrations import SchemaMigrationError
from perkforge.db.remote import RemoteSync
from perkforge.db.store import Store
from perkforge.engine.banking import BankingQueue
from perkforge.engine.catalog import PerkCatalog
from perkforge.engine.economy import recompute
from perkforge.engine.leveling import LevelingEngine
from perkforge.engine.reconcile import ReconcileReport, ReconciliationController
from perkforge.engine.registry import PerkRegistry
from perkforge.engine.render import build_snapshot, render_checkpoint, render_context_block
from perkforge.engine.roll_session import RollController
from perkforge.engine.tracker import CharacterTracker
from perkforge.llm.client import LLMClient
from perkforge.llm.guide import generate_constellation_guide
from perkforge.models.core import OpResult, Reason

log = logging.getLogger(__name__)

Background = Callable[[Callable[[], None]], None]


def run_in_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


@dataclass
class MessageOutcome:
    duplicate: bool = False
    generation: OpResult | None = None
    report: ReconcileReport | None = None
    affordable: list[str] = field(default_factory=list)


class ForgeSession:
    """Everything one conversation needs: state, catalog, roll slot and the controllers over them."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        *,
        remote: RemoteSync | None = None,
        llm: LLMClient | None = None,
        conversation_id: str | None = None,
        background: Background | None = None,
        rng: random.Random | None = None,
        builtins: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.llm = llm
        self.background = background or run_in_thread
        remote = remote or RemoteSync(None)
        if remote.scheduler is None:
            remote.scheduler = self.background
        self.gateway = PersistenceGateway(store, remote)

        self.tracker = CharacterTracker(
            settings,
            self.gateway,
            conversation_id=conversation_id,
            profile=self.gateway.get_active_profile(),
        )
        self.catalog = PerkCatalog(self.gateway, rng=rng or random.Random(settings.rng_seed), builtins=builtins)
        self.registry = PerkRegistry(self.tracker, on_catalog_edit=self._propagate_catalog_edit)
        self.leveling = LevelingEngine(self.tracker)
        self.bank = BankingQueue(self.tracker, self.registry)
        self.roll = RollController(
            self.gateway,
            self.catalog,
            self.registry,
            self.bank,
            conversation_id=conversation_id,
        )
        self.controller = ReconciliationController(settings, self.tracker, self.registry, self.leveling, self.roll)

        self.tracker.load()
        self.catalog.load()
        self.roll.load()

    @property
    def conversation_id(self) -> str | None:
        return self.tracker.conversation_id

    @property
    def profile(self) -> str | None:
        return self.tracker.profile

    # ---------- host events ----------
    def on_ai_message(self, text: str, sequence: int | None = None) -> MessageOutcome:
        if sequence is not None:
            last = self.gateway.get_last_sequence(self.conversation_id)
            if last is not None and sequence <= last:
                log.debug("message_duplicate sequence=%s last=%s", sequence, last)
                return MessageOutcome(duplicate=True)
            self.gateway.set_last_sequence(self.conversation_id, sequence)

        outcome = MessageOutcome()
        outcome.generation = self.roll.try_complete_generation(text)
        outcome.report = self.controller.process_message(text)
        outcome.affordable = [entry.name for entry in self.bank.check_affordability()]
        report = outcome.report
        self.record_event(
            "AI_MESSAGE",
            {
                "sequence": sequence,
                "checkpoint": report.checkpoint_synced,
                "added": report.added,
                "xp": [list(item) for item in report.xp_applied],
                "generation": outcome.generation.ok if outcome.generation else None,
            },
        )
        return outcome

    def record_event(self, event_type: str, payload: dict[str, Any]) -> None:
        self.store.write_event(self.conversation_id or "global", event_type, payload)

    def recent_activity(self, limit: int = 6) -> list[dict[str, Any]]:
        return self.store.get_recent_events(self.conversation_id or "global", limit=limit)

    def switch_conversation(self, conversation_id: str | None) -> None:
        if conversation_id == self.conversation_id:
            return
        self.roll.bind(conversation_id)
        self.tracker.conversation_id = conversation_id
        self.tracker.load()
        log.info("conversation_switched conversation=%s profile=%s", conversation_id, self.profile)

    # ---------- profiles ----------
    def list_profiles(self) -> list[str]:
        return self.gateway.list_profiles()

    def switch_profile(self, name: str | None) -> OpResult:
        name = (name or "").strip() or None
        self.tracker.profile = name
        self.gateway.set_active_profile(name)
        self.tracker.load()
        log.info("profile_switched profile=%s", name)
        label = name or "conversation default"
        return OpResult.success(name, f"Profile: {label}.")

    def create_profile(self, name: str) -> OpResult:
        name = (name or "").strip()
        if not name:
            return OpResult.fail(Reason.INVALID_PROFILE, "A profile needs a name.")
        if self.gateway.profile_exists(name):
            return OpResult.fail(Reason.PROFILE_EXISTS, f"Profile {name} already exists.")
        self.tracker.profile = name
        self.gateway.set_active_profile(name)
        self.tracker.replace_state(self.tracker.fresh_state())
        log.info("profile_created profile=%s", name)
        return OpResult.success(name, f"Profile {name} created.")

    def duplicate_profile(self, name: str) -> OpResult:
        name = (name or "").strip()
        if not name:
            return OpResult.fail(Reason.INVALID_PROFILE, "A profile needs a name.")
        if self.gateway.profile_exists(name):
            return OpResult.fail(Reason.PROFILE_EXISTS, f"Profile {name} already exists.")
        copy = self.tracker.state.model_copy(deep=True)
        source = self.profile
        self.tracker.profile = name
        self.gateway.set_active_profile(name)
        self.tracker.replace_state(copy)
        log.info("profile_duplicated source=%s profile=%s", source, name)
        return OpResult.success(name, f"Profile {name} created from the current state.")

    # ---------- export / import / reset ----------
    def export_state(self) -> dict[str, Any]:
        return state_to_document(recompute(self.tracker.state))

    def import_state(self, document: dict[str, Any] | str) -> OpResult:
        try:
            payload = json.loads(document) if isinstance(document, str) else document
            if not isinstance(payload, dict):
                raise SchemaMigrationError("state_document_not_object")
            state = state_from_document(payload)
        except (json.JSONDecodeError, SchemaMigrationError, ValidationError) as exc:
            log.warning("state_import_failed", exc_info=True)
            return OpResult.fail(Reason.INVALID_IMPORT, f"Import failed: {exc}")
        self.tracker.replace_state(recompute(state))
        log.info("state_imported perks=%s", len(state.acquired_perks))
        return OpResult.success(state, f"Imported {len(state.acquired_perks)} perks.")

    def reset(self) -> OpResult:
        self.roll.cancel()
        return self.tracker.reset()

    # ---------- constellations ----------
    def add_constellation(self, label: str, category: str = "", requested_by: str = "system") -> OpResult:
        result = self.catalog.add_constellation(label, category)
        if result.ok and self.llm is not None:
            key = result.value
            self.background(lambda: self._fill_guide(key, label.strip(), category.strip(), requested_by))
        return result

    def _fill_guide(self, key: str, label: str, category: str, requested_by: str) -> None:
        try:
            guide = generate_constellation_guide(self.llm, label, category, user_id=requested_by)
            if guide is not None:
                self.catalog.set_constellation_guide(key, guide.domain_guide, guide.sources)
        except Exception:
            log.warning("constellation_guide_failed key=%s", key, exc_info=True)

    def _propagate_catalog_edit(self, entry_id: str, updates: dict[str, Any]) -> None:
        result = self.catalog.update_entry(entry_id, updates)
        if not result.ok:
            log.info("catalog_edit_skipped id=%s reason=%s", entry_id, result.reason)

    # ---------- views ----------
    def snapshot(self) -> dict[str, Any]:
        return build_snapshot(self.tracker.state)

    def render_checkpoint(self) -> str:
        return render_checkpoint(self.tracker.state)

    def render_context(self) -> str:
        block = render_context_block(self.tracker.state)
        directive = self.roll.generation_directive()
        if directive:
            block = f"{block}\n\n{directive}"
        return block

    def status(self) -> dict[str, Any]:
        state = recompute(self.tracker.state)
        return {
            "version": __version__,
            "enabled": self.settings.tracking_enabled,
            "conversation": self.conversation_id,
            "profile": self.profile,
            "perk_count": len(state.acquired_perks),
            "total_points": state.total_points,
            "available_points": state.available_points,
            "has_uncapped": state.has_uncapped,
            "has_gamer": state.has_gamer,
            "banked": len(state.banked_perks),
            "roll_state": self.roll.session.state.value,
            "remote_pending": self.gateway.remote.pending_files,
            "remote_error": self.gateway.remote.last_error,
        }
