from __future__ import annotations

from perkforge.config import Settings
from perkforge.db.store import Store
from perkforge.engine.session import ForgeSession
from perkforge.models.core import Reason


def _session(tmp_path, bank_max: int = 10) -> ForgeSession:
    settings = Settings(
        db_path=str(tmp_path / "forge.db"),
        llm_backend="stub",
        llm_json_backend="stub",
        tracking_enabled=True,
        bank_max=bank_max,
    )
    return ForgeSession(settings, Store(settings.db_path), conversation_id="bank", background=lambda fn: fn())


def test_banked_perk_becomes_affordable_after_bonus(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(100)
    assert session.bank.bank_perk({"name": "Forge Heart", "cost": 300}).ok
    assert session.bank.check_affordability() == []

    session.tracker.add_bonus_points(250)
    assert session.tracker.state.available_points == 350
    assert [entry.name for entry in session.bank.check_affordability()] == ["Forge Heart"]


def test_bank_capacity_and_duplicates(tmp_path):
    session = _session(tmp_path, bank_max=2)
    assert session.bank.bank_perk({"name": "One", "cost": 10}).ok
    assert session.bank.bank_perk({"name": "one", "cost": 10}).reason == Reason.ALREADY_BANKED
    assert session.bank.bank_perk({"name": "Two", "cost": 10}).ok
    assert session.bank.bank_perk({"name": "Three", "cost": 10}).reason == Reason.BANK_FULL
    assert session.bank.bank_perk({"name": "", "cost": 10}).reason == Reason.NO_NAME


def test_acquire_banked_respects_funds(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(50)
    session.bank.bank_perk({"name": "Star Metal", "cost": 120, "flags": ["CRAFTING"]})

    short = session.bank.acquire_banked("star metal")
    assert short.reason == Reason.INSUFFICIENT_FUNDS
    assert short.value.needed == 70
    assert session.tracker.state.find_banked("Star Metal") is not None

    session.tracker.add_bonus_points(70)
    bought = session.bank.acquire_banked("Star Metal")
    assert bought.ok
    state = session.tracker.state
    assert state.banked_perks == []
    assert state.find_perk("Star Metal").flags == ["CRAFTING"]
    assert state.available_points == 0
    assert session.bank.acquire_banked("Star Metal").reason == Reason.NOT_FOUND


def test_pending_marker_mirrors_bank_head(tmp_path):
    session = _session(tmp_path)
    session.bank.bank_perk({"name": "First", "cost": 40})
    session.bank.bank_perk({"name": "Second", "cost": 60})
    state = session.tracker.state
    assert state.pending_perk.name == "First"
    assert state.pending_perk.needed == 40

    assert session.bank.discard_banked("First").ok
    assert state.pending_perk.name == "Second"
    assert state.history[-1].action == "discarded"

    session.bank.discard_banked("Second")
    assert state.pending_perk is None


def test_bank_pending_marker_from_detection(tmp_path):
    session = _session(tmp_path)
    assert session.bank.bank_pending().reason == Reason.NO_PENDING_PERK
    session.registry.add_perk({"name": "Void Lathe", "cost": 90, "flags": ["CRAFTING"]})

    result = session.bank.bank_pending()
    assert result.ok
    entry = session.tracker.state.find_banked("Void Lathe")
    assert entry.source == "detected"
    assert entry.cost == 90


def test_bank_survives_reload(tmp_path):
    session = _session(tmp_path)
    session.bank.bank_perk({"name": "Forge Heart", "cost": 300}, "quality")

    reloaded = _session(tmp_path)
    entry = reloaded.tracker.state.find_banked("Forge Heart")
    assert entry is not None
    assert entry.constellation_key == "quality"
