from __future__ import annotations

from perkforge.config import Settings
from perkforge.db.store import Store
from perkforge.engine.economy import compute_economy
from perkforge.engine.session import ForgeSession
from perkforge.models.core import Reason
from perkforge.models.perks import SCALING_FLAGS, UNCAPPED_MAX_LEVEL, PerkDraft


def _session(tmp_path, **overrides) -> ForgeSession:
    values = {
        "db_path": str(tmp_path / "forge.db"),
        "llm_backend": "stub",
        "llm_json_backend": "stub",
        "tracking_enabled": True,
        "auto_parse_forge": True,
        "cp_per_response": 10,
    }
    values.update(overrides)
    settings = Settings(**values)
    return ForgeSession(settings, Store(settings.db_path), conversation_id="chat-1", background=lambda fn: fn())


def _assert_economy(state) -> None:
    assert state.total_points == state.base_points + state.bonus_points
    assert state.spent_points == sum(perk.cost for perk in state.acquired_perks)
    assert state.available_points == state.total_points - state.spent_points


def _assert_scaffolds(state) -> None:
    for perk in state.acquired_perks:
        assert perk.scaling is not None
        expected = state.has_gamer or any(flag in perk.flags for flag in SCALING_FLAGS)
        assert perk.scaling.scaling_active == expected


def test_three_plain_messages_then_add_and_duplicate(tmp_path):
    session = _session(tmp_path)
    for _ in range(3):
        session.on_ai_message("no special content")
    state = session.tracker.state
    assert state.response_count == 3
    assert state.base_points == 30
    assert state.total_points == 30

    added = session.registry.add_perk({"name": "Test Perk", "cost": 25})
    assert added.ok
    assert [perk.name for perk in state.acquired_perks] == ["Test Perk"]
    assert state.available_points == 5

    again = session.registry.add_perk({"name": "Test Perk", "cost": 10})
    assert not again.ok
    assert again.reason == Reason.ALREADY_ACQUIRED
    assert [perk.name for perk in state.acquired_perks] == ["Test Perk"]
    assert state.available_points == 5


def test_economy_invariant_holds_across_mutations(tmp_path):
    session = _session(tmp_path)
    state = session.tracker.state
    session.tracker.add_bonus_points(300)
    _assert_economy(state)
    session.registry.add_perk({"name": "Anvil Sense", "cost": 100})
    _assert_economy(state)
    session.tracker.set_available_points(50)
    _assert_economy(state)
    assert state.available_points == 50
    session.registry.remove_perk("anvil sense")
    _assert_economy(state)
    assert state.available_points == 150
    session.tracker.tick_response()
    _assert_economy(state)
    economy = compute_economy(state)
    assert economy.available_points == state.available_points


def test_set_available_points_floors_bonus_at_zero(tmp_path):
    session = _session(tmp_path)
    session.tracker.tick_response()
    result = session.tracker.set_available_points(0)
    assert result.ok
    assert session.tracker.state.bonus_points == 0
    assert session.tracker.state.available_points == 10
    assert session.tracker.set_available_points("-4").reason == Reason.INVALID_VALUE
    assert session.tracker.add_bonus_points(0).reason == Reason.INVALID_VALUE


def test_names_are_unique_case_insensitively(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(500)
    assert session.registry.add_perk({"name": "Iron Skin", "cost": 50}).ok
    result = session.registry.add_perk({"name": "  iron SKIN ", "cost": 50})
    assert result.reason == Reason.ALREADY_ACQUIRED
    assert len(session.tracker.state.acquired_perks) == 1


def test_missing_name_is_rejected_and_bad_cost_defaults_to_zero(tmp_path):
    session = _session(tmp_path)
    assert session.registry.add_perk({"name": "   ", "cost": 10}).reason == Reason.NO_NAME
    result = session.registry.add_perk({"name": "Free Spark", "cost": "lots"})
    assert result.ok
    assert result.value.cost == 0


def test_insufficient_funds_sets_pending_marker(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(40)
    result = session.registry.add_perk({"name": "Star Forge", "cost": 100, "flags": ["CRAFTING"]})
    assert not result.ok
    assert result.reason == Reason.INSUFFICIENT_FUNDS
    assert result.value.needed == 60
    assert session.tracker.state.pending_perk.name == "Star Forge"
    assert session.tracker.state.acquired_perks == []

    session.tracker.add_bonus_points(60)
    assert session.registry.add_perk({"name": "Star Forge", "cost": 100}).ok
    assert session.tracker.state.pending_perk is None


def test_scaffold_invariant_with_flags_and_gamer(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(1000)
    session.registry.add_perk({"name": "Plain", "cost": 10})
    session.registry.add_perk({"name": "Grows", "cost": 10, "flags": "SCALING"})
    session.registry.add_perk({"name": "Endless", "cost": 10, "flags": ["uncapped"]})
    state = session.tracker.state
    _assert_scaffolds(state)
    assert state.has_uncapped
    assert state.find_perk("Plain").scaling.max_level == UNCAPPED_MAX_LEVEL
    assert not state.find_perk("Plain").scaling.scaling_active

    session.registry.add_perk({"name": "Player Interface", "cost": 10, "flags": ["GAMER"]})
    assert state.has_gamer
    _assert_scaffolds(state)
    assert state.find_perk("Plain").scaling.scaling_active


def test_global_modifiers_are_idempotent(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(100)
    session.registry.add_perk({"name": "Plain", "cost": 10})

    assert session.registry.apply_uncapped().ok
    once = session.tracker.state.model_dump(exclude={"history"})
    again = session.registry.apply_uncapped()
    assert again.reason == Reason.ALREADY_ACTIVE
    assert session.tracker.state.model_dump(exclude={"history"}) == once

    assert session.registry.apply_gamer().ok
    once = session.tracker.state.model_dump(exclude={"history"})
    assert session.registry.apply_gamer().reason == Reason.ALREADY_ACTIVE
    assert session.tracker.state.model_dump(exclude={"history"}) == once
    _assert_scaffolds(session.tracker.state)


def test_toggle_and_per_perk_overrides(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(100)
    session.registry.add_perk({"name": "Flame Aura", "cost": 20, "flags": ["TOGGLEABLE"]})
    session.registry.add_perk({"name": "Steady Hands", "cost": 20})
    state = session.tracker.state
    assert state.active_toggles == ["Flame Aura"]

    off = session.registry.toggle_perk("flame aura")
    assert off.ok and off.value == {"active": False}
    assert state.active_toggles == []
    assert session.registry.toggle_perk("Steady Hands").reason == Reason.NOT_TOGGLEABLE

    assert session.registry.enable_perk_scaling("Steady Hands").ok
    assert "SCALING" in state.find_perk("Steady Hands").flags
    assert session.registry.enable_perk_scaling("Steady Hands").reason == Reason.ALREADY_SCALING
    assert session.registry.enable_perk_uncapped("Steady Hands").ok
    assert state.find_perk("Steady Hands").scaling.max_level == UNCAPPED_MAX_LEVEL
    assert session.registry.enable_perk_uncapped("Steady Hands").reason == Reason.ALREADY_UNCAPPED
    _assert_scaffolds(state)


def test_edit_renames_and_overrides_level(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(200)
    session.registry.add_perk({"name": "Old Name", "cost": 50, "flags": ["SCALING"]})
    session.registry.add_perk({"name": "Taken", "cost": 50})

    clash = session.registry.edit_perk("Old Name", {"name": "taken"})
    assert clash.reason == Reason.ALREADY_ACQUIRED

    edited = session.registry.edit_perk("Old Name", {"name": "New Name", "cost": 80, "level": 4, "xp": 7})
    assert edited.ok
    perk = session.tracker.state.find_perk("New Name")
    assert perk.cost == 80
    assert (perk.scaling.level, perk.scaling.xp) == (4, 7)
    assert session.tracker.state.spent_points == 130


def test_edit_cannot_raise_cost_past_available_points(tmp_path):
    session = _session(tmp_path)
    for _ in range(3):
        session.on_ai_message("no special content")
    session.registry.add_perk({"name": "Test Perk", "cost": 25})

    raised = session.registry.edit_perk("Test Perk", {"cost": 500})
    assert not raised.ok
    assert raised.reason == Reason.INSUFFICIENT_FUNDS
    assert (raised.value.cost, raised.value.needed) == (500, 470)

    state = session.tracker.state
    assert state.find_perk("Test Perk").cost == 25
    assert state.available_points == 5
    assert state.pending_perk is None
    assert _session(tmp_path).tracker.state.available_points == 5

    assert session.registry.edit_perk("Test Perk", {"cost": "30"}).ok
    assert state.available_points == 0
    _assert_economy(state)


def test_edit_propagates_to_linked_catalog_entry(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(500)
    entry = session.catalog.add_entry("alchemy", PerkDraft(name="Quicksilver Veins", cost=200)).value
    session.registry.add_perk({"name": "Quicksilver Veins", "cost": 200, "db_link_id": entry.id})

    session.registry.edit_perk("Quicksilver Veins", {"cost": 450})
    _, stored = session.catalog.find_entry(entry.id)
    assert stored.cost == 450
    assert stored.tier == 4


def test_listeners_receive_snapshots_and_failures_are_contained(tmp_path, caplog):
    session = _session(tmp_path)
    seen = []

    def broken(snapshot):
        raise RuntimeError("boom")

    session.tracker.subscribe(broken)
    session.tracker.subscribe(seen.append)
    session.tracker.add_bonus_points(5)
    assert seen[-1]["characters"][0]["stats"]["total_cp"] == 5
    assert "listener_failed" in caplog.text
