from __future__ import annotations

import json

import pytest
import requests

from perkforge.config import Settings
from perkforge.db.migrations import SchemaMigrationError, migrate_state_document
from perkforge.db.remote import (
    CATALOG_FILENAME,
    LEGACY_STATE_FILENAME,
    GistDocumentStore,
    RemoteStoreError,
    RemoteSync,
    profile_filename,
)
from perkforge.db.store import Store
from perkforge.engine.session import ForgeSession
from perkforge.models.core import Reason


class FakeGistClient:
    def __init__(self, files: dict[str, str] | None = None, fail: bool = False) -> None:
        self.files = dict(files or {})
        self.fail = fail
        self.patches: list[dict[str, str]] = []

    def read_files(self) -> dict[str, str]:
        return dict(self.files)

    def patch_files(self, files: dict[str, str]) -> None:
        if self.fail:
            raise RemoteStoreError("gist_http_502")
        self.patches.append(dict(files))
        self.files.update(files)


class FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None) -> None:
        self.status_code = status_code
        self._payload = payload or {}

    def json(self) -> dict:
        return self._payload


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "db_path": str(tmp_path / "forge.db"),
        "llm_backend": "stub",
        "llm_json_backend": "stub",
        "tracking_enabled": True,
        "cp_per_response": 10,
    }
    values.update(overrides)
    return Settings(**values)


def _session(tmp_path, remote: RemoteSync | None = None, conversation_id: str = "p") -> ForgeSession:
    settings = _settings(tmp_path)
    return ForgeSession(
        settings,
        Store(settings.db_path),
        remote=remote,
        conversation_id=conversation_id,
        background=lambda fn: fn(),
    )


LEGACY_DOCUMENT = {
    "base_cp": 40,
    "bonus_cp": 100,
    "response_count": 4,
    "corruption": 12,
    "acquired_perks": [
        {"name": "Old Flame", "cost": 60, "flags": ["SCALING"], "scaling": {"level": 2, "xp": 5, "maxLevel": 10}},
        {"name": "Plain Tongs", "cost": 20, "acquired_at": 1700000000000},
    ],
    "pending_perk": {"name": "Star Forge", "cost": 300, "cp_needed": 240},
    "perk_history": [{"action": "acquired", "perk": "Old Flame", "cost": 60, "ts": 1700000000000}],
}


def test_export_import_round_trip(tmp_path):
    source = _session(tmp_path / "a")
    source.tracker.add_bonus_points(200)
    source.registry.add_perk({"name": "Iron Skin", "cost": 50, "flags": ["SCALING"]})
    source.leveling.add_xp("Iron Skin", 25)
    exported = source.export_state()
    assert exported["version"] == 1

    target = _session(tmp_path / "b")
    result = target.import_state(json.dumps(exported))
    assert result.ok
    assert target.tracker.state.model_dump(exclude={"history"}) == source.tracker.state.model_dump(exclude={"history"})


def test_legacy_document_is_migrated_on_import(tmp_path):
    session = _session(tmp_path)
    assert session.import_state(LEGACY_DOCUMENT).ok

    state = session.tracker.state
    assert (state.base_points, state.bonus_points, state.total_points) == (40, 100, 140)
    assert state.spent_points == 80
    assert state.available_points == 60
    old_flame = state.find_perk("Old Flame")
    assert (old_flame.scaling.level, old_flame.scaling.xp) == (2, 5)
    assert old_flame.scaling.scaling_active
    tongs = state.find_perk("Plain Tongs")
    assert not tongs.scaling.scaling_active
    assert tongs.acquired_at == 1700000000.0
    assert state.pending_perk.needed == 240
    assert state.history[0].perk == "Old Flame"


def test_legacy_perk_with_progress_but_no_scaling_flag_becomes_scaling(tmp_path):
    document = json.loads(json.dumps(LEGACY_DOCUMENT))
    document["acquired_perks"][0]["flags"] = ["COMBAT"]
    migrated = migrate_state_document(document)
    assert migrated["state"]["acquired_perks"][0]["flags"] == ["COMBAT", "SCALING"]

    session = _session(tmp_path)
    assert session.import_state(document).ok
    old_flame = session.tracker.state.find_perk("Old Flame")
    assert old_flame.flags == ["COMBAT", "SCALING"]
    assert old_flame.scaling.scaling_active
    assert (old_flame.scaling.level, old_flame.scaling.xp) == (2, 5)


def test_newer_or_broken_documents_are_rejected(tmp_path):
    session = _session(tmp_path)
    with pytest.raises(SchemaMigrationError):
        migrate_state_document({"version": 99, "state": {}})

    before = session.tracker.state.model_dump()
    assert session.import_state("{not json").reason == Reason.INVALID_IMPORT
    assert session.import_state("[1, 2]").reason == Reason.INVALID_IMPORT
    assert session.import_state({"version": 1, "state": {"bank_max": "many"}}).reason == Reason.INVALID_IMPORT
    assert session.tracker.state.model_dump() == before


def test_state_survives_restart_and_reset(tmp_path):
    session = _session(tmp_path)
    session.on_ai_message("one")
    session.on_ai_message("two")
    assert _session(tmp_path).tracker.state.response_count == 2

    assert session.reset().ok
    assert _session(tmp_path).tracker.state.response_count == 0


def test_profiles_are_created_switched_and_copied(tmp_path):
    session = _session(tmp_path)
    session.tracker.add_bonus_points(70)

    assert session.create_profile("Hero").ok
    assert session.tracker.state.total_points == 0
    assert session.create_profile("Hero").reason == Reason.PROFILE_EXISTS
    assert session.create_profile("  ").reason == Reason.INVALID_PROFILE
    session.tracker.add_bonus_points(5)

    assert session.duplicate_profile("Hero Copy").ok
    assert session.tracker.state.total_points == 5
    assert set(session.list_profiles()) == {"Hero", "Hero Copy"}

    session.switch_profile(None)
    assert session.tracker.state.total_points == 70
    session.switch_profile("Hero")
    assert session.tracker.state.total_points == 5

    assert _session(tmp_path).profile == "Hero"


def test_profile_saves_are_pushed_to_the_remote(tmp_path):
    client = FakeGistClient()
    session = _session(tmp_path, remote=RemoteSync(client))
    session.create_profile("Smith")
    session.tracker.add_bonus_points(10)

    pushed = client.files[profile_filename("Smith")]
    assert json.loads(pushed)["state"]["bonus_points"] == 10
    assert not session.status()["remote_pending"]


def test_fresh_install_falls_back_to_legacy_remote_state(tmp_path):
    client = FakeGistClient({LEGACY_STATE_FILENAME: json.dumps(LEGACY_DOCUMENT)})
    session = _session(tmp_path, remote=RemoteSync(client))
    assert session.tracker.state.find_perk("Old Flame") is not None
    assert session.tracker.state.corruption == 12


def test_remote_catalog_is_used_when_local_is_empty(tmp_path):
    catalog = {
        "constellations": {"magic": {"perks": [{"id": "perk_remote", "name": "Far Spark", "cost": 120, "tier": 2}]}},
        "custom_constellations": {},
    }
    client = FakeGistClient({CATALOG_FILENAME: json.dumps(catalog)})
    session = _session(tmp_path, remote=RemoteSync(client))
    assert session.catalog.find_entry("perk_remote")[1].name == "Far Spark"


def test_remote_sync_coalesces_writes():
    client = FakeGistClient()
    scheduled = []
    sync = RemoteSync(client, scheduler=scheduled.append)

    sync.enqueue("a.json", {"n": 1})
    sync.enqueue("a.json", {"n": 2})
    sync.enqueue("b.json", {"n": 3})
    assert len(scheduled) == 1
    assert sync.pending_files == ["a.json", "b.json"]

    scheduled[0]()
    assert len(client.patches) == 1
    assert json.loads(client.patches[0]["a.json"]) == {"n": 2}
    assert sync.pending_files == []

    sync.enqueue("a.json", {"n": 4})
    assert len(scheduled) == 2


def test_remote_failure_keeps_the_batch_pending(caplog):
    client = FakeGistClient(fail=True)
    sync = RemoteSync(client)
    sync.enqueue("a.json", {"n": 1})

    assert sync.flush() is False
    assert sync.pending_files == ["a.json"]
    assert sync.last_error == "gist_http_502"
    assert "remote_sync_failed" in caplog.text

    client.fail = False
    assert sync.flush() is True
    assert sync.last_error is None
    assert sync.pending_files == []


def test_disabled_remote_ignores_writes():
    sync = RemoteSync(None)
    sync.enqueue("a.json", {"n": 1})
    assert not sync.enabled
    assert sync.pending_files == []
    assert sync.flush() is True
    assert sync.fetch() == {}


def test_gist_store_reads_and_patches(monkeypatch, tmp_path):
    settings = _settings(tmp_path, gist_id="abc123", github_token="tok")
    calls = []

    def fake_get(url, headers, timeout):
        calls.append(("get", url, headers["Authorization"]))
        return FakeResponse(200, {"files": {"x.json": {"content": "{}"}, "bin": {"truncated": True}}})

    def fake_patch(url, headers, data, timeout):
        calls.append(("patch", url, json.loads(data)))
        return FakeResponse(200)

    monkeypatch.setattr("perkforge.db.remote.requests.get", fake_get)
    monkeypatch.setattr("perkforge.db.remote.requests.patch", fake_patch)

    store = GistDocumentStore(settings)
    assert store.read_files() == {"x.json": "{}"}
    store.patch_files({"y.json": "[]"})

    assert calls[0] == ("get", "https://api.github.com/gists/abc123", "Bearer tok")
    assert calls[1][2] == {"files": {"y.json": {"content": "[]"}}}


def test_gist_store_errors_become_remote_errors(monkeypatch, tmp_path):
    settings = _settings(tmp_path, gist_id="abc123", github_token="tok")

    def broken_get(url, headers, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr("perkforge.db.remote.requests.get", broken_get)
    monkeypatch.setattr("perkforge.db.remote.requests.patch", lambda *a, **k: FakeResponse(403))

    store = GistDocumentStore(settings)
    with pytest.raises(RemoteStoreError):
        store.read_files()
    with pytest.raises(RemoteStoreError, match="gist_http_403"):
        store.patch_files({"y.json": "[]"})
    with pytest.raises(RemoteStoreError, match="github_token_missing"):
        GistDocumentStore(_settings(tmp_path, gist_id="abc123", github_token=None)).read_files()
