"""Versioned character state documents and their migrations."""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict

SCHEMA_VERSION = 1


class SchemaMigrationError(Exception):
    """Raised when a state document cannot be migrated to the current schema."""


Migration = Callable[[Dict[str, Any]], Dict[str, Any]]

_LEGACY_FIELD_MAP = {
    "base_cp": "base_points",
    "bonus_cp": "bonus_points",
    "total_cp": "total_points",
    "spent_cp": "spent_points",
    "available_cp": "available_points",
}


def _legacy_scaling(raw: Any, flags: list[Any], has_gamer: bool) -> dict[str, Any]:
    scaling = raw if isinstance(raw, dict) else {}
    upper = [str(flag).upper() for flag in flags]
    qualifies = has_gamer or "SCALING" in upper or "UNCAPPED" in upper
    return {
        "level": scaling.get("level") or 1,
        "max_level": scaling.get("max_level") or scaling.get("maxLevel") or 10,
        "xp": scaling.get("xp") or 0,
        "uncapped": bool(scaling.get("uncapped", False)),
        "scaling_active": qualifies,
    }


def _migrate_v0_to_v1(payload: Dict[str, Any]) -> Dict[str, Any]:
    legacy = payload.get("state") if isinstance(payload.get("state"), dict) else payload
    if not isinstance(legacy, dict) or not legacy:
        raise SchemaMigrationError("Missing state block for legacy document.")

    state: dict[str, Any] = {}
    for key, value in legacy.items():
        if key in ("version", "state"):
            continue
        state[_LEGACY_FIELD_MAP.get(key, key)] = value

    has_gamer = bool(state.get("has_gamer", False))
    perks = []
    for raw in state.get("acquired_perks") or []:
        if not isinstance(raw, dict):
            continue
        perk = dict(raw)
        flags = list(perk["flags"]) if isinstance(perk.get("flags"), list) else []
        upper = [str(flag).upper() for flag in flags]
        if raw.get("scaling") and "SCALING" not in upper and "UNCAPPED" not in upper:
            flags.append("SCALING")
        perk["flags"] = flags
        perk["scaling"] = _legacy_scaling(raw.get("scaling"), flags, has_gamer)
        if "acquired_response" not in perk:
            perk["acquired_response"] = 0
        if isinstance(perk.get("acquired_at"), (int, float)) and perk["acquired_at"] > 1e11:
            perk["acquired_at"] = perk["acquired_at"] / 1000.0
        perks.append(perk)
    state["acquired_perks"] = perks

    pending = state.get("pending_perk")
    if isinstance(pending, dict) and pending.get("name"):
        state["pending_perk"] = {
            "name": pending.get("name"),
            "cost": pending.get("cost") or 0,
            "needed": pending.get("cp_needed", pending.get("needed", 0)) or 0,
            "flags": pending.get("flags") or [],
        }
    else:
        state["pending_perk"] = None

    history = state.pop("perk_history", None) or state.get("history") or []
    state["history"] = [
        {
            "action": str(entry.get("action", "acquired")),
            "perk": str(entry.get("perk", "")),
            "cost": entry.get("cost") or 0,
            "ts": (entry.get("ts") or 0) / 1000.0 if (entry.get("ts") or 0) > 1e11 else entry.get("ts") or 0,
        }
        for entry in history
        if isinstance(entry, dict)
    ]
    state.setdefault("banked_perks", [])
    return {"version": 1, "state": state}


MIGRATIONS: Dict[int, Migration] = {
    0: _migrate_v0_to_v1,
}


def migrate_state_document(payload: Dict[str, Any], target_version: int = SCHEMA_VERSION) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise SchemaMigrationError("State document was not an object.")

    version = payload.get("version", 0)
    if version is None:
        version = 0
    if not isinstance(version, int) or isinstance(version, bool):
        raise SchemaMigrationError("State version missing or invalid.")
    if version > target_version:
        raise SchemaMigrationError(f"State schema {version} is newer than supported {target_version}.")

    current = copy.deepcopy(payload)
    while version < target_version:
        migrator = MIGRATIONS.get(version)
        if migrator is None:
            raise SchemaMigrationError(f"No migration available for state schema {version}.")
        current = migrator(current)
        version = current.get("version", version + 1)
        if not isinstance(version, int):
            raise SchemaMigrationError("Migration produced an invalid schema version.")

    if not isinstance(current.get("state"), dict):
        raise SchemaMigrationError("State document has no state block.")
    return current
