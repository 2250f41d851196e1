from __future__ import annotations

import functools
import json
import logging
import random
import re
import threading
from pathlib import Path
from typing import Any, Callable, TypeVar

from perkforge.db.gateway import PersistenceGateway
from perkforge.models.catalog import CatalogEntry, Constellation, CustomConstellation, PerkDatabase, tier_for_cost
from perkforge.models.core import OpResult, Reason
from perkforge.models.perks import BankSource, PerkDraft, coerce_int, name_key, normalize_flags

log = logging.getLogger(__name__)

TEMPLATES_PATH = Path(__file__).resolve().parent / "templates" / "constellations.json"


def load_builtin_constellations(path: Path = TEMPLATES_PATH) -> dict[str, dict[str, Any]]:
    raw = path.read_text(encoding="utf-8")
    data = json.loads(raw)
    return data if isinstance(data, dict) else {}


def constellation_key(label: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", label.strip().lower()).strip("_")


MethodT = TypeVar("MethodT", bound=Callable[..., Any])


def locked(method: MethodT) -> MethodT:
    """Run the method while holding the catalog lock."""

    @functools.wraps(method)
    def wrapper(self: "PerkCatalog", *args: Any, **kwargs: Any) -> Any:
        with self.lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class PerkCatalog:
    """Shared perk database grouped by constellation, persisted through the gateway."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        rng: random.Random | None = None,
        builtins: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.gateway = gateway
        self.rng = rng or random.Random()
        self.builtins = builtins if builtins is not None else load_builtin_constellations()
        self.database = PerkDatabase()
        self.lock = threading.RLock()

    @locked
    def load(self) -> PerkDatabase:
        self.database = self.gateway.load_catalog() or PerkDatabase()
        for key, meta in self.builtins.items():
            if key not in self.database.constellations:
                self.database.constellations[key] = Constellation(
                    domain_text=str(meta.get("domain_text", "")),
                    sources_text=str(meta.get("sources_text", "")),
                )
        log.info(
            "catalog_loaded constellations=%s entries=%s",
            len(self.database.constellations),
            sum(len(c.perks) for c in self.database.constellations.values()),
        )
        return self.database

    @locked
    def save(self) -> None:
        self.gateway.save_catalog(self.database)

    # ---------- constellations ----------
    def is_builtin(self, key: str) -> bool:
        return key in self.builtins

    @locked
    def constellation_keys(self) -> list[str]:
        return list(self.builtins) + [k for k in self.database.custom_constellations if k not in self.builtins]

    @locked
    def label_for(self, key: str) -> str:
        if key in self.builtins:
            return str(self.builtins[key].get("label", key))
        custom = self.database.custom_constellations.get(key)
        return custom.label if custom else key

    @locked
    def domain_for(self, key: str) -> str:
        custom = self.database.custom_constellations.get(key)
        if custom and custom.domain_guide:
            return custom.domain_guide
        constellation = self.database.constellations.get(key)
        return constellation.domain_text if constellation else ""

    @locked
    def list_constellations(self) -> list[dict[str, Any]]:
        rows = []
        for key in self.constellation_keys():
            constellation = self.database.constellations.get(key) or Constellation()
            custom = self.database.custom_constellations.get(key)
            rows.append(
                {
                    "key": key,
                    "label": self.label_for(key),
                    "category": custom.category if custom else str(self.builtins.get(key, {}).get("category", "")),
                    "builtin": self.is_builtin(key),
                    "perk_count": len(constellation.perks),
                    "has_guide": bool(self.domain_for(key)),
                }
            )
        return rows

    @locked
    def random_constellation_key(self) -> str:
        return self.rng.choice(self.constellation_keys())

    @locked
    def add_constellation(self, label: str, category: str = "") -> OpResult:
        label = (label or "").strip()
        key = constellation_key(label)
        if not key:
            return OpResult.fail(Reason.INVALID_LABEL, "A constellation needs a label.")
        if self.is_builtin(key) or key in self.database.custom_constellations:
            return OpResult.fail(Reason.KEY_COLLISION, f"Constellation {key} already exists.", key)
        self.database.custom_constellations[key] = CustomConstellation(label=label, category=category.strip())
        self.database.constellations.setdefault(key, Constellation())
        self.save()
        log.info("constellation_added key=%s category=%s", key, category)
        return OpResult.success(key, f"Constellation {label} added.")

    @locked
    def set_constellation_guide(self, key: str, domain_guide: str, sources_text: str | None = None) -> OpResult:
        if key not in self.constellation_keys():
            return OpResult.fail(Reason.UNKNOWN_CONSTELLATION, f"Unknown constellation {key}.")
        constellation = self.database.constellations.setdefault(key, Constellation())
        constellation.domain_text = domain_guide.strip()
        if sources_text is not None:
            constellation.sources_text = sources_text.strip()
        custom = self.database.custom_constellations.get(key)
        if custom is not None:
            custom.domain_guide = constellation.domain_text
            if sources_text is not None:
                custom.sources_text = constellation.sources_text
        self.save()
        log.info("constellation_guide_set key=%s chars=%s", key, len(constellation.domain_text))
        return OpResult.success(key, f"Guide for {self.label_for(key)} saved.")

    @locked
    def remove_constellation(self, key: str) -> OpResult:
        if self.is_builtin(key):
            return OpResult.fail(Reason.BUILTIN_CONSTELLATION, f"{self.label_for(key)} is built in.")
        custom = self.database.custom_constellations.pop(key, None)
        if custom is None:
            return OpResult.fail(Reason.UNKNOWN_CONSTELLATION, f"Unknown constellation {key}.")
        self.save()
        kept = len(self.database.constellations.get(key, Constellation()).perks)
        log.info("constellation_removed key=%s kept_perks=%s", key, kept)
        return OpResult.success(key, f"Constellation {custom.label} removed.")

    # ---------- entries ----------
    @locked
    def entries(self, key: str) -> list[CatalogEntry]:
        constellation = self.database.constellations.get(key)
        return list(constellation.perks) if constellation else []

    @locked
    def find_entry(self, entry_id: str) -> tuple[str, CatalogEntry] | None:
        for key, constellation in self.database.constellations.items():
            for entry in constellation.perks:
                if entry.id == entry_id:
                    return key, entry
        return None

    @locked
    def add_entry(self, key: str, draft: PerkDraft, *, source: BankSource = "generation") -> OpResult:
        if not draft.name:
            return OpResult.fail(Reason.NO_NAME, "A perk needs a name.")
        constellation = self.database.constellations.get(key)
        if constellation is None:
            return OpResult.fail(Reason.UNKNOWN_CONSTELLATION, f"Unknown constellation {key}.")
        wanted = name_key(draft.name)
        existing = next((entry for entry in constellation.perks if name_key(entry.name) == wanted), None)
        if existing is not None:
            return OpResult.fail(Reason.DUPLICATE, f"{existing.name} is already catalogued.", existing)
        entry = CatalogEntry(
            name=draft.name,
            cost=draft.cost,
            tier=tier_for_cost(draft.cost),
            flags=list(draft.flags),
            description=draft.description,
            scaling_description=dict(draft.scaling_description),
            source=source,
        )
        constellation.perks.append(entry)
        self.save()
        log.info("catalog_entry_added key=%s id=%s name=%s tier=%s", key, entry.id, entry.name, entry.tier)
        return OpResult.success(entry, f"{entry.name} catalogued.")

    def register(self, key: str | None, draft: PerkDraft) -> str | None:
        """Catalog id for the draft, reusing an existing entry with the same name."""
        if not key:
            return None
        result = self.add_entry(key, draft)
        if result.ok or result.reason == Reason.DUPLICATE:
            return result.value.id
        log.info("catalog_register_skipped key=%s reason=%s", key, result.reason)
        return None

    @locked
    def update_entry(self, entry_id: str, updates: dict[str, Any]) -> OpResult:
        found = self.find_entry(entry_id)
        if found is None:
            return OpResult.fail(Reason.NOT_FOUND, f"No catalog entry {entry_id}.")
        _, entry = found
        if updates.get("name"):
            entry.name = str(updates["name"]).strip()
        if "cost" in updates:
            entry.cost = max(0, coerce_int(updates["cost"], entry.cost))
            entry.tier = tier_for_cost(entry.cost)
        if updates.get("flags") is not None:
            entry.flags = normalize_flags(updates["flags"])
        if updates.get("description") is not None:
            entry.description = str(updates["description"]).strip()
        if isinstance(updates.get("scaling_description"), dict):
            entry.scaling_description = {str(k): str(v) for k, v in updates["scaling_description"].items()}
        self.save()
        log.info("catalog_entry_updated id=%s", entry_id)
        return OpResult.success(entry, f"{entry.name} updated.")

    @locked
    def draw(self, key: str) -> OpResult:
        constellation = self.database.constellations.get(key)
        if constellation is None:
            return OpResult.fail(Reason.UNKNOWN_CONSTELLATION, f"Unknown constellation {key}.")
        if not constellation.perks:
            return OpResult.fail(Reason.EMPTY_CONSTELLATION, f"No perks catalogued in {self.label_for(key)} yet.")
        entry = self.rng.choice(constellation.perks)
        entry.times_rolled += 1
        self.save()
        log.info("catalog_draw key=%s id=%s times_rolled=%s", key, entry.id, entry.times_rolled)
        return OpResult.success(entry)
