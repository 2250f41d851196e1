from __future__ import annotations

import time
import uuid

from pydantic import BaseModel, Field

from perkforge.models.perks import BankSource

TIER_BREAKPOINTS: tuple[int, ...] = (100, 200, 300, 500, 700)

TIER_COST_RANGES: dict[int, tuple[int, int]] = {
    1: (50, 100),
    2: (150, 200),
    3: (250, 300),
    4: (400, 500),
    5: (600, 700),
    6: (800, 1000),
}


def tier_for_cost(cost: int) -> int:
    for tier, ceiling in enumerate(TIER_BREAKPOINTS, start=1):
        if cost <= ceiling:
            return tier
    return len(TIER_BREAKPOINTS) + 1


def _new_entry_id() -> str:
    return f"perk_{uuid.uuid4().hex[:12]}"


class CatalogEntry(BaseModel):
    id: str = Field(default_factory=_new_entry_id)
    name: str
    cost: int = Field(default=0, ge=0)
    tier: int = Field(default=1, ge=1, le=6)
    flags: list[str] = Field(default_factory=list)
    description: str = ""
    scaling_description: dict[str, str] = Field(default_factory=dict)
    times_rolled: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=time.time)
    source: BankSource = "generation"


class Constellation(BaseModel):
    domain_text: str = ""
    sources_text: str = ""
    perks: list[CatalogEntry] = Field(default_factory=list)


class CustomConstellation(BaseModel):
    label: str
    category: str = ""
    domain_guide: str = ""
    sources_text: str = ""


class PerkDatabase(BaseModel):
    constellations: dict[str, Constellation] = Field(default_factory=dict)
    custom_constellations: dict[str, CustomConstellation] = Field(default_factory=dict)
