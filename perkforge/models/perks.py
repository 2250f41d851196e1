from __future__ import annotations

import re
import time
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator

FLAGS: tuple[str, ...] = (
    "PASSIVE",
    "TOGGLEABLE",
    "ALWAYS-ON",
    "SCALING",
    "UNCAPPED",
    "GAMER",
    "META-SCALING",
    "PERMISSION-GATED",
    "SELECTIVE",
    "CORRUPTING",
    "SANITY-TAXING",
    "COMBAT",
    "UTILITY",
    "CRAFTING",
    "MENTAL",
    "PHYSICAL",
)

SCALING_FLAGS = ("SCALING", "UNCAPPED")
GAMER_FLAGS = ("GAMER", "META-SCALING")

BankSource = Literal["roll", "generation", "detected"]

UNCAPPED_MAX_LEVEL = 999
DEFAULT_MAX_LEVEL = 10

LEADING_INT = re.compile(r"\s*([-+]?\d+)")


def name_key(name: str | None) -> str:
    return (name or "").strip().lower()


def normalize_flags(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        tokens = [part for part in raw.replace(",", " ").split()]
    else:
        tokens = [str(part) for part in raw]
    flags: list[str] = []
    for token in tokens:
        flag = token.strip().strip("[]").upper().replace("_", "-")
        if flag == "ALWAYSON":
            flag = "ALWAYS-ON"
        if flag in FLAGS and flag not in flags:
            flags.append(flag)
    return flags


def coerce_int(value: Any, default: int = 0) -> int:
    """Leading integer of ``value`` (``"25 CP"`` reads as 25), else ``default``."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        match = LEADING_INT.match(value)
        return int(match.group(1)) if match else default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def clamp(value: Any, minimum: int = 0, maximum: int = 100) -> int:
    return max(minimum, min(maximum, coerce_int(value)))


class ScalingState(BaseModel):
    level: int = Field(default=1, ge=1)
    max_level: int = Field(default=DEFAULT_MAX_LEVEL, ge=1)
    xp: int = Field(default=0, ge=0)
    uncapped: bool = False
    scaling_active: bool = False

    @computed_field
    @property
    def xp_needed(self) -> int:
        return self.level * 10

    @computed_field
    @property
    def xp_percent(self) -> int:
        return min(100, round(100 * self.xp / self.xp_needed))

    def level_display(self) -> str:
        ceiling = "∞" if self.uncapped else str(self.max_level)
        return f"Lv.{self.level}/{ceiling}"

    def xp_display(self) -> str:
        return f"{self.xp}/{self.xp_needed} XP"


class ScalingSeed(BaseModel):
    """Partial scaling data from drafts, checkpoints and legacy saves."""

    model_config = ConfigDict(populate_by_name=True)

    level: int | None = None
    max_level: int | None = Field(default=None, validation_alias=AliasChoices("max_level", "maxLevel"))
    xp: int | None = None
    uncapped: bool | None = None

    @field_validator("level", "max_level", "xp", mode="before")
    @classmethod
    def _loose_int(cls, value: Any) -> int | None:
        if value is None or value == "":
            return None
        return max(0, coerce_int(value))


class PerkDraft(BaseModel):
    name: str = ""
    cost: int = 0
    flags: list[str] = Field(default_factory=list)
    description: str = ""
    scaling_description: dict[str, str] = Field(default_factory=dict)
    scaling: ScalingSeed | None = None
    active: bool | None = None
    db_link_id: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("cost", mode="before")
    @classmethod
    def _cost(cls, value: Any) -> int:
        return max(0, coerce_int(value))

    @field_validator("flags", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> list[str]:
        return normalize_flags(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return str(value or "").strip()


class Perk(BaseModel):
    name: str
    cost: int = Field(default=0, ge=0)
    flags: list[str] = Field(default_factory=list)
    description: str = ""
    scaling_description: dict[str, str] = Field(default_factory=dict)
    active: bool = True
    scaling: ScalingState = Field(default_factory=ScalingState)
    db_link_id: str | None = None
    acquired_at: float = Field(default_factory=time.time)
    acquired_response: int = 0

    @computed_field
    @property
    def toggleable(self) -> bool:
        return "TOGGLEABLE" in self.flags

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

    def qualifies_for_scaling(self, has_gamer: bool) -> bool:
        return has_gamer or any(flag in self.flags for flag in SCALING_FLAGS)

    def tier_text(self) -> str:
        """Effect text for the current level, if the scaling description covers it."""
        level = self.scaling.level
        if level > DEFAULT_MAX_LEVEL and "uncapped" in self.scaling_description:
            return self.scaling_description["uncapped"]
        for key, text in self.scaling_description.items():
            if key == "uncapped":
                continue
            low, _, high = key.partition("-")
            try:
                lo = int(low)
                hi = int(high) if high else lo
            except ValueError:
                continue
            if lo <= level <= hi:
                return text
        return ""


class BankedPerk(BaseModel):
    name: str
    cost: int = Field(default=0, ge=0)
    constellation_key: str | None = None
    flags: list[str] = Field(default_factory=list)
    description: str = ""
    scaling_description: dict[str, str] = Field(default_factory=dict)
    scaling: ScalingSeed | None = None
    db_link_id: str | None = None
    banked_at: float = Field(default_factory=time.time)
    source: BankSource = "roll"

    def to_draft(self) -> PerkDraft:
        return PerkDraft(
            name=self.name,
            cost=self.cost,
            flags=list(self.flags),
            description=self.description,
            scaling_description=dict(self.scaling_description),
            scaling=self.scaling.model_copy() if self.scaling else None,
            db_link_id=self.db_link_id,
        )


class PendingMarker(BaseModel):
    name: str
    cost: int = 0
    needed: int = 0
    flags: list[str] = Field(default_factory=list)


class HistoryEntry(BaseModel):
    action: str
    perk: str
    cost: int = 0
    ts: float = Field(default_factory=time.time)


class CharacterState(BaseModel):
    response_count: int = Field(default=0, ge=0)
    base_points: int = Field(default=0, ge=0)
    bonus_points: int = Field(default=0, ge=0)
    threshold: int = 100

    total_points: int = 0
    spent_points: int = 0
    available_points: int = 0
    threshold_progress: int = 0

    corruption: int = 0
    sanity: int = 0

    acquired_perks: list[Perk] = Field(default_factory=list)
    banked_perks: list[BankedPerk] = Field(default_factory=list)
    bank_max: int = 10
    pending_perk: PendingMarker | None = None
    active_toggles: list[str] = Field(default_factory=list)
    has_uncapped: bool = False
    has_gamer: bool = False
    history: list[HistoryEntry] = Field(default_factory=list)

    @field_validator("corruption", "sanity", mode="before")
    @classmethod
    def _meter(cls, value: Any) -> int:
        return clamp(value)

    def find_perk(self, name: str) -> Perk | None:
        key = name_key(name)
        return next((perk for perk in self.acquired_perks if perk.name.lower() == key), None)

    def find_banked(self, name: str) -> BankedPerk | None:
        key = name_key(name)
        return next((entry for entry in self.banked_perks if entry.name.lower() == key), None)

    def log_history(self, action: str, perk: str, cost: int = 0) -> None:
        self.history.append(HistoryEntry(action=action, perk=perk, cost=cost))
