from perkforge.models.catalog import CatalogEntry, Constellation, CustomConstellation, PerkDatabase, tier_for_cost
from perkforge.models.core import ActionResult, OpResult, Reason
from perkforge.models.perks import (
    FLAGS,
    BankedPerk,
    CharacterState,
    HistoryEntry,
    PendingMarker,
    Perk,
    PerkDraft,
    ScalingSeed,
    ScalingState,
    normalize_flags,
)
from perkforge.models.session import RollSession, RollState

__all__ = [
    "FLAGS",
    "ActionResult",
    "BankedPerk",
    "CatalogEntry",
    "CharacterState",
    "Constellation",
    "CustomConstellation",
    "HistoryEntry",
    "OpResult",
    "PendingMarker",
    "Perk",
    "PerkDatabase",
    "PerkDraft",
    "Reason",
    "RollSession",
    "RollState",
    "ScalingSeed",
    "ScalingState",
    "normalize_flags",
    "tier_for_cost",
]
