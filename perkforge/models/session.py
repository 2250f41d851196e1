from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel

from perkforge.models.perks import PerkDraft


class RollState(str, Enum):
    IDLE = "idle"
    PROPOSAL_SHOWN = "proposal_shown"
    AWAITING_GENERATION = "awaiting_generation"


class RollSession(BaseModel):
    state: RollState = RollState.IDLE
    kind: Literal["forge", "creation"] | None = None
    proposed_perk: PerkDraft | None = None
    constellation_key: str | None = None
    constellation_label: str | None = None
    tier: int | None = None
    catalog_entry_id: str | None = None
    generation_prompt: str | None = None

    @property
    def is_idle(self) -> bool:
        return self.state == RollState.IDLE

    @property
    def awaiting_creation_response(self) -> bool:
        return self.state == RollState.AWAITING_GENERATION

    def proposes(self, name: str) -> bool:
        if self.state != RollState.PROPOSAL_SHOWN or self.proposed_perk is None:
            return False
        return self.proposed_perk.name.strip().lower() == name.strip().lower()
