from __future__ import annotations

import logging

from pydantic import BaseModel, field_validator

from perkforge.llm.client import LLMClient
from perkforge.llm.prompts import GUIDE_SYSTEM_PROMPT, guide_prompt

log = logging.getLogger(__name__)


class ConstellationGuide(BaseModel):
    domain_guide: str
    sources: str = ""

    @field_validator("domain_guide")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("domain_guide_empty")
        return value

    @field_validator("sources", mode="before")
    @classmethod
    def _sources(cls, value: object) -> str:
        if isinstance(value, list):
            return ", ".join(str(item).strip() for item in value if str(item).strip())
        return str(value or "").strip()


def generate_constellation_guide(
    client: LLMClient | None, label: str, category: str, *, user_id: str = "system"
) -> ConstellationGuide | None:
    if client is None:
        return None
    guide = client.complete_json(
        guide_prompt(label, category),
        ConstellationGuide,
        user_id,
        system_prompt=GUIDE_SYSTEM_PROMPT,
        temperature=0.6,
    )
    if guide is None:
        log.info("constellation_guide_unavailable label=%s", label)
    return guide
