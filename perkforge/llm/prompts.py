from __future__ import annotations

from perkforge.models.catalog import TIER_COST_RANGES

CHECKPOINT_TAG = "forge"

CHECKPOINT_INSTRUCTIONS = (
    "[FORGE INSTRUCTIONS]\n"
    "At the very end of your reply, emit an updated checkpoint as a fenced code block tagged `forge` "
    "containing JSON of the form "
    '{"characters": [{"stats": {"total_cp": <int>, "available_cp": <int>, "corruption": <0-100>, '
    '"sanity": <0-100>, "perks": [{"name": <str>, "cost": <int>, "flags": [<FLAG>], '
    '"active": <bool>, "scaling": {"level": <int>, "xp": <int>, "max_level": <int>}}], '
    '"pending_perk": <str>, "pending_cp": <int>, "pending_remaining": <int>}}]}.\n'
    "Report XP as '**Perk Name** gains N XP' and level-ups as '**Perk Name** leveled up to Level N'."
)

CREATION_DIRECTIVE = (
    "[FORGE PERK CREATION]\n"
    "Invent one new perk for the {label} constellation at tier {tier} costing between {low} and {high} CP.\n"
    "Domain: {domain}\n"
    "Start a new line with exactly this header and nothing before it:\n"
    "**[PERK NAME]** (COST CP) [FLAG1, FLAG2]\n"
    "Flags must come from: {flags}.\n"
    "Follow the header with one to three paragraphs of description. If the perk scales, add a line "
    "'SCALING:' followed by lines like '1-3: effect' and optionally 'UNCAPPED: effect beyond level 10'."
)

GUIDE_SYSTEM_PROMPT = (
    "You write short domain guides for perk constellations in a points-buy progression game. "
    "Return only valid JSON with keys domain_guide and sources. "
    "domain_guide is two to four sentences describing what kinds of perks belong in the constellation. "
    "sources is a comma-separated list of fictional works the perks could be drawn from."
)


def creation_directive(label: str, tier: int, domain: str, flags: tuple[str, ...]) -> str:
    low, high = TIER_COST_RANGES.get(tier, TIER_COST_RANGES[1])
    return CREATION_DIRECTIVE.format(
        label=label,
        tier=tier,
        low=low,
        high=high,
        domain=domain or "open-ended",
        flags=", ".join(flags),
    )


def guide_prompt(label: str, category: str) -> str:
    return (
        f"Constellation name: {label}\n"
        f"Category: {category or 'general'}\n"
        "Describe the domain of this constellation."
    )
