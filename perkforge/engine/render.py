from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from perkforge.engine.economy import compute_economy
from perkforge.llm.prompts import CHECKPOINT_INSTRUCTIONS, CHECKPOINT_TAG
from perkforge.models.perks import CharacterState, Perk

CHARACTER_NAME = "Smith"


def _perk_view(perk: Perk) -> dict[str, Any]:
    scaling = perk.scaling
    return {
        "name": perk.name,
        "cost": perk.cost,
        "flags": list(perk.flags),
        "flags_str": ", ".join(perk.flags),
        "description": perk.description,
        "scaling_description": dict(perk.scaling_description),
        "tier_text": perk.tier_text(),
        "toggleable": perk.toggleable,
        "active": perk.active,
        "has_scaling": scaling.scaling_active,
        "is_uncapped": scaling.uncapped,
        "scaling": {
            "level": scaling.level,
            "max_level": scaling.max_level,
            "xp": scaling.xp,
            "xp_needed": scaling.xp_needed,
            "xp_percent": scaling.xp_percent,
            "uncapped": scaling.uncapped,
            "scaling_active": scaling.scaling_active,
            "level_display": scaling.level_display(),
            "xp_display": scaling.xp_display(),
        },
    }


def build_snapshot(state: CharacterState, character_name: str = CHARACTER_NAME) -> dict[str, Any]:
    economy = compute_economy(state)
    pending = state.pending_perk
    return {
        "characters": [
            {
                "characterName": character_name,
                "currentDateTime": datetime.now().strftime("%Y-%m-%d %H:%M"),
                "stats": {
                    "total_cp": economy.total_points,
                    "available_cp": economy.available_points,
                    "spent_cp": economy.spent_points,
                    "threshold_progress": economy.threshold_progress,
                    "threshold_max": economy.threshold,
                    "threshold_percent": economy.threshold_percent,
                    "corruption": state.corruption,
                    "sanity": state.sanity,
                    "has_uncapped": state.has_uncapped,
                    "has_gamer": state.has_gamer,
                    "perk_count": len(state.acquired_perks),
                    "perks": [_perk_view(perk) for perk in state.acquired_perks],
                    "banked": [
                        {"name": entry.name, "cost": entry.cost, "source": entry.source}
                        for entry in state.banked_perks
                    ],
                    "pending_perk": pending.name if pending else "",
                    "pending_cp": pending.cost if pending else 0,
                    "pending_remaining": pending.needed if pending else 0,
                },
            }
        ]
    }


def render_checkpoint(state: CharacterState) -> str:
    payload = json.dumps(build_snapshot(state), indent=2, ensure_ascii=False)
    return f"```{CHECKPOINT_TAG}\n{payload}\n```"


def _perk_line(perk: Perk) -> str:
    line = f"- {perk.name} ({perk.cost} CP) [{', '.join(perk.flags)}]"
    if perk.scaling.scaling_active:
        line += f" [{perk.scaling.level_display()} {perk.scaling.xp_display()}]"
    if perk.toggleable:
        line += " [ON]" if perk.active else " [OFF]"
    return line


def render_context_block(state: CharacterState) -> str:
    economy = compute_economy(state)
    modifiers = " | ".join(
        label for label, on in (("UNCAPPED ACTIVE", state.has_uncapped), ("GAMER ACTIVE", state.has_gamer)) if on
    )
    lines = [
        "[FORGE STATE]",
        f"CP: {economy.total_points} total | {economy.available_points} available | {economy.spent_points} spent",
        f"Threshold: {economy.threshold_progress}/{economy.threshold}",
        f"Corruption: {state.corruption}/100 | Sanity: {state.sanity}/100",
    ]
    if modifiers:
        lines.append(modifiers)
    lines.append(f"PERKS ({len(state.acquired_perks)}):")
    lines.extend(_perk_line(perk) for perk in state.acquired_perks)
    if not state.acquired_perks:
        lines.append("(none)")
    pending = state.pending_perk
    if pending:
        lines.append(f"PENDING: {pending.name} ({pending.cost} CP, need {pending.needed} more)")
    if state.banked_perks:
        lines.append("BANKED: " + ", ".join(f"{entry.name} ({entry.cost} CP)" for entry in state.banked_perks))
    lines.append("")
    lines.append(CHECKPOINT_INSTRUCTIONS)
    return "\n".join(lines)
