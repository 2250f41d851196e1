"""Stateless scanners for the conventions the narrator is asked to follow."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from perkforge.llm.prompts import CHECKPOINT_TAG
from perkforge.models.perks import PerkDraft, coerce_int, normalize_flags

log = logging.getLogger(__name__)

CHECKPOINT_RE = re.compile(rf"```{CHECKPOINT_TAG}\s*([\s\S]*?)```")
LEGACY_PERK_ENTRY_RE = re.compile(r"(.+?)\s*\((\d+)\s*CP\)", re.IGNORECASE)
INLINE_PERK_RE = re.compile(r"\*\*([A-Z][A-Z\s\-']+?)\*\*\s*\((\d+)\s*CP\).*?\[([^\]]*)\]")
DIRECT_CREATION_RE = re.compile(
    r"^[ \t]*\*\*\[?([^\[\]\*\n]+?)\]?\*\*[ \t]*\((\d+)\s*CP\)[ \t]*\[([^\]\n]*)\]",
    re.MULTILINE,
)
LABELED_CREATION_RE = re.compile(
    r"PERK\s+NAME:\s*\**\s*\[?([^\[\]\*\n(]+?)\]?\s*\**\s*\((\d+)\s*CP\)(?:[ \t]*\[([^\]\n]*)\])?",
    re.IGNORECASE,
)
SCALING_MARKER_RE = re.compile(r"^[ \t]*\**SCALING:?\**[ \t]*$|^[ \t]*\**SCALING:\**", re.MULTILINE | re.IGNORECASE)
SCALING_LINE_RE = re.compile(r"^[ \t\-*]*(\d+)(?:\s*-\s*(\d+))?\s*:\s*(.+?)\s*$", re.MULTILINE)
UNCAPPED_LINE_RE = re.compile(r"^[ \t\-*]*UNCAPPED:\**\s*(.+?)\s*$", re.MULTILINE | re.IGNORECASE)
PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

XP_PATTERNS: tuple[tuple[str, re.Pattern[str], int, int], ...] = (
    ("gains", re.compile(r"\*\*([^*]+?)\*\*\s+gains\s+(\d+)\s+XP", re.IGNORECASE), 1, 2),
    ("plus_to", re.compile(r"\+(\d+)\s+XP\s+to\s+\*\*([^*]+?)\*\*", re.IGNORECASE), 2, 1),
    ("colon", re.compile(r"\*\*([^*]+?)\*\*:\s*\+(\d+)\s+XP", re.IGNORECASE), 1, 2),
)
LEVEL_UP_RE = re.compile(r"\*\*([^*]+?)\*\*\s+leveled\s+up\s+to\s+Level\s+(\d+)", re.IGNORECASE)

MIN_PARAGRAPH_CHARS = 20
MAX_DESCRIPTION_PARAGRAPHS = 3
PLACEHOLDER_NAMES = {"perk name", "name"}


@dataclass
class ParsedCheckpoint:
    total_points: int = 0
    available_points: int = 0
    corruption: int = 0
    sanity: int = 0
    perks: list[PerkDraft] = field(default_factory=list)
    pending_perk_name: str = ""
    pending_cost: int = 0
    pending_remaining: int = 0


def strip_checkpoints(text: str) -> str:
    return CHECKPOINT_RE.sub("", text)


def extract_checkpoint(text: str) -> ParsedCheckpoint | None:
    match = CHECKPOINT_RE.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(1).strip())
    except json.JSONDecodeError:
        log.warning("checkpoint_parse_failed", exc_info=True)
        return None
    if not isinstance(data, dict):
        log.warning("checkpoint_not_object type=%s", type(data).__name__)
        return None
    characters = data.get("characters")
    if isinstance(characters, list):
        if not characters or not isinstance(characters[0], dict):
            return None
        character = characters[0]
    else:
        character = data
    stats = character.get("stats") if isinstance(character.get("stats"), dict) else character
    return ParsedCheckpoint(
        total_points=coerce_int(stats.get("total_cp")),
        available_points=coerce_int(stats.get("available_cp")),
        corruption=coerce_int(stats.get("corruption")),
        sanity=coerce_int(stats.get("sanity")),
        perks=normalize_perks(stats.get("perks")),
        pending_perk_name=str(stats.get("pending_perk") or "").strip(),
        pending_cost=coerce_int(stats.get("pending_cp")),
        pending_remaining=coerce_int(stats.get("pending_remaining")),
    )


def _perk_from_entry(entry: Any) -> PerkDraft | None:
    if isinstance(entry, str):
        match = LEGACY_PERK_ENTRY_RE.search(entry)
        if not match:
            return None
        return PerkDraft(name=match.group(1).strip(), cost=int(match.group(2)))
    if isinstance(entry, dict):
        try:
            draft = PerkDraft.model_validate(entry)
        except ValidationError:
            log.warning("checkpoint_perk_invalid entry=%s", entry, exc_info=True)
            return None
        return draft if draft.name else None
    return None


def normalize_perks(raw: Any) -> list[PerkDraft]:
    if not raw:
        return []
    if isinstance(raw, str):
        entries: list[Any] = [part for part in raw.split("|") if part.strip()]
    elif isinstance(raw, list):
        entries = raw
    else:
        return []
    drafts = [_perk_from_entry(entry) for entry in entries]
    return [draft for draft in drafts if draft is not None]


def find_inline_perks(text: str) -> list[PerkDraft]:
    found: list[PerkDraft] = []
    for match in INLINE_PERK_RE.finditer(strip_checkpoints(text or "")):
        found.append(
            PerkDraft(
                name=match.group(1).strip(),
                cost=int(match.group(2)),
                flags=normalize_flags(re.split(r"[,\s]+", match.group(3))),
            )
        )
    return found


def extract_description(text: str) -> tuple[str, dict[str, str]]:
    body = strip_checkpoints(text or "").strip()
    marker = SCALING_MARKER_RE.search(body)
    before = body[: marker.start()] if marker else body
    after = body[marker.end() :] if marker else ""

    scaling: dict[str, str] = {}
    uncapped = UNCAPPED_LINE_RE.search(body)
    if uncapped:
        scaling["uncapped"] = uncapped.group(1).strip()
    before = UNCAPPED_LINE_RE.sub("", before)

    paragraphs: list[str] = []
    for chunk in PARAGRAPH_SPLIT_RE.split(before):
        cleaned = chunk.strip()
        if len(cleaned) > MIN_PARAGRAPH_CHARS:
            paragraphs.append(cleaned)
        if len(paragraphs) >= MAX_DESCRIPTION_PARAGRAPHS:
            break

    for match in SCALING_LINE_RE.finditer(after):
        low, high, effect = match.group(1), match.group(2), match.group(3)
        key = f"{low}-{high}" if high else low
        scaling[key] = effect.strip().strip("*").strip()
    return "\n\n".join(paragraphs), scaling


def _draft_from_header(match: re.Match[str], text: str) -> PerkDraft | None:
    name = match.group(1).strip().strip("*").strip()
    if not name or name.lower() in PLACEHOLDER_NAMES:
        return None
    description, scaling_description = extract_description(text[match.end() :])
    return PerkDraft(
        name=name,
        cost=int(match.group(2)),
        flags=normalize_flags(re.split(r"[,\s]+", match.group(3) or "")),
        description=description,
        scaling_description=scaling_description,
    )


def parse_direct_creation(text: str) -> PerkDraft | None:
    for match in DIRECT_CREATION_RE.finditer(text):
        draft = _draft_from_header(match, text)
        if draft is not None:
            return draft
    return None


def parse_labeled_creation(text: str) -> PerkDraft | None:
    match = LABELED_CREATION_RE.search(text)
    return _draft_from_header(match, text) if match else None


def parse_checkpoint_pending(text: str) -> PerkDraft | None:
    checkpoint = extract_checkpoint(text)
    if checkpoint is None or not checkpoint.pending_perk_name:
        return None
    listed = next(
        (p for p in checkpoint.perks if p.name.lower() == checkpoint.pending_perk_name.lower()),
        None,
    )
    description, scaling_description = extract_description(text)
    return PerkDraft(
        name=checkpoint.pending_perk_name,
        cost=checkpoint.pending_cost or (listed.cost if listed else 0),
        flags=list(listed.flags) if listed else [],
        description=(listed.description if listed and listed.description else description),
        scaling_description=scaling_description,
    )


CREATION_STRATEGIES: tuple[tuple[str, Callable[[str], PerkDraft | None]], ...] = (
    ("direct", parse_direct_creation),
    ("labeled", parse_labeled_creation),
    ("checkpoint", parse_checkpoint_pending),
)


def parse_generated_perk(text: str) -> tuple[str, PerkDraft] | None:
    for strategy, parser in CREATION_STRATEGIES:
        draft = parser(text or "")
        if draft is not None:
            log.info("generated_perk_parsed strategy=%s name=%s cost=%s", strategy, draft.name, draft.cost)
            return strategy, draft
    log.info("generated_perk_not_found")
    return None


def find_xp_awards(text: str) -> list[tuple[str, int]]:
    awards: list[tuple[str, int]] = []
    for _, pattern, name_group, xp_group in XP_PATTERNS:
        for match in pattern.finditer(text or ""):
            awards.append((match.group(name_group).strip(), int(match.group(xp_group))))
    return awards


def find_level_confirmations(text: str) -> list[tuple[str, int]]:
    return [(m.group(1).strip(), int(m.group(2))) for m in LEVEL_UP_RE.finditer(text or "")]
