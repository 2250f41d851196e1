from __future__ import annotations

import json
import logging
from typing import Any, Callable

from perkforge.engine.session import ForgeSession, MessageOutcome
from perkforge.models.core import ActionResult, OpResult
from perkforge.models.perks import PerkDraft, normalize_flags
from perkforge.models.session import RollSession, RollState

log = logging.getLogger(__name__)

PREFIX = "!forge"

HELP_TEXT = (
    "Forge commands (separate arguments with |):\n"
    "!forge status | show | checkpoint | perks\n"
    "!forge cp set N | cp add N | corruption N | sanity N\n"
    "!forge add NAME | COST | FLAGS | DESCRIPTION\n"
    "!forge edit NAME | field=value ... (name, cost, flags, description, level, xp, active)\n"
    "!forge remove NAME | toggle NAME | scale NAME | uncap NAME | xp NAME | N | level NAME | N\n"
    "!forge gamer | uncapped\n"
    "!forge roll [CONSTELLATION] | create [CONSTELLATION] [| TIER] | acquire | bank | discard\n"
    "!forge banked | buy NAME | drop NAME | bank pending\n"
    "!forge constellations | constellation add LABEL | CATEGORY | constellation remove KEY "
    "| constellation guide KEY | TEXT\n"
    "!forge profiles | profile switch NAME | profile create NAME | profile copy NAME\n"
    "!forge export | import JSON | reset | log"
)


def split_args(raw: str) -> list[str]:
    return [part.strip() for part in raw.split("|")] if raw.strip() else []


def to_action(result: OpResult) -> ActionResult:
    return ActionResult(ok=result.ok, message=result.message or (result.reason.value if result.reason else ""))


def describe_proposal(session: RollSession) -> str:
    if session.state == RollState.AWAITING_GENERATION:
        return f"Waiting for the narrator to forge a tier {session.tier} {session.constellation_label} perk."
    draft = session.proposed_perk
    if session.state != RollState.PROPOSAL_SHOWN or draft is None:
        return "No roll in progress."
    lines = [
        f"**{draft.name}** ({draft.cost} CP) [{', '.join(draft.flags)}]",
        f"Constellation: {session.constellation_label} | Tier {session.tier}",
    ]
    if draft.description:
        lines.append(draft.description)
    lines.append("Reply with !forge acquire, !forge bank or !forge discard.")
    return "\n".join(lines)


def describe_outcome(outcome: MessageOutcome) -> str | None:
    if outcome.duplicate:
        return None
    lines: list[str] = []
    if outcome.generation is not None:
        lines.append(outcome.generation.message)
    report = outcome.report
    if report is not None and report.processed:
        if report.added:
            lines.append("Acquired: " + ", ".join(report.added))
        if report.pending:
            lines.append("Pending (not enough CP): " + ", ".join(report.pending))
        for name, level in report.levels_confirmed:
            lines.append(f"{name} is now level {level}.")
    if outcome.affordable:
        lines.append("Now affordable from the bank: " + ", ".join(outcome.affordable))
    return "\n".join(lines) or None


class CommandHandler:
    """Maps `!forge ...` chat commands onto one forge session."""

    def __init__(self, session: ForgeSession) -> None:
        self.session = session
        self.author_id = "system"
        self._commands: dict[str, Callable[[list[str]], ActionResult]] = {
            "help": self._help,
            "status": self._status,
            "show": self._show,
            "checkpoint": self._checkpoint,
            "perks": self._perks,
            "cp": self._cp,
            "corruption": self._corruption,
            "sanity": self._sanity,
            "add": self._add,
            "edit": self._edit,
            "remove": self._remove,
            "toggle": self._toggle,
            "scale": self._scale,
            "uncap": self._uncap,
            "xp": self._xp,
            "level": self._level,
            "gamer": self._gamer,
            "uncapped": self._uncapped,
            "roll": self._roll,
            "create": self._create,
            "acquire": self._acquire,
            "bank": self._bank,
            "discard": self._discard,
            "banked": self._banked,
            "buy": self._buy,
            "drop": self._drop,
            "constellations": self._constellations,
            "constellation": self._constellation,
            "profiles": self._profiles,
            "profile": self._profile,
            "export": self._export,
            "import": self._import,
            "reset": self._reset,
            "log": self._log,
        }

    def handle(self, text: str, author_id: str = "system") -> ActionResult:
        self.author_id = author_id
        body = text.strip()
        if body.lower().startswith(PREFIX):
            body = body[len(PREFIX) :].strip()
        if not body:
            return self._help([])
        word, _, rest = body.partition(" ")
        command = self._commands.get(word.lower())
        if command is None:
            return ActionResult(ok=False, message=f"Unknown forge command: {word}. Try !forge help.")
        log.info("forge_command command=%s", word.lower())
        args = [rest.strip()] if word.lower() == "import" else split_args(rest)
        result = command(args)
        self.session.record_event("FORGE_COMMAND", {"command": word.lower(), "ok": result.ok})
        return result

    def _help(self, args: list[str]) -> ActionResult:
        return ActionResult(ok=True, message=HELP_TEXT)

    def _status(self, args: list[str]) -> ActionResult:
        status = self.session.status()
        modifiers = [label for label, on in (("UNCAPPED", status["has_uncapped"]), ("GAMER", status["has_gamer"])) if on]
        lines = [
            f"Forge v{status['version']} ({'on' if status['enabled'] else 'off'})",
            f"Profile: {status['profile'] or '-'} | Perks: {status['perk_count']} | Banked: {status['banked']}",
            f"CP: {status['total_points']} total, {status['available_points']} available",
            f"Modifiers: {', '.join(modifiers) or 'none'} | Roll: {status['roll_state']}",
        ]
        if status["remote_error"]:
            lines.append(f"Remote sync: {status['remote_error']}")
        return ActionResult(ok=True, message="\n".join(lines))

    def _show(self, args: list[str]) -> ActionResult:
        return ActionResult(ok=True, message=self.session.render_context())

    def _checkpoint(self, args: list[str]) -> ActionResult:
        return ActionResult(ok=True, message=self.session.render_checkpoint())

    def _perks(self, args: list[str]) -> ActionResult:
        perks = self.session.snapshot()["characters"][0]["stats"]["perks"]
        if not perks:
            return ActionResult(ok=True, message="No perks yet.")
        lines = []
        for perk in perks:
            line = f"**{perk['name']}** ({perk['cost']} CP) [{perk['flags_str']}]"
            if perk["has_scaling"]:
                line += f" {perk['scaling']['level_display']} {perk['scaling']['xp_display']}"
            if perk["toggleable"]:
                line += " ON" if perk["active"] else " OFF"
            if perk["tier_text"]:
                line += f"\n  {perk['tier_text']}"
            lines.append(line)
        return ActionResult(ok=True, message="\n".join(lines))

    def _cp(self, args: list[str]) -> ActionResult:
        words = args[0].split() if args else []
        if len(words) != 2 or words[0].lower() not in {"set", "add"}:
            return ActionResult(ok=False, message="Usage: !forge cp set N | !forge cp add N")
        tracker = self.session.tracker
        if words[0].lower() == "set":
            result = to_action(tracker.set_available_points(words[1]))
        else:
            result = to_action(tracker.add_bonus_points(words[1]))
        affordable = [entry.name for entry in self.session.bank.check_affordability()]
        if result.ok and affordable:
            result.message += "\nNow affordable from the bank: " + ", ".join(affordable)
        return result

    def _corruption(self, args: list[str]) -> ActionResult:
        if not args:
            return ActionResult(ok=False, message="Usage: !forge corruption N")
        return to_action(self.session.tracker.set_corruption(args[0]))

    def _sanity(self, args: list[str]) -> ActionResult:
        if not args:
            return ActionResult(ok=False, message="Usage: !forge sanity N")
        return to_action(self.session.tracker.set_sanity(args[0]))

    def _add(self, args: list[str]) -> ActionResult:
        if not args:
            return ActionResult(ok=False, message="Usage: !forge add NAME | COST | FLAGS | DESCRIPTION")
        draft = PerkDraft(
            name=args[0],
            cost=args[1] if len(args) > 1 else 0,
            flags=args[2] if len(args) > 2 else [],
            description=args[3] if len(args) > 3 else "",
        )
        return to_action(self.session.registry.add_perk(draft))

    def _edit(self, args: list[str]) -> ActionResult:
        if len(args) < 2:
            return ActionResult(ok=False, message="Usage: !forge edit NAME | field=value")
        updates: dict[str, Any] = {}
        for pair in args[1:]:
            key, sep, value = pair.partition("=")
            key = key.strip().lower()
            if not sep or key not in {"name", "cost", "flags", "description", "level", "xp", "active"}:
                return ActionResult(ok=False, message=f"Cannot edit {pair}.")
            if key == "flags":
                updates[key] = normalize_flags(value)
            elif key == "active":
                updates[key] = value.strip().lower() in {"1", "on", "true", "yes"}
            else:
                updates[key] = value.strip()
        return to_action(self.session.registry.edit_perk(args[0], updates))

    def _remove(self, args: list[str]) -> ActionResult:
        return self._named(args, self.session.registry.remove_perk, "remove")

    def _toggle(self, args: list[str]) -> ActionResult:
        return self._named(args, self.session.registry.toggle_perk, "toggle")

    def _scale(self, args: list[str]) -> ActionResult:
        return self._named(args, self.session.registry.enable_perk_scaling, "scale")

    def _uncap(self, args: list[str]) -> ActionResult:
        return self._named(args, self.session.registry.enable_perk_uncapped, "uncap")

    def _named(self, args: list[str], action: Callable[[str], OpResult], verb: str) -> ActionResult:
        if not args or not args[0]:
            return ActionResult(ok=False, message=f"Usage: !forge {verb} NAME")
        return to_action(action(args[0]))

    def _xp(self, args: list[str]) -> ActionResult:
        if len(args) != 2:
            return ActionResult(ok=False, message="Usage: !forge xp NAME | AMOUNT")
        scaling = self.session.leveling.add_xp(args[0], args[1])
        if scaling is None:
            return ActionResult(ok=False, message=f"{args[0]} cannot gain XP.")
        return ActionResult(ok=True, message=f"{args[0]}: {scaling.level_display()} {scaling.xp_display()}")

    def _level(self, args: list[str]) -> ActionResult:
        if len(args) != 2:
            return ActionResult(ok=False, message="Usage: !forge level NAME | LEVEL")
        scaling = self.session.leveling.set_level(args[0], args[1])
        if scaling is None:
            return ActionResult(ok=False, message=f"No perk named {args[0]}.")
        return ActionResult(ok=True, message=f"{args[0]}: {scaling.level_display()}")

    def _gamer(self, args: list[str]) -> ActionResult:
        return to_action(self.session.registry.apply_gamer())

    def _uncapped(self, args: list[str]) -> ActionResult:
        return to_action(self.session.registry.apply_uncapped())

    def _roll(self, args: list[str]) -> ActionResult:
        result = self.session.roll.trigger_forge_roll(args[0] if args else None)
        if not result.ok:
            return to_action(result)
        return ActionResult(ok=True, message=describe_proposal(result.value))

    def _create(self, args: list[str]) -> ActionResult:
        key = args[0] if args and args[0] else None
        tier = args[1] if len(args) > 1 and args[1] else None
        result = self.session.roll.trigger_creation_roll(key, tier)
        if not result.ok:
            return to_action(result)
        return ActionResult(ok=True, message=describe_proposal(result.value))

    def _acquire(self, args: list[str]) -> ActionResult:
        return to_action(self.session.roll.acquire())

    def _bank(self, args: list[str]) -> ActionResult:
        if args and args[0].lower() == "pending":
            return to_action(self.session.bank.bank_pending())
        return to_action(self.session.roll.bank_proposal())

    def _discard(self, args: list[str]) -> ActionResult:
        return to_action(self.session.roll.discard())

    def _banked(self, args: list[str]) -> ActionResult:
        state = self.session.tracker.state
        if not state.banked_perks:
            return ActionResult(ok=True, message="The bank is empty.")
        affordable = {entry.name for entry in self.session.bank.check_affordability()}
        lines = [f"Bank ({len(state.banked_perks)}/{state.bank_max}):"]
        for entry in state.banked_perks:
            mark = " (affordable)" if entry.name in affordable else ""
            lines.append(f"- {entry.name} ({entry.cost} CP){mark}")
        return ActionResult(ok=True, message="\n".join(lines))

    def _buy(self, args: list[str]) -> ActionResult:
        return self._named(args, self.session.bank.acquire_banked, "buy")

    def _drop(self, args: list[str]) -> ActionResult:
        return self._named(args, self.session.bank.discard_banked, "drop")

    def _constellations(self, args: list[str]) -> ActionResult:
        lines = []
        for row in self.session.catalog.list_constellations():
            origin = "built-in" if row["builtin"] else "custom"
            lines.append(f"- {row['key']}: {row['label']} ({origin}, {row['perk_count']} perks)")
        return ActionResult(ok=True, message="\n".join(lines))

    def _constellation(self, args: list[str]) -> ActionResult:
        words = args[0].split(maxsplit=1) if args else []
        if len(words) != 2:
            return ActionResult(ok=False, message="Usage: !forge constellation add|remove|guide ...")
        action, target = words[0].lower(), words[1].strip()
        if action == "add":
            category = args[1] if len(args) > 1 else ""
            return to_action(self.session.add_constellation(target, category, requested_by=self.author_id))
        if action == "remove":
            return to_action(self.session.catalog.remove_constellation(target))
        if action == "guide" and len(args) > 1:
            return to_action(self.session.catalog.set_constellation_guide(target, args[1]))
        return ActionResult(ok=False, message="Usage: !forge constellation add|remove|guide ...")

    def _profiles(self, args: list[str]) -> ActionResult:
        profiles = self.session.list_profiles()
        active = self.session.profile
        if not profiles:
            return ActionResult(ok=True, message="No profiles yet.")
        return ActionResult(
            ok=True,
            message="\n".join(f"- {name}{' (active)' if name == active else ''}" for name in profiles),
        )

    def _profile(self, args: list[str]) -> ActionResult:
        words = args[0].split(maxsplit=1) if args else []
        if not words:
            return self._profiles(args)
        action = words[0].lower()
        name = words[1].strip() if len(words) > 1 else ""
        if action == "switch":
            return to_action(self.session.switch_profile(name))
        if action == "create":
            return to_action(self.session.create_profile(name))
        if action == "copy":
            return to_action(self.session.duplicate_profile(name))
        return ActionResult(ok=False, message="Usage: !forge profile switch|create|copy NAME")

    def _export(self, args: list[str]) -> ActionResult:
        payload = json.dumps(self.session.export_state(), ensure_ascii=False)
        return ActionResult(ok=True, message=f"```json\n{payload}\n```")

    def _import(self, args: list[str]) -> ActionResult:
        raw = args[0] if args else ""
        raw = raw.strip().removeprefix("```json").removeprefix("```").removesuffix("```").strip()
        if not raw:
            return ActionResult(ok=False, message="Usage: !forge import {...}")
        return to_action(self.session.import_state(raw))

    def _reset(self, args: list[str]) -> ActionResult:
        return to_action(self.session.reset())

    def _log(self, args: list[str]) -> ActionResult:
        events = self.session.recent_activity()
        if not events:
            return ActionResult(ok=True, message="Nothing recorded yet.")
        lines = [f"{event['ts']} {event['event_type']} {json.dumps(event['payload'], sort_keys=True)}" for event in events]
        return ActionResult(ok=True, message="\n".join(lines))
