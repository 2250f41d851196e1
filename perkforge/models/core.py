from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Reason(str, Enum):
    NO_NAME = "no_name"
    NOT_FOUND = "not_found"
    ALREADY_ACQUIRED = "already_acquired"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_TOGGLEABLE = "not_toggleable"
    ALREADY_SCALING = "already_scaling"
    ALREADY_UNCAPPED = "already_uncapped"
    ALREADY_ACTIVE = "already_active"
    BANK_FULL = "bank_full"
    ALREADY_BANKED = "already_banked"
    DUPLICATE = "duplicate"
    KEY_COLLISION = "key_collision"
    BUILTIN_CONSTELLATION = "builtin_constellation"
    INVALID_LABEL = "invalid_label"
    UNKNOWN_CONSTELLATION = "unknown_constellation"
    EMPTY_CONSTELLATION = "empty_constellation"
    ROLL_PENDING = "roll_pending"
    NO_PROPOSAL = "no_proposal"
    NO_PENDING_PERK = "no_pending_perk"
    PROFILE_EXISTS = "profile_exists"
    INVALID_PROFILE = "invalid_profile"
    INVALID_IMPORT = "invalid_import"
    INVALID_VALUE = "invalid_value"


@dataclass
class OpResult:
    ok: bool
    reason: Reason | None = None
    message: str = ""
    value: Any = None

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "OpResult":
        return cls(ok=True, reason=None, message=message, value=value)

    @classmethod
    def fail(cls, reason: Reason, message: str = "", value: Any = None) -> "OpResult":
        return cls(ok=False, reason=reason, message=message or reason.value, value=value)


@dataclass
class ActionResult:
    ok: bool
    message: str
