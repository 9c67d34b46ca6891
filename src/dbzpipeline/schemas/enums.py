"""Closed vocabularies shared by the card, extraction and review schemas."""
from __future__ import annotations

from enum import Enum


class SetCode(str, Enum):
    AWA = "AWA"
    EVO = "EVO"
    HNV = "HNV"
    MOV = "MOV"
    PER = "PER"
    PRE = "PRE"
    VEN = "VEN"


class RarityPrefix(str, Enum):
    C = "C"
    U = "U"
    R = "R"
    UR = "UR"
    DR = "DR"
    S = "S"
    P = "P"
    UNK = "UNK"


class CardType(str, Enum):
    PERSONALITY = "personality"
    MASTERY = "mastery"
    PHYSICAL_COMBAT = "physical_combat"
    ENERGY_COMBAT = "energy_combat"
    EVENT = "event"
    SETUP = "setup"
    DRILL = "drill"
    DRAGON_BALL = "dragon_ball"
    NON_COMBAT = "non_combat"
    OTHER = "other"
    UNKNOWN = "unknown"


class CardStyle(str, Enum):
    BLACK = "black"
    BLUE = "blue"
    NAMEKIAN = "namekian"
    ORANGE = "orange"
    RED = "red"
    SAIYAN = "saiyan"
    FREESTYLE = "freestyle"
    OTHER = "other"
    UNKNOWN = "unknown"


class CardAffiliation(str, Enum):
    HERO = "hero"
    VILLAIN = "villain"
    NEUTRAL = "neutral"
    UNKNOWN = "unknown"


class EffectChunkKind(str, Enum):
    CONDITION = "condition"
    COST = "cost"
    EFFECT = "effect"
    RESTRICTION = "restriction"
    TIMING = "timing"
    OTHER = "other"


class ReviewReason(str, Enum):
    MISSING_CRITICAL_FIELD = "missing_critical_field"
    LOW_CONFIDENCE = "low_confidence"
    SCHEMA_VALIDATION_ERROR = "schema_validation_error"
    SET_CODE_MISMATCH = "set_code_mismatch"
    PRINTED_NUMBER_CONFLICT = "printed_number_conflict"
    INSUFFICIENT_OCR = "insufficient_ocr"
    LLM_UNAVAILABLE = "llm_unavailable"
    MANUAL_CHECK_REQUIRED = "manual_check_required"


CARD_TYPE_VALUES = tuple(member.value for member in CardType)
STYLE_VALUES = tuple(member.value for member in CardStyle)

# Printed-number letter prefix -> rarity. Two-letter prefixes are checked first.
_RARITY_PREFIX_ORDER = ("UR", "DR", "C", "U", "R", "S", "P")


def rarity_prefix_for(printed_number: str) -> RarityPrefix:
    """Derive the rarity prefix from a printed number such as ``C02`` or ``UR140``."""

    normalized = printed_number.strip().upper()
    for prefix in _RARITY_PREFIX_ORDER:
        if normalized.startswith(prefix) and normalized[len(prefix):len(prefix) + 1].isdigit():
            return RarityPrefix(prefix)
    return RarityPrefix.UNK
