"""Text detectors for the derived rule-metadata fields.

Each detector is a pure function over card text so it can be exercised on its
own. The resolvers combine an explicit value, a detector and a type default.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

INFINITY = "infinity"
AttachLimit = Union[int, str]

LIMIT_ONE_CARD_TYPES = frozenset({"personality", "mastery", "dragon_ball"})
EXTRAORDINARY_PLAY_FROM_HAND_TYPES = frozenset({"setup", "drill", "dragon_ball"})

NUMBER_WORDS = {
    "zero": 0,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
}
_VALUE_TOKEN = r"(\d+|x|one|two|three|four|five|six|seven|eight|nine|ten)"

REJUVENATE_PATTERNS = (
    re.compile(rf"\brejuvenate(?:\s+the\s+top)?\s+{_VALUE_TOKEN}\b", re.I),
    re.compile(rf"\brejuvenate\s+up\s+to\s+{_VALUE_TOKEN}\b", re.I),
)
ENDURANCE_PATTERNS = (re.compile(rf"\bendurance\s+{_VALUE_TOKEN}\b", re.I),)
RAISE_YOUR_ANGER_PATTERNS = (
    re.compile(rf"\braise\s+your\s+anger\s+{_VALUE_TOKEN}(?:\s+levels?)?\b", re.I),
)
LOWER_YOUR_ANGER_PATTERNS = (
    re.compile(rf"\blower\s+your\s+anger\s+{_VALUE_TOKEN}(?:\s+levels?)?\b", re.I),
)
RAISE_OR_LOWER_ANY_PLAYER_ANGER_PATTERNS = (
    re.compile(
        rf"\braise\s+or\s+lower\s+(?:a|any)\s+player'?s\s+anger\s+{_VALUE_TOKEN}(?:\s+levels?)?\b",
        re.I,
    ),
)

_CONDITIONAL_CUE = re.compile(r"\b(?:if|when|whenever|after|before|during|unless|instead|if able)\b")
_CLAUSE_SPLIT = re.compile(r"[\n.;]+")
_EXPLICIT_ENDURANCE_ZERO = re.compile(r"\bendurance\s*[:+-]?\s*0\b")
_LIMIT_PER_DECK = re.compile(
    r"\blimit(?:ed)?(?:\s+to)?\s+(\d{1,2})(?:\s+(?:copy|copies|card|cards))?\s+per\s+deck\b"
)
_ATTACH_LIMIT = re.compile(
    r"\byou may only have\s+([a-z0-9-]+)(?:\s+\"[^\"]+\")?"
    r"(?:\s+(?:card|cards|drill|drills|ally|allies|setup|setups))?\s+attached\b"
)


@dataclass(frozen=True)
class AmountResolution:
    amount: Optional[int]
    conditional: bool


def normalize_instruction_text(value: str) -> str:
    return re.sub(r"\s+", " ", value.lower()).strip()


def build_signal_text(card_text_raw: str, main_power_text: Optional[str]) -> str:
    parts = [part.strip() for part in (card_text_raw, main_power_text or "")]
    return "\n".join(part for part in parts if part)


def as_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def as_non_negative_int(value: Any) -> Optional[int]:
    """Integers and integral numbers/strings >= 0; anything else is ``None``."""

    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


def parse_number_token(token: Optional[str]) -> Optional[int]:
    if not token:
        return None
    normalized = token.strip().lower()
    if normalized.isdigit():
        return int(normalized)
    return NUMBER_WORDS.get(normalized)


def has_conditional_cue(text: str) -> bool:
    return bool(_CONDITIONAL_CUE.search(text))


def split_into_clauses(normalized_text: str) -> list[str]:
    return [clause.strip() for clause in _CLAUSE_SPLIT.split(normalized_text) if clause.strip()]


def extract_limit_per_deck(text: str) -> Optional[int]:
    match = _LIMIT_PER_DECK.search(normalize_instruction_text(text))
    if not match:
        return None
    parsed = int(match.group(1))
    return parsed if parsed >= 1 else None


def extract_attach_limit(text: str) -> Optional[int]:
    match = _ATTACH_LIMIT.search(normalize_instruction_text(text))
    if not match:
        return None
    parsed = parse_number_token(match.group(1))
    if parsed is None or parsed < 1:
        return None
    return parsed


def detect_considered_as_styled_card(text: str) -> bool:
    normalized = normalize_instruction_text(text)
    return bool(
        re.search(r"\bconsidered styled for your card effects\b", normalized)
        or re.search(r"\bis considered styled\b", normalized)
    )


def detect_banished_after_use(text: str) -> bool:
    normalized = normalize_instruction_text(text)
    return bool(
        re.search(r"\bbanish(?:ed|es)?(?: this card)? after use\b", normalized)
        or re.search(r"\bremoved? from the game(?: this card)? after use\b", normalized)
    )


def detect_shuffle_into_deck_after_use(text: str) -> bool:
    normalized = normalize_instruction_text(text)
    return bool(
        re.search(
            r"\bshuffle(?:s|d)?(?: this card)? into (?:the )?(?:owner'?s?|your|its) (?:life )?deck after use\b",
            normalized,
        )
    )


def detect_drill_not_discarded_when_changing_levels(card_type: str, text: str) -> bool:
    if card_type != "drill":
        return False
    normalized = normalize_instruction_text(text)
    return bool(re.search(r"\bthis drill is not discarded when changing levels?\b", normalized))


def detect_extraordinary_can_play_from_hand(card_type: str, is_ally: bool, text: str) -> bool:
    if not is_ally and card_type not in EXTRAORDINARY_PLAY_FROM_HAND_TYPES:
        return False
    return bool(re.search(r"\byou may play this card from your hand\b", normalize_instruction_text(text)))


def detect_effect_when_discarded_during_combat(text: str) -> bool:
    normalized = normalize_instruction_text(text)
    return bool(re.search(r"\bif this card is discarded from your hand during combat\b", normalized))


def detect_searches_owner_life_deck(text: str) -> bool:
    return bool(re.search(r"\bsearch (?:your|owner'?s) life deck\b", normalize_instruction_text(text)))


def detect_attaches_own_main_personality(text: str) -> bool:
    normalized = normalize_instruction_text(text)
    return bool(re.search(r"\battach(?:es|ed)?(?: this card)? to your (?:mp|main personality)\b", normalized))


def detect_attaches_opponent_main_personality(text: str) -> bool:
    normalized = normalize_instruction_text(text)
    return bool(
        re.search(r"\battach(?:es|ed)?(?: this card)? to your opponent'?s (?:mp|main personality)\b", normalized)
    )


def resolve_limit_per_deck(explicit: Any, card_type: str, text: str) -> int:
    normalized = as_non_negative_int(explicit)
    if normalized is not None and normalized >= 1:
        return normalized
    from_text = extract_limit_per_deck(text)
    if from_text is not None:
        return from_text
    return 1 if card_type in LIMIT_ONE_CARD_TYPES else 3


def normalize_attach_limit(value: Any) -> Optional[AttachLimit]:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized == INFINITY:
            return INFINITY
        parsed = parse_number_token(normalized)
        return parsed if parsed is not None and parsed >= 1 else None
    parsed = as_non_negative_int(value)
    return parsed if parsed is not None and parsed >= 1 else None


def resolve_attach_limit(explicit: Any, text: str) -> AttachLimit:
    normalized = normalize_attach_limit(explicit)
    if normalized is not None:
        return normalized
    from_text = extract_attach_limit(text)
    return from_text if from_text is not None else INFINITY


def resolve_amount_with_conditional(
    explicit_amount: Any,
    explicit_conditional: Any,
    text: str,
    patterns: Sequence[re.Pattern],
) -> AmountResolution:
    """Resolve an amount/conditional pair.

    An explicit amount or conditional flag always wins; ``conditional=True``
    without an amount resolves to amount 0. Otherwise each clause of the
    text is scanned: numeric matches outside conditional clauses yield the
    largest amount, while ``x`` tokens or conditional clauses mark the pair
    conditional.
    """

    conditional = as_bool(explicit_conditional)
    amount = as_non_negative_int(explicit_amount)
    if conditional is not None or amount is not None:
        if conditional:
            return AmountResolution(amount if amount is not None else 0, True)
        return AmountResolution(amount, False)

    discovered: Optional[int] = None
    has_conditional = False
    has_match = False
    for clause in split_into_clauses(normalize_instruction_text(text)):
        for pattern in patterns:
            match = pattern.search(clause)
            if not match:
                continue
            has_match = True
            parsed = parse_number_token(match.group(1))
            if parsed is not None and not has_conditional_cue(clause):
                discovered = parsed if discovered is None else max(discovered, parsed)
            else:
                has_conditional = True

    if discovered is not None:
        return AmountResolution(discovered, has_conditional)
    if has_match:
        return AmountResolution(0, True)
    return AmountResolution(None, False)


def should_discard_explicit_endurance_zero(explicit_amount: Any, explicit_conditional: Any, text: str) -> bool:
    """A literal 0 endurance is dropped unless the text prints ``endurance 0``."""

    if as_non_negative_int(explicit_amount) != 0:
        return False
    if as_bool(explicit_conditional) is True:
        return False
    return not _EXPLICIT_ENDURANCE_ZERO.search(normalize_instruction_text(text))


def resolve_drill_enter_play_flags(
    explicit_during_combat: Any,
    explicit_any: Any,
    card_type: str,
    text: str,
) -> tuple[bool, bool]:
    """Return ``(when_drill_enters_play_during_combat, when_drill_enters_play)``."""

    if card_type != "drill":
        return False, False
    normalized = normalize_instruction_text(text)
    detected_during_combat = bool(re.search(r"\bwhen this drill enters play during combat\b", normalized))
    detected_any = bool(re.search(r"\bwhen this drill enters play\b", normalized)) or detected_during_combat

    during_combat = as_bool(explicit_during_combat)
    if during_combat is None:
        during_combat = detected_during_combat
    any_time = as_bool(explicit_any)
    if any_time is None:
        any_time = detected_any
    if during_combat and not any_time:
        any_time = True
    return during_combat, any_time
