"""Inline icon glyph rewriting and contextual icon evidence scoring.

OCR and LLM text mark gameplay icons with bracket markers such as
``[attack icon]``. A marker only counts as evidence when its surrounding line
looks like a card ability rather than rulebook glossary prose.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

ATTACK_MARKER = "[attack icon]"
DEFENSE_MARKER = "[defense icon]"
CONSTANT_MARKER = "[constant icon]"
TIMING_MARKER = "[timing icon]"

ICON_MARKERS: Dict[str, Tuple[str, ...]] = {
    "attack": (ATTACK_MARKER,),
    "defense": (DEFENSE_MARKER,),
    "quick": (TIMING_MARKER, "[quick icon]"),
    "constant": (CONSTANT_MARKER,),
}

_GLYPH_REPLACEMENTS = (
    (re.compile(r"\[quick icon\]", re.I), TIMING_MARKER),
    (re.compile(r"[⚔✠✖⨯]"), ATTACK_MARKER),
    (re.compile(r"[♥❤]"), DEFENSE_MARKER),
    (re.compile(r"∞"), CONSTANT_MARKER),
    (re.compile(r"[⚡⛭]"), TIMING_MARKER),
)

_OCR_SIGNAL_LIMIT = 8000

_PREFIX_BLANK = re.compile(r"^[(\"'\[]*$")
_PREFIX_STAT_LABEL = re.compile(r"\b(?:power|hit|damage)\s*:\s*$")
_SUFFIX_ABILITY = re.compile(
    r"^(?::|-|power\b|physical attack\b|energy attack\b|stops?\b|use\b|when\b|if\b|prevent\b|reduce\b|your\b)"
)
_SUFFIX_ATTACK_PHRASE = re.compile(r"(?:^|\s)(?:physical|energy)\s+attack\b")
_SUFFIX_CARDS = re.compile(r"^cards?\b")
_PREFIX_STYLED = re.compile(r"\bstyled\s*$")
_PREFIX_ARTICLE = re.compile(r"\b(?:a|an|any)\s*(?:styled)?\s*$")
_GLOSSARY_LINES = (
    "cards have different icons",
    "how [attack icon] and [defense icon] cards work",
)


@dataclass(slots=True)
class MarkerContext:
    line: str
    prefix: str
    suffix: str


def replace_inline_icon_symbols(text: str) -> str:
    result = text
    for pattern, marker in _GLYPH_REPLACEMENTS:
        result = pattern.sub(marker, result)
    return re.sub(r"\s{2,}", " ", result).strip()


def _comparable(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower()).strip()


def build_icon_signal_text(card_text: str, ocr_text: str) -> str:
    """Union of the chosen card text and OCR text, deduplicated when identical."""

    ocr = replace_inline_icon_symbols(ocr_text)[:_OCR_SIGNAL_LIMIT]
    if not card_text:
        return ocr
    if not ocr:
        return card_text
    if _comparable(card_text) == _comparable(ocr):
        return card_text
    return f"{card_text}\n{ocr}"


def marker_contexts(text: str, marker: str) -> List[MarkerContext]:
    lowered = text.lower()
    contexts: List[MarkerContext] = []
    start = lowered.find(marker)
    while start != -1:
        line_start = lowered.rfind("\n", 0, start) + 1
        line_end = lowered.find("\n", start)
        if line_end == -1:
            line_end = len(lowered)
        end = start + len(marker)
        contexts.append(
            MarkerContext(
                line=lowered[line_start:line_end].strip(),
                prefix=lowered[line_start:start].strip(),
                suffix=lowered[end:line_end].strip(),
            )
        )
        start = lowered.find(marker, end)
    return contexts


def score_marker_context(context: MarkerContext) -> int:
    score = 0
    prefix, suffix = context.prefix, context.suffix
    cards_follow = bool(_SUFFIX_CARDS.search(suffix))
    if _PREFIX_BLANK.match(prefix):
        score += 3
    if _PREFIX_STAT_LABEL.search(prefix):
        score += 2
    if _SUFFIX_ABILITY.search(suffix):
        score += 2
    if _SUFFIX_ATTACK_PHRASE.search(suffix):
        score += 2
    if cards_follow:
        score -= 3
    if _PREFIX_STYLED.search(prefix) and cards_follow:
        score -= 3
    if _PREFIX_ARTICLE.search(prefix) and cards_follow:
        score -= 2
    if any(phrase in context.line for phrase in _GLOSSARY_LINES):
        score -= 4
    return score


def has_icon_evidence(text: str, markers: Tuple[str, ...]) -> bool:
    return any(
        score_marker_context(context) >= 2
        for marker in markers
        for context in marker_contexts(text, marker)
    )


def detect_icons(signal_text: str) -> Dict[str, object]:
    """Icon flags plus ``text-marker:*`` evidence strings for ``CardIcons``."""

    found = {name: has_icon_evidence(signal_text, markers) for name, markers in ICON_MARKERS.items()}
    evidence = [f"text-marker:{ICON_MARKERS[name][0]}" for name, present in found.items() if present]
    return {
        "isAttack": found["attack"],
        "isDefense": found["defense"],
        "isQuick": found["quick"],
        "isConstant": found["constant"],
        "rawIconEvidence": evidence,
    }
