"""Regex and keyword guesses used when no LLM response can be trusted."""
from __future__ import annotations

import re
from typing import Dict, List, Optional

from ..models import FilenamePriors, OcrResult
from ..normalize.stages import extract_power_stage_values, normalize_stage_sequence
from ..rulebook.lexicon import RulebookLexicon
from ..schemas.enums import STYLE_VALUES
from ..schemas.extraction import ExtractionCandidate

LINE_KEYWORDS = ("damage", "combat", "anger", "dragon ball", "stages", "discard", "power", "ally", "drill")
MAX_HEURISTIC_CHUNKS = 8

_ALLY = re.compile(r"\ball(?:y|ies)\b")
_MAIN_CUES = (
    re.compile(r"\blv\.\s*[1-4]\b"),
    re.compile(r"\blevel\s*[1-4]\b"),
    re.compile(r"\bmain personality\b"),
)
_PUR_PATTERNS = (
    re.compile(r"\bpur\s*[:|-]?\s*(\d{1,3})", re.I),
    re.compile(r"\b(\d{1,3})\s*pur\b", re.I),
)
_ENDURANCE = re.compile(r"\bendurance\s*[:+-]?\s*(\d{1,2})\b", re.I)
_POWER_LINE = re.compile(r"power", re.I)


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def infer_affiliation(text: str, lexicon: RulebookLexicon) -> str:
    lowered = text.lower()
    keywords = lexicon.affiliationKeywords
    if any(value in lowered for value in keywords.hero):
        return "hero"
    if any(value in lowered for value in keywords.villain):
        return "villain"
    if any(value in lowered for value in keywords.neutral):
        return "neutral"
    return "unknown"


def infer_is_ally(text: str, card_type_guess: str) -> bool:
    if card_type_guess not in ("personality", "unknown"):
        return False
    return bool(_ALLY.search(text.lower()))


def infer_is_main_personality(
    text: str, card_type_guess: str, personality_level: Optional[int], is_ally: bool
) -> bool:
    if card_type_guess != "personality" or is_ally:
        return False
    if personality_level is not None:
        return True
    lowered = text.lower()
    return any(pattern.search(lowered) for pattern in _MAIN_CUES)


def infer_line_keywords(line: str) -> List[str]:
    lowered = line.lower()
    return [token for token in LINE_KEYWORDS if token in lowered]


def extract_pur(text: str) -> Optional[int]:
    for pattern in _PUR_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_endurance(text: str) -> Optional[int]:
    match = _ENDURANCE.search(text)
    return int(match.group(1)) if match else None


def extract_main_power_text(text: str) -> Optional[str]:
    return next((line for line in _lines(text) if _POWER_LINE.search(line)), None)


def heuristic_style(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized if normalized in STYLE_VALUES else None


def _stage_confidence(stages: List[int]) -> float:
    if len(stages) >= 4:
        return 0.6
    return 0.35 if stages else 0.2


def build_heuristic_extraction(
    priors: FilenamePriors, ocr: OcrResult, lexicon: RulebookLexicon
) -> ExtractionCandidate:
    """Field guesses from filename priors and OCR text."""

    ocr_text = ocr.text.strip()
    text = ocr_text or priors.name_guess
    affiliation = infer_affiliation(text, lexicon)
    is_ally = infer_is_ally(text, priors.card_type_guess)
    is_main = infer_is_main_personality(text, priors.card_type_guess, priors.personality_level, is_ally)
    stages = normalize_stage_sequence(extract_power_stage_values(text))
    endurance = extract_endurance(text)
    chunks = [
        {"kind": "other", "text": line, "keywords": infer_line_keywords(line)}
        for line in _lines(text)[:MAX_HEURISTIC_CHUNKS]
    ]

    confidence: Dict[str, float] = {
        "name": 0.75,
        "cardType": 0.35 if priors.card_type_guess == "unknown" else 0.6,
        "affiliation": 0.3 if affiliation == "unknown" else 0.65,
        "isMainPersonality": 0.65 if is_main else 0.5,
        "isAlly": 0.65 if is_ally else 0.5,
        "cardTextRaw": 0.75 if len(ocr_text) > 30 else 0.2,
        "personalityLevel": 0.8 if priors.personality_level is not None else 0.3,
        "powerStageValues": _stage_confidence(stages),
        "pur": 0.4 if ocr_text else 0.2,
        "endurance": 0.6 if endurance is not None else 0.4,
        "mainPowerText": 0.4 if ocr_text else 0.2,
    }

    return ExtractionCandidate(
        name=priors.name_guess,
        title=None,
        characterKey=priors.character_key,
        cardType=priors.card_type_guess,
        affiliation=affiliation,
        isMainPersonality=is_main,
        isAlly=is_ally,
        cardSubtypes=[],
        style=heuristic_style(priors.style_guess),
        tags=[],
        personalityLevel=priors.personality_level,
        powerStageValues=stages,
        pur=extract_pur(ocr_text),
        endurance=endurance,
        mainPowerText=extract_main_power_text(ocr_text),
        cardTextRaw=text,
        effectChunks=chunks,
        icons={
            "isAttack": False,
            "isDefense": False,
            "isQuick": False,
            "isConstant": False,
            "rawIconEvidence": [],
        },
        fieldConfidence=confidence,
    )
