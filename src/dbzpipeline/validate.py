"""Confidence scoring and accept/review routing for normalized candidates."""
from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from .config import ConfidencePenalties, FieldPenalties
from .models import NormalizedCandidate, ValidationResult
from .schemas.card import Card
from .schemas.enums import ReviewReason, SetCode, rarity_prefix_for
from .schemas.legacy import normalize_legacy_card_type
from .schemas.metadata import as_non_negative_int, normalize_attach_limit
from .schemas.review import create_review_queue_item

LOGGER = logging.getLogger(__name__)

FALLBACK_SET_CODE = SetCode.HNV.value
FALLBACK_IMAGE_PATH = "unknown-image"
MIN_CARD_TEXT_LENGTH = 8

LLM_UNAVAILABLE_MARKERS = (
    "llm invocation failed",
    "llm timed out",
    "llm returned non-zero",
    "all llm parse attempts failed",
    "llm parsing failed unexpectedly",
    "llm disabled",
)
OCR_UNAVAILABLE_MARKERS = (
    "ocr failed",
    "tesseract is not installed",
)

_MAIN_LEVEL_CUE = re.compile(r"\blv\.\s*[1-4]\b")
_MAIN_PERSONALITY_CUE = re.compile(r"\bmain personality\b")
_ENDURANCE_WORD = re.compile(r"\bendurance\b", re.I)

_BOOL_SUMMARY_FIELDS = (
    "considered_as_styled_card",
    "banished_after_use",
    "shuffle_into_deck_after_use",
    "drill_not_discarded_when_changing_levels",
    "extraordinary_can_play_from_hand",
    "has_effect_when_discarded_combat",
    "seaches_owner_life_deck",
    "conditional_rejuvenate",
    "conditional_endurance",
    "conditional_raise_your_anger",
    "conditional_lower_your_anger",
    "conditional_raise_or_lower_any_player_anger",
    "when_drill_enters_play_during_combat",
    "when_drill_enters_play",
    "attaches_own_main_personality",
    "attaches_opponent_main_personality",
)
_INT_SUMMARY_FIELDS = (
    "limit_per_deck",
    "rejuvenates_amount",
    "raise_your_anger",
    "lower_your_anger",
    "raise_or_lower_any_player_anger",
)


@dataclass(slots=True)
class SourceSignals:
    llm_unavailable: bool = False
    ocr_unavailable: bool = False


@dataclass(slots=True)
class ConsistencyFindings:
    failed_fields: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    def add(self, reason: str, *fields: str) -> None:
        self.failed_fields.extend(fields)
        self.reasons.append(reason)


def clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _int_list(value: Any) -> List[int]:
    if not isinstance(value, list):
        return []
    parsed = (as_non_negative_int(entry) for entry in value)
    return [entry for entry in parsed if entry is not None]


def raw_warnings(record: Mapping[str, Any]) -> List[str]:
    raw = record.get("raw")
    if not isinstance(raw, dict) or not isinstance(raw.get("warnings"), list):
        return []
    return [warning for warning in raw["warnings"] if isinstance(warning, str)]


def detect_source_signals(record: Mapping[str, Any]) -> SourceSignals:
    lowered = [warning.lower() for warning in raw_warnings(record)]
    return SourceSignals(
        llm_unavailable=any(marker in warning for warning in lowered for marker in LLM_UNAVAILABLE_MARKERS),
        ocr_unavailable=any(marker in warning for warning in lowered for marker in OCR_UNAVAILABLE_MARKERS),
    )


def _rarity_mismatch(printed_number: Optional[str], rarity_prefix: Optional[str]) -> bool:
    if not printed_number or not rarity_prefix:
        return False
    return rarity_prefix != rarity_prefix_for(printed_number).value


def evaluate_critical_field_failures(record: Mapping[str, Any]) -> List[str]:
    """Fields whose absence or contradiction blocks acceptance outright."""

    failed: List[str] = []
    printed_number = _string(record.get("printedNumber"))
    rarity_prefix = _string(record.get("rarityPrefix"))
    if not _string(record.get("setCode")):
        failed.append("setCode")
    if not printed_number:
        failed.append("printedNumber")
    if not rarity_prefix:
        failed.append("rarityPrefix")
    if _rarity_mismatch(printed_number, rarity_prefix):
        failed.extend(["rarityPrefix", "printedNumber"])
    if not _string(record.get("name")):
        failed.append("name")

    card_type = _string(record.get("cardType"))
    if not card_type or card_type == "unknown":
        failed.append("cardType")
    is_main = _bool(record.get("isMainPersonality"))
    is_ally = _bool(record.get("isAlly"))
    affiliation = _string(record.get("affiliation"))
    stages = _int_list(record.get("powerStageValues"))
    level = as_non_negative_int(record.get("personalityLevel"))
    is_personality = (
        card_type == "personality" or is_main is True or is_ally is True or level is not None or bool(stages)
    )
    if is_personality and (not affiliation or affiliation == "unknown"):
        failed.append("affiliation")
    if is_main and card_type and card_type != "personality":
        failed.extend(["cardType", "isMainPersonality"])
    if is_ally and card_type and card_type != "personality":
        failed.append("isAlly")
    if is_main and is_ally:
        failed.extend(["isMainPersonality", "isAlly"])

    text = _string(record.get("cardTextRaw"))
    if not text or len(text) < MIN_CARD_TEXT_LENGTH:
        failed.append("cardTextRaw")

    if is_personality:
        if is_main and level is None:
            failed.append("personalityLevel")
        if len(stages) < 4 or 0 not in stages:
            failed.append("powerStageValues")
        if as_non_negative_int(record.get("pur")) is None:
            failed.append("pur")
        if text and _ENDURANCE_WORD.search(text) and as_non_negative_int(record.get("endurance")) is None:
            failed.append("endurance")
        if is_main and not _string(record.get("mainPowerText")):
            failed.append("mainPowerText")
    return _unique(failed)


def evaluate_consistency_findings(record: Mapping[str, Any]) -> ConsistencyFindings:
    """Cross-field contradictions, computed independently of the normalizer."""

    findings = ConsistencyFindings()
    printed_number = _string(record.get("printedNumber"))
    if _rarity_mismatch(printed_number, _string(record.get("rarityPrefix"))):
        findings.add("rarity_prefix_mismatch", "rarityPrefix", "printedNumber")

    card_type = _string(record.get("cardType"))
    affiliation = _string(record.get("affiliation"))
    is_main = _bool(record.get("isMainPersonality"))
    is_ally = _bool(record.get("isAlly"))
    style = _string(record.get("style"))
    text = (_string(record.get("cardTextRaw")) or "").lower()
    level = as_non_negative_int(record.get("personalityLevel"))
    stages = _int_list(record.get("powerStageValues"))
    has_stats = bool(stages) or as_non_negative_int(record.get("pur")) is not None
    is_personality = card_type == "personality" or is_main is True or is_ally is True
    non_personality_type = bool(card_type) and card_type != "personality"

    if non_personality_type and level is not None:
        findings.add("type_conflict:personalityLevel", "personalityLevel")
    if non_personality_type and has_stats and level is None:
        findings.add("type_conflict:personalityStats", "powerStageValues", "pur")
    if is_main:
        if non_personality_type:
            findings.add("type_conflict:is_main_personality_non_personality_type", "cardType", "isMainPersonality")
        if level is None and not _MAIN_LEVEL_CUE.search(text) and not _MAIN_PERSONALITY_CUE.search(text):
            findings.add("type_conflict:personality_without_main_evidence", "cardType", "personalityLevel")
    if is_personality and (len(stages) < 4 or 0 not in stages):
        findings.add("type_conflict:missing_power_stage_ladder", "powerStageValues")
    if _ENDURANCE_WORD.search(text) and as_non_negative_int(record.get("endurance")) is None:
        findings.add("missing_endurance_value", "endurance")
    if (
        style
        and card_type in ("personality", "dragon_ball")
        and f"{style} style" not in text
        and f"{style} mastery" not in text
    ):
        findings.add("style_type_conflict", "style")
    if is_ally and non_personality_type:
        findings.add("type_conflict:ally_flag_non_ally_type", "cardType", "isAlly")
    if is_main and is_ally:
        findings.add("type_conflict:ally_and_main_personality", "isMainPersonality", "isAlly")
    if is_personality and (not affiliation or affiliation == "unknown"):
        findings.add("affiliation_missing_for_personality_or_ally", "affiliation")

    findings.failed_fields = _unique(findings.failed_fields)
    findings.reasons = _unique(findings.reasons)
    return findings


def _apply(confidence: Dict[str, float], penalties: FieldPenalties) -> None:
    for name, factor in penalties.items():
        if name in confidence:
            confidence[name] = clamp01(confidence[name] * factor)


def build_field_confidence(
    record: Mapping[str, Any],
    hints: Mapping[str, float],
    llm_used: bool,
    signals: SourceSignals,
    findings: ConsistencyFindings,
    penalties: ConfidencePenalties,
) -> Dict[str, float]:
    """Per-field scores: hint or presence-based base, then stacked multiplicative penalties."""

    def score(name: str, fallback: float) -> float:
        return clamp01(hints.get(name, fallback))

    def flagged(name: str, with_llm: float, without_llm: float, missing: float) -> float:
        if isinstance(record.get(name), bool):
            return score(name, with_llm if llm_used else without_llm)
        return score(name, missing)

    text_length = len(_string(record.get("cardTextRaw")) or "")
    card_type = _string(record.get("cardType"))
    affiliation = _string(record.get("affiliation"))
    has_card_type = card_type is not None and card_type != "unknown"
    has_affiliation = affiliation is not None and affiliation != "unknown"
    has_stages = len(_int_list(record.get("powerStageValues"))) >= 4

    if text_length >= 20:
        text_score = 0.88
    elif text_length > 0:
        text_score = 0.42
    else:
        text_score = 0.1

    confidence = {
        "setCode": score("setCode", 0.99),
        "printedNumber": score("printedNumber", 0.99),
        "rarityPrefix": score("rarityPrefix", 0.95 if _string(record.get("rarityPrefix")) else 0.35),
        "name": score("name", 0.92 if llm_used else 0.72),
        "cardType": score("cardType", (0.86 if llm_used else 0.55) if has_card_type else 0.2),
        "affiliation": score("affiliation", (0.84 if llm_used else 0.55) if has_affiliation else 0.25),
        "isMainPersonality": flagged("isMainPersonality", 0.84, 0.6, 0.35),
        "isAlly": flagged("isAlly", 0.84, 0.6, 0.35),
        "cardTextRaw": score("cardTextRaw", text_score),
        "personalityLevel": score(
            "personalityLevel", 0.8 if as_non_negative_int(record.get("personalityLevel")) is not None else 0.4
        ),
        "powerStageValues": score("powerStageValues", (0.82 if llm_used else 0.5) if has_stages else 0.25),
        "pur": score("pur", 0.72 if as_non_negative_int(record.get("pur")) is not None else 0.35),
        "endurance": score("endurance", 0.78 if as_non_negative_int(record.get("endurance")) is not None else 0.45),
        "mainPowerText": score("mainPowerText", 0.72 if _string(record.get("mainPowerText")) else 0.35),
        "considered_as_styled_card": flagged("considered_as_styled_card", 0.84, 0.7, 0.45),
        "limit_per_deck": score(
            "limit_per_deck", 0.92 if as_non_negative_int(record.get("limit_per_deck")) is not None else 0.5
        ),
        "banished_after_use": flagged("banished_after_use", 0.84, 0.7, 0.45),
        "shuffle_into_deck_after_use": flagged("shuffle_into_deck_after_use", 0.84, 0.7, 0.45),
    }

    llm_unavailable = signals.llm_unavailable and not llm_used
    if llm_unavailable:
        _apply(confidence, penalties.llm_unavailable)
    if signals.ocr_unavailable:
        _apply(confidence, penalties.ocr_unavailable)
    if llm_unavailable and signals.ocr_unavailable:
        _apply(confidence, penalties.no_vision)
    if any("type_conflict" in reason for reason in findings.reasons):
        _apply(confidence, penalties.type_conflict)
    return confidence


def overall_confidence(field_confidence: Mapping[str, float]) -> float:
    if not field_confidence:
        return 0.0
    return clamp01(sum(field_confidence.values()) / len(field_confidence))


def summarize_candidate(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Flattened key fields for review tooling; tolerant of any record shape."""

    summary: Dict[str, Any] = {
        name: _string(record.get(name))
        for name in (
            "id",
            "setCode",
            "printedNumber",
            "rarityPrefix",
            "name",
            "title",
            "characterKey",
            "personalityFamilyId",
            "cardType",
            "affiliation",
        )
    }
    summary["isMainPersonality"] = _bool(record.get("isMainPersonality"))
    summary["isAlly"] = _bool(record.get("isAlly"))
    summary["cardSubtypes"] = record.get("cardSubtypes") if isinstance(record.get("cardSubtypes"), list) else []
    summary["powerStageValues"] = _int_list(record.get("powerStageValues"))
    summary["pur"] = as_non_negative_int(record.get("pur"))
    summary["endurance"] = as_non_negative_int(record.get("endurance"))
    for name in _BOOL_SUMMARY_FIELDS:
        summary[name] = _bool(record.get(name))
    for name in _INT_SUMMARY_FIELDS:
        summary[name] = as_non_negative_int(record.get(name))
    summary["attach_limit"] = normalize_attach_limit(record.get("attach_limit"))
    summary["personalityLevel"] = as_non_negative_int(record.get("personalityLevel"))
    summary["mainPowerText"] = _string(record.get("mainPowerText"))
    summary["cardTextRaw"] = _string(record.get("cardTextRaw"))
    summary["style"] = _string(record.get("style"))
    summary["tags"] = record.get("tags") if isinstance(record.get("tags"), list) else []
    summary["rawWarnings"] = raw_warnings(record)
    return summary


def _hint_map(hints: Mapping[str, Any]) -> Dict[str, float]:
    return {
        key: clamp01(float(value))
        for key, value in hints.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }


def _format_error_location(error: Mapping[str, Any]) -> str:
    return ".".join(str(part) for part in error["loc"])


def validate_candidate(
    candidate: NormalizedCandidate,
    *,
    min_confidence: float,
    penalties: Optional[ConfidencePenalties] = None,
) -> ValidationResult:
    """Score ``candidate`` and route it to an accepted card or a review item."""

    working = normalize_legacy_card_type(candidate.record)
    set_code = _string(working.get("setCode"))
    printed_number = _string(working.get("printedNumber"))
    card_id = f"{set_code}-{printed_number}" if set_code and printed_number else f"TEMP-{int(time.time() * 1000)}"
    working["id"] = card_id

    llm_used = candidate.llm_used
    signals = detect_source_signals(working)
    findings = evaluate_consistency_findings(working)
    field_confidence = build_field_confidence(
        working,
        _hint_map(candidate.field_confidence_hints),
        llm_used,
        signals,
        findings,
        penalties or ConfidencePenalties(),
    )
    overall = overall_confidence(field_confidence)
    working["confidence"] = {"overall": overall, "fields": field_confidence}

    critical = evaluate_critical_field_failures(working)
    failed_fields = _unique([*critical, *findings.failed_fields])
    reasons: List[str] = []
    if critical:
        reasons.append(ReviewReason.MISSING_CRITICAL_FIELD.value)
    reasons.extend(findings.reasons)
    if signals.llm_unavailable and not llm_used:
        reasons.append(ReviewReason.LLM_UNAVAILABLE.value)
    if signals.ocr_unavailable and not llm_used:
        reasons.append(ReviewReason.INSUFFICIENT_OCR.value)
    if overall < min_confidence:
        reasons.append(ReviewReason.LOW_CONFIDENCE.value)
    reasons = _unique(reasons)
    working["review"] = {"required": bool(reasons), "reasons": reasons, "notes": []}

    try:
        card = Card.model_validate(working)
    except ValidationError as exc:
        errors = exc.errors()
        LOGGER.debug("Schema validation failed for %s: %s", card_id, exc)
        source = working.get("source") if isinstance(working.get("source"), dict) else {}
        review_set_code = set_code if set_code in SetCode.__members__ else FALLBACK_SET_CODE
        item = create_review_queue_item(
            card_id=card_id,
            set_code=review_set_code,
            image_path=_string(source.get("imagePath")) or FALLBACK_IMAGE_PATH,
            failed_fields=_unique(
                [*failed_fields, *(path for path in map(_format_error_location, errors) if path)]
            ),
            reasons=_unique(
                [
                    ReviewReason.SCHEMA_VALIDATION_ERROR.value,
                    *reasons,
                    *(f"{_format_error_location(error)}: {error['msg']}" for error in errors),
                ]
            ),
            candidate_values=summarize_candidate(working),
            overall_confidence=overall,
            field_confidence=field_confidence,
        )
        return ValidationResult(accepted=False, review_item=item)

    if reasons:
        item = create_review_queue_item(
            card_id=card.id,
            set_code=card.setCode.value,
            image_path=card.source.imagePath,
            failed_fields=failed_fields,
            reasons=reasons,
            candidate_values=summarize_candidate(card.to_json()),
            overall_confidence=card.confidence.overall,
            field_confidence=card.confidence.fields,
        )
        return ValidationResult(accepted=False, review_item=item)

    return ValidationResult(accepted=True, card=card)
