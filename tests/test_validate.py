from dbzpipeline.config import ConfidencePenalties
from dbzpipeline.models import NormalizedCandidate
from dbzpipeline.validate import evaluate_consistency_findings, summarize_candidate, validate_candidate


def _validate(record, hints=None, llm_used=True, **kwargs):
    return validate_candidate(
        NormalizedCandidate(record=record, field_confidence_hints=hints or {}, llm_used=llm_used),
        min_confidence=kwargs.pop("min_confidence", 0.9),
        **kwargs,
    )


def test_clean_candidate_is_accepted(nail_record, nail_hints):
    result = _validate(nail_record, nail_hints)

    assert result.accepted is True
    card = result.card
    assert card.id == "HNV-C02"
    assert card.review.required is False
    assert card.review.reasons == []
    assert 0.9 <= card.confidence.overall <= 1.0
    assert len(card.confidence.fields) == 18


def test_short_card_text_is_a_missing_critical_field(nail_record, nail_hints):
    nail_record["cardTextRaw"] = "Nail"
    result = _validate(nail_record, nail_hints)

    assert result.accepted is False
    item = result.review_item
    assert "missing_critical_field" in item.reasons
    assert "cardTextRaw" in item.failedFields
    assert item.cardId == "HNV-C02"
    assert item.candidateValues["name"] == "Nail"
    assert item.candidateValues["title"] == "Protector"


def test_low_confidence_goes_to_review(nail_record):
    result = _validate(nail_record, {key: 0.3 for key in ("name", "cardType", "affiliation")}, min_confidence=0.95)

    assert result.accepted is False
    assert "low_confidence" in result.review_item.reasons
    assert 0 <= result.review_item.confidenceSnapshot.overall <= 1


def test_missing_vision_sources_lower_confidence(nail_record):
    with_llm = _validate(dict(nail_record), min_confidence=0.0)

    nail_record["raw"] = {
        **nail_record["raw"],
        "warnings": [
            "OCR failed for card.jpg: tesseract is not installed",
            "LLM disabled via DBZ_LLM_BACKEND=none; used heuristic fallback.",
        ],
    }
    without = _validate(nail_record, llm_used=False, min_confidence=0.0)

    assert without.accepted is False
    assert "llm_unavailable" in without.review_item.reasons
    assert "insufficient_ocr" in without.review_item.reasons
    assert without.review_item.confidenceSnapshot.overall < with_llm.card.confidence.overall


def test_penalty_coefficients_are_configurable(nail_record):
    nail_record["raw"] = {**nail_record["raw"], "warnings": ["OCR failed for card.jpg: boom"]}
    harsh = ConfidencePenalties(ocr_unavailable={"cardTextRaw": 0.0, "mainPowerText": 0.0})
    soft = ConfidencePenalties(ocr_unavailable={})

    harsh_result = _validate(dict(nail_record), min_confidence=0.0, penalties=harsh)
    soft_result = _validate(dict(nail_record), min_confidence=0.0, penalties=soft)

    assert harsh_result.card.confidence.fields["cardTextRaw"] == 0.0
    assert harsh_result.card.confidence.overall < soft_result.card.confidence.overall


def test_schema_errors_become_review_items(nail_record, nail_hints):
    nail_record["source"] = {**nail_record["source"], "sourceUrl": "relative/path.jpg"}
    result = _validate(nail_record, nail_hints)

    assert result.accepted is False
    assert result.review_item.reasons[0] == "schema_validation_error"
    assert any(field.startswith("source") for field in result.review_item.failedFields)


def test_unknown_set_code_falls_back_for_review(nail_record, nail_hints):
    nail_record["setCode"] = "XYZ"
    nail_record["source"] = {}
    result = _validate(nail_record, nail_hints)

    assert result.accepted is False
    assert result.review_item.setCode.value == "HNV"
    assert result.review_item.imagePath == "unknown-image"
    assert result.review_item.cardId == "XYZ-C02"


def test_legacy_ally_candidate_is_checked_as_personality(nail_record, nail_hints):
    nail_record.update(cardType="ally", isMainPersonality=False, personalityLevel=None)
    nail_record.pop("isAlly")
    result = _validate(nail_record, nail_hints)

    card = result.card if result.accepted else None
    values = card.to_json() if card else result.review_item.candidateValues
    assert values["cardType"] == "personality"
    assert values["isAlly"] is True


def test_type_conflicts_are_reported(nail_record):
    nail_record.update(cardType="physical_combat", isMainPersonality=False)
    findings = evaluate_consistency_findings(nail_record)

    assert "type_conflict:personalityLevel" in findings.reasons
    assert "personalityLevel" in findings.failed_fields


def test_summary_tolerates_junk():
    summary = summarize_candidate({"name": "  ", "pur": "x", "powerStageValues": "nope", "tags": None})

    assert summary["name"] is None
    assert summary["pur"] is None
    assert summary["powerStageValues"] == []
    assert summary["tags"] == []
    assert summary["attach_limit"] is None
