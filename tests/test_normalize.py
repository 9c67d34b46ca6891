from pathlib import Path

from dbzpipeline.models import DiscoveredImage, OcrResult
from dbzpipeline.normalize.candidate import normalize_card_candidate
from dbzpipeline.normalize.filename_priors import infer_filename_priors
from dbzpipeline.normalize.icons import detect_icons, replace_inline_icon_symbols
from dbzpipeline.normalize.stages import extract_power_stage_values, normalize_stage_sequence
from dbzpipeline.schemas.extraction import ExtractionCandidate


def _image(file_name):
    return DiscoveredImage(
        set_code="HNV",
        set_name="Heroes & Villains",
        image_path=Path("/data/images/Heroes & Villains") / file_name,
        image_file_name=file_name,
    )


def _normalize(file_name, extraction, ocr_text, lexicon, llm_used=True):
    return normalize_card_candidate(
        _image(file_name),
        infer_filename_priors(file_name),
        OcrResult(text=ocr_text, engine="tesseract"),
        extraction,
        llm_used=llm_used,
        warnings=[],
        lexicon=lexicon,
    )


def test_personality_candidate_from_llm_output(lexicon):
    extraction = ExtractionCandidate(
        name="Nail Lv. 2",
        title="Protector",
        cardType="main_personality",
        affiliation="Hero",
        isAlly=False,
        personalityLevel=2,
        powerStageValues=[4000, 3500, 3000, 2500, 2000, 1500, 1000, 500],
        pur=3,
        mainPowerText="Physical attack doing 4 stages of damage.",
        cardTextRaw="Heroes only. Power: Physical attack doing 4 stages of damage.",
        fieldConfidence={"name": 0.9},
    )
    candidate = _normalize("C02-Nail-Protector-Lv.-2.jpg", extraction, "", lexicon)
    record = candidate.record

    assert record["name"] == "Nail"
    assert record["title"] == "Protector"
    assert record["cardType"] == "personality"
    assert record["isMainPersonality"] is True
    assert record["isAlly"] is False
    assert record["affiliation"] == "hero"
    assert record["characterKey"] == "nail"
    assert record["personalityFamilyId"] == "HNV-nail"
    assert record["powerStageValues"][-1] == 0
    assert record["limit_per_deck"] == 1
    assert record["printedNumber"] == "C02"
    assert record["source"]["imageFileName"] == "C02-Nail-Protector-Lv.-2.jpg"
    assert candidate.field_confidence_hints == {"name": 0.9}
    assert candidate.llm_used is True


def test_title_split_from_file_name(lexicon):
    extraction = ExtractionCandidate(cardType="personality", characterKey="nail")
    record = _normalize("C02-Nail-Protector-Lv.-2.jpg", extraction, "Nail Protector Lv. 2", lexicon).record

    assert record["name"] == "Nail"
    assert record["title"] == "Protector"


def test_named_card_defaults_to_freestyle(lexicon):
    extraction = ExtractionCandidate(
        name="Nail's Protection",
        cardType="energy_combat",
        cardTextRaw="Energy attack doing 3 stages of damage.",
    )
    record = _normalize("C20-Nails-Protection.jpg", extraction, "", lexicon).record

    assert record["characterKey"] == "nail"
    assert "named" in record["cardSubtypes"]
    assert "named-card" in record["tags"]
    assert record["style"] == "freestyle"
    assert record["powerStageValues"] == []
    assert record["limit_per_deck"] == 3


def test_endurance_zero_without_printed_text_is_dropped(lexicon):
    extraction = ExtractionCandidate(name="Goku", cardType="personality", endurance=0, cardTextRaw="Goku Lv. 1")
    record = _normalize("C01-Goku-Lv.-1.jpg", extraction, "", lexicon).record
    assert record["endurance"] is None

    extraction = ExtractionCandidate(name="Goku", cardType="personality", cardTextRaw="Goku Lv. 1. Endurance 2.")
    record = _normalize("C01-Goku-Lv.-1.jpg", extraction, "", lexicon).record
    assert record["endurance"] == 2


def test_ocr_warnings_are_carried_into_raw(lexicon):
    candidate = normalize_card_candidate(
        _image("C02-Nail-Protector-Lv.-2.jpg"),
        infer_filename_priors("C02-Nail-Protector-Lv.-2.jpg"),
        OcrResult(text="", engine="none", warnings=["OCR disabled via DBZ_OCR_ENGINE=none"]),
        ExtractionCandidate(),
        llm_used=False,
        warnings=["LLM disabled via DBZ_LLM_BACKEND=none; used heuristic fallback."],
        lexicon=lexicon,
    )

    assert candidate.record["raw"]["warnings"] == [
        "OCR disabled via DBZ_OCR_ENGINE=none",
        "LLM disabled via DBZ_LLM_BACKEND=none; used heuristic fallback.",
    ]
    assert candidate.record["cardTextRaw"] == "Nail Protector Lv. 2"


def test_power_stage_ladder_from_text():
    text = "Nail 2 LEVEL\n4,000 3,500 3,000 2,500 2,000 1,500 1,000 500 0\n3 PUR"
    assert extract_power_stage_values(text) == [4000, 3500, 3000, 2500, 2000, 1500, 1000, 500, 0]
    assert normalize_stage_sequence([9, 7, 8, 7, 5]) == [9, 7, 5, 0]


def test_inline_glyphs_become_markers_and_whitespace_runs_collapse():
    text = replace_inline_icon_symbols("⚔  Physical attack.\n\nHeroes only.\nPower: ∞ ")
    assert text == "[attack icon] Physical attack. Heroes only.\nPower: [constant icon]"


def test_icon_markers_need_card_ability_context():
    icons = detect_icons(replace_inline_icon_symbols("⚔ Physical attack doing 5 stages of damage."))
    assert icons["isAttack"] is True
    assert icons["rawIconEvidence"] == ["text-marker:[attack icon]"]

    icons = detect_icons("Any styled [attack icon] cards do +1 stage of damage.")
    assert icons["isAttack"] is False
    assert icons["rawIconEvidence"] == []
