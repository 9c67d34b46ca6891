import json
from pathlib import Path

import pytest

from dbzpipeline.models import DiscoveredImage, OcrResult
from dbzpipeline.normalize.filename_priors import infer_filename_priors
from dbzpipeline.providers import llm
from dbzpipeline.providers.llm import ParseCardRequest, RunnerOutcome, parse_card
from dbzpipeline.schemas.extraction import FIELD_CONFIDENCE_KEYS, extraction_json_schema

FILE_NAME = "C02-Nail-Protector-Lv.-2.jpg"


@pytest.fixture(autouse=True)
def _default_attempts(monkeypatch):
    monkeypatch.delenv("DBZ_LLM_PARSE_ATTEMPTS", raising=False)


def _request(lexicon, ocr_text="Nail Protector\n3 PUR"):
    return ParseCardRequest(
        image=DiscoveredImage(
            set_code="HNV",
            set_name="Heroes & Villains",
            image_path=Path("/data/images") / FILE_NAME,
            image_file_name=FILE_NAME,
        ),
        priors=infer_filename_priors(FILE_NAME),
        ocr=OcrResult(text=ocr_text, engine="tesseract"),
        lexicon=lexicon,
    )


def _extraction_json(**overrides):
    payload = {
        "name": "Nail",
        "title": "Protector",
        "characterKey": "nail",
        "cardType": "personality",
        "affiliation": "hero",
        "isMainPersonality": True,
        "isAlly": False,
        "cardSubtypes": [],
        "style": None,
        "tags": [],
        "personalityLevel": 2,
        "powerStageValues": [4000, 3500, 3000, 2500, 2000, 1500, 1000, 500, 0],
        "pur": 3,
        "endurance": None,
        "mainPowerText": "Physical attack doing 4 stages of damage.",
        "cardTextRaw": "Heroes only. Power: Physical attack doing 4 stages of damage.",
        "effectChunks": [],
        "icons": {"isAttack": False, "isDefense": False, "isQuick": False, "isConstant": False, "rawIconEvidence": []},
        "fieldConfidence": {key: 0.9 for key in FIELD_CONFIDENCE_KEYS},
    }
    payload.update(overrides)
    return json.dumps(payload)


def _scripted(*outcomes):
    prompts = []
    queue = list(outcomes)

    def runner(request, prompt):
        prompts.append(prompt)
        outcome = queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return runner, prompts


def test_valid_response_is_used(lexicon):
    runner, prompts = _scripted(RunnerOutcome(response=_extraction_json()))

    result = parse_card(_request(lexicon), runner=runner)

    assert result.llm_used is True
    assert result.warnings == []
    assert result.data.name == "Nail"
    assert result.data.personalityLevel == 2
    assert result.data.fieldConfidence["pur"] == 0.9
    assert len(prompts) == 1
    assert "Filename priors" in prompts[0]


def test_retry_after_bad_json(lexicon):
    runner, prompts = _scripted(
        RunnerOutcome(response="Sorry, here you go"),
        RunnerOutcome(response="```json\n" + _extraction_json() + "\n```"),
    )

    result = parse_card(_request(lexicon), runner=runner)

    assert result.llm_used is True
    assert result.warnings == ["LLM response was not valid JSON on attempt 1/2."]
    assert "Previous attempt had issues" in prompts[1]


def test_legacy_card_type_in_response_is_accepted(lexicon):
    runner, _ = _scripted(RunnerOutcome(response=_extraction_json(cardType="main_personality")))

    result = parse_card(_request(lexicon), runner=runner)

    assert result.llm_used is True
    assert result.data.cardType == "personality"
    assert result.data.isMainPersonality is True


def test_low_quality_output_caps_field_confidence(lexicon, monkeypatch):
    monkeypatch.setenv("DBZ_LLM_PARSE_ATTEMPTS", "1")
    runner, _ = _scripted(RunnerOutcome(response=_extraction_json(pur=None)))

    result = parse_card(_request(lexicon), runner=runner)

    assert result.llm_used is True
    assert result.data.fieldConfidence["pur"] == llm.QUALITY_PENALTY_CAP
    assert result.warnings[0].startswith("LLM output quality warning.")


def test_failed_attempts_fall_back_to_heuristics(lexicon):
    runner, _ = _scripted(
        RunnerOutcome(exit_code=1, stderr="model overloaded"),
        OSError("codex not found"),
    )

    result = parse_card(_request(lexicon), runner=runner)

    assert result.llm_used is False
    assert result.warnings[0].startswith("LLM returned non-zero exit on attempt 1/2. exit=1")
    assert "model overloaded" in result.warnings[0]
    assert result.warnings[1] == "LLM invocation failed on attempt 2/2. codex not found"
    assert result.warnings[-1].startswith("All LLM parse attempts failed")
    assert result.data.name == "Nail Protector Lv. 2"
    assert result.data.pur == 3


def test_disabled_backend_uses_heuristics(lexicon):
    result = parse_card(_request(lexicon))

    assert result.llm_used is False
    assert result.warnings == ["LLM disabled via DBZ_LLM_BACKEND=none; used heuristic fallback."]
    assert result.data.personalityLevel == 2
    assert result.data.cardType == "personality"


def test_output_schema_is_fully_inlined():
    schema = extraction_json_schema()

    assert "$defs" not in schema
    assert "$ref" not in json.dumps(schema)
    assert set(schema["required"]) == set(schema["properties"])
    assert schema["additionalProperties"] is False


def test_cli_args_include_model_only_when_set(tmp_path):
    args = llm.build_cli_args("codex", tmp_path / "s.json", tmp_path / "c.jpg", tmp_path / "r.json", "")
    assert "--model" not in args
    args = llm.build_cli_args("codex", tmp_path / "s.json", tmp_path / "c.jpg", tmp_path / "r.json", " gpt-5 ")
    assert args[-2:] == ["--model", "gpt-5"]
