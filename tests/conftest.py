import copy
import json
from types import SimpleNamespace

import pytest
from PIL import Image

from dbzpipeline import card_pipeline
from dbzpipeline.models import LlmParseResult, NormalizedCandidate, OcrResult
from dbzpipeline.rulebook.lexicon import default_lexicon
from dbzpipeline.schemas.extraction import FIELD_CONFIDENCE_KEYS, ExtractionCandidate
from dbzpipeline.validate import validate_candidate

NAIL_TEXT = (
    "Nail Protector\n"
    "2 LEVEL\n"
    "Heroes only.\n"
    "4000 3500 3000 2500 2000 1500 1000 500 0\n"
    "3 PUR\n"
    "Power: Physical attack doing 4 stages of damage."
)

NAIL_RECORD = {
    "setCode": "HNV",
    "setName": "Heroes & Villains",
    "printedNumber": "C02",
    "rarityPrefix": "C",
    "name": "Nail",
    "title": "Protector",
    "characterKey": "nail",
    "personalityFamilyId": "HNV-nail",
    "cardType": "personality",
    "affiliation": "hero",
    "isMainPersonality": True,
    "isAlly": False,
    "cardSubtypes": [],
    "style": None,
    "icons": {"isAttack": False, "isDefense": False, "isQuick": False, "isConstant": False, "rawIconEvidence": []},
    "tags": ["keyword:power"],
    "powerStageValues": [4000, 3500, 3000, 2500, 2000, 1500, 1000, 500, 0],
    "pur": 3,
    "endurance": None,
    "personalityLevel": 2,
    "mainPowerText": "Physical attack doing 4 stages of damage.",
    "cardTextRaw": NAIL_TEXT,
    "considered_as_styled_card": False,
    "limit_per_deck": 1,
    "banished_after_use": False,
    "shuffle_into_deck_after_use": False,
    "effectChunks": [],
    "source": {
        "imagePath": "/data/images/Heroes & Villains/C02-Nail-Protector-Lv.-2-2.jpg",
        "imageFileName": "C02-Nail-Protector-Lv.-2-2.jpg",
        "sourceUrl": None,
    },
    "raw": {"ocrText": NAIL_TEXT, "ocrBlocks": [], "llmRawJson": None, "warnings": []},
}


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DBZ_EVENT_LOG", str(tmp_path / "logs" / "pipeline.jsonl"))
    monkeypatch.setenv("DBZ_OCR_ENGINE", "none")
    monkeypatch.setenv("DBZ_LLM_BACKEND", "none")
    monkeypatch.delenv("DBZ_LLM_MODEL", raising=False)


@pytest.fixture
def lexicon():
    return default_lexicon()


@pytest.fixture
def nail_record():
    return copy.deepcopy(NAIL_RECORD)


@pytest.fixture
def nail_hints():
    return {key: 0.95 for key in FIELD_CONFIDENCE_KEYS}


@pytest.fixture
def nail_extraction(nail_hints):
    return ExtractionCandidate(
        name="Nail",
        title="Protector",
        characterKey="nail",
        cardType="personality",
        affiliation="hero",
        isMainPersonality=True,
        isAlly=False,
        personalityLevel=2,
        powerStageValues=[4000, 3500, 3000, 2500, 2000, 1500, 1000, 500, 0],
        pur=3,
        mainPowerText="Physical attack doing 4 stages of damage.",
        cardTextRaw=NAIL_TEXT,
        fieldConfidence=nail_hints,
    )


@pytest.fixture
def fake_vision(monkeypatch, nail_extraction):
    """Stub OCR and LLM in the pipeline; ``calls`` lists parsed file names."""

    state = SimpleNamespace(calls=[], result=LlmParseResult(data=nail_extraction, llm_used=True))

    def fake_ocr(path, engine=None):
        return OcrResult(text=NAIL_TEXT, engine="tesseract")

    def fake_parse(request, runner=None):
        state.calls.append(request.image.image_file_name)
        return state.result

    monkeypatch.setattr(card_pipeline, "run_ocr", fake_ocr)
    monkeypatch.setattr(card_pipeline, "parse_card", fake_parse)
    return state


@pytest.fixture
def workspace(tmp_path, monkeypatch, lexicon):
    """Working directory laid out like a project checkout with a cached lexicon."""

    monkeypatch.chdir(tmp_path)
    cache = tmp_path / "data" / "raw" / "intermediate" / "rulebook-lexicon.v1.json"
    cache.parent.mkdir(parents=True)
    cache.write_text(json.dumps(lexicon.model_dump(mode="json")), encoding="utf-8")
    return tmp_path


def make_card_image(folder, file_name):
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / file_name
    Image.new("RGB", (60, 84), color="orange").save(path, format="JPEG")
    return path


@pytest.fixture
def card_image():
    return make_card_image


@pytest.fixture
def nail_card(nail_record, nail_hints):
    result = validate_candidate(
        NormalizedCandidate(record=nail_record, field_confidence_hints=nail_hints, llm_used=True),
        min_confidence=0.9,
    )
    assert result.accepted, result.review_item
    return result.card
