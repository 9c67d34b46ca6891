import json

import pytest

from dbzpipeline.migrate import migrate_metadata, migrate_personality, normalize_card_like_record
from dbzpipeline.store import StoreError


def _write(path, value):
    path.write_text(json.dumps(value), encoding="utf-8")
    return path


def _read(path):
    return json.loads(path.read_text(encoding="utf-8"))


def test_legacy_ally_record_is_rewritten():
    record, changed = normalize_card_like_record(
        {"id": "HNV-C09", "cardType": "ally", "powerStages": [1000], "endurance": "-1"}
    )

    assert changed is True
    assert record == {
        "id": "HNV-C09",
        "cardType": "personality",
        "isAlly": True,
        "isMainPersonality": False,
        "endurance": None,
    }


def test_legacy_main_personality_record_is_rewritten():
    record, _ = normalize_card_like_record({"cardType": "Main Personality", "personalityLevel": 2})

    assert record["cardType"] == "personality"
    assert record["isMainPersonality"] is True
    assert record["isAlly"] is False


def test_clean_record_is_unchanged():
    clean = {"cardType": "drill", "isAlly": False, "isMainPersonality": False}
    record, changed = normalize_card_like_record(clean)

    assert changed is False
    assert record == clean


def test_migrate_personality_rewrites_cards_and_review(tmp_path):
    cards = _write(tmp_path / "cards.json", [{"id": "HNV-C09", "cardType": "ally"}])
    review = _write(
        tmp_path / "review.json",
        [
            {
                "cardId": "HNV-C02",
                "candidateValues": {
                    "cardType": "main_personality",
                    "fieldConfidence": {"powerStages": 0.5, "pur": 0.9},
                },
                "confidenceSnapshot": {"overall": 0.5, "fields": {"powerStages": 0.4, "pur": 0.9}},
            }
        ],
    )

    report = migrate_personality(cards, review)

    assert report.as_json() == {
        "cards": 1,
        "changed": 1,
        "reviewItems": 1,
        "candidateChanges": 1,
        "wiped": False,
    }
    assert _read(cards)[0]["isAlly"] is True
    [item] = _read(review)
    assert item["candidateValues"]["cardType"] == "personality"
    assert item["candidateValues"]["isMainPersonality"] is True
    assert item["candidateValues"]["fieldConfidence"] == {"pur": 0.9}
    assert item["confidenceSnapshot"]["fields"] == {"pur": 0.9}


def test_migrate_personality_wipe(tmp_path):
    cards = _write(tmp_path / "cards.json", [{"id": "HNV-C09"}])
    review = tmp_path / "review.json"

    report = migrate_personality(cards, review, wipe=True)

    assert report.wiped is True
    assert _read(cards) == []
    assert _read(review) == []


def test_migrate_metadata_rederives_fields(tmp_path, nail_card):
    payload = nail_card.to_json()
    payload["cardType"] = "main_personality"
    payload["powerStages"] = [4000]
    cards = _write(tmp_path / "cards.json", [payload])
    before = cards.read_text(encoding="utf-8")

    report = migrate_metadata(cards, dry_run=True)

    assert report.as_json() == {"cards": 1, "changed": 1, "dryRun": True, "path": str(cards)}
    assert cards.read_text(encoding="utf-8") == before

    migrate_metadata(cards)

    [migrated] = _read(cards)
    assert migrated == nail_card.to_json()
    assert migrate_metadata(cards).changed == 0


def test_migrate_metadata_requires_cards_file(tmp_path):
    with pytest.raises(StoreError, match="Cards file not found"):
        migrate_metadata(tmp_path / "cards.json")


def test_migrate_metadata_reports_invalid_card(tmp_path):
    cards = _write(tmp_path / "cards.json", [{"id": "HNV-C02"}])

    with pytest.raises(StoreError, match="index 0"):
        migrate_metadata(cards)
