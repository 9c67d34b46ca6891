import json
from datetime import datetime, timezone

import pytest

from dbzpipeline import store
from dbzpipeline.schemas.review import create_review_queue_item


def _review_item(card_id, image_path, set_code="HNV"):
    return create_review_queue_item(
        card_id=card_id,
        set_code=set_code,
        image_path=image_path,
        failed_fields=[],
        reasons=["low_confidence"],
        candidate_values={"name": "Nail"},
        overall_confidence=0.5,
        field_confidence={},
    )


def test_missing_file_reads_as_empty(tmp_path):
    assert store.read_cards(tmp_path / "cards.json") == []
    assert store.read_review_queue(tmp_path / "review.json") == []
    assert store.read_sets(tmp_path / "sets.json") == []


def test_non_array_file_is_rejected(tmp_path):
    path = tmp_path / "cards.json"
    path.write_text('{"id": "HNV-C02"}', encoding="utf-8")

    with pytest.raises(store.StoreError, match="Expected array"):
        store.read_cards(path)


def test_invalid_record_reports_index(tmp_path, nail_card):
    path = tmp_path / "cards.json"
    path.write_text(json.dumps([nail_card.to_json(), {"id": "bad"}]), encoding="utf-8")

    with pytest.raises(store.StoreError, match="at index 1"):
        store.read_cards(path)


def test_cards_round_trip_through_disk(tmp_path, nail_card):
    path = tmp_path / "data" / "cards.json"
    store.write_cards(path, [nail_card])

    assert path.read_text(encoding="utf-8").endswith("]\n")
    assert store.read_cards(path) == [nail_card]


def test_persisted_cards_are_repaired_on_read(tmp_path, nail_card):
    payload = nail_card.to_json()
    payload["cardTextRaw"] = ""
    payload["powerStages"] = [1, 2, 3]
    payload["confidence"]["fields"]["powerStages"] = 0.5
    payload["source"]["imageFileName"] = ""
    payload["raw"]["warnings"] = None
    path = tmp_path / "cards.json"
    path.write_text(json.dumps([payload]), encoding="utf-8")

    [card] = store.read_cards(path)

    assert card.cardTextRaw == "Physical attack doing 4 stages of damage."
    assert card.source.imageFileName == "C02-Nail-Protector-Lv.-2-2.jpg"
    assert card.raw.warnings == []
    assert "powerStages" not in card.confidence.fields


def test_upsert_card_replaces_by_id_in_natural_order(nail_card):
    c10 = nail_card.model_copy(update={"id": "HNV-C10"})
    c2_updated = nail_card.model_copy(update={"pur": 4})

    merged = store.upsert_card([c10, nail_card], c2_updated)

    assert [card.id for card in merged] == ["HNV-C02", "HNV-C10"]
    assert merged[0].pur == 4


def test_review_upsert_keys_on_card_and_image():
    first = _review_item("HNV-C02", "/images/HNV/C02.jpg")
    same_image = _review_item("HNV-C02", "\\IMAGES\\HNV\\C02.jpg")
    other_image = _review_item("HNV-C02", "/images/HNV/C02-2.jpg")

    queue = store.upsert_review_queue_item([first], same_image)
    assert queue == [same_image]
    queue = store.upsert_review_queue_item(queue, other_image)
    assert len(queue) == 2


def test_accepted_card_supersedes_review_items(nail_card):
    queue = [
        _review_item("HNV-C02", "/elsewhere/C02.jpg"),
        _review_item("TEMP-1", nail_card.source.imagePath),
        _review_item("HNV-C03", "/images/HNV/C03.jpg"),
    ]

    remaining = store.remove_superseded_review_items(queue, nail_card)

    assert [item.cardId for item in remaining] == ["HNV-C03"]


def test_compute_set_record_carries_previous_values(nail_card):
    previous = store.compute_set_record("HNV", [], [], parse_model="gpt", min_confidence=0.9)
    previous = previous.model_copy(update={"cardCountExpected": 180, "sourceFolders": ["HNV scans"]})
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)

    record = store.compute_set_record(
        "hnv",
        [nail_card],
        [_review_item("HNV-C03", "/images/HNV/C03.jpg"), _review_item("AWA-C01", "/a.jpg", "AWA")],
        parse_model=store.parse_model_label(""),
        min_confidence=0.8,
        previous=previous,
        started_at=started,
    )

    assert record.setCode.value == "HNV"
    assert record.setName == "Heroes & Villains"
    assert record.cardCountExpected == 180
    assert record.cardCountParsed == 1
    assert record.sourceFolders == ["HNV scans"]
    assert record.parseRunMetadata.acceptedCards == 1
    assert record.parseRunMetadata.reviewCards == 1
    assert record.parseRunMetadata.parseModel == "codex-default"
    assert record.parseRunMetadata.startedAt == started


def test_new_set_record_uses_folder_name():
    record = store.compute_set_record("VEN", [], [], parse_model="m", min_confidence=0.9)

    assert record.sourceFolders == ["Vengeance"]
    assert record.cardCountExpected is None


def test_parse_model_label():
    assert store.parse_model_label("gpt-4.1") == "gpt-4.1"
    assert store.parse_model_label("", reused=True) == "codex-default+reprint-reuse"


def test_infer_set_code_from_image_path():
    assert store.infer_set_code_from_image_path("/data/raw/images/Heroes & Villains/C02.jpg") == "HNV"
    assert store.infer_set_code_from_image_path("C:\\scans\\evo\\C02.jpg") == "EVO"
    assert store.infer_set_code_from_image_path("/tmp/C02.jpg") is None


def test_natural_key_orders_numbers():
    names = ["C10.jpg", "c2.jpg", "C1.jpg"]
    assert sorted(names, key=store.natural_key) == ["C1.jpg", "c2.jpg", "C10.jpg"]
