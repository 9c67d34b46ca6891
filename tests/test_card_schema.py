import pytest
from pydantic import ValidationError

from dbzpipeline.schemas.card import Card
from dbzpipeline.schemas.legacy import normalize_legacy_card_type


def _card_payload(record, **overrides):
    payload = dict(record)
    payload.update(
        id="HNV-C02",
        confidence={"overall": 0.95, "fields": {}},
        review={"required": False, "reasons": [], "notes": []},
    )
    payload.update(overrides)
    return payload


def test_card_validation_is_a_fixed_point(nail_card):
    dumped = nail_card.to_json()
    assert Card.model_validate(dumped).to_json() == dumped


def test_derived_fields_are_always_resolved(nail_record):
    for name in ("considered_as_styled_card", "limit_per_deck", "banished_after_use", "shuffle_into_deck_after_use"):
        nail_record.pop(name)
    card = Card.model_validate(_card_payload(nail_record))

    assert card.limit_per_deck == 1
    assert card.attach_limit == "infinity"
    assert card.banished_after_use is False
    assert card.drill_not_discarded_when_changing_levels is False
    assert card.when_drill_enters_play is False
    assert card.rejuvenates_amount is None
    assert card.conditional_rejuvenate is False


def test_legacy_main_personality_type_is_rewritten(nail_record):
    nail_record.update(cardType="main_personality")
    nail_record.pop("isMainPersonality")
    card = Card.model_validate(_card_payload(nail_record))

    assert card.cardType.value == "personality"
    assert card.isMainPersonality is True
    assert card.isAlly is False


def test_legacy_ally_type_sets_ally_flag():
    normalized = normalize_legacy_card_type({"cardType": "Ally"})
    assert normalized == {"cardType": "personality", "isAlly": True, "isMainPersonality": False}
    assert normalize_legacy_card_type(normalized) == normalized


def test_explicit_endurance_zero_needs_printed_value(nail_record):
    card = Card.model_validate(_card_payload(nail_record, endurance=0))
    assert card.endurance is None

    text = nail_record["cardTextRaw"] + "\nEndurance 0."
    card = Card.model_validate(_card_payload(nail_record, endurance=0, cardTextRaw=text))
    assert card.endurance == 0


def test_text_amounts_fill_missing_values(nail_record):
    text = nail_record["cardTextRaw"] + "\nRejuvenate 3. Raise your anger 1 level."
    card = Card.model_validate(_card_payload(nail_record, cardTextRaw=text))

    assert card.rejuvenates_amount == 3
    assert card.conditional_rejuvenate is False
    assert card.raise_your_anger == 1


def test_unknown_fields_are_rejected(nail_record):
    with pytest.raises(ValidationError):
        Card.model_validate(_card_payload(nail_record, powerStages=[1, 2]))


def test_relative_source_url_is_rejected(nail_record):
    nail_record["source"] = {**nail_record["source"], "sourceUrl": "cards/c02.jpg"}
    with pytest.raises(ValidationError):
        Card.model_validate(_card_payload(nail_record))
