from dbzpipeline.schemas import metadata


def test_detectors_match_rule_phrases():
    assert metadata.detect_banished_after_use("Physical attack. Banish after use.")
    assert not metadata.detect_banished_after_use("Banish one card in your opponent's discard pile.")
    assert metadata.detect_shuffle_into_deck_after_use("Shuffle this card into your life deck after use.")
    assert metadata.detect_considered_as_styled_card("This card is considered styled for your card effects.")
    assert metadata.detect_searches_owner_life_deck("Search your life deck for a Dragon Ball.")
    assert metadata.detect_attaches_own_main_personality("Attach this card to your MP.")
    assert metadata.detect_attaches_opponent_main_personality("Attach to your opponent's main personality.")
    assert not metadata.detect_attaches_own_main_personality("Attach to your opponent's main personality.")


def test_drill_only_detectors_ignore_other_types():
    text = "This drill is not discarded when changing levels."
    assert metadata.detect_drill_not_discarded_when_changing_levels("drill", text)
    assert not metadata.detect_drill_not_discarded_when_changing_levels("setup", text)

    assert metadata.resolve_drill_enter_play_flags(None, None, "drill", "When this drill enters play during combat, draw.") == (
        True,
        True,
    )
    assert metadata.resolve_drill_enter_play_flags(True, None, "setup", "When this drill enters play.") == (False, False)


def test_extraordinary_play_from_hand_needs_type_or_ally():
    text = "You may play this card from your hand."
    assert metadata.detect_extraordinary_can_play_from_hand("setup", False, text)
    assert metadata.detect_extraordinary_can_play_from_hand("personality", True, text)
    assert not metadata.detect_extraordinary_can_play_from_hand("energy_combat", False, text)


def test_limit_per_deck_resolution_order():
    assert metadata.resolve_limit_per_deck(2, "personality", "") == 2
    assert metadata.resolve_limit_per_deck(None, "event", "Limit 1 per deck.") == 1
    assert metadata.resolve_limit_per_deck(None, "mastery", "") == 1
    assert metadata.resolve_limit_per_deck(None, "dragon_ball", "") == 1
    assert metadata.resolve_limit_per_deck(None, "physical_combat", "") == 3


def test_attach_limit_defaults_to_infinity():
    assert metadata.resolve_attach_limit(None, "Some setup text.") == "infinity"
    assert metadata.resolve_attach_limit(None, "You may only have one drill attached.") == 1
    assert metadata.resolve_attach_limit("2", "") == 2
    assert metadata.normalize_attach_limit("Infinity") == "infinity"
    assert metadata.normalize_attach_limit(0) is None


def test_amount_resolution():
    patterns = metadata.REJUVENATE_PATTERNS
    assert metadata.resolve_amount_with_conditional(None, None, "Rejuvenate 3.", patterns) == metadata.AmountResolution(
        3, False
    )
    assert metadata.resolve_amount_with_conditional(
        None, None, "If you have 3 cards in hand, rejuvenate 2.", patterns
    ) == metadata.AmountResolution(0, True)
    assert metadata.resolve_amount_with_conditional(None, True, "", patterns) == metadata.AmountResolution(0, True)
    assert metadata.resolve_amount_with_conditional(4, None, "Rejuvenate 1.", patterns) == metadata.AmountResolution(
        4, False
    )
    assert metadata.resolve_amount_with_conditional(None, None, "Draw a card.", patterns) == metadata.AmountResolution(
        None, False
    )


def test_anger_patterns_accept_number_words():
    resolution = metadata.resolve_amount_with_conditional(
        None, None, "Raise your anger two levels.", metadata.RAISE_YOUR_ANGER_PATTERNS
    )
    assert resolution == metadata.AmountResolution(2, False)


def test_endurance_zero_is_discarded_without_printed_value():
    assert metadata.should_discard_explicit_endurance_zero(0, None, "Physical attack.")
    assert not metadata.should_discard_explicit_endurance_zero(0, None, "Endurance 0.")
    assert not metadata.should_discard_explicit_endurance_zero(0, True, "Physical attack.")
    assert not metadata.should_discard_explicit_endurance_zero(2, None, "Physical attack.")


def test_as_non_negative_int():
    assert metadata.as_non_negative_int("7") == 7
    assert metadata.as_non_negative_int(3.0) == 3
    assert metadata.as_non_negative_int(3.5) is None
    assert metadata.as_non_negative_int(-1) is None
    assert metadata.as_non_negative_int(True) is None
    assert metadata.as_non_negative_int("abc") is None
