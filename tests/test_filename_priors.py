from dbzpipeline.normalize.filename_priors import infer_filename_priors, remove_duplicate_run_suffix


def test_personality_file_name():
    priors = infer_filename_priors("C02-Nail-Protector-Lv.-2-2.jpg")

    assert priors.canonical_file_stem == "C02-Nail-Protector-Lv.-2"
    assert priors.printed_number == "C02"
    assert priors.rarity_prefix == "C"
    assert priors.name_guess == "Nail Protector Lv. 2"
    assert priors.personality_level == 2
    assert priors.character_key == "nail"
    assert priors.card_type_guess == "personality"
    assert priors.style_guess is None


def test_level_suffix_is_not_a_duplicate_marker():
    assert remove_duplicate_run_suffix("C02-Nail-Protector-Lv.-2") == "C02-Nail-Protector-Lv.-2"
    assert remove_duplicate_run_suffix("S12-Goku-Rage-3") == "S12-Goku-Rage"


def test_styled_mastery_file_name():
    priors = infer_filename_priors("UR140-Black-Water-Mastery.png")

    assert priors.printed_number == "UR140"
    assert priors.rarity_prefix == "UR"
    assert priors.style_guess == "black"
    assert priors.card_type_guess == "mastery"
    assert priors.personality_level is None


def test_unparseable_file_name_falls_back():
    priors = infer_filename_priors("scan of something.jpg")

    assert priors.printed_number == "UNK000"
    assert priors.rarity_prefix == "UNK"
    assert priors.card_type_guess == "unknown"
    assert priors.name_guess == "scan of something"
