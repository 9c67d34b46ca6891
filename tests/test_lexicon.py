import json

import pytest

from dbzpipeline.config import PipelineConfig
from dbzpipeline.rulebook.lexicon import (
    RulebookError,
    apply_rulebook_icon_markers,
    extract_rulebook_artifacts,
    load_rulebook_lexicon,
    read_lexicon_from_file,
)

RULEBOOK_TEXT = """Card types: Personality, Mastery, Physical Combat, Drill, Dragon Ball.
Styles: Black, Saiyan.
CARDS HAVE DIFFERENT ICONS
- A card that performs an attack
- A defensive card that can be used against attacks
"""


def _config(tmp_path, **overrides):
    values = dict(
        rulebook_pdf=tmp_path / "rulebook.txt",
        rulebook_text=tmp_path / "out" / "rulebook.txt",
        rulebook_lexicon=tmp_path / "out" / "lexicon.json",
        rulebook_icons=tmp_path / "out" / "icons.json",
    )
    values.update(overrides)
    return PipelineConfig(**values)


def test_extract_from_text_export(tmp_path):
    source = tmp_path / "rulebook.txt"
    source.write_text(RULEBOOK_TEXT, encoding="utf-8")
    config = _config(tmp_path)

    lexicon = extract_rulebook_artifacts(
        source, config.rulebook_text, config.rulebook_lexicon, config.rulebook_icons, page_number=1
    )

    assert "personality" in lexicon.cardTypes
    assert "drill" in lexicon.cardTypes
    assert "energy combat" not in lexicon.cardTypes
    assert lexicon.styles == ["black", "saiyan"]
    assert lexicon.iconReference.icons["attack"].meaning == "a card that performs an attack"
    assert "[attack icon]" in config.rulebook_text.read_text(encoding="utf-8")
    assert json.loads(config.rulebook_icons.read_text(encoding="utf-8"))["pageNumber"] == 1
    assert read_lexicon_from_file(config.rulebook_lexicon) == lexicon


def test_icon_markers_are_inserted():
    text = apply_rulebook_icon_markers("- A defensive card that can be used against attacks")
    assert text == "- [defense icon] A defensive card that can be used against attacks"


def test_cached_lexicon_is_used_without_rulebook(tmp_path, lexicon):
    config = _config(tmp_path)
    config.rulebook_lexicon.parent.mkdir(parents=True)
    config.rulebook_lexicon.write_text(json.dumps(lexicon.model_dump(mode="json")), encoding="utf-8")

    assert load_rulebook_lexicon(config) == lexicon


def test_missing_rulebook_and_cache_raises(tmp_path):
    with pytest.raises(RulebookError, match="Rulebook document not found"):
        load_rulebook_lexicon(_config(tmp_path))


def test_refresh_rebuilds_from_rulebook(tmp_path, lexicon):
    (tmp_path / "rulebook.txt").write_text(RULEBOOK_TEXT, encoding="utf-8")
    config = _config(tmp_path, refresh_lexicon=True)
    config.rulebook_lexicon.parent.mkdir(parents=True)
    config.rulebook_lexicon.write_text(json.dumps(lexicon.model_dump(mode="json")), encoding="utf-8")

    rebuilt = load_rulebook_lexicon(config)

    assert "energy combat" not in rebuilt.cardTypes
    assert "energy combat" in lexicon.cardTypes
