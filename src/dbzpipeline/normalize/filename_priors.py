"""Guesses derived purely from an image file name."""
from __future__ import annotations

import re
from pathlib import PurePath
from typing import Optional

from ..models import FilenamePriors
from ..schemas.enums import rarity_prefix_for

STYLE_WORDS = frozenset({"black", "blue", "namekian", "orange", "red", "saiyan", "freestyle"})

_DUPLICATE_SUFFIX = re.compile(r"-\d+$")
_LEVEL_SUFFIX = re.compile(r"Lv\.-\d+$", re.I)
_PRINTED_SPLIT = re.compile(r"^([A-Za-z]{1,3}\d{1,4})(?:-(.+))?$")
_LEVEL_TOKEN = re.compile(r"\bLv\.\s*(\d)\b", re.I)
_WORD = re.compile(r"^[A-Za-z][A-Za-z.'-]*$")


def remove_duplicate_run_suffix(stem: str) -> str:
    """Drop a scraper collision suffix (``-2``) but keep ``Lv.-2``."""

    if _DUPLICATE_SUFFIX.search(stem) and not _LEVEL_SUFFIX.search(stem):
        return _DUPLICATE_SUFFIX.sub("", stem)
    return stem


def humanize(slug: str) -> str:
    text = re.sub(r"[-_]+", " ", slug)
    text = re.sub(r"\s+", " ", text)
    text = _LEVEL_TOKEN.sub(lambda match: f"Lv. {match.group(1)}", text)
    return text.strip()


def parse_level(text: str) -> Optional[int]:
    match = _LEVEL_TOKEN.search(text)
    if not match:
        return None
    level = int(match.group(1))
    return level if 1 <= level <= 4 else None


def slugify_key(value: str) -> Optional[str]:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or None


def guess_character_key(name_guess: str) -> Optional[str]:
    for token in name_guess.split():
        if token.lower() == "lv." or token.isdigit():
            continue
        if _WORD.match(token):
            return slugify_key(token)
    return None


def guess_card_type(name_guess: str, level: Optional[int]) -> str:
    if level is not None:
        return "personality"
    lowered = name_guess.lower()
    if "mastery" in lowered:
        return "mastery"
    if "dragon ball" in lowered:
        return "dragon_ball"
    if "drill" in lowered:
        return "drill"
    return "unknown"


def infer_filename_priors(image_file_name: str) -> FilenamePriors:
    """Parse printed number, rarity and name hints from ``image_file_name``.

    Never raises; unknown parts fall back to ``UNK000`` / ``UNK`` / ``unknown``.
    """

    stem = remove_duplicate_run_suffix(PurePath(image_file_name).stem)
    match = _PRINTED_SPLIT.match(stem)
    if match:
        printed_number = match.group(1).upper()
        title_part = match.group(2) or stem
    else:
        printed_number = "UNK000"
        title_part = stem

    name_guess = humanize(title_part)
    level = parse_level(name_guess)
    words = name_guess.split()
    style_guess = words[0].lower() if words and words[0].lower() in STYLE_WORDS else None

    return FilenamePriors(
        canonical_file_stem=stem,
        printed_number=printed_number,
        rarity_prefix=rarity_prefix_for(printed_number).value,
        name_guess=name_guess,
        personality_level=level,
        character_key=guess_character_key(name_guess),
        style_guess=style_guess,
        card_type_guess=guess_card_type(name_guess, level),
    )
