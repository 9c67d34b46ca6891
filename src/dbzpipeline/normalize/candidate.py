"""Reconcile LLM output, OCR text and filename priors into one card record.

The normalizer never fails: ambiguity is left for the validator to score as
low confidence or route to review.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models import DiscoveredImage, FilenamePriors, NormalizedCandidate, OcrResult
from ..rulebook.lexicon import RulebookLexicon
from ..schemas import metadata
from ..schemas.enums import CARD_TYPE_VALUES, RarityPrefix
from ..schemas.extraction import ExtractionCandidate
from ..schemas.legacy import LEGACY_ALLY, LEGACY_CARD_TYPES, card_type_token
from .icons import build_icon_signal_text, detect_icons, replace_inline_icon_symbols
from .stages import extract_power_stage_values, normalize_stage_sequence

STYLE_ALIASES = {
    "black": "black",
    "blue": "blue",
    "namek": "namekian",
    "namekian": "namekian",
    "orange": "orange",
    "red": "red",
    "saiyan": "saiyan",
    "freestyle": "freestyle",
    "free style": "freestyle",
    "other": "other",
    "unknown": "unknown",
}

FREE_STYLE_CARD_TYPES = frozenset(
    {"physical_combat", "energy_combat", "event", "setup", "drill", "mastery", "unknown"}
)
NAMED_FREESTYLE_CARD_TYPES = frozenset(
    {"physical_combat", "energy_combat", "event", "setup", "drill", "non_combat", "other", "unknown"}
)
NON_NAMED_OWNER_TOKENS = frozenset(
    {"black", "blue", "namekian", "orange", "red", "saiyan", "freestyle", "heroes", "villains", "dragon", "mastery"}
)

SUBTYPE_ALIASES = {
    "noncombat": "non_combat",
    "non-combat": "non_combat",
    "non combat": "non_combat",
    "mainpersonality": "personality",
    "main personality": "personality",
    "heroes": "hero",
    "heroes only": "hero",
    "heroes-only": "hero",
    "heroic": "hero",
    "villains": "villain",
    "villains only": "villain",
    "villains-only": "villain",
    "villainous": "villain",
    "non aligned": "neutral",
    "non-aligned": "neutral",
    "nonaligned": "neutral",
    "allyonly": "ally",
    "ally only": "ally",
    "ally-only": "ally",
    "allies": "ally",
}

IGNORED_TAGS = frozenset({"card", "dbz", "tcg", "dragonballz"})
EFFECT_CHUNK_KINDS = frozenset({"condition", "cost", "effect", "restriction", "timing", "other"})

_HERO_FALLBACK = ("hero", "heroes", "heroes only", "heroic", "hero-only")
_VILLAIN_FALLBACK = ("villain", "villains", "villains only", "villainous", "villain-only")
_NEUTRAL_FALLBACK = ("neutral", "non-aligned", "non aligned", "unaligned")

_LEVEL_IN_NAME = re.compile(r"\bLv\.\s*[1-4]\b", re.I)
_LEVEL_CUE = re.compile(r"\blv\.\s*[1-4]\b")
_HEROES_ONLY = re.compile(r"\bheroes?\s+only\b")
_VILLAINS_ONLY = re.compile(r"\bvillains?\s+only\b")
_MAIN_POWER = re.compile(r"(?:main personality power|power)\s*[:.-]\s*(.+)$", re.I)
_ENDURANCE_VALUE = re.compile(r"\bendurance\s*[:+-]?\s*(\d{1,2})\b", re.I)
_ENDURANCE_ZERO = re.compile(r"\bendurance\s*[:+-]?\s*0\b", re.I)


def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def _dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def normalize_card_type(raw: Optional[str], prior: str, text: str, lexicon: RulebookLexicon) -> str:
    token = card_type_token(raw)
    if token in LEGACY_CARD_TYPES:
        token = "personality"
    if token in CARD_TYPE_VALUES:
        if prior == "personality" and token != "personality":
            return "personality"
        if token == "unknown" and prior != "unknown":
            return prior
        return token

    lowered = text.lower()
    if re.search(r"\bmain personality\b", lowered) or _LEVEL_CUE.search(lowered):
        return "personality"
    if re.search(r"\bmastery\b", lowered):
        return "mastery"
    if re.search(r"\bdragon ball\b", lowered):
        return "dragon_ball"
    if re.search(r"\bdrill\b", lowered):
        return "drill"
    if any("event" in term and term in lowered for term in lexicon.cardTypes):
        return "event"
    return prior


def normalize_card_name(raw_name: str) -> str:
    without_level = _collapse(_LEVEL_IN_NAME.sub("", raw_name))
    cleaned = re.sub(r"\s*[-:]\s*$", "", without_level).strip()
    return cleaned or raw_name


def normalize_character_key(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    key = re.sub(r"[^a-z0-9]+", "-", raw.lower()).strip("-")
    return key or None


def _prior_words_without_level(prior_name_guess: str) -> List[str]:
    return _collapse(_LEVEL_IN_NAME.sub("", prior_name_guess)).split()


def normalize_card_title(
    llm_title: Optional[str], name: str, prior_name_guess: str, prior_level: Optional[int]
) -> Optional[str]:
    if llm_title:
        cleaned = _collapse(_LEVEL_IN_NAME.sub("", llm_title))
        if cleaned:
            return cleaned
    if prior_level is None:
        return None
    prior_words = _prior_words_without_level(prior_name_guess)
    if len(prior_words) < 2:
        return None
    suffix = " ".join(prior_words[len(name.split()):]).strip()
    return suffix or None


def refine_personality_identity(
    card_type: str,
    name: str,
    title: Optional[str],
    prior_name_guess: str,
    character_key: Optional[str],
) -> Tuple[str, Optional[str]]:
    """Split a personality's filename guess into character name and title."""

    if card_type != "personality" or title:
        return name, title
    prior_words = _prior_words_without_level(prior_name_guess)
    if len(prior_words) < 2:
        return name, None

    key_words = [word for word in (character_key or "").split("-") if word]
    if key_words and len(prior_words) > len(key_words):
        lowered = [re.sub(r"[^a-z0-9]", "", word.lower()) for word in prior_words]
        if all(lowered[index] == word for index, word in enumerate(key_words)):
            return " ".join(prior_words[: len(key_words)]), " ".join(prior_words[len(key_words):])

    name_words = name.split()
    if len(name_words) >= 3:
        return " ".join(name_words[:-1]), name_words[-1]
    return name, None


def normalize_style_token(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return STYLE_ALIASES.get(re.sub(r"[_-]+", " ", raw.strip().lower()))


def is_style_applicable(style: str, card_type: str, text: str) -> bool:
    if card_type in FREE_STYLE_CARD_TYPES:
        return True
    lowered = text.lower()
    return f"{style} style" in lowered or f"{style} mastery" in lowered


def normalize_style(raw: Optional[str], prior: Optional[str], card_type: str, text: str) -> Optional[str]:
    style = normalize_style_token(raw) or normalize_style_token(prior)
    if style and is_style_applicable(style, card_type, text):
        return style
    return None


def normalize_card_subtypes(values: Iterable[str]) -> List[str]:
    result = []
    for value in values:
        lowered = value.lower()
        token = SUBTYPE_ALIASES.get(lowered, lowered)
        token = re.sub(r"[^a-z0-9\s_-]+", "", token)
        token = re.sub(r"_+", "_", re.sub(r"\s+", "_", token)).strip("_")
        if token:
            result.append(token)
    return _dedupe(result)


def normalize_tags(values: Iterable[str]) -> List[str]:
    result = []
    for value in values:
        tag = re.sub(r"[^a-z0-9\s:_-]+", "", value.lower())
        tag = re.sub(r"-+", "-", re.sub(r"\s+", "-", tag)).strip("-")
        if len(tag) > 1 and tag not in IGNORED_TAGS:
            result.append(tag)
    return _dedupe(result)


def extract_named_owner_key(candidate_name: str, current_key: Optional[str]) -> Optional[str]:
    """Owner character of a named card such as ``Nail's Protector``."""

    words = _collapse(re.sub(r"[_-]+", " ", candidate_name)).split()
    if len(words) < 2:
        return None
    first = re.sub(r"^[^A-Za-z0-9]+|[^A-Za-z0-9'’.-]+$", "", words[0])
    if not first:
        return None

    current = normalize_character_key(current_key)
    owner: Optional[str] = None
    possessive = re.search(r"(?:'|’|ʼ)s$", first, re.I)
    if possessive:
        owner = first[: possessive.start()]
    elif first.lower().endswith("s"):
        singular = first[:-1]
        singular_key = normalize_character_key(singular)
        if singular_key and (
            current in (normalize_character_key(first), singular_key) or words[1] == words[1].upper()
        ):
            owner = singular

    owner_key = normalize_character_key(owner)
    if not owner_key or owner_key in NON_NAMED_OWNER_TOKENS:
        return None
    return owner_key


def infer_named_card(
    card_type: str, name: str, prior_name_guess: str, character_key: Optional[str]
) -> Tuple[Optional[str], bool]:
    """Return ``(owner_key, default_freestyle)``; owner is ``None`` for unnamed cards."""

    if card_type in ("personality", "dragon_ball"):
        return None, False
    owner = extract_named_owner_key(name, character_key) or extract_named_owner_key(prior_name_guess, character_key)
    if owner is None:
        return None, False
    return owner, card_type in NAMED_FREESTYLE_CARD_TYPES


def should_default_freestyle_from_name(card_type: str, name: str) -> bool:
    if card_type not in NAMED_FREESTYLE_CARD_TYPES:
        return False
    words = name.split()
    first = re.sub(r"[^a-z]", "", words[0].lower()) if words else ""
    return bool(first) and first not in STYLE_ALIASES


def infer_tags_from_text(text: str, lexicon: RulebookLexicon, icons: Dict[str, Any]) -> List[str]:
    lowered = text.lower()
    tags = [
        tag
        for flag, tag in (
            ("isAttack", "attack-icon"),
            ("isDefense", "defense-icon"),
            ("isQuick", "quick-icon"),
            ("isConstant", "constant-icon"),
        )
        if icons[flag]
    ]
    if re.search(r"\bendurance\b", lowered):
        tags.append("endurance")
    tags.extend(f"keyword:{keyword}" for keyword in lexicon.keywords if len(keyword) > 3 and keyword in lowered)
    return tags


def _has_any_token(pool: Set[str], primary: Iterable[str], fallback: Iterable[str]) -> bool:
    for value in [*primary, *fallback]:
        lowered = value.lower()
        hyphenated = re.sub(r"\s+", "-", lowered)
        if lowered in pool or hyphenated in pool or hyphenated.replace("-", " ") in pool:
            return True
    return False


def normalize_affiliation(
    raw: Optional[str], subtypes: List[str], tags: List[str], text: str, lexicon: RulebookLexicon
) -> str:
    pool: Set[str] = {value.lower() for value in [*subtypes, *tags]}
    if raw:
        pool.add(raw.lower())
    lowered = text.lower()
    if _HEROES_ONLY.search(lowered):
        pool.add("heroes only")
    if _VILLAINS_ONLY.search(lowered):
        pool.add("villains only")
    if re.search(r"\bheroic\b", lowered):
        pool.add("heroic")
    if re.search(r"\bvillainous\b", lowered):
        pool.add("villainous")

    keywords = lexicon.affiliationKeywords
    has_hero = _has_any_token(pool, keywords.hero, _HERO_FALLBACK)
    has_villain = _has_any_token(pool, keywords.villain, _VILLAIN_FALLBACK)
    has_neutral = _has_any_token(pool, keywords.neutral, _NEUTRAL_FALLBACK)
    if has_hero and not has_villain:
        return "hero"
    if has_villain and not has_hero:
        return "villain"
    if has_neutral and not has_hero and not has_villain:
        return "neutral"
    return "unknown"


def _is_ally_tag(tag: str) -> bool:
    return (
        tag == "ally"
        or tag.startswith("ally-")
        or tag.endswith("-ally")
        or "ally-only" in tag
        or "allies" in tag
    )


def normalize_is_ally(
    raw_is_ally: Optional[bool],
    raw_card_type: Optional[str],
    card_type: str,
    subtypes: List[str],
    tags: List[str],
    text: str,
    lexicon: RulebookLexicon,
) -> bool:
    if raw_is_ally is not None:
        return raw_is_ally
    if card_type_token(raw_card_type) == LEGACY_ALLY:
        return True
    if any(value.lower() == "ally" for value in subtypes):
        return True
    if any(_is_ally_tag(value.lower()) for value in tags):
        return True
    lowered = text.lower()
    for keyword in lexicon.allyKeywords:
        if re.search(rf"\b{re.escape(keyword.lower())}\b", lowered):
            return True
    if (_HEROES_ONLY.search(lowered) or _VILLAINS_ONLY.search(lowered)) and card_type == "personality":
        if not _LEVEL_CUE.search(lowered):
            return True
    return bool(re.search(r"\bally\b", lowered))


def normalize_is_main_personality(
    raw_is_main: Optional[bool],
    raw_card_type: Optional[str],
    card_type: str,
    is_ally: bool,
    text: str,
    prior_level: Optional[int],
) -> bool:
    if raw_is_main is not None:
        return raw_is_main and not is_ally
    raw_token = card_type_token(raw_card_type)
    if raw_token == LEGACY_ALLY:
        return False
    if card_type != "personality" or is_ally:
        return False
    if raw_token in ("main_personality", "personality"):
        return True
    lowered = text.lower()
    return (
        prior_level is not None
        or bool(_LEVEL_CUE.search(lowered))
        or bool(re.search(r"\blevel\s*[1-4]\b", lowered))
        or "main personality" in lowered
    )


def normalize_power_stage_values(
    raw_values: List[int],
    text: str,
    card_type: str,
    is_ally: bool,
    prior_level: Optional[int],
    is_main: bool,
) -> List[int]:
    if not (card_type == "personality" or is_main or is_ally or prior_level is not None):
        return []
    if raw_values:
        return normalize_stage_sequence(raw_values)
    from_text = extract_power_stage_values(text)
    return normalize_stage_sequence(from_text) if from_text else []


def normalize_endurance(raw: Optional[int], text: str) -> Optional[int]:
    if raw is not None:
        if raw == 0 and not _ENDURANCE_ZERO.search(text):
            return None
        return raw
    match = _ENDURANCE_VALUE.search(text)
    return int(match.group(1)) if match else None


def normalize_main_power_text(raw: Optional[str], text: str) -> Optional[str]:
    if raw and len(raw) > 5:
        return replace_inline_icon_symbols(_collapse(raw))
    match = _MAIN_POWER.search(text)
    if not match:
        return None
    extracted = replace_inline_icon_symbols(_collapse(match.group(1)))
    return extracted if len(extracted) > 5 else None


def classify_effect_chunk(raw_kind: Any, text: str) -> str:
    if isinstance(raw_kind, str) and raw_kind.strip().lower() in EFFECT_CHUNK_KINDS:
        return raw_kind.strip().lower()
    lowered = text.lower()
    if re.search(r"\b(?:if|when|whenever)\b", lowered):
        return "condition"
    if re.search(r"\b(?:discard|pay|cost)\b", lowered):
        return "cost"
    if re.search(r"\b(?:cannot|only|except)\b|\bcan't\b", lowered):
        return "restriction"
    if re.search(r"\b(?:before|after|during)\b", lowered):
        return "timing"
    return "effect"


def normalize_effect_chunks(raw_chunks: List[Dict[str, Any]], text: str) -> List[Dict[str, Any]]:
    chunks = []
    for entry in raw_chunks:
        chunk_text = entry.get("text")
        if not isinstance(chunk_text, str) or not chunk_text.strip():
            continue
        keywords = entry.get("keywords")
        chunks.append(
            {
                "kind": classify_effect_chunk(entry.get("kind"), chunk_text.strip()),
                "text": chunk_text.strip(),
                "keywords": normalize_tags(k for k in keywords if isinstance(k, str)) if isinstance(keywords, list) else [],
            }
        )
    if chunks:
        return chunks
    lines = [line.strip() for line in text.splitlines() if line.strip()][:12]
    return [{"kind": classify_effect_chunk(None, line), "text": line, "keywords": []} for line in lines]


def _rarity_prefix(value: str) -> str:
    upper = value.upper()
    return upper if upper in RarityPrefix.__members__ else RarityPrefix.UNK.value


def normalize_card_candidate(
    image: DiscoveredImage,
    priors: FilenamePriors,
    ocr: OcrResult,
    extraction: ExtractionCandidate,
    *,
    llm_used: bool,
    warnings: List[str],
    lexicon: RulebookLexicon,
    llm_raw_json: Optional[str] = None,
) -> NormalizedCandidate:
    """Build the card-shaped record the validator consumes."""

    ocr_text = ocr.text.strip()
    text = replace_inline_icon_symbols(extraction.cardTextRaw or ocr_text)
    icon_signal_text = build_icon_signal_text(text, ocr_text)
    raw_card_type = extraction.cardType
    card_type = normalize_card_type(raw_card_type, priors.card_type_guess, text, lexicon)

    initial_name = normalize_card_name(extraction.name or priors.name_guess)
    initial_title = normalize_card_title(
        extraction.title, initial_name, priors.name_guess, priors.personality_level
    )
    provisional_key = normalize_character_key(extraction.characterKey or priors.character_key or initial_name)
    name, title = refine_personality_identity(
        card_type, initial_name, initial_title, priors.name_guess, provisional_key
    )
    character_key = normalize_character_key(extraction.characterKey or priors.character_key or name)

    style = normalize_style(extraction.style, priors.style_guess, card_type, text)
    subtypes = normalize_card_subtypes(extraction.cardSubtypes)
    owner_key, named_freestyle = infer_named_card(card_type, name, priors.name_guess, character_key)
    if owner_key is not None:
        character_key = owner_key
        if "named" not in subtypes:
            subtypes.append("named")
    if style is None and (named_freestyle or should_default_freestyle_from_name(card_type, name)):
        style = "freestyle"

    icons = detect_icons(icon_signal_text)
    tags = _dedupe([*extraction.tags, *infer_tags_from_text(icon_signal_text, lexicon, icons)])
    if owner_key is not None:
        tags.append("named-card")
    tags = normalize_tags(tags)

    affiliation = normalize_affiliation(extraction.affiliation, subtypes, tags, text, lexicon)
    is_ally = normalize_is_ally(
        extraction.isAlly, raw_card_type, card_type, subtypes, tags, text, lexicon
    )
    is_main = normalize_is_main_personality(
        extraction.isMainPersonality, raw_card_type, card_type, is_ally, text, priors.personality_level
    )
    stages = normalize_power_stage_values(
        extraction.powerStageValues, text, card_type, is_ally, priors.personality_level, is_main
    )

    record: Dict[str, Any] = {
        "setCode": image.set_code,
        "setName": image.set_name,
        "printedNumber": priors.printed_number,
        "rarityPrefix": _rarity_prefix(priors.rarity_prefix),
        "name": name,
        "title": title,
        "characterKey": character_key,
        "personalityFamilyId": f"{image.set_code}-{character_key}" if character_key else None,
        "cardType": card_type,
        "affiliation": affiliation,
        "isMainPersonality": is_main,
        "isAlly": is_ally,
        "cardSubtypes": subtypes,
        "style": style,
        "icons": icons,
        "tags": tags,
        "powerStageValues": stages,
        "pur": extraction.pur,
        "endurance": normalize_endurance(extraction.endurance, text),
        "personalityLevel": extraction.personalityLevel,
        "mainPowerText": normalize_main_power_text(extraction.mainPowerText, text),
        "cardTextRaw": text or priors.name_guess,
        "considered_as_styled_card": extraction.considered_as_styled_card
        if extraction.considered_as_styled_card is not None
        else metadata.detect_considered_as_styled_card(text),
        "limit_per_deck": metadata.resolve_limit_per_deck(extraction.limit_per_deck, card_type, text),
        "banished_after_use": extraction.banished_after_use
        if extraction.banished_after_use is not None
        else metadata.detect_banished_after_use(text),
        "shuffle_into_deck_after_use": extraction.shuffle_into_deck_after_use
        if extraction.shuffle_into_deck_after_use is not None
        else metadata.detect_shuffle_into_deck_after_use(text),
        "effectChunks": normalize_effect_chunks(extraction.effectChunks, text),
        "source": {
            "imagePath": str(image.image_path),
            "imageFileName": image.image_file_name,
            "sourceUrl": None,
        },
        "raw": {
            "ocrText": ocr.text,
            "ocrBlocks": [block.as_json() for block in ocr.blocks if block.text.strip()],
            "llmRawJson": llm_raw_json,
            "warnings": [*ocr.warnings, *warnings],
        },
    }
    return NormalizedCandidate(
        record=record,
        field_confidence_hints=dict(extraction.fieldConfidence),
        llm_used=llm_used,
    )
