"""Rulebook-derived vocabulary used by extraction and normalization.

The lexicon is built from the rulebook PDF (or a plain-text export of it) and
cached as JSON. Cached copies are normalized on load so older or hand-edited
files still produce a complete lexicon.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
from pydantic import BaseModel, Field

from ..config import RULEBOOK_ICON_PAGE_NUMBER, PipelineConfig
from ..normalize.icons import ATTACK_MARKER, CONSTANT_MARKER, DEFENSE_MARKER, TIMING_MARKER
from ..utils.fs import atomic_write_text, write_json

LOGGER = logging.getLogger(__name__)

ICON_KEYS = ("attack", "defense", "quick", "constant")

CARD_TYPE_TERMS = (
    "personality",
    "mastery",
    "physical combat",
    "energy combat",
    "event",
    "setup",
    "drill",
    "dragon ball",
    "non-combat",
)
STYLE_TERMS = ("black", "blue", "namekian", "orange", "red", "saiyan", "freestyle")

HERO_KEYWORDS = ["hero", "heroes", "heroes only", "heroic"]
VILLAIN_KEYWORDS = ["villain", "villains", "villains only", "villainous"]
NEUTRAL_KEYWORDS = ["neutral", "non-aligned", "unaligned"]
ALLY_KEYWORDS = ["ally", "allies", "ally card"]

_ICON_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "attack": {
        "symbolName": "crossed-swords",
        "marker": ATTACK_MARKER,
        "meaning": "A card that performs an attack.",
        "cues": ["attack", "physical attack", "energy attack", "combat", "damage"],
    },
    "defense": {
        "symbolName": "shield",
        "marker": DEFENSE_MARKER,
        "meaning": "A defensive card that can be used against attacks.",
        "cues": ["defense", "defend", "block", "prevent", "stops an attack"],
    },
    "constant": {
        "symbolName": "infinity",
        "marker": CONSTANT_MARKER,
        "meaning": "A continuous effect that is constantly active while the card is in play.",
        "cues": ["constant", "continuous effect", "while this card is in play", "while in play"],
    },
    "quick": {
        "symbolName": "lightning-bolt",
        "marker": TIMING_MARKER,
        "meaning": "An effect with contextual timing that can be instantly played or used.",
        "cues": ["quick", "immediately", "instantly", "whenever appropriate", "contextual timing"],
    },
}

# Cues attached to a freshly extracted icon reference.
_EXTRACTED_ICON_CUES = {
    "attack": ["attack", "physical attack", "energy attack", "damage", "combat card"],
    "defense": ["defensive card", "stops an attack", "prevent", "defense"],
    "constant": [
        "constant",
        "continuous effect",
        "while this card is in play",
        "while in play",
        "always active",
    ],
    "quick": ["quick", "immediately", "instantly", "whenever appropriate", "contextual timing"],
}
_BASE_ICON_KEYWORDS = {
    "attack": ["attack", "physical attack", "energy attack", "combat", "damage"],
    "defense": ["defense", "defend", "block", "prevent"],
    "quick": ["quick", "immediate", "instant", "instantly"],
    "constant": ["constant", "continuous", "while this card is in play", "while in play"],
}
_DROPPED_DEFENSE_TERMS = {"stop", "stops"}


class RulebookError(RuntimeError):
    """Raised when the rulebook document cannot be read."""


class IconReferenceEntry(BaseModel):
    symbolName: str
    marker: str
    meaning: str
    cues: List[str] = Field(default_factory=list)
    assetPath: Optional[str] = None


class IconReference(BaseModel):
    pageNumber: int
    sourceImagePath: str
    sourcePdfPath: str
    extractedAt: str
    icons: Dict[str, IconReferenceEntry]


class IconKeywords(BaseModel):
    attack: List[str] = Field(default_factory=list)
    defense: List[str] = Field(default_factory=list)
    quick: List[str] = Field(default_factory=list)
    constant: List[str] = Field(default_factory=list)


class AffiliationKeywords(BaseModel):
    hero: List[str] = Field(default_factory=list)
    villain: List[str] = Field(default_factory=list)
    neutral: List[str] = Field(default_factory=list)


class RulebookLexicon(BaseModel):
    cardTypes: List[str]
    styles: List[str]
    iconKeywords: IconKeywords
    affiliationKeywords: AffiliationKeywords
    allyKeywords: List[str]
    iconReference: IconReference
    keywords: List[str]


def _dedupe(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]


def _string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _without_stop_terms(values: List[str]) -> List[str]:
    return [value for value in values if value.strip().lower() not in _DROPPED_DEFENSE_TERMS]


def apply_rulebook_icon_markers(raw_text: str) -> str:
    """Insert canonical bracket markers where the glossary shows icon images."""

    if not raw_text.strip():
        return raw_text
    replacements = (
        (r"-\s*A card that performs an attack", f"- {ATTACK_MARKER} A card that performs an attack"),
        (
            r"-\s*A defensive card that can be used against attacks",
            f"- {DEFENSE_MARKER} A defensive card that can be used against attacks",
        ),
        (
            r"-\s*A continuous effect that is constantly active while the\s+card is in play",
            f"- {CONSTANT_MARKER} A continuous effect that is constantly active while the card is in play",
        ),
        (
            r"-\s*An effect with contextual timing that can be instantly\s+played or used \(whenever appropriate\)",
            f"- {TIMING_MARKER} An effect with contextual timing that can be instantly played or used"
            " (whenever appropriate)",
        ),
        (r"\bHOW\s+AND\s+CARDS WORK\b", f"HOW {ATTACK_MARKER} AND {DEFENSE_MARKER} CARDS WORK"),
        (
            r"Whenever you play an\s*,\s*your opponent may play or use",
            f"Whenever you play an {ATTACK_MARKER}, your opponent may play or use",
        ),
        (
            r"\bone\s+card by playing it from his or her hand",
            f"one {DEFENSE_MARKER} card by playing it from his or her hand",
        ),
        (
            r"The\s+immediate effects of\s+and\s+cards always take place as",
            f"The immediate effects of {ATTACK_MARKER} and {DEFENSE_MARKER} cards always take place as",
        ),
    )
    text = raw_text
    for pattern, replacement in replacements:
        text = re.sub(pattern, replacement, text, flags=re.I)
    return text


def parse_icon_descriptions(page_text: str) -> Dict[str, str]:
    if not page_text:
        return {}
    cleaned = re.sub(r"\s+", " ", page_text)
    cleaned = re.sub(r"[–—]", "-", cleaned).strip().lower()

    def capture(pattern: str) -> Optional[str]:
        match = re.search(pattern, cleaned, re.I)
        if not match or not match.group(1):
            return None
        return re.sub(r"\s+", " ", match.group(1)).strip() or None

    found = {
        "attack": capture(r"-\s*(a card that performs an attack)"),
        "defense": capture(r"-\s*(a defensive card that can be used against attacks)"),
        "constant": capture(r"-\s*(a continuous effect that is constantly active while the card is in play)"),
        "quick": capture(r"-\s*(an effect(?: with contextual timing)?[^)]*whenever appropriate\))")
        or capture(r"-\s*(an effect that may be used immediately, whenever appropriate)"),
    }
    return {key: value for key, value in found.items() if value}


def read_document_pages(source: Path) -> List[str]:
    """Page texts of a rulebook PDF, or the whole file for ``.txt`` sources."""

    try:
        if source.suffix.lower() == ".txt":
            return [source.read_text(encoding="utf-8")]
        with fitz.open(source) as document:
            return [page.get_text() for page in document]
    except Exception as exc:
        raise RulebookError(f'Rulebook extraction failed for "{source}": {exc}') from exc


def build_fallback_icon_reference() -> IconReference:
    return IconReference(
        pageNumber=RULEBOOK_ICON_PAGE_NUMBER,
        sourceImagePath="",
        sourcePdfPath="",
        extractedAt=datetime.fromtimestamp(0, timezone.utc).isoformat(),
        icons={key: IconReferenceEntry(**defaults) for key, defaults in _ICON_DEFAULTS.items()},
    )


def build_icon_reference(source: Path, pages: List[str], page_number: int = RULEBOOK_ICON_PAGE_NUMBER) -> IconReference:
    page_text = pages[page_number - 1] if 0 < page_number <= len(pages) else ""
    descriptions = parse_icon_descriptions(page_text)
    icons = {
        key: IconReferenceEntry(
            symbolName=defaults["symbolName"],
            marker=defaults["marker"],
            meaning=descriptions.get(key, defaults["meaning"]),
            cues=list(_EXTRACTED_ICON_CUES[key]),
        )
        for key, defaults in _ICON_DEFAULTS.items()
    }
    return IconReference(
        pageNumber=page_number,
        sourceImagePath="",
        sourcePdfPath=str(source),
        extractedAt=datetime.now(timezone.utc).isoformat(),
        icons=icons,
    )


def build_rulebook_lexicon(rulebook_text: str, icon_reference: IconReference) -> RulebookLexicon:
    normalized = rulebook_text.lower()
    card_types = [term for term in CARD_TYPE_TERMS if term in normalized]
    styles = [term for term in STYLE_TERMS if term in normalized]
    icon_keywords = IconKeywords(
        **{
            key: _dedupe(_BASE_ICON_KEYWORDS[key] + icon_reference.icons[key].cues)
            for key in ICON_KEYS
        }
    )
    affiliation = AffiliationKeywords(
        hero=list(HERO_KEYWORDS), villain=list(VILLAIN_KEYWORDS), neutral=list(NEUTRAL_KEYWORDS)
    )
    keywords = _dedupe(
        card_types
        + styles
        + ["stages", "pur", "anger", "power", "level", "combat", "life deck", "dragon ball victory"]
        + HERO_KEYWORDS
        + VILLAIN_KEYWORDS
        + NEUTRAL_KEYWORDS
        + ALLY_KEYWORDS
    )
    return RulebookLexicon(
        cardTypes=card_types,
        styles=styles,
        iconKeywords=icon_keywords,
        affiliationKeywords=affiliation,
        allyKeywords=list(ALLY_KEYWORDS),
        iconReference=icon_reference,
        keywords=keywords,
    )


def normalize_lexicon(raw: Any) -> Optional[RulebookLexicon]:
    """Coerce a cached lexicon document, filling empty sections with defaults.

    Returns ``None`` when the document is unusable (no card types).
    """

    if not isinstance(raw, dict):
        return None
    card_types = _string_list(raw.get("cardTypes"))
    if not card_types:
        return None
    styles = _string_list(raw.get("styles"))

    fallback = build_fallback_icon_reference()
    reference_raw = _mapping(raw.get("iconReference"))
    icons_raw = _mapping(reference_raw.get("icons"))
    icons: Dict[str, IconReferenceEntry] = {}
    for key in ICON_KEYS:
        entry = _mapping(icons_raw.get(key))
        default = fallback.icons[key]
        cues = _string_list(entry.get("cues"))
        if key == "defense":
            cues = _without_stop_terms(cues)
        icons[key] = IconReferenceEntry(
            symbolName=_string(entry.get("symbolName")) or default.symbolName,
            marker=_string(entry.get("marker")) or default.marker,
            meaning=_string(entry.get("meaning")) or default.meaning,
            cues=cues or list(default.cues),
            assetPath=_string(entry.get("assetPath")),
        )
    page_number = reference_raw.get("pageNumber")
    reference = IconReference(
        pageNumber=page_number if isinstance(page_number, int) and not isinstance(page_number, bool)
        else fallback.pageNumber,
        sourceImagePath=_string(reference_raw.get("sourceImagePath")) or fallback.sourceImagePath,
        sourcePdfPath=_string(reference_raw.get("sourcePdfPath")) or fallback.sourcePdfPath,
        extractedAt=_string(reference_raw.get("extractedAt")) or fallback.extractedAt,
        icons=icons,
    )

    keywords_raw = _mapping(raw.get("iconKeywords"))
    icon_keywords: Dict[str, List[str]] = {}
    for key in ICON_KEYS:
        values = _string_list(keywords_raw.get(key))
        if key == "defense":
            values = _without_stop_terms(values)
        icon_keywords[key] = values or list(fallback.icons[key].cues)

    affiliation_raw = _mapping(raw.get("affiliationKeywords"))
    affiliation = AffiliationKeywords(
        hero=_string_list(affiliation_raw.get("hero")) or list(HERO_KEYWORDS),
        villain=_string_list(affiliation_raw.get("villain")) or list(VILLAIN_KEYWORDS),
        neutral=_string_list(affiliation_raw.get("neutral")) or list(NEUTRAL_KEYWORDS),
    )
    ally_keywords = _string_list(raw.get("allyKeywords")) or list(ALLY_KEYWORDS)
    keywords = _string_list(raw.get("keywords")) or card_types + styles

    return RulebookLexicon(
        cardTypes=card_types,
        styles=styles,
        iconKeywords=IconKeywords(**icon_keywords),
        affiliationKeywords=affiliation,
        allyKeywords=ally_keywords,
        iconReference=reference,
        keywords=_dedupe(keywords),
    )


def default_lexicon() -> RulebookLexicon:
    """Lexicon built from the full built-in vocabulary, without a rulebook."""

    vocabulary = " ".join(CARD_TYPE_TERMS + STYLE_TERMS)
    return build_rulebook_lexicon(vocabulary, build_fallback_icon_reference())


def read_lexicon_from_file(path: Path) -> Optional[RulebookLexicon]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.debug("No usable cached lexicon at %s: %s", path, exc)
        return None
    return normalize_lexicon(raw)


def extract_rulebook_artifacts(
    source: Path,
    text_path: Path,
    lexicon_path: Path,
    icon_reference_path: Path,
    page_number: int = RULEBOOK_ICON_PAGE_NUMBER,
) -> RulebookLexicon:
    pages = read_document_pages(source)
    text = apply_rulebook_icon_markers("\n".join(pages))
    atomic_write_text(str(text_path), text)
    reference = build_icon_reference(source, pages, page_number)
    lexicon = build_rulebook_lexicon(text, reference)
    write_json(lexicon_path, lexicon.model_dump(mode="json"))
    write_json(icon_reference_path, reference.model_dump(mode="json"))
    LOGGER.info(
        "Built rulebook lexicon from %s: %d card types, %d styles, %d keywords",
        source,
        len(lexicon.cardTypes),
        len(lexicon.styles),
        len(lexicon.keywords),
    )
    return lexicon


def load_rulebook_lexicon(config: PipelineConfig, *, refresh: Optional[bool] = None) -> RulebookLexicon:
    """Return the cached lexicon, rebuilding it on refresh or cache miss."""

    force = config.refresh_lexicon if refresh is None else refresh
    if not force:
        cached = read_lexicon_from_file(config.rulebook_lexicon)
        if cached is not None:
            return cached
    if not config.rulebook_pdf.exists():
        raise RulebookError(f"Rulebook document not found: {config.rulebook_pdf}")
    return extract_rulebook_artifacts(
        config.rulebook_pdf,
        config.rulebook_text,
        config.rulebook_lexicon,
        config.rulebook_icons,
    )
