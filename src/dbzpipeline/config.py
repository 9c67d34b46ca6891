"""Configuration utilities for the card database pipeline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SetDefinition:
    code: str
    name: str
    folder_name: str


def _set(code: str, name: str) -> SetDefinition:
    return SetDefinition(code=code, name=name, folder_name=name)


SET_DEFINITIONS = (
    _set("AWA", "Awakening"),
    _set("EVO", "Evolution"),
    _set("HNV", "Heroes & Villains"),
    _set("MOV", "Movie Collection"),
    _set("PER", "Perfection"),
    _set("PRE", "Premiere Set"),
    _set("VEN", "Vengeance"),
)
SETS_BY_CODE: Dict[str, SetDefinition] = {definition.code: definition for definition in SET_DEFINITIONS}

RULEBOOK_ICON_PAGE_NUMBER = 12
OCR_ENGINES = ("auto", "ollama", "hybrid", "tesseract", "none")
_OCR_ENGINE_ALIASES = {
    "ollama-glm-ocr": "ollama",
    "ollama+tesseract": "hybrid",
    "tesseract-cli": "tesseract",
}
LLM_BACKENDS = ("cli", "openai", "none")


def get_set_definition(code: str) -> SetDefinition:
    definition = SETS_BY_CODE.get(code.strip().upper())
    if definition is None:
        known = ", ".join(SETS_BY_CODE)
        raise ValueError(f"Unknown set code: {code}. Expected one of: {known}")
    return definition


def load_env(project_root: Path) -> None:
    """Populate ``os.environ`` from ``project_root/.env`` without overriding."""

    env_path = project_root / ".env"
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def env_int(name: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(float(raw))
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r", name, raw)
        return default
    if minimum is not None and value < minimum:
        return default
    if maximum is not None and value > maximum:
        return default
    return value


def ocr_engine_from_env() -> str:
    raw = env_str("DBZ_OCR_ENGINE", "tesseract").lower()
    engine = _OCR_ENGINE_ALIASES.get(raw, raw)
    if engine not in OCR_ENGINES:
        LOGGER.warning("Unknown DBZ_OCR_ENGINE=%r; using tesseract", raw)
        return "tesseract"
    return engine


def default_parse_model() -> str:
    return os.getenv("DBZ_LLM_MODEL", "").strip()


FieldPenalties = Dict[str, float]


class ConfidencePenalties(BaseModel):
    """Multiplicative per-field coefficients applied by the confidence scorer.

    Penalties stack: a field listed in several tables is multiplied by each.
    """

    llm_unavailable: FieldPenalties = Field(
        default_factory=lambda: {
            "name": 0.8,
            "cardType": 0.7,
            "affiliation": 0.7,
            "isMainPersonality": 0.75,
            "isAlly": 0.75,
            "powerStageValues": 0.75,
            "endurance": 0.8,
            "cardTextRaw": 0.75,
            "considered_as_styled_card": 0.85,
            "limit_per_deck": 0.9,
            "banished_after_use": 0.85,
            "shuffle_into_deck_after_use": 0.85,
        },
        description="Applied when the LLM failed and heuristics produced the candidate.",
    )
    ocr_unavailable: FieldPenalties = Field(
        default_factory=lambda: {
            "cardTextRaw": 0.8,
            "mainPowerText": 0.85,
            "considered_as_styled_card": 0.85,
            "limit_per_deck": 0.88,
            "banished_after_use": 0.85,
            "shuffle_into_deck_after_use": 0.85,
        },
        description="Applied when OCR failed or was disabled.",
    )
    no_vision: FieldPenalties = Field(
        default_factory=lambda: {
            "name": 0.75,
            "cardType": 0.7,
            "affiliation": 0.7,
            "isMainPersonality": 0.7,
            "isAlly": 0.7,
            "powerStageValues": 0.7,
            "endurance": 0.75,
            "considered_as_styled_card": 0.8,
            "limit_per_deck": 0.85,
            "banished_after_use": 0.8,
            "shuffle_into_deck_after_use": 0.8,
        },
        description="Applied on top of the others when neither OCR nor the LLM produced anything.",
    )
    type_conflict: FieldPenalties = Field(
        default_factory=lambda: {
            "cardType": 0.6,
            "affiliation": 0.75,
            "isMainPersonality": 0.75,
            "isAlly": 0.75,
            "personalityLevel": 0.6,
            "powerStageValues": 0.6,
            "pur": 0.6,
            "endurance": 0.7,
            "considered_as_styled_card": 0.8,
            "limit_per_deck": 0.85,
            "banished_after_use": 0.8,
            "shuffle_into_deck_after_use": 0.8,
        },
        description="Applied when a type_conflict:* consistency finding was raised.",
    )

    @field_validator("llm_unavailable", "ocr_unavailable", "no_vision", "type_conflict")
    @classmethod
    def _check_range(cls, value: FieldPenalties) -> FieldPenalties:
        for field, factor in value.items():
            if not 0 <= factor <= 1:
                raise ValueError(f"penalty for {field} must be within [0, 1], got {factor}")
        return value


class PipelineConfig(BaseModel):
    """Runtime configuration for the pipeline."""

    images_root: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "raw" / "images",
        description="Directory holding one image folder per set.",
    )
    cards_path: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "cards.v1.json",
        description="JSON array of accepted cards.",
    )
    review_path: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "raw" / "review-queue.v1.json",
        description="JSON array of review queue items.",
    )
    sets_path: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "sets.v1.json",
        description="JSON array of per-set statistics.",
    )
    rulebook_pdf: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "rulebook.pdf",
        description="Rulebook document used to build the lexicon.",
    )
    rulebook_text: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "raw" / "intermediate" / "rulebook.txt",
        description="Extracted rulebook text.",
    )
    rulebook_lexicon: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "raw" / "intermediate" / "rulebook-lexicon.v1.json",
        description="Cached rulebook lexicon JSON.",
    )
    rulebook_icons: Path = Field(
        default_factory=lambda: Path.cwd() / "data" / "raw" / "intermediate" / "rulebook-icons.v1.json",
        description="Icon reference JSON written next to the lexicon.",
    )
    min_confidence: float = Field(
        default=0.9,
        ge=0,
        le=1,
        description="Overall confidence below which a candidate goes to review.",
    )
    concurrency: int = Field(
        default=1,
        ge=1,
        description="Number of cards processed in parallel.",
    )
    max_cards: Optional[int] = Field(
        default=None,
        ge=1,
        description="Optional cap on images processed per set.",
    )
    model: str = Field(
        default_factory=default_parse_model,
        description="Model name passed to the LLM backend; empty uses the backend default.",
    )
    reuse_reprints: bool = Field(
        default=True,
        description="Clone known cards onto new prints instead of re-running OCR and the LLM.",
    )
    refresh_lexicon: bool = Field(
        default=False,
        description="Rebuild the rulebook lexicon even when a cached copy exists.",
    )
    confidence_penalties: ConfidencePenalties = Field(
        default_factory=ConfidencePenalties,
        description="Tunable confidence penalty coefficients.",
    )

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator(
        "images_root",
        "cards_path",
        "review_path",
        "sets_path",
        "rulebook_pdf",
        "rulebook_text",
        "rulebook_lexicon",
        "rulebook_icons",
        mode="before",
    )
    @classmethod
    def _expand_path(cls, value: Path | str) -> Path:
        return Path(value).expanduser().resolve()
