"""Schemas for structured extraction output.

:class:`CardExtraction` is the strict contract handed to the LLM as its output
schema. :class:`ExtractionCandidate` is the lenient bag the normalizer reads:
every field optional, junk values coerced to ``None`` instead of failing.
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticUndefined

from .card import CardEffectChunk, CardIcons
from .enums import CardAffiliation, CardStyle, CardType
from .metadata import as_non_negative_int

Confidence = Annotated[float, Field(ge=0, le=1)]

FIELD_CONFIDENCE_KEYS = (
    "name",
    "cardType",
    "affiliation",
    "isMainPersonality",
    "isAlly",
    "cardTextRaw",
    "powerStageValues",
    "endurance",
    "personalityLevel",
    "pur",
    "mainPowerText",
)


class ExtractionFieldConfidence(BaseModel):
    name: Confidence
    cardType: Confidence
    affiliation: Confidence
    isMainPersonality: Confidence
    isAlly: Confidence
    cardTextRaw: Confidence
    powerStageValues: Confidence
    endurance: Confidence
    personalityLevel: Confidence
    pur: Confidence
    mainPowerText: Confidence

    model_config = ConfigDict(extra="forbid")


class CardExtraction(BaseModel):
    name: Optional[str]
    title: Optional[str]
    characterKey: Optional[str]
    cardType: CardType
    affiliation: Optional[CardAffiliation]
    isMainPersonality: bool
    isAlly: bool
    cardSubtypes: List[str]
    style: Optional[CardStyle]
    tags: List[str]
    personalityLevel: Optional[Annotated[int, Field(ge=1, le=4)]]
    powerStageValues: List[Annotated[int, Field(ge=0)]]
    pur: Optional[Annotated[int, Field(ge=0)]]
    endurance: Optional[Annotated[int, Field(ge=0)]]
    mainPowerText: Optional[str]
    cardTextRaw: Optional[str]
    effectChunks: List[CardEffectChunk]
    icons: CardIcons
    fieldConfidence: ExtractionFieldConfidence

    model_config = ConfigDict(extra="forbid")


def extraction_json_schema() -> Dict[str, Any]:
    """JSON schema for :class:`CardExtraction` with every ``$ref`` inlined.

    External structured-output runners reject ``$defs`` indirection, and every
    property must be listed under ``required``.
    """

    schema = CardExtraction.model_json_schema()
    definitions = schema.pop("$defs", {})
    return _inline(schema, definitions)


def _inline(node: Any, definitions: Dict[str, Any]) -> Any:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str):
            target = definitions[ref.rsplit("/", 1)[-1]]
            return _inline(target, definitions)
        inlined = {key: _inline(value, definitions) for key, value in node.items()}
        if inlined.get("type") == "object" and "properties" in inlined:
            inlined["required"] = list(inlined["properties"].keys())
            inlined["additionalProperties"] = False
        return inlined
    if isinstance(node, list):
        return [_inline(item, definitions) for item in node]
    return node


class ExtractionCandidate(BaseModel):
    """LLM or heuristic output as the normalizer consumes it."""

    name: Optional[str] = None
    title: Optional[str] = None
    characterKey: Optional[str] = None
    cardType: Optional[str] = None
    affiliation: Optional[str] = None
    isMainPersonality: Optional[bool] = None
    isAlly: Optional[bool] = None
    cardSubtypes: List[str] = Field(default_factory=list)
    style: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    personalityLevel: Optional[int] = None
    powerStageValues: List[int] = Field(default_factory=list)
    pur: Optional[int] = None
    endurance: Optional[int] = None
    mainPowerText: Optional[str] = None
    cardTextRaw: Optional[str] = None
    effectChunks: List[Dict[str, Any]] = Field(default_factory=list)
    icons: Dict[str, Any] = Field(default_factory=dict)
    fieldConfidence: Dict[str, float] = Field(default_factory=dict)
    considered_as_styled_card: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("considered_as_styled_card", "consideredAsStyledCard"),
    )
    limit_per_deck: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("limit_per_deck", "limitPerDeck"),
    )
    banished_after_use: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("banished_after_use", "banishedAfterUse"),
    )
    shuffle_into_deck_after_use: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("shuffle_into_deck_after_use", "shuffleIntoDeckAfterUse"),
    )

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator(
        "name",
        "title",
        "characterKey",
        "cardType",
        "affiliation",
        "style",
        "mainPowerText",
        "cardTextRaw",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value: object) -> Optional[str]:
        if not isinstance(value, str):
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator(
        "isMainPersonality",
        "isAlly",
        "considered_as_styled_card",
        "banished_after_use",
        "shuffle_into_deck_after_use",
        mode="before",
    )
    @classmethod
    def strict_bool(cls, value: object) -> Optional[bool]:
        return value if isinstance(value, bool) else None

    @field_validator("personalityLevel", "pur", "endurance", "limit_per_deck", mode="before")
    @classmethod
    def to_int(cls, value: object) -> Optional[int]:
        if value is PydanticUndefined:
            return None
        return as_non_negative_int(value)

    @field_validator("cardSubtypes", "tags", mode="before")
    @classmethod
    def string_list(cls, value: object) -> List[str]:
        if not isinstance(value, list):
            return []
        return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]

    @field_validator("powerStageValues", mode="before")
    @classmethod
    def stage_list(cls, value: object) -> List[int]:
        if not isinstance(value, list):
            return []
        parsed = (as_non_negative_int(entry) for entry in value)
        return [entry for entry in parsed if entry is not None]

    @field_validator("effectChunks", mode="before")
    @classmethod
    def chunk_list(cls, value: object) -> List[Dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]

    @field_validator("icons", mode="before")
    @classmethod
    def icon_map(cls, value: object) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @field_validator("fieldConfidence", mode="before")
    @classmethod
    def confidence_map(cls, value: object) -> Dict[str, float]:
        if not isinstance(value, dict):
            return {}
        result: Dict[str, float] = {}
        for key, score in value.items():
            if isinstance(score, bool) or not isinstance(score, (int, float)) or score != score:
                continue
            result[str(key)] = max(0.0, min(1.0, float(score)))
        return result
