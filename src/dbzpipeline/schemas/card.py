"""Pydantic schema for persisted card records."""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import metadata
from .enums import CardAffiliation, CardStyle, CardType, EffectChunkKind, RarityPrefix, SetCode
from .legacy import normalize_legacy_card_type

CARD_ID_PATTERN = r"^[A-Z]{3}-[A-Za-z0-9][A-Za-z0-9._-]*$"
PRINTED_NUMBER_PATTERN = r"^[A-Z]{1,3}\d{1,4}[A-Za-z0-9.-]*$"

Confidence = Annotated[float, Field(ge=0, le=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveInt = Annotated[int, Field(ge=1)]


class CardIcons(BaseModel):
    isAttack: bool = False
    isDefense: bool = False
    isQuick: bool = False
    isConstant: bool = False
    rawIconEvidence: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class CardEffectChunk(BaseModel):
    kind: EffectChunkKind
    text: str = Field(..., min_length=1)
    keywords: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class CardSource(BaseModel):
    imagePath: str = Field(..., min_length=1)
    imageFileName: str = Field(..., min_length=1)
    sourceUrl: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("sourceUrl")
    @classmethod
    def require_absolute_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and "://" not in value:
            raise ValueError("sourceUrl must be an absolute URL")
        return value


class CardConfidence(BaseModel):
    overall: Confidence
    fields: Dict[str, Confidence] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class CardReview(BaseModel):
    required: bool
    reasons: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class OcrBoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float

    model_config = ConfigDict(extra="forbid")


class RawOcrBlock(BaseModel):
    text: str = Field(..., min_length=1)
    confidence: Optional[Confidence] = None
    bbox: Optional[OcrBoundingBox] = None

    model_config = ConfigDict(extra="forbid")


class CardRaw(BaseModel):
    ocrText: str = ""
    ocrBlocks: List[RawOcrBlock] = Field(default_factory=list)
    llmRawJson: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class Card(BaseModel):
    """Canonical accepted card.

    Validation resolves every derived rule-metadata field in priority order:
    explicit value, then a pattern match on ``cardTextRaw`` + ``mainPowerText``,
    then a card-type default. Re-validating a dumped card is a fixed point.
    """

    id: str = Field(..., pattern=CARD_ID_PATTERN)
    setCode: SetCode
    setName: str = Field(..., min_length=1)
    printedNumber: str = Field(..., pattern=PRINTED_NUMBER_PATTERN)
    rarityPrefix: RarityPrefix
    name: str = Field(..., min_length=1)
    title: Optional[str] = None
    characterKey: Optional[str] = Field(default=None, min_length=1)
    personalityFamilyId: Optional[str] = Field(default=None, min_length=1)
    cardType: CardType
    affiliation: CardAffiliation = CardAffiliation.UNKNOWN
    isMainPersonality: bool = False
    isAlly: bool = False
    cardSubtypes: List[str] = Field(default_factory=list)
    style: Optional[CardStyle] = None
    icons: CardIcons = Field(default_factory=CardIcons)
    tags: List[str] = Field(default_factory=list)
    powerStageValues: List[NonNegativeInt] = Field(default_factory=list)
    pur: Optional[NonNegativeInt] = None
    endurance: Optional[NonNegativeInt] = None
    personalityLevel: Optional[Annotated[int, Field(ge=1, le=4)]] = None
    mainPowerText: Optional[str] = None
    cardTextRaw: str = Field(..., min_length=1)
    considered_as_styled_card: Optional[bool] = None
    limit_per_deck: Optional[PositiveInt] = None
    banished_after_use: Optional[bool] = None
    shuffle_into_deck_after_use: Optional[bool] = None
    drill_not_discarded_when_changing_levels: Optional[bool] = None
    attach_limit: Optional[Union[PositiveInt, Literal["infinity"]]] = None
    extraordinary_can_play_from_hand: Optional[bool] = None
    has_effect_when_discarded_combat: Optional[bool] = None
    seaches_owner_life_deck: Optional[bool] = None
    rejuvenates_amount: Optional[NonNegativeInt] = None
    conditional_rejuvenate: Optional[bool] = None
    conditional_endurance: Optional[bool] = None
    raise_your_anger: Optional[NonNegativeInt] = None
    conditional_raise_your_anger: Optional[bool] = None
    lower_your_anger: Optional[NonNegativeInt] = None
    conditional_lower_your_anger: Optional[bool] = None
    raise_or_lower_any_player_anger: Optional[NonNegativeInt] = None
    conditional_raise_or_lower_any_player_anger: Optional[bool] = None
    when_drill_enters_play_during_combat: Optional[bool] = None
    when_drill_enters_play: Optional[bool] = None
    attaches_own_main_personality: Optional[bool] = None
    attaches_opponent_main_personality: Optional[bool] = None
    effectChunks: List[CardEffectChunk] = Field(default_factory=list)
    source: CardSource
    confidence: CardConfidence
    review: CardReview
    raw: CardRaw

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def rewrite_legacy_card_type(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return normalize_legacy_card_type(data)
        return data

    @model_validator(mode="after")
    def resolve_derived_metadata(self) -> "Card":
        card_type = self.cardType.value
        text = metadata.build_signal_text(self.cardTextRaw, self.mainPowerText)

        explicit_endurance = self.endurance
        if metadata.should_discard_explicit_endurance_zero(explicit_endurance, self.conditional_endurance, text):
            explicit_endurance = None

        rejuvenate = metadata.resolve_amount_with_conditional(
            self.rejuvenates_amount, self.conditional_rejuvenate, text, metadata.REJUVENATE_PATTERNS
        )
        endurance = metadata.resolve_amount_with_conditional(
            explicit_endurance, self.conditional_endurance, text, metadata.ENDURANCE_PATTERNS
        )
        raise_anger = metadata.resolve_amount_with_conditional(
            self.raise_your_anger, self.conditional_raise_your_anger, text, metadata.RAISE_YOUR_ANGER_PATTERNS
        )
        lower_anger = metadata.resolve_amount_with_conditional(
            self.lower_your_anger, self.conditional_lower_your_anger, text, metadata.LOWER_YOUR_ANGER_PATTERNS
        )
        any_player_anger = metadata.resolve_amount_with_conditional(
            self.raise_or_lower_any_player_anger,
            self.conditional_raise_or_lower_any_player_anger,
            text,
            metadata.RAISE_OR_LOWER_ANY_PLAYER_ANGER_PATTERNS,
        )
        during_combat, enters_play = metadata.resolve_drill_enter_play_flags(
            self.when_drill_enters_play_during_combat, self.when_drill_enters_play, card_type, text
        )

        self.considered_as_styled_card = _explicit_or(
            self.considered_as_styled_card, metadata.detect_considered_as_styled_card, text
        )
        self.limit_per_deck = metadata.resolve_limit_per_deck(self.limit_per_deck, card_type, text)
        self.banished_after_use = _explicit_or(self.banished_after_use, metadata.detect_banished_after_use, text)
        self.shuffle_into_deck_after_use = _explicit_or(
            self.shuffle_into_deck_after_use, metadata.detect_shuffle_into_deck_after_use, text
        )
        if self.drill_not_discarded_when_changing_levels is None:
            self.drill_not_discarded_when_changing_levels = (
                metadata.detect_drill_not_discarded_when_changing_levels(card_type, text)
            )
        self.attach_limit = metadata.resolve_attach_limit(self.attach_limit, text)
        if self.extraordinary_can_play_from_hand is None:
            self.extraordinary_can_play_from_hand = metadata.detect_extraordinary_can_play_from_hand(
                card_type, self.isAlly, text
            )
        self.has_effect_when_discarded_combat = _explicit_or(
            self.has_effect_when_discarded_combat, metadata.detect_effect_when_discarded_during_combat, text
        )
        self.seaches_owner_life_deck = _explicit_or(
            self.seaches_owner_life_deck, metadata.detect_searches_owner_life_deck, text
        )
        self.rejuvenates_amount = rejuvenate.amount
        self.conditional_rejuvenate = rejuvenate.conditional
        self.endurance = endurance.amount
        self.conditional_endurance = endurance.conditional
        self.raise_your_anger = raise_anger.amount
        self.conditional_raise_your_anger = raise_anger.conditional
        self.lower_your_anger = lower_anger.amount
        self.conditional_lower_your_anger = lower_anger.conditional
        self.raise_or_lower_any_player_anger = any_player_anger.amount
        self.conditional_raise_or_lower_any_player_anger = any_player_anger.conditional
        self.when_drill_enters_play_during_combat = during_combat
        self.when_drill_enters_play = enters_play
        self.attaches_own_main_personality = _explicit_or(
            self.attaches_own_main_personality, metadata.detect_attaches_own_main_personality, text
        )
        self.attaches_opponent_main_personality = _explicit_or(
            self.attaches_opponent_main_personality, metadata.detect_attaches_opponent_main_personality, text
        )
        return self

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _explicit_or(value: Optional[bool], detector, text: str) -> bool:
    if isinstance(value, bool):
        return value
    return detector(text)
