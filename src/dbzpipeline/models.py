"""Data models used across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .schemas.card import Card
from .schemas.extraction import ExtractionCandidate
from .schemas.review import ReviewQueueItem
from .schemas.set_record import SetRecord


@dataclass(slots=True)
class DiscoveredImage:
    """One card image found under a set folder."""

    set_code: str
    set_name: str
    image_path: Path
    image_file_name: str

    def as_payload(self) -> Dict[str, str]:
        return {
            "setCode": self.set_code,
            "setName": self.set_name,
            "imagePath": str(self.image_path),
            "imageFileName": self.image_file_name,
        }


@dataclass(slots=True, frozen=True)
class FilenamePriors:
    """Best-effort guesses inferred from an image file name."""

    canonical_file_stem: str
    printed_number: str
    rarity_prefix: str
    name_guess: str
    personality_level: Optional[int]
    character_key: Optional[str]
    style_guess: Optional[str]
    card_type_guess: str

    def as_json(self) -> Dict[str, object]:
        return {
            "canonicalFileStem": self.canonical_file_stem,
            "printedNumber": self.printed_number,
            "rarityPrefix": self.rarity_prefix,
            "nameGuess": self.name_guess,
            "personalityLevel": self.personality_level,
            "characterKey": self.character_key,
            "styleGuess": self.style_guess,
            "cardTypeGuess": self.card_type_guess,
        }


@dataclass(slots=True)
class OcrBlock:
    text: str
    confidence: Optional[float] = None
    bbox: Optional[Dict[str, float]] = None

    def as_json(self) -> Dict[str, object]:
        return {"text": self.text, "confidence": self.confidence, "bbox": self.bbox}


@dataclass(slots=True)
class OcrResult:
    text: str
    engine: str
    warnings: List[str] = field(default_factory=list)
    blocks: List[OcrBlock] = field(default_factory=list)


@dataclass(slots=True)
class LlmParseResult:
    data: ExtractionCandidate
    llm_used: bool
    warnings: List[str] = field(default_factory=list)
    raw_json: Optional[str] = None


@dataclass(slots=True)
class NormalizedCandidate:
    """Card-shaped record plus the transient hints the validator consumes."""

    record: Dict[str, Any]
    field_confidence_hints: Dict[str, float] = field(default_factory=dict)
    llm_used: bool = False


@dataclass(slots=True)
class ValidationResult:
    accepted: bool
    card: Optional[Card] = None
    review_item: Optional[ReviewQueueItem] = None

    @property
    def card_id(self) -> str:
        if self.card is not None:
            return self.card.id
        assert self.review_item is not None
        return self.review_item.cardId

    @property
    def set_code(self) -> str:
        if self.card is not None:
            return self.card.setCode.value
        assert self.review_item is not None
        return self.review_item.setCode.value


@dataclass(slots=True)
class CardOutcome:
    """Where one image ended up, and which card it was cloned from if reused."""

    image: DiscoveredImage
    result: ValidationResult
    reused_from: Optional[str] = None

    @property
    def status(self) -> str:
        return "accepted" if self.result.accepted else "review"


@dataclass(slots=True)
class BuildDbResult:
    cards: List[Card]
    sets: List[SetRecord]
    review_queue: List[ReviewQueueItem]
    started_at: datetime
    finished_at: datetime
    reused: int = 0


@dataclass(slots=True)
class BackfillResult:
    cards: int
    candidates: int
    updated: List[str] = field(default_factory=list)

    def as_json(self) -> Dict[str, object]:
        return {"cards": self.cards, "candidates": self.candidates, "updated": self.updated}
