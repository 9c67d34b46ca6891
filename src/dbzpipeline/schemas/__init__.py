"""Pydantic schemas for persisted and intermediate card data."""

from .card import Card
from .enums import CardAffiliation, CardStyle, CardType, RarityPrefix, ReviewReason, SetCode
from .extraction import CardExtraction, ExtractionCandidate
from .legacy import normalize_legacy_card_type
from .review import ReviewQueueItem, create_review_queue_item
from .set_record import ParseRunMetadata, SetRecord

__all__ = [
    "Card",
    "CardAffiliation",
    "CardExtraction",
    "CardStyle",
    "CardType",
    "ExtractionCandidate",
    "ParseRunMetadata",
    "RarityPrefix",
    "ReviewQueueItem",
    "ReviewReason",
    "SetCode",
    "SetRecord",
    "create_review_queue_item",
    "normalize_legacy_card_type",
]
