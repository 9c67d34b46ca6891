"""Clone known cards onto new prints instead of re-running OCR and the LLM.

Matching is by normalized name (and name + title) only. Two unrelated cards
that share a name, or two levels of the same personality, resolve to the same
key, so the first registered record wins.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from .models import DiscoveredImage, FilenamePriors
from .schemas.card import Card
from .schemas.review import ReviewQueueItem

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReprintReference:
    kind: str
    source_card_id: str
    source_set_code: str
    source_printed_number: str
    record: Union[Card, ReviewQueueItem]


@dataclass(slots=True)
class ReprintReuseState:
    accepted_by_name_key: Dict[str, ReprintReference] = field(default_factory=dict)
    review_by_name_key: Dict[str, ReprintReference] = field(default_factory=dict)


@dataclass(slots=True)
class ReprintReuseResult:
    kind: str
    source_card_id: str
    matched_name_key: str
    card: Optional[Card] = None
    review_item: Optional[ReviewQueueItem] = None


def normalize_name_token(value: Optional[str]) -> str:
    if not value:
        return ""
    token = value.lower()
    token = re.sub(r"\blv\.?\s*\d+\b", " ", token)
    token = re.sub(r"['’`]", "", token)
    token = re.sub(r"[^a-z0-9]+", " ", token)
    return re.sub(r"\s+", " ", token).strip()


def build_name_keys(name: Optional[str], title: Optional[str]) -> List[str]:
    normalized_name = normalize_name_token(name)
    if not normalized_name:
        return []
    keys = [normalized_name]
    normalized_title = normalize_name_token(title)
    if normalized_title:
        keys.append(normalize_name_token(f"{normalized_name} {normalized_title}"))
        keys.append(normalize_name_token(f"{name or ''} {title or ''}"))
    return [key for index, key in enumerate(keys) if key and key not in keys[:index]]


def printed_number_from_card_id(card_id: str) -> Optional[str]:
    _, _, printed_number = card_id.partition("-")
    return printed_number or None


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def register_accepted_card(state: ReprintReuseState, card: Card) -> None:
    reference = ReprintReference(
        kind="accepted",
        source_card_id=card.id,
        source_set_code=card.setCode.value,
        source_printed_number=card.printedNumber,
        record=card,
    )
    for key in build_name_keys(card.name, card.title):
        state.accepted_by_name_key.setdefault(key, reference)


def register_review_item(state: ReprintReuseState, item: ReviewQueueItem) -> None:
    printed_number = printed_number_from_card_id(item.cardId)
    name = _string(item.candidateValues.get("name"))
    if not printed_number or not name:
        return
    reference = ReprintReference(
        kind="review",
        source_card_id=item.cardId,
        source_set_code=item.setCode.value,
        source_printed_number=printed_number,
        record=item,
    )
    for key in build_name_keys(name, _string(item.candidateValues.get("title"))):
        state.review_by_name_key.setdefault(key, reference)


def create_reprint_reuse_state(
    cards: Iterable[Card], review_queue: Iterable[ReviewQueueItem]
) -> ReprintReuseState:
    state = ReprintReuseState()
    for card in cards:
        register_accepted_card(state, card)
    for item in review_queue:
        register_review_item(state, item)
    return state


def _is_distinct_print(reference: ReprintReference, image: DiscoveredImage, priors: FilenamePriors) -> bool:
    return reference.source_set_code != image.set_code or reference.source_printed_number != priors.printed_number


def clone_card_for_reprint(card: Card, image: DiscoveredImage, priors: FilenamePriors) -> Card:
    """Rewrite identity fields and re-validate; gameplay fields stay untouched."""

    payload = card.to_json()
    payload.update(
        id=f"{image.set_code}-{priors.printed_number}",
        setCode=image.set_code,
        setName=image.set_name,
        printedNumber=priors.printed_number,
        rarityPrefix=priors.rarity_prefix,
        personalityFamilyId=f"{image.set_code}-{card.characterKey}" if card.characterKey else None,
    )
    payload["source"] = {
        **payload["source"],
        "imagePath": str(image.image_path),
        "imageFileName": image.image_file_name,
    }
    return Card.model_validate(payload)


def clone_review_item_for_reprint(
    item: ReviewQueueItem, image: DiscoveredImage, priors: FilenamePriors
) -> ReviewQueueItem:
    card_id = f"{image.set_code}-{priors.printed_number}"
    values = dict(item.candidateValues)
    values.update(
        id=card_id,
        setCode=image.set_code,
        setName=image.set_name,
        printedNumber=priors.printed_number,
        rarityPrefix=priors.rarity_prefix,
    )
    source = values.get("source") if isinstance(values.get("source"), dict) else {}
    values["source"] = {**source, "imagePath": str(image.image_path), "imageFileName": image.image_file_name}
    character_key = _string(values.get("characterKey"))
    if character_key:
        values["personalityFamilyId"] = f"{image.set_code}-{character_key}"

    payload = item.to_json()
    payload.update(
        cardId=card_id,
        setCode=image.set_code,
        imagePath=str(image.image_path),
        candidateValues=values,
        createdAt=datetime.now(timezone.utc).isoformat(),
    )
    return ReviewQueueItem.model_validate(payload)


def try_reuse_reprint(
    state: ReprintReuseState, image: DiscoveredImage, priors: FilenamePriors
) -> Optional[ReprintReuseResult]:
    """Clone an accepted card (preferred) or review item sharing the image's name."""

    for key in build_name_keys(priors.name_guess, None):
        accepted = state.accepted_by_name_key.get(key)
        if accepted is not None and _is_distinct_print(accepted, image, priors):
            LOGGER.debug("Reusing %s for %s via %r", accepted.source_card_id, image.image_file_name, key)
            return ReprintReuseResult(
                kind="accepted",
                source_card_id=accepted.source_card_id,
                matched_name_key=key,
                card=clone_card_for_reprint(accepted.record, image, priors),
            )
        review = state.review_by_name_key.get(key)
        if review is not None and _is_distinct_print(review, image, priors):
            return ReprintReuseResult(
                kind="review",
                source_card_id=review.source_card_id,
                matched_name_key=key,
                review_item=clone_review_item_for_reprint(review.record, image, priors),
            )
    return None
