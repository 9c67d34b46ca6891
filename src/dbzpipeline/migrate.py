"""Offline rewrites of the persisted outputs; no OCR or LLM calls."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

from pydantic import ValidationError

from .schemas.card import Card
from .schemas.enums import CARD_TYPE_VALUES
from .schemas.legacy import card_type_token, normalize_legacy_card_type
from .schemas.metadata import as_non_negative_int
from .store import RETIRED_FIELDS, StoreError, read_json_array, strip_retired_fields
from .utils.fs import write_json

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MetadataMigrationReport:
    cards: int
    changed: int
    dry_run: bool
    path: Path

    def as_json(self) -> Dict[str, object]:
        return {"cards": self.cards, "changed": self.changed, "dryRun": self.dry_run, "path": str(self.path)}


@dataclass(slots=True)
class PersonalityMigrationReport:
    cards: int
    cards_changed: int
    review_items: int
    review_changed: int
    wiped: bool = False

    def as_json(self) -> Dict[str, object]:
        return {
            "cards": self.cards,
            "changed": self.cards_changed,
            "reviewItems": self.review_items,
            "candidateChanges": self.review_changed,
            "wiped": self.wiped,
        }


def _stable(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def migrate_metadata(cards_path: Path, *, dry_run: bool = False) -> MetadataMigrationReport:
    """Re-derive every card's metadata fields through the ``Card`` schema."""

    cards_path = Path(cards_path)
    if not cards_path.exists():
        raise StoreError(f"Cards file not found: {cards_path}")
    migrated: List[Dict[str, Any]] = []
    changed = 0
    for index, entry in enumerate(read_json_array(cards_path)):
        sanitized = strip_retired_fields(entry)
        try:
            card = Card.model_validate(sanitized)
        except ValidationError as exc:
            raise StoreError(f"Card parse failed at index {index} of {cards_path}: {exc}") from exc
        payload = card.to_json()
        migrated.append(payload)
        if _stable(sanitized) != _stable(payload):
            changed += 1

    if not dry_run:
        write_json(cards_path, migrated)
    LOGGER.info("Metadata migration: cards=%d changed=%d dry_run=%s", len(migrated), changed, dry_run)
    return MetadataMigrationReport(cards=len(migrated), changed=changed, dry_run=dry_run, path=cards_path)


def _drop_retired_scores(container: Any) -> Tuple[Any, bool]:
    if not isinstance(container, dict) or not any(name in container for name in RETIRED_FIELDS):
        return container, False
    return {key: value for key, value in container.items() if key not in RETIRED_FIELDS}, True


def normalize_card_like_record(record: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Legacy card type, ally/main flags, retired fields and endurance cleanup."""

    result = normalize_legacy_card_type(strip_retired_fields(record))
    fields, dropped = _drop_retired_scores(result.get("fieldConfidence"))
    if dropped:
        result["fieldConfidence"] = fields

    card_type = card_type_token(result.get("cardType"))
    if card_type not in CARD_TYPE_VALUES:
        card_type = None
    is_ally = result.get("isAlly") if isinstance(result.get("isAlly"), bool) else False
    is_main = result.get("isMainPersonality")
    if not isinstance(is_main, bool):
        is_main = (
            card_type == "personality"
            and not is_ally
            and as_non_negative_int(result.get("personalityLevel")) is not None
        )
    if is_ally:
        is_main = False
    result["cardType"] = card_type or ("personality" if is_ally or is_main else "unknown")
    result["isAlly"] = is_ally
    result["isMainPersonality"] = is_main
    if "endurance" in result:
        result["endurance"] = as_non_negative_int(result.get("endurance"))
    return result, _stable(result) != _stable(record)


def _migrate_review_item(item: Any) -> Tuple[Any, bool]:
    if not isinstance(item, dict):
        return item, False
    result = dict(item)
    changed = False
    candidate = result.get("candidateValues")
    if isinstance(candidate, dict):
        result["candidateValues"], changed = normalize_card_like_record(candidate)
    snapshot = result.get("confidenceSnapshot")
    if isinstance(snapshot, dict):
        fields, dropped = _drop_retired_scores(snapshot.get("fields"))
        if dropped:
            result["confidenceSnapshot"] = {**snapshot, "fields": fields}
            changed = True
    return result, changed


def migrate_personality(
    cards_path: Path, review_path: Path, *, wipe: bool = False
) -> PersonalityMigrationReport:
    """Rewrite ``main_personality``/``ally`` card types in both outputs, or empty them."""

    cards_path = Path(cards_path)
    review_path = Path(review_path)
    if wipe:
        write_json(cards_path, [])
        write_json(review_path, [])
        LOGGER.info("Wiped %s and %s", cards_path, review_path)
        return PersonalityMigrationReport(cards=0, cards_changed=0, review_items=0, review_changed=0, wiped=True)

    cards: List[Any] = []
    cards_changed = 0
    for entry in read_json_array(cards_path):
        if isinstance(entry, dict):
            entry, changed = normalize_card_like_record(entry)
            cards_changed += int(changed)
        cards.append(entry)

    review: List[Any] = []
    review_changed = 0
    for entry in read_json_array(review_path):
        entry, changed = _migrate_review_item(entry)
        review_changed += int(changed)
        review.append(entry)

    write_json(cards_path, cards)
    write_json(review_path, review)
    return PersonalityMigrationReport(
        cards=len(cards),
        cards_changed=cards_changed,
        review_items=len(review),
        review_changed=review_changed,
    )
