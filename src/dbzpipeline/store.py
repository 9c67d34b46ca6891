"""Whole-document JSON persistence for cards, review items and set stats."""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Any, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from .config import SETS_BY_CODE, get_set_definition
from .schemas.card import Card
from .schemas.review import ReviewQueueItem
from .schemas.set_record import ParseRunMetadata, SetRecord
from .utils.fs import write_json

LOGGER = logging.getLogger(__name__)

DEFAULT_PARSE_MODEL = "codex-default"
REPRINT_REUSE_SUFFIX = "+reprint-reuse"
RETIRED_FIELDS = ("powerStages",)


class StoreError(RuntimeError):
    """A persisted file is missing its array or holds an invalid record."""


def natural_key(value: str) -> List[Any]:
    """Case-insensitive sort key that orders embedded numbers numerically."""

    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", value)]


def normalize_path(value: str) -> str:
    return value.replace("\\", "/").lower()


def parse_model_label(model: str, *, reused: bool = False) -> str:
    label = model or DEFAULT_PARSE_MODEL
    return f"{label}{REPRINT_REUSE_SUFFIX}" if reused else label


def read_json_array(path: Path) -> List[Any]:
    """Read a JSON array; a missing file is an empty array."""

    path = Path(path)
    if not path.exists():
        return []
    try:
        value = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise StoreError(f"Could not read {path}: {exc}") from exc
    if not isinstance(value, list):
        raise StoreError(f"Expected array in {path}")
    return value


def _first_issue(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "<root> unknown error"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{location} {first.get('msg', 'unknown error')}"


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def strip_retired_fields(record: Any) -> Any:
    """Drop ``powerStages`` and its confidence entry from a card-shaped dict."""

    if not isinstance(record, dict):
        return record
    result = {key: value for key, value in record.items() if key not in RETIRED_FIELDS}
    confidence = result.get("confidence")
    if isinstance(confidence, dict) and isinstance(confidence.get("fields"), dict):
        fields = confidence["fields"]
        if any(name in fields for name in RETIRED_FIELDS):
            result["confidence"] = {
                **confidence,
                "fields": {key: value for key, value in fields.items() if key not in RETIRED_FIELDS},
            }
    return result


def sanitize_card_record(record: Any, index: int) -> Any:
    """Repair gaps older writers left in persisted cards before validation."""

    if not isinstance(record, dict):
        return record
    result = dict(record)
    source = result.get("source") if isinstance(result.get("source"), dict) else None

    if not _non_empty(result.get("cardTextRaw")):
        result["cardTextRaw"] = (
            _non_empty(result.get("mainPowerText"))
            or _non_empty(result.get("name"))
            or _non_empty((source or {}).get("imageFileName"))
            or _non_empty(result.get("id"))
            or f"recovered-card-text-{index}"
        )

    if source is not None:
        source = dict(source)
        image_path = _non_empty(source.get("imagePath"))
        if not _non_empty(source.get("imageFileName")) and image_path:
            source["imageFileName"] = PurePath(image_path.replace("\\", "/")).name
        result["source"] = source

    raw = result.get("raw")
    if isinstance(raw, dict):
        raw = dict(raw)
        if not isinstance(raw.get("warnings"), list):
            raw["warnings"] = []
        if not isinstance(raw.get("ocrBlocks"), list):
            raw["ocrBlocks"] = []
        if not isinstance(raw.get("ocrText"), str):
            raw["ocrText"] = ""
        result["raw"] = raw
    return result


def read_cards(path: Path) -> List[Card]:
    cards: List[Card] = []
    for index, entry in enumerate(read_json_array(path)):
        try:
            cards.append(Card.model_validate(sanitize_card_record(strip_retired_fields(entry), index)))
        except ValidationError as exc:
            raise StoreError(f"Invalid cards file ({path}) at index {index}: {_first_issue(exc)}") from exc
    return cards


def read_review_queue(path: Path) -> List[ReviewQueueItem]:
    items: List[ReviewQueueItem] = []
    for index, entry in enumerate(read_json_array(path)):
        try:
            items.append(ReviewQueueItem.model_validate(entry))
        except ValidationError as exc:
            raise StoreError(f"Invalid review queue file ({path}) at index {index}: {_first_issue(exc)}") from exc
    return items


def read_sets(path: Path) -> List[SetRecord]:
    records: List[SetRecord] = []
    for index, entry in enumerate(read_json_array(path)):
        try:
            records.append(SetRecord.model_validate(entry))
        except ValidationError as exc:
            raise StoreError(f"Invalid sets file ({path}) at index {index}: {_first_issue(exc)}") from exc
    return records


def write_cards(path: Path, cards: Iterable[Card]) -> None:
    write_json(path, [card.to_json() for card in cards])


def write_review_queue(path: Path, items: Iterable[ReviewQueueItem]) -> None:
    write_json(path, [item.to_json() for item in items])


def write_sets(path: Path, records: Iterable[SetRecord]) -> None:
    write_json(path, [record.to_json() for record in records])


def upsert_card(cards: Sequence[Card], card: Card) -> List[Card]:
    """Replace the card with the same id (or append) and keep id order."""

    merged = [entry for entry in cards if entry.id != card.id]
    merged.append(card)
    merged.sort(key=lambda entry: natural_key(entry.id))
    return merged


def upsert_review_queue_item(queue: Sequence[ReviewQueueItem], item: ReviewQueueItem) -> List[ReviewQueueItem]:
    """Replace the entry with the same ``(cardId, imagePath)`` pair."""

    image_key = normalize_path(item.imagePath)
    merged = [
        entry
        for entry in queue
        if not (entry.cardId == item.cardId and normalize_path(entry.imagePath) == image_key)
    ]
    merged.append(item)
    merged.sort(key=lambda entry: natural_key(entry.cardId))
    return merged


def remove_superseded_review_items(queue: Sequence[ReviewQueueItem], card: Card) -> List[ReviewQueueItem]:
    """Drop review entries for the accepted card's id or image."""

    image_key = normalize_path(card.source.imagePath)
    return [
        entry
        for entry in queue
        if entry.cardId != card.id and normalize_path(entry.imagePath) != image_key
    ]


def compute_set_record(
    set_code: str,
    cards: Sequence[Card],
    review_queue: Sequence[ReviewQueueItem],
    *,
    parse_model: str,
    min_confidence: float,
    previous: Optional[SetRecord] = None,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
) -> SetRecord:
    """Recount one set; expected count and source folders carry over from ``previous``."""

    definition = get_set_definition(set_code)
    now = datetime.now(timezone.utc)
    accepted = sum(1 for card in cards if card.setCode.value == definition.code)
    review = sum(1 for item in review_queue if item.setCode.value == definition.code)
    if started_at is None:
        started_at = previous.parseRunMetadata.startedAt if previous is not None else now
    return SetRecord(
        setCode=definition.code,
        setName=definition.name,
        cardCountExpected=previous.cardCountExpected if previous is not None else None,
        cardCountParsed=accepted,
        sourceFolders=list(previous.sourceFolders) if previous is not None else [definition.folder_name],
        parseRunMetadata=ParseRunMetadata(
            startedAt=started_at,
            finishedAt=finished_at or now,
            acceptedCards=accepted,
            reviewCards=review,
            parseModel=parse_model,
            minConfidence=min_confidence,
        ),
    )


def upsert_set_record(records: Sequence[SetRecord], record: SetRecord) -> List[SetRecord]:
    merged = [entry for entry in records if entry.setCode != record.setCode]
    merged.append(record)
    merged.sort(key=lambda entry: entry.setCode.value)
    return merged


def find_set_record(records: Sequence[SetRecord], set_code: str) -> Optional[SetRecord]:
    for record in records:
        if record.setCode.value == set_code:
            return record
    return None


def infer_set_code_from_image_path(image_path: Path | str) -> Optional[str]:
    """Set code whose folder name (or code) appears as a directory in the path."""

    parts = [part.lower() for part in PurePath(str(image_path).replace("\\", "/")).parts[:-1]]
    for code, definition in SETS_BY_CODE.items():
        if definition.folder_name.lower() in parts or code.lower() in parts:
            return code
    return None
