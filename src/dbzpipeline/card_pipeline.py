"""Implementation of the end-to-end card database pipeline."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from . import store
from .config import PipelineConfig, SET_DEFINITIONS, get_set_definition
from .models import (
    BackfillResult,
    BuildDbResult,
    CardOutcome,
    DiscoveredImage,
    FilenamePriors,
    OcrResult,
    ValidationResult,
)
from .normalize.candidate import normalize_card_candidate
from .normalize.filename_priors import infer_filename_priors
from .normalize.stages import normalize_stage_sequence
from .providers.heuristics import extract_endurance
from .providers.llm import ParseCardRequest, parse_card
from .providers.ocr import run_ocr
from .reprints import (
    ReprintReuseState,
    create_reprint_reuse_state,
    register_accepted_card,
    register_review_item,
    try_reuse_reprint,
)
from .rulebook.lexicon import RulebookLexicon, load_rulebook_lexicon
from .schemas.card import Card
from .schemas.enums import CARD_TYPE_VALUES, CardAffiliation, CardType
from .schemas.extraction import ExtractionCandidate
from .schemas.legacy import card_type_token, normalize_legacy_card_type
from .schemas.metadata import as_non_negative_int
from .schemas.review import ReviewQueueItem
from .schemas.set_record import SetRecord
from .utils import log
from .validate import validate_candidate

LOGGER = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp"}
ALL_SET_CODES = tuple(definition.code for definition in SET_DEFINITIONS)


def discover_images(
    images_root: Path, set_codes: Sequence[str], max_cards: Optional[int] = None
) -> List[DiscoveredImage]:
    """Card images per set folder, ordered by set code then natural file name."""

    discovered: List[DiscoveredImage] = []
    for code in set_codes:
        definition = get_set_definition(code)
        folder = Path(images_root) / definition.folder_name
        if not folder.is_dir():
            LOGGER.warning("Image folder %s for set %s does not exist", folder, definition.code)
            continue
        files = sorted(
            (path for path in folder.iterdir() if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES),
            key=lambda path: store.natural_key(path.name),
        )
        if max_cards is not None:
            files = files[:max_cards]
        discovered.extend(
            DiscoveredImage(
                set_code=definition.code,
                set_name=definition.name,
                image_path=path,
                image_file_name=path.name,
            )
            for path in files
        )
    discovered.sort(key=lambda image: (image.set_code, store.natural_key(image.image_file_name)))
    LOGGER.info("Discovered %d card images under %s", len(discovered), images_root)
    return discovered


class CardProcessingPipeline:
    """Runs images through reuse-or-extract and keeps the reuse index current."""

    def __init__(
        self,
        config: PipelineConfig,
        lexicon: Optional[RulebookLexicon] = None,
        reuse_state: Optional[ReprintReuseState] = None,
    ) -> None:
        self.config = config
        self.reuse_state = reuse_state if config.reuse_reprints else None
        self._lexicon = lexicon
        self._lock = threading.Lock()

    @property
    def lexicon(self) -> RulebookLexicon:
        """Loaded on first extraction, so runs served entirely by reuse never touch it."""

        with self._lock:
            if self._lexicon is None:
                self._lexicon = load_rulebook_lexicon(self.config)
            return self._lexicon

    def extract(self, image: DiscoveredImage, priors: FilenamePriors) -> ValidationResult:
        """OCR, LLM parse, normalize and validate one image."""

        ocr = run_ocr(image.image_path)
        parsed = parse_card(
            ParseCardRequest(image=image, priors=priors, ocr=ocr, lexicon=self.lexicon, model=self.config.model)
        )
        candidate = normalize_card_candidate(
            image,
            priors,
            ocr,
            parsed.data,
            llm_used=parsed.llm_used,
            warnings=parsed.warnings,
            lexicon=self.lexicon,
            llm_raw_json=parsed.raw_json,
        )
        return validate_candidate(
            candidate,
            min_confidence=self.config.min_confidence,
            penalties=self.config.confidence_penalties,
        )

    def _try_reuse(self, image: DiscoveredImage, priors: FilenamePriors) -> Optional[CardOutcome]:
        if self.reuse_state is None:
            return None
        try:
            with self._lock:
                reuse = try_reuse_reprint(self.reuse_state, image, priors)
        except ValidationError as exc:
            LOGGER.warning("Reprint clone for %s failed validation; extracting instead: %s", image.image_file_name, exc)
            return None
        if reuse is None:
            return None
        result = ValidationResult(
            accepted=reuse.kind == "accepted",
            card=reuse.card,
            review_item=reuse.review_item,
        )
        LOGGER.info("Reused %s for %s (%s)", reuse.source_card_id, image.image_file_name, reuse.kind)
        return CardOutcome(image=image, result=result, reused_from=reuse.source_card_id)

    def _register(self, result: ValidationResult) -> None:
        if self.reuse_state is None:
            return
        with self._lock:
            if result.card is not None:
                register_accepted_card(self.reuse_state, result.card)
            elif result.review_item is not None:
                register_review_item(self.reuse_state, result.review_item)

    def process_image(self, image: DiscoveredImage) -> CardOutcome:
        priors = infer_filename_priors(image.image_file_name)
        outcome = self._try_reuse(image, priors)
        if outcome is None:
            outcome = CardOutcome(image=image, result=self.extract(image, priors))
            self._register(outcome.result)
        status = "reprint" if outcome.reused_from else outcome.status
        log.event(
            "card",
            outcome.result.card_id,
            status=status,
            set_code=image.set_code,
            image=image.image_file_name,
            reused_from=outcome.reused_from,
        )
        return outcome

    def process_images(self, images: Sequence[DiscoveredImage]) -> List[CardOutcome]:
        """Process on a bounded pool; results keep the input order."""

        outcomes: List[Optional[CardOutcome]] = [None] * len(images)
        workers = max(1, min(self.config.concurrency, len(images) or 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.process_image, image): index for index, image in enumerate(images)}
            for future, index in futures.items():
                outcomes[index] = future.result()
                LOGGER.info(
                    "[%d/%d] %s -> %s", index + 1, len(images), images[index].image_file_name, outcomes[index].status
                )
        return [outcome for outcome in outcomes if outcome is not None]


def merge_outcomes(
    cards: List[Card],
    review_queue: List[ReviewQueueItem],
    outcomes: Iterable[CardOutcome],
) -> tuple[List[Card], List[ReviewQueueItem]]:
    for outcome in outcomes:
        result = outcome.result
        if result.card is not None:
            cards = store.upsert_card(cards, result.card)
            review_queue = store.remove_superseded_review_items(review_queue, result.card)
        elif result.review_item is not None:
            review_queue = store.upsert_review_queue_item(review_queue, result.review_item)
    return cards, review_queue


def build_database(config: PipelineConfig, set_codes: Sequence[str]) -> BuildDbResult:
    """Process every image of ``set_codes`` and merge the results into the outputs."""

    started_at = datetime.now(timezone.utc)
    lexicon = load_rulebook_lexicon(config)
    cards = store.read_cards(config.cards_path)
    review_queue = store.read_review_queue(config.review_path)
    set_records = store.read_sets(config.sets_path)

    images = discover_images(config.images_root, set_codes, config.max_cards)
    state = create_reprint_reuse_state(cards, review_queue) if config.reuse_reprints else None
    pipeline = CardProcessingPipeline(config, lexicon, state)
    outcomes = pipeline.process_images(images)
    cards, review_queue = merge_outcomes(cards, review_queue, outcomes)

    finished_at = datetime.now(timezone.utc)
    processed_sets: List[SetRecord] = []
    for code in set_codes:
        record = store.compute_set_record(
            code,
            cards,
            review_queue,
            parse_model=store.parse_model_label(config.model),
            min_confidence=config.min_confidence,
            previous=store.find_set_record(set_records, code),
            started_at=started_at,
            finished_at=finished_at,
        )
        set_records = store.upsert_set_record(set_records, record)
        processed_sets.append(record)

    store.write_cards(config.cards_path, cards)
    store.write_review_queue(config.review_path, review_queue)
    store.write_sets(config.sets_path, set_records)

    reused = sum(1 for outcome in outcomes if outcome.reused_from)
    log.event(
        "build",
        None,
        sets=list(set_codes),
        images=len(images),
        accepted=sum(1 for outcome in outcomes if outcome.result.accepted),
        review=sum(1 for outcome in outcomes if not outcome.result.accepted),
        reused=reused,
    )
    return BuildDbResult(
        cards=cards,
        sets=processed_sets,
        review_queue=review_queue,
        started_at=started_at,
        finished_at=finished_at,
        reused=reused,
    )


def rescan_card(config: PipelineConfig, image_path: Path, set_code: Optional[str] = None) -> Dict[str, str]:
    """Re-run one image and upsert its outcome into the three output files."""

    path = Path(image_path).expanduser().resolve()
    if not path.is_file():
        raise store.StoreError(f"Image not found: {path}")
    code = set_code or store.infer_set_code_from_image_path(path)
    if code is None:
        raise ValueError(f"Could not infer set code from {path}; pass --set")
    definition = get_set_definition(code)
    image = DiscoveredImage(
        set_code=definition.code,
        set_name=definition.name,
        image_path=path,
        image_file_name=path.name,
    )

    cards = store.read_cards(config.cards_path)
    review_queue = store.read_review_queue(config.review_path)
    set_records = store.read_sets(config.sets_path)
    state = create_reprint_reuse_state(cards, review_queue) if config.reuse_reprints else None
    outcome = CardProcessingPipeline(config, reuse_state=state).process_image(image)

    cards, review_queue = merge_outcomes(cards, review_queue, [outcome])
    record = store.compute_set_record(
        definition.code,
        cards,
        review_queue,
        parse_model=store.parse_model_label(config.model, reused=outcome.reused_from is not None),
        min_confidence=config.min_confidence,
        previous=store.find_set_record(set_records, definition.code),
    )
    set_records = store.upsert_set_record(set_records, record)

    if outcome.result.accepted:
        store.write_cards(config.cards_path, cards)
    store.write_review_queue(config.review_path, review_queue)
    store.write_sets(config.sets_path, set_records)

    log.event(
        "rescan",
        outcome.result.card_id,
        status=outcome.status,
        set_code=definition.code,
        image=image.image_file_name,
        reused_from=outcome.reused_from,
    )
    return {
        "status": outcome.status,
        "cardId": outcome.result.card_id,
        "setCode": outcome.result.set_code,
        "imagePath": str(path),
    }


def needs_backfill(card: Card) -> bool:
    """Personality-like card with a broken ladder, no affiliation or a missing title."""

    personality_like = (
        card.cardType == CardType.PERSONALITY
        or card.isMainPersonality
        or card.isAlly
        or card.personalityLevel is not None
        or card.pur is not None
    )
    missing_ladder = len(card.powerStageValues) < 4 or 0 not in card.powerStageValues
    missing_affiliation = card.affiliation == CardAffiliation.UNKNOWN
    missing_title = card.isMainPersonality and not (card.title or "").strip()
    return personality_like and (missing_ladder or missing_affiliation or missing_title)


def _affiliation_from_tags(payload: Dict[str, Any]) -> str:
    lowered = [entry.lower() for entry in [*payload.get("tags", []), *payload.get("cardSubtypes", [])]]
    if any(entry == "hero" or "heroes-only" in entry or "heroic" in entry for entry in lowered):
        return "hero"
    if any(entry == "villain" or "villains-only" in entry or "villainous" in entry for entry in lowered):
        return "villain"
    return "unknown"


def merge_backfill(card: Card, extraction: ExtractionCandidate) -> Card:
    """Overlay the personality fields of a fresh extraction onto ``card``."""

    payload = card.to_json()
    llm = normalize_legacy_card_type(extraction.model_dump())

    card_type = card_type_token(llm.get("cardType"))
    if card_type in CARD_TYPE_VALUES:
        payload["cardType"] = card_type

    affiliation = (llm.get("affiliation") or "").strip().lower()
    if affiliation in ("hero", "villain", "neutral"):
        payload["affiliation"] = affiliation
    elif payload["affiliation"] == "unknown":
        payload["affiliation"] = _affiliation_from_tags(payload)

    if isinstance(llm.get("isAlly"), bool):
        payload["isAlly"] = llm["isAlly"]
    if isinstance(llm.get("isMainPersonality"), bool):
        payload["isMainPersonality"] = llm["isMainPersonality"]
    elif payload["cardType"] == "personality" and not payload["isAlly"] and payload["personalityLevel"] is not None:
        payload["isMainPersonality"] = True
    if payload["isAlly"]:
        payload["isMainPersonality"] = False
        payload["cardType"] = "personality"
    elif payload["isMainPersonality"]:
        payload["cardType"] = "personality"

    title = (llm.get("title") or "").strip()
    if payload["isMainPersonality"] and title:
        payload["title"] = title

    stages = normalize_stage_sequence(llm.get("powerStageValues") or [])
    if len(stages) >= 4 and 0 in stages:
        payload["powerStageValues"] = stages

    endurance = as_non_negative_int(llm.get("endurance"))
    if endurance is not None:
        payload["endurance"] = endurance
    elif payload["endurance"] is None:
        payload["endurance"] = extract_endurance(payload["cardTextRaw"])

    title = payload.get("title")
    if payload["isMainPersonality"] and title and title in payload["name"]:
        stripped = " ".join(payload["name"].replace(title, "", 1).split())
        if stripped:
            payload["name"] = stripped
    return Card.model_validate(payload)


def backfill_cards(config: PipelineConfig) -> BackfillResult:
    """Re-extract accepted cards that need it from their stored OCR text."""

    cards = store.read_cards(config.cards_path)
    candidates = [card for card in cards if needs_backfill(card)]
    if config.max_cards is not None:
        candidates = candidates[: config.max_cards]
    LOGGER.info("Backfill: cards=%d candidates=%d concurrency=%d", len(cards), len(candidates), config.concurrency)
    if not candidates:
        return BackfillResult(cards=len(cards), candidates=0, updated=[])
    lexicon = load_rulebook_lexicon(config)

    def refresh(card: Card) -> Optional[Card]:
        image = DiscoveredImage(
            set_code=card.setCode.value,
            set_name=card.setName,
            image_path=Path(card.source.imagePath),
            image_file_name=card.source.imageFileName,
        )
        ocr = OcrResult(text=card.raw.ocrText or "", engine="existing-json")
        parsed = parse_card(
            ParseCardRequest(
                image=image,
                priors=infer_filename_priors(image.image_file_name),
                ocr=ocr,
                lexicon=lexicon,
                model=config.model,
            )
        )
        try:
            updated = merge_backfill(card, parsed.data)
        except ValidationError as exc:
            LOGGER.warning("Backfill of %s produced an invalid card; keeping it: %s", card.id, exc)
            return None
        log.event("backfill", card.id, status="updated" if updated != card else "unchanged")
        return updated

    updates: Dict[str, Card] = {}
    with ThreadPoolExecutor(max_workers=max(1, min(config.concurrency, len(candidates)))) as executor:
        for index, (card, updated) in enumerate(zip(candidates, executor.map(refresh, candidates))):
            LOGGER.info("[backfill] %d/%d %s", index + 1, len(candidates), card.id)
            if updated is not None and updated != card:
                updates[card.id] = updated

    store.write_cards(config.cards_path, [updates.get(card.id, card) for card in cards])
    return BackfillResult(cards=len(cards), candidates=len(candidates), updated=list(updates))
