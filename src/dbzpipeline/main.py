"""Command-line entrypoint for the card database pipeline."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

import typer

from .card_pipeline import ALL_SET_CODES, backfill_cards, build_database, rescan_card
from .config import RULEBOOK_ICON_PAGE_NUMBER, PipelineConfig, get_set_definition, load_env
from .migrate import migrate_metadata, migrate_personality
from .models import BuildDbResult
from .rulebook.lexicon import RulebookError, extract_rulebook_artifacts
from .store import StoreError

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help="Build the card database from card images.")

T = TypeVar("T")

ImagesRootOption = typer.Option(None, "--images-root", help="Directory with one image folder per set.")
CardsOption = typer.Option(None, "--cards", help="Accepted cards JSON array.")
ReviewOption = typer.Option(None, "--review", help="Review queue JSON array.")
SetsOption = typer.Option(None, "--sets", help="Per-set statistics JSON array.")
MinConfidenceOption = typer.Option(0.9, "--min-confidence", min=0.0, max=1.0, help="Review threshold.")
ConcurrencyOption = typer.Option(1, "--concurrency", min=1, help="Cards processed in parallel.")
MaxCardsOption = typer.Option(None, "--max-cards", min=1, help="Optional cap per set for test runs.")
ModelOption = typer.Option(None, "--model", help="LLM model name; defaults to DBZ_LLM_MODEL.")
RefreshLexiconOption = typer.Option(False, "--refresh-lexicon", help="Rebuild the rulebook lexicon first.")
NoReuseOption = typer.Option(False, "--no-reprint-reuse", help="Disable name-based reprint reuse.")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level.")


def _configure(verbose: bool) -> None:
    load_env(Path.cwd())
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


def _read_config(**overrides: object) -> PipelineConfig:
    kwargs = {key: value for key, value in overrides.items() if value is not None}
    return PipelineConfig(**kwargs)


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except (StoreError, RulebookError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _set_code(value: str) -> str:
    try:
        return get_set_definition(value).code
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--set") from exc


def _echo_build(result: BuildDbResult) -> None:
    typer.echo(f"Run started: {result.started_at.isoformat()}")
    typer.echo(f"Run finished: {result.finished_at.isoformat()}")
    typer.echo(f"Accepted cards: {len(result.cards)}")
    typer.echo(f"Review queue: {len(result.review_queue)}")
    typer.echo(f"Reused reprints: {result.reused}")
    for record in result.sets:
        meta = record.parseRunMetadata
        typer.echo(
            f"Set {record.setCode.value} ({record.setName}) accepted={meta.acceptedCards} review={meta.reviewCards}"
        )


def _build(
    set_codes: List[str],
    images_root: Optional[Path],
    cards: Optional[Path],
    review: Optional[Path],
    sets: Optional[Path],
    min_confidence: float,
    concurrency: int,
    max_cards: Optional[int],
    model: Optional[str],
    refresh_lexicon: bool,
    no_reprint_reuse: bool,
) -> None:
    def run() -> BuildDbResult:
        config = _read_config(
            images_root=images_root,
            cards_path=cards,
            review_path=review,
            sets_path=sets,
            min_confidence=min_confidence,
            concurrency=concurrency,
            max_cards=max_cards,
            model=model,
            refresh_lexicon=refresh_lexicon,
            reuse_reprints=not no_reprint_reuse,
        )
        LOGGER.info(
            "Starting parse for sets %s (concurrency=%d, min_confidence=%s, reprint reuse %s)",
            ", ".join(set_codes),
            config.concurrency,
            config.min_confidence,
            "enabled" if config.reuse_reprints else "disabled",
        )
        return build_database(config, set_codes)

    _echo_build(_guard(run))


@app.command("build-set")
def build_set(
    set_code: str = typer.Option(..., "--set", help="AWA | EVO | HNV | MOV | PER | PRE | VEN"),
    images_root: Optional[Path] = ImagesRootOption,
    cards: Optional[Path] = CardsOption,
    review: Optional[Path] = ReviewOption,
    sets: Optional[Path] = SetsOption,
    min_confidence: float = MinConfidenceOption,
    concurrency: int = ConcurrencyOption,
    max_cards: Optional[int] = MaxCardsOption,
    model: Optional[str] = ModelOption,
    refresh_lexicon: bool = RefreshLexiconOption,
    no_reprint_reuse: bool = NoReuseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Parse one set."""

    code = _set_code(set_code)
    _configure(verbose)
    _build(
        [code], images_root, cards, review, sets, min_confidence, concurrency,
        max_cards, model, refresh_lexicon, no_reprint_reuse,
    )


@app.command("build-all")
def build_all(
    images_root: Optional[Path] = ImagesRootOption,
    cards: Optional[Path] = CardsOption,
    review: Optional[Path] = ReviewOption,
    sets: Optional[Path] = SetsOption,
    min_confidence: float = MinConfidenceOption,
    concurrency: int = ConcurrencyOption,
    max_cards: Optional[int] = MaxCardsOption,
    model: Optional[str] = ModelOption,
    refresh_lexicon: bool = RefreshLexiconOption,
    no_reprint_reuse: bool = NoReuseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Parse every known set."""

    _configure(verbose)
    _build(
        list(ALL_SET_CODES), images_root, cards, review, sets, min_confidence, concurrency,
        max_cards, model, refresh_lexicon, no_reprint_reuse,
    )


@app.command("rescan")
def rescan(
    image: Path = typer.Option(..., "--image", help="Card image to re-process."),
    set_code: Optional[str] = typer.Option(None, "--set", help="Set code; inferred from the image folder if omitted."),
    cards: Optional[Path] = CardsOption,
    review: Optional[Path] = ReviewOption,
    sets: Optional[Path] = SetsOption,
    min_confidence: float = MinConfidenceOption,
    model: Optional[str] = ModelOption,
    no_reprint_reuse: bool = NoReuseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Re-run one image and upsert the outcome."""

    code = _set_code(set_code) if set_code else None
    _configure(verbose)
    config = _guard(
        lambda: _read_config(
            cards_path=cards,
            review_path=review,
            sets_path=sets,
            min_confidence=min_confidence,
            model=model,
            reuse_reprints=not no_reprint_reuse,
        )
    )
    outcome = _guard(lambda: rescan_card(config, image, code))
    typer.echo(f"[rescan] status={outcome['status']} cardId={outcome['cardId']} set={outcome['setCode']}")


@app.command("backfill")
def backfill(
    cards: Optional[Path] = CardsOption,
    model: Optional[str] = ModelOption,
    max_cards: Optional[int] = typer.Option(None, "--max-cards", min=1, help="Cap on cards re-extracted."),
    concurrency: int = ConcurrencyOption,
    verbose: bool = VerboseOption,
) -> None:
    """Re-extract personality cards missing a ladder, affiliation or title."""

    _configure(verbose)
    config = _guard(
        lambda: _read_config(cards_path=cards, model=model, max_cards=max_cards, concurrency=concurrency)
    )
    result = _guard(lambda: backfill_cards(config))
    typer.echo(json.dumps(result.as_json(), indent=2))


@app.command("migrate-metadata")
def migrate_metadata_command(
    cards: Optional[Path] = CardsOption,
    dry_run: bool = typer.Option(False, "--dry-run", help="Report changes without writing."),
    verbose: bool = VerboseOption,
) -> None:
    """Re-derive metadata fields on every accepted card."""

    _configure(verbose)
    config = _read_config(cards_path=cards)
    report = _guard(lambda: migrate_metadata(config.cards_path, dry_run=dry_run))
    typer.echo(json.dumps(report.as_json(), indent=2))


@app.command("migrate-personality")
def migrate_personality_command(
    cards: Optional[Path] = CardsOption,
    review: Optional[Path] = ReviewOption,
    wipe: bool = typer.Option(False, "--wipe", help="Empty both files instead of migrating."),
    verbose: bool = VerboseOption,
) -> None:
    """Rewrite legacy main_personality/ally card types."""

    _configure(verbose)
    config = _read_config(cards_path=cards, review_path=review)
    report = _guard(lambda: migrate_personality(config.cards_path, config.review_path, wipe=wipe))
    typer.echo(json.dumps(report.as_json(), indent=2))


@app.command("extract-rulebook")
def extract_rulebook(
    pdf: Optional[Path] = typer.Option(None, "--pdf", help="Rulebook PDF or text export."),
    out_text: Optional[Path] = typer.Option(None, "--out-text", help="Extracted text output."),
    out_lexicon: Optional[Path] = typer.Option(None, "--out-lexicon", help="Lexicon JSON output."),
    out_icons: Optional[Path] = typer.Option(None, "--out-icons", help="Icon reference JSON output."),
    icons_page: int = typer.Option(RULEBOOK_ICON_PAGE_NUMBER, "--icons-page", min=1, help="Page with the icon glossary."),
    verbose: bool = VerboseOption,
) -> None:
    """Extract text and lexicon from the rulebook."""

    _configure(verbose)
    config = _read_config(
        rulebook_pdf=pdf,
        rulebook_text=out_text,
        rulebook_lexicon=out_lexicon,
        rulebook_icons=out_icons,
    )
    lexicon = _guard(
        lambda: extract_rulebook_artifacts(
            config.rulebook_pdf,
            config.rulebook_text,
            config.rulebook_lexicon,
            config.rulebook_icons,
            icons_page,
        )
    )
    typer.echo(f"Rulebook text: {config.rulebook_text}")
    typer.echo(f"Rulebook lexicon: {config.rulebook_lexicon}")
    typer.echo(f"Rulebook icon reference: {config.rulebook_icons}")
    typer.echo(f"Card type terms: {len(lexicon.cardTypes)}")
    typer.echo(f"Keyword terms: {len(lexicon.keywords)}")


if __name__ == "__main__":
    app()
