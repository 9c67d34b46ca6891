"""Structured card extraction through an external model.

Two backends are supported: ``cli`` pipes a prompt into an external structured
output command (``codex exec`` compatible), ``openai`` calls the Responses API.
Each attempt is checked against :class:`CardExtraction` and a quality pass;
when nothing usable comes back the heuristic extractor fills in.
"""
from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from openai import APIStatusError, APITimeoutError, OpenAI, OpenAIError, RateLimitError
from pydantic import ValidationError

from ..config import LLM_BACKENDS, env_int, env_str
from ..models import DiscoveredImage, FilenamePriors, LlmParseResult, OcrResult
from ..normalize.stages import normalize_stage_sequence
from ..rulebook.lexicon import RulebookLexicon
from ..schemas.extraction import CardExtraction, ExtractionCandidate, extraction_json_schema
from ..schemas.legacy import normalize_legacy_card_type
from .heuristics import build_heuristic_extraction
from .images import image_data_url

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMAND = "codex"
DEFAULT_TIMEOUT_MS = 120_000
MIN_TIMEOUT_MS = 10_000
DEFAULT_PARSE_ATTEMPTS = 2
KILL_GRACE_SECONDS = 2
PROMPT_SECTION_LIMIT = 8_000
DIAGNOSTIC_TAIL = 280
QUALITY_PENALTY_CAP = 0.35

DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
MAX_API_ATTEMPTS = 4
RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}

# First matching field wins when an issue mentions several.
PENALIZED_FIELDS = (
    "name",
    "cardType",
    "isMainPersonality",
    "affiliation",
    "isAlly",
    "cardTextRaw",
    "personalityLevel",
    "powerStageValues",
    "pur",
    "endurance",
    "mainPowerText",
)
FREELY_STYLED_TYPES = frozenset(
    {"physical_combat", "energy_combat", "mastery", "drill", "event", "setup", "unknown"}
)

_LEVEL_IN_TITLE = re.compile(r"\bLv\.\s*\d\b", re.I)
_ENDURANCE_WORD = re.compile(r"\bendurance\b", re.I)
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

EXTRACTION_RULES = (
    "Parse the attached Dragon Ball Z TCG image into one strict JSON object that matches the output schema.",
    "Output JSON only. No prose, no markdown.",
    "Extraction rules:\n"
    "- Use null for unknown scalar fields (except booleans), false for unknown booleans, and [] for unknown arrays.\n"
    "- Prefer visible card text and iconography over filename priors if they conflict.\n"
    "- name: primary card name; strip level markers like 'Lv. 1'.\n"
    "- title: epithet/subtitle only; null if absent.\n"
    "- characterKey: lowercase slug like 'nail' or 'goku'.\n"
    "- Named card rule: if the name is possessive (e.g., \"Nail's ...\"), include \"named\" in cardSubtypes "
    "and set characterKey to the owning personality (e.g., \"nail\").\n"
    "- cardType: use 'personality' for all personality cards (main personalities and allies).\n"
    "- affiliation: hero, villain, neutral, or unknown.\n"
    "- isMainPersonality: true only for a main personality; false otherwise.\n"
    "- isAlly: true if this is an Ally card/personality; otherwise false.\n"
    "- style: set only when a card style is explicit; for named non-personality cards, freestyle is common "
    "when no style banner/token is present.\n"
    "- For personality cards, read the right-side Power Stage ladder and return powerStageValues in exact "
    "descending order (including 0).\n"
    "- Use the rotated side banner near the stage ladder to classify affiliation/ally markers (HERO, VILLAIN, "
    "ALLY, HERO ALLY, VILLAIN ALLY, HERO/VILLAIN ALLY).\n"
    "- Extract endurance as an integer >= 0 when visible on the card; otherwise null.\n"
    "- For main personality cards, fill personalityLevel, pur, endurance, and mainPowerText when visible.\n"
    "- If isAlly is true, set isMainPersonality to false.\n"
    "- fieldConfidence values must be in [0,1] and reflect certainty per field.",
)


class MissingAPIKey(RuntimeError):
    """Raised when the OpenAI backend is selected without an API key."""


@dataclass(slots=True)
class ParseCardRequest:
    image: DiscoveredImage
    priors: FilenamePriors
    ocr: OcrResult
    lexicon: RulebookLexicon
    model: str = ""


@dataclass(slots=True)
class RunnerOutcome:
    """What one backend attempt produced."""

    exit_code: Optional[int] = 0
    response: str = ""
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: Optional[str] = None


Runner = Callable[[ParseCardRequest, str], RunnerOutcome]


@dataclass(slots=True)
class PromptContext:
    attempt: int = 1
    previous_issues: List[str] = field(default_factory=list)
    previous_response: Optional[str] = None


def llm_backend() -> str:
    backend = env_str("DBZ_LLM_BACKEND", "cli").lower()
    if backend not in LLM_BACKENDS:
        LOGGER.warning("Unknown DBZ_LLM_BACKEND=%r; using cli", backend)
        return "cli"
    return backend


def llm_timeout_ms() -> int:
    return env_int("DBZ_LLM_TIMEOUT_MS", DEFAULT_TIMEOUT_MS, minimum=MIN_TIMEOUT_MS)


def llm_parse_attempts() -> int:
    return env_int("DBZ_LLM_PARSE_ATTEMPTS", DEFAULT_PARSE_ATTEMPTS, minimum=1, maximum=4)


def build_prompt(request: ParseCardRequest, context: PromptContext) -> str:
    ocr_text = request.ocr.text[:PROMPT_SECTION_LIMIT]
    lexicon_summary = request.lexicon.model_dump_json(indent=2)[:PROMPT_SECTION_LIMIT]
    parts = [
        *EXTRACTION_RULES,
        f"Set context: {request.image.set_code} / {request.image.set_name}",
        f"Image path: {request.image.image_path}",
        f"Filename priors:\n{json.dumps(request.priors.as_json(), indent=2)}",
        f"OCR text:\n{ocr_text if ocr_text else '<empty>'}",
        f"Rulebook lexicon:\n{lexicon_summary}",
    ]
    if context.attempt > 1:
        issues = "\n".join(context.previous_issues) if context.previous_issues else "- unknown issue"
        parts.append(
            "\n\n".join(
                [
                    "Previous attempt had issues. Correct them in this response.",
                    f"Issues:\n{issues}",
                    f"Previous JSON:\n{context.previous_response or '<empty>'}",
                ]
            )
        )
    return "\n\n".join(parts)


def build_cli_args(command: str, schema_path: Path, image_path: Path, response_path: Path, model: str) -> List[str]:
    args = [
        command,
        "exec",
        "-",
        "--sandbox",
        "read-only",
        "--output-schema",
        str(schema_path),
        "--output-last-message",
        str(response_path),
        "--image",
        str(image_path),
    ]
    if model.strip():
        args.extend(["--model", model.strip()])
    return args


def run_cli(request: ParseCardRequest, prompt: str) -> RunnerOutcome:
    """Run the external extraction command once, terminating it on timeout."""

    command = env_str("DBZ_LLM_COMMAND", DEFAULT_COMMAND)
    timeout = llm_timeout_ms() / 1000
    with tempfile.TemporaryDirectory(prefix="dbz-llm-") as tmp:
        schema_path = Path(tmp) / "card-extraction.schema.json"
        schema_path.write_text(json.dumps(extraction_json_schema(), indent=2), encoding="utf-8")
        response_path = Path(tmp) / "response.json"
        args = build_cli_args(command, schema_path, request.image.image_path, response_path, request.model)
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            return RunnerOutcome(exit_code=None, error=str(exc))
        try:
            stdout, stderr = process.communicate(prompt, timeout=timeout)
        except subprocess.TimeoutExpired:
            process.terminate()
            try:
                stdout, stderr = process.communicate(timeout=KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                process.kill()
                stdout, stderr = process.communicate()
            return RunnerOutcome(exit_code=process.returncode, stdout=stdout, stderr=stderr, timed_out=True)
        response = response_path.read_text(encoding="utf-8") if response_path.exists() else ""
        return RunnerOutcome(exit_code=process.returncode, response=response, stdout=stdout, stderr=stderr)


def run_openai(request: ParseCardRequest, prompt: str) -> RunnerOutcome:
    """Send one extraction request through the OpenAI Responses API."""

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise MissingAPIKey("OPENAI_API_KEY is not set. Populate it in your .env or environment.")

    client = OpenAI(api_key=api_key)
    model_name = request.model.strip() or DEFAULT_OPENAI_MODEL
    timeout = llm_timeout_ms() / 1000

    def _send_request() -> Any:
        return client.responses.create(
            model=model_name,
            input=[
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": image_data_url(request.image.image_path)},
                    ],
                }
            ],
            text={
                "format": {
                    "type": "json_schema",
                    "name": "card_extraction",
                    "schema": extraction_json_schema(),
                    "strict": True,
                }
            },
            timeout=timeout,
        )

    delay = 1.0
    attempts = 0
    last_exc: Exception | None = None
    response = None
    while attempts < MAX_API_ATTEMPTS:
        attempts += 1
        try:
            response = _send_request()
            break
        except (RateLimitError, APITimeoutError) as exc:
            last_exc = exc
        except APIStatusError as exc:
            last_exc = exc
            if exc.status_code not in RETRYABLE_STATUS:
                raise
        if attempts >= MAX_API_ATTEMPTS:
            if isinstance(last_exc, APITimeoutError):
                return RunnerOutcome(exit_code=None, timed_out=True)
            assert last_exc is not None
            raise last_exc
        LOGGER.debug("Retrying OpenAI request for %s in %.1fs", request.image.image_file_name, delay)
        time.sleep(delay)
        delay = min(delay * 2, 8.0)

    if response is None:
        raise RuntimeError("Failed to receive response from the OpenAI Responses API")
    return RunnerOutcome(exit_code=0, response=response.output_text or "")


RUNNERS: Dict[str, Runner] = {"cli": run_cli, "openai": run_openai}


def _tail(value: str, limit: int = DIAGNOSTIC_TAIL) -> str:
    compact = re.sub(r"\s+", " ", value).strip()
    return compact if len(compact) <= limit else f"...{compact[-limit:]}"


def format_command_diagnostics(outcome: RunnerOutcome) -> str:
    details = [f"exit={'null' if outcome.exit_code is None else outcome.exit_code}"]
    if _tail(outcome.stderr):
        details.append(f"stderr={_tail(outcome.stderr)}")
    if _tail(outcome.stdout):
        details.append(f"stdout={_tail(outcome.stdout)}")
    return " ".join(details)


def try_parse_json_object(value: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object, falling back to the outermost ``{...}`` block."""

    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        block = _JSON_BLOCK.search(trimmed)
        if not block:
            return None
        try:
            parsed = json.loads(block.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def format_validation_issues(exc: ValidationError, limit: int = 5) -> List[str]:
    issues = []
    for error in exc.errors()[:limit]:
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        issues.append(f"{location}: {error['msg']}")
    return issues


def is_style_likely(style: Optional[str], card_type: str, text: str, name: str, title: str) -> bool:
    if not style or card_type in FREELY_STYLED_TYPES:
        return True
    combined = f"{name} {title} {text}".lower()
    return f"{style} style" in combined or f"{style} mastery" in combined


def evaluate_extraction_quality(data: CardExtraction, priors: FilenamePriors) -> List[str]:
    """Human-readable issues with a schema-valid extraction; empty when it looks sound."""

    issues: List[str] = []
    name = (data.name or "").strip()
    title = (data.title or "").strip()
    text = (data.cardTextRaw or "").strip()
    card_type = data.cardType.value
    affiliation = data.affiliation.value if data.affiliation else "unknown"
    has_stats = bool(data.powerStageValues) or data.pur is not None or data.personalityLevel is not None
    is_main = data.isMainPersonality or (
        card_type == "personality"
        and not data.isAlly
        and (priors.personality_level is not None or data.personalityLevel is not None)
    )
    is_personality = card_type == "personality" or is_main or data.isAlly or has_stats
    stages = normalize_stage_sequence(data.powerStageValues)

    if len(name) < 2:
        issues.append("name appears missing or too short")
    if is_main and not title:
        issues.append("title missing for personality card")
    if card_type == "unknown":
        issues.append("cardType is unknown")
    if is_main and not data.isMainPersonality:
        issues.append("isMainPersonality missing for main personality card")
    if data.isAlly and data.isMainPersonality:
        issues.append("isMainPersonality should be false for ally cards")
    if is_personality and affiliation == "unknown":
        issues.append("affiliation is unknown for personality/ally card")
    if len(text) < 16:
        issues.append("cardTextRaw is too short")
    if title and _LEVEL_IN_TITLE.search(title):
        issues.append("title includes level marker")

    if is_personality:
        if not (len(stages) >= 4 and stages[-1] == 0):
            issues.append("powerStageValues missing or invalid for personality card")
        if is_main and data.personalityLevel is None:
            issues.append("personalityLevel missing for personality card")
        if data.pur is None:
            issues.append("pur missing for personality card")
        if data.endurance is None and _ENDURANCE_WORD.search(text):
            issues.append("endurance missing despite endurance text")
        if is_main and len((data.mainPowerText or "").strip()) < 8:
            issues.append("mainPowerText missing or too short for personality card")

    style = data.style.value if data.style else None
    if not is_style_likely(style, card_type, text, name, title):
        issues.append("style likely incorrect for card type")
    return issues


def apply_quality_penalties(data: CardExtraction, issues: List[str]) -> CardExtraction:
    """Cap the confidence of every field an issue points at."""

    if not issues:
        return data
    capped: Dict[str, float] = {}
    current = data.fieldConfidence.model_dump()
    for issue in issues:
        target = next((name for name in PENALIZED_FIELDS if name in issue), None)
        if target is not None:
            capped[target] = min(current[target], QUALITY_PENALTY_CAP)
    return data.model_copy(update={"fieldConfidence": data.fieldConfidence.model_copy(update=capped)})


def _fallback(request: ParseCardRequest, warnings: List[str], raw_json: Optional[str]) -> LlmParseResult:
    return LlmParseResult(
        data=build_heuristic_extraction(request.priors, request.ocr, request.lexicon),
        llm_used=False,
        warnings=warnings,
        raw_json=raw_json,
    )


def parse_card(request: ParseCardRequest, runner: Optional[Runner] = None) -> LlmParseResult:
    """Extract structured fields for one card, retrying and falling back to heuristics.

    Never raises for collaborator problems; every failure becomes a warning string.
    """

    warnings: List[str] = []
    if runner is None:
        backend = llm_backend()
        if backend == "none":
            warnings.append("LLM disabled via DBZ_LLM_BACKEND=none; used heuristic fallback.")
            return _fallback(request, warnings, None)
        runner = RUNNERS[backend]

    attempts = llm_parse_attempts()
    last_response: Optional[str] = None
    previous_issues: List[str] = []
    try:
        for attempt in range(1, attempts + 1):
            prompt = build_prompt(request, PromptContext(attempt, previous_issues, last_response))
            try:
                outcome = runner(request, prompt)
            except (MissingAPIKey, OpenAIError, OSError) as exc:
                outcome = RunnerOutcome(exit_code=None, error=str(exc))

            if outcome.error is not None:
                warnings.append(f"LLM invocation failed on attempt {attempt}/{attempts}. {outcome.error}")
                continue
            if outcome.timed_out:
                warnings.append(f"LLM timed out on attempt {attempt}/{attempts} after {llm_timeout_ms()}ms.")
                continue
            if outcome.exit_code != 0:
                warnings.append(
                    f"LLM returned non-zero exit on attempt {attempt}/{attempts}. "
                    + format_command_diagnostics(outcome)
                )
                continue

            last_response = outcome.response
            parsed = try_parse_json_object(outcome.response)
            if parsed is None:
                warnings.append(f"LLM response was not valid JSON on attempt {attempt}/{attempts}.")
                continue

            try:
                extraction = CardExtraction.model_validate(normalize_legacy_card_type(parsed))
            except ValidationError as exc:
                previous_issues = format_validation_issues(exc)
                warnings.append(
                    f"LLM JSON failed schema validation on attempt {attempt}/{attempts}. "
                    + " | ".join(previous_issues)
                )
                continue

            issues = evaluate_extraction_quality(extraction, request.priors)
            if issues and attempt < attempts:
                previous_issues = issues
                warnings.append(
                    f"LLM output quality was low on attempt {attempt}/{attempts}. " + " | ".join(issues)
                )
                continue
            if issues:
                warnings.append("LLM output quality warning. " + " | ".join(issues))

            tuned = apply_quality_penalties(extraction, issues)
            return LlmParseResult(
                data=ExtractionCandidate.model_validate(tuned.model_dump(mode="json")),
                llm_used=True,
                warnings=warnings,
                raw_json=outcome.response,
            )

        warnings.append("All LLM parse attempts failed or were low-quality; used heuristic fallback.")
        return _fallback(request, warnings, last_response)
    except Exception as exc:
        LOGGER.exception("LLM parsing failed for %s", request.image.image_path)
        warnings.append(f"LLM parsing failed unexpectedly. {exc}")
        warnings.append("Used heuristic fallback.")
        return _fallback(request, warnings, last_response)
