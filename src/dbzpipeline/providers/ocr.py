"""OCR engines: local Tesseract, an Ollama vision model, or both merged."""
from __future__ import annotations

import base64
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytesseract
import requests
from PIL import Image

from ..config import env_int, env_str, ocr_engine_from_env
from ..models import OcrResult

LOGGER = logging.getLogger(__name__)

TESSERACT_ENGINE = "tesseract"
OLLAMA_ENGINE = "ollama-glm-ocr"
HYBRID_ENGINE = "hybrid-ocr"

TESSERACT_CONFIG = "--psm 6 --dpi 300"
TESSERACT_TIMEOUT_SECONDS = 45

DEFAULT_OLLAMA_ENDPOINT = "http://127.0.0.1:11434"
DEFAULT_OLLAMA_MODEL = "glm-ocr"
DEFAULT_OLLAMA_PROMPT = (
    "Extract all readable text from this Dragon Ball Z TCG card image. "
    "Return plain text only, preserving line breaks."
)
DEFAULT_OLLAMA_TIMEOUT_MS = 300_000
DEFAULT_OLLAMA_ATTEMPTS = 3
DEFAULT_OLLAMA_RETRY_DELAY_MS = 3_000
DEFAULT_OLLAMA_KEEP_ALIVE = "10m"
RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}


class RetryableOcrError(RuntimeError):
    """Transient Ollama failure worth another attempt."""


def _split_lines(text: str) -> List[str]:
    return [line.strip() for line in re.split(r"\r?\n", text) if line.strip()]


def merge_ocr_texts(primary: str, secondary: str) -> str:
    """Lines of both texts, primary first, duplicates dropped ignoring case and spacing."""

    seen = set()
    lines: List[str] = []
    for line in [*_split_lines(primary), *_split_lines(secondary)]:
        key = re.sub(r"\s+", " ", line.lower()).strip()
        if key in seen:
            continue
        seen.add(key)
        lines.append(line)
    return "\n".join(lines)


def run_tesseract(image_path: Path) -> OcrResult:
    try:
        with Image.open(image_path) as img:
            text = pytesseract.image_to_string(img, config=TESSERACT_CONFIG, timeout=TESSERACT_TIMEOUT_SECONDS)
    except (pytesseract.TesseractError, RuntimeError, OSError) as exc:
        LOGGER.warning("Tesseract failed for %s: %s", image_path, exc)
        return OcrResult(text="", engine=TESSERACT_ENGINE, warnings=[f"OCR failed for {image_path}: {exc}"])
    return OcrResult(text=text.strip(), engine=TESSERACT_ENGINE)


def _post_ollama(endpoint: str, payload: Dict[str, object], timeout: float) -> str:
    try:
        response = requests.post(f"{endpoint}/api/generate", json=payload, timeout=timeout)
    except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
        raise RetryableOcrError(str(exc)) from exc
    if response.status_code in RETRYABLE_HTTP_STATUS:
        raise RetryableOcrError(f"HTTP {response.status_code} {response.reason}")
    if not response.ok:
        raise RuntimeError(f"HTTP {response.status_code} {response.reason}")
    body = response.json()
    error = body.get("error")
    if isinstance(error, str) and error.strip():
        raise RuntimeError(error.strip())
    text = body.get("response")
    return text.strip() if isinstance(text, str) else ""


def run_ollama(image_path: Path) -> OcrResult:
    """Ask an Ollama vision model for the card text, retrying transient failures."""

    endpoint = env_str("DBZ_OCR_OLLAMA_ENDPOINT", DEFAULT_OLLAMA_ENDPOINT).rstrip("/")
    model = env_str("DBZ_OCR_OLLAMA_MODEL", DEFAULT_OLLAMA_MODEL)
    prompt = env_str("DBZ_OCR_OLLAMA_PROMPT", DEFAULT_OLLAMA_PROMPT)
    timeout_ms = env_int("DBZ_OCR_OLLAMA_TIMEOUT_MS", DEFAULT_OLLAMA_TIMEOUT_MS, minimum=1)
    attempts = env_int("DBZ_OCR_OLLAMA_ATTEMPTS", DEFAULT_OLLAMA_ATTEMPTS, minimum=1)
    retry_delay_ms = env_int("DBZ_OCR_OLLAMA_RETRY_DELAY_MS", DEFAULT_OLLAMA_RETRY_DELAY_MS, minimum=1)
    keep_alive = env_str("DBZ_OCR_OLLAMA_KEEP_ALIVE", DEFAULT_OLLAMA_KEEP_ALIVE)
    where = f"model={model}, endpoint={endpoint}"

    try:
        image_b64 = base64.b64encode(image_path.read_bytes()).decode("utf-8")
    except OSError as exc:
        return OcrResult(text="", engine=OLLAMA_ENGINE, warnings=[f"Ollama OCR failed for {image_path} ({where}): {exc}"])

    payload: Dict[str, object] = {"model": model, "prompt": prompt, "stream": False, "images": [image_b64]}
    if keep_alive:
        payload["keep_alive"] = keep_alive

    warnings: List[str] = []
    for attempt in range(1, attempts + 1):
        started = time.monotonic()
        try:
            text = _post_ollama(endpoint, payload, timeout_ms / 1000)
        except (requests.exceptions.RequestException, RuntimeError, ValueError) as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            warnings.append(
                f"Ollama OCR attempt {attempt}/{attempts} failed for {image_path} "
                f"({where}, timeout={timeout_ms}ms, elapsed={elapsed_ms}ms): {exc}"
            )
            if isinstance(exc, RetryableOcrError) and attempt < attempts:
                time.sleep(retry_delay_ms * attempt / 1000)
                continue
            warnings.append(f"Ollama OCR failed for {image_path} ({where}) after {attempt} attempt(s).")
            return OcrResult(text="", engine=OLLAMA_ENGINE, warnings=warnings)

        if not text:
            warnings.append(
                f"Ollama OCR attempt {attempt}/{attempts} returned empty text for {image_path} "
                f"(model={model}, timeout={timeout_ms}ms)."
            )
            if attempt < attempts:
                time.sleep(retry_delay_ms * attempt / 1000)
                continue
            return OcrResult(text="", engine=OLLAMA_ENGINE, warnings=warnings)

        if attempt > 1:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            warnings.insert(0, f"Ollama OCR succeeded on retry {attempt}/{attempts} ({elapsed_ms}ms).")
        return OcrResult(text=text, engine=OLLAMA_ENGINE, warnings=warnings)

    return OcrResult(text="", engine=OLLAMA_ENGINE, warnings=[f"Ollama OCR failed for {image_path} ({where})"])


def run_hybrid(image_path: Path) -> OcrResult:
    """Run both engines concurrently and merge their lines, Ollama first."""

    with ThreadPoolExecutor(max_workers=2) as executor:
        ollama_future = executor.submit(ENGINES["ollama"], image_path)
        tesseract_future = executor.submit(ENGINES["tesseract"], image_path)
        primary = ollama_future.result()
        secondary = tesseract_future.result()

    merged = merge_ocr_texts(primary.text, secondary.text)
    warnings: List[str] = []
    if primary.text.strip():
        if secondary.warnings and not secondary.text.strip():
            warnings.append("Hybrid OCR note: secondary engine returned no text; primary output was used.")
    else:
        warnings.extend(primary.warnings)
        warnings.extend(secondary.warnings)
    if not merged.strip():
        warnings.insert(0, f"Hybrid OCR produced empty text for {image_path}.")
    return OcrResult(text=merged, engine=HYBRID_ENGINE, warnings=warnings)


def run_auto(image_path: Path) -> OcrResult:
    primary = ENGINES["ollama"](image_path)
    if primary.text.strip():
        return primary
    fallback = ENGINES["tesseract"](image_path)
    return OcrResult(
        text=fallback.text,
        engine=fallback.engine,
        warnings=[*primary.warnings, *fallback.warnings],
        blocks=fallback.blocks,
    )


ENGINES: Dict[str, Callable[[Path], OcrResult]] = {
    "tesseract": run_tesseract,
    "ollama": run_ollama,
    "hybrid": run_hybrid,
    "auto": run_auto,
}


def run_ocr(image_path: Path, engine: Optional[str] = None) -> OcrResult:
    """OCR one image with the configured engine. Failures come back as warnings."""

    selected = engine or ocr_engine_from_env()
    if selected == "none":
        return OcrResult(text="", engine="none", warnings=["OCR disabled via DBZ_OCR_ENGINE=none"])
    return ENGINES[selected](Path(image_path))
