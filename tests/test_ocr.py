from pathlib import Path

import pytesseract
import requests
from PIL import Image

from dbzpipeline.models import OcrResult
from dbzpipeline.providers import ocr


def _make_image(path: Path) -> Path:
    Image.new("RGB", (40, 60), color="white").save(path)
    return path


class _Response:
    def __init__(self, status_code=200, body=None, reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self.ok = status_code < 400
        self._body = body or {}

    def json(self):
        return self._body


def test_merge_drops_duplicate_lines():
    merged = ocr.merge_ocr_texts("Nail Protector\n3 PUR\n", "nail  protector\nHeroes only.\n3 pur")
    assert merged == "Nail Protector\n3 PUR\nHeroes only."


def test_disabled_engine_returns_warning(tmp_path):
    result = ocr.run_ocr(tmp_path / "missing.jpg")

    assert result.text == ""
    assert result.engine == "none"
    assert result.warnings == ["OCR disabled via DBZ_OCR_ENGINE=none"]


def test_hybrid_merges_both_engines(tmp_path, monkeypatch):
    monkeypatch.setitem(ocr.ENGINES, "ollama", lambda path: OcrResult(text="Nail Protector\nPUR 3", engine="ollama"))
    monkeypatch.setitem(
        ocr.ENGINES, "tesseract", lambda path: OcrResult(text="PUR 3\nHeroes only.", engine="tesseract")
    )

    result = ocr.run_ocr(tmp_path / "card.jpg", engine="hybrid")

    assert result.engine == "hybrid-ocr"
    assert result.text == "Nail Protector\nPUR 3\nHeroes only."
    assert result.warnings == []


def test_hybrid_reports_when_both_engines_fail(tmp_path, monkeypatch):
    monkeypatch.setitem(
        ocr.ENGINES, "ollama", lambda path: OcrResult(text="", engine="ollama", warnings=["Ollama OCR failed"])
    )
    monkeypatch.setitem(
        ocr.ENGINES, "tesseract", lambda path: OcrResult(text="", engine="tesseract", warnings=["OCR failed"])
    )

    result = ocr.run_ocr(tmp_path / "card.jpg", engine="hybrid")

    assert result.text == ""
    assert result.warnings[0].startswith("Hybrid OCR produced empty text")
    assert result.warnings[1:] == ["Ollama OCR failed", "OCR failed"]


def test_auto_falls_back_to_tesseract(tmp_path, monkeypatch):
    monkeypatch.setitem(
        ocr.ENGINES, "ollama", lambda path: OcrResult(text="", engine="ollama", warnings=["Ollama OCR failed"])
    )
    monkeypatch.setitem(ocr.ENGINES, "tesseract", lambda path: OcrResult(text="Goku", engine="tesseract"))

    result = ocr.run_ocr(tmp_path / "card.jpg", engine="auto")

    assert result.text == "Goku"
    assert result.engine == "tesseract"
    assert result.warnings == ["Ollama OCR failed"]


def test_tesseract_failure_becomes_warning(tmp_path, monkeypatch):
    image = _make_image(tmp_path / "card.png")

    def boom(*args, **kwargs):
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(ocr.pytesseract, "image_to_string", boom)

    result = ocr.run_tesseract(image)

    assert result.text == ""
    assert "OCR failed" in result.warnings[0]


def test_tesseract_text_is_stripped(tmp_path, monkeypatch):
    image = _make_image(tmp_path / "card.png")
    monkeypatch.setattr(ocr.pytesseract, "image_to_string", lambda img, **kwargs: "  Nail Protector \n")

    assert ocr.run_tesseract(image).text == "Nail Protector"


def test_ollama_retries_transient_errors(tmp_path, monkeypatch):
    image = _make_image(tmp_path / "card.png")
    responses = [_Response(503, reason="Service Unavailable"), _Response(body={"response": " Nail \n"})]
    calls = []

    def fake_post(url, json, timeout):
        calls.append((url, json["model"]))
        return responses.pop(0)

    monkeypatch.setattr(ocr.requests, "post", fake_post)
    monkeypatch.setattr(ocr.time, "sleep", lambda seconds: None)

    result = ocr.run_ollama(image)

    assert result.text == "Nail"
    assert result.engine == "ollama-glm-ocr"
    assert calls[0] == ("http://127.0.0.1:11434/api/generate", "glm-ocr")
    assert result.warnings[0].startswith("Ollama OCR succeeded on retry 2/3")


def test_ollama_connection_errors_exhaust_attempts(tmp_path, monkeypatch):
    image = _make_image(tmp_path / "card.png")

    def refuse(url, json, timeout):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setenv("DBZ_OCR_OLLAMA_ATTEMPTS", "2")
    monkeypatch.setattr(ocr.requests, "post", refuse)
    monkeypatch.setattr(ocr.time, "sleep", lambda seconds: None)

    result = ocr.run_ollama(image)

    assert result.text == ""
    assert len(result.warnings) == 3
    assert "after 2 attempt(s)" in result.warnings[-1]
