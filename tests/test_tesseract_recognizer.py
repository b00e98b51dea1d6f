import numpy as np
import pytesseract
import pytest
from PIL import Image

from ocr_engine.errors import RecognitionError, RecognizerUnavailable
from ocr_engine.schemas import BBox, NormalizedImage, RegionKind, TextRegion
from ocr_engine.services.recognition import RecognitionEngine, Recognizer
from ocr_engine.services.tesseract_recognizer import BORDER_PX, MIN_CROP_HEIGHT, TesseractRecognizer


def _fake_data(texts, confs):
    def image_to_data(image, lang, config, output_type):
        _fake_data.calls.append({"size": image.size, "lang": lang, "config": config})
        return {"text": texts, "conf": confs}

    _fake_data.calls = []
    return image_to_data


def test_is_a_recognizer():
    assert isinstance(TesseractRecognizer(), Recognizer)


def test_single_call_gives_text_and_confidence(monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_data", _fake_data(["", "Hello", ""], [-1, 87, -1]))

    hypotheses = TesseractRecognizer(lang="rus+eng").recognize(Image.new("L", (40, 40), 255))

    assert len(hypotheses) == 1
    assert hypotheses[0].text == "Hello"
    assert hypotheses[0].score == pytest.approx(0.87)
    assert _fake_data.calls == [
        {"size": (40 + 2 * BORDER_PX, 40 + 2 * BORDER_PX), "lang": "rus+eng", "config": "--oem 3 --psm 8"}
    ]


def test_small_crops_are_upscaled(monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_data", _fake_data(["a"], [50]))

    TesseractRecognizer().recognize(Image.new("L", (8, 16), 255))

    width, height = _fake_data.calls[0]["size"]
    assert height == MIN_CROP_HEIGHT + 2 * BORDER_PX
    assert width == 16 + 2 * BORDER_PX


def test_nothing_recognized(monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_data", _fake_data(["", " "], [-1, -1]))
    assert TesseractRecognizer().recognize(Image.new("L", (40, 40), 255)) == []


def test_missing_binary_is_unavailable(monkeypatch):
    def missing(*args, **kwargs):
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "image_to_data", missing)
    monkeypatch.setattr(pytesseract, "get_tesseract_version", missing)

    recognizer = TesseractRecognizer()
    with pytest.raises(RecognizerUnavailable):
        recognizer.recognize(Image.new("L", (40, 40), 255))
    assert recognizer.available() is False


def test_missing_language_is_unavailable(monkeypatch):
    def failing(*args, **kwargs):
        raise pytesseract.TesseractError(1, "Failed loading language 'xyz'")

    monkeypatch.setattr(pytesseract, "image_to_data", failing)
    with pytest.raises(RecognizerUnavailable):
        TesseractRecognizer(lang="xyz").recognize(Image.new("L", (40, 40), 255))


def test_missing_data_file_is_unavailable(monkeypatch):
    def failing(*args, **kwargs):
        raise pytesseract.TesseractError(
            1, "Error opening data file /usr/share/tessdata/xyz.traineddata"
        )

    monkeypatch.setattr(pytesseract, "image_to_data", failing)
    with pytest.raises(RecognizerUnavailable):
        TesseractRecognizer(lang="xyz").recognize(Image.new("L", (40, 40), 255))


def test_other_tesseract_errors_are_not_unavailable(monkeypatch):
    def failing(*args, **kwargs):
        raise pytesseract.TesseractError(1, "Image too small to scale!! (2x36 vs min width of 3)")

    monkeypatch.setattr(pytesseract, "image_to_data", failing)
    with pytest.raises(pytesseract.TesseractError):
        TesseractRecognizer().recognize(Image.new("L", (40, 40), 255))


def test_other_tesseract_errors_fail_only_the_region(monkeypatch):
    """Прочая ошибка Tesseract становится recognition_error, а не recognizer_unavailable."""

    def failing(*args, **kwargs):
        raise pytesseract.TesseractError(1, "Image too small to scale!! (2x36 vs min width of 3)")

    monkeypatch.setattr(pytesseract, "image_to_data", failing)
    engine = RecognitionEngine(TesseractRecognizer())
    image = NormalizedImage(np.full((20, 40), 255, dtype=np.uint8), binarized=True)
    region = TextRegion(2, RegionKind.WORD, BBox(5, 5, 10, 10), line=1, block=0)

    with pytest.raises(RecognitionError):
        engine.recognize(image, region)
