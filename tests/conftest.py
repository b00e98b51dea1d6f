"""
Общие фикстуры: отрисованные тестовые изображения и распознаватели-заглушки.

Изображения рисуются через Pillow во время тестов, поэтому тестам не нужны
ни файлы с примерами, ни бинарник Tesseract.
"""

import io
import threading
import time
from typing import Callable, Optional

import pytest
from PIL import Image, ImageDraw, ImageFont

from ocr_engine.errors import RecognizerUnavailable
from ocr_engine.schemas import Hypothesis, JobEvent


def render_text_png(
    lines: list[str],
    size: tuple[int, int] = (100, 50),
    font_size: int = 24,
    origin: tuple[int, int] = (10, 10),
    line_spacing: int = 40,
) -> bytes:
    """Чёрный текст на белом, по элементу на строку, в PNG."""
    img = Image.new("RGB", size, "white")
    draw = ImageDraw.Draw(img)
    font = ImageFont.load_default(size=font_size)
    x, y = origin
    for i, line in enumerate(lines):
        draw.text((x, y + i * line_spacing), line, fill="black", font=font)
    return to_png(img)


def to_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class ScriptedRecognizer:
    """Возвращает одни и те же гипотезы на каждую вырезку и запоминает размеры вырезок."""

    def __init__(self, hypotheses: Optional[list[Hypothesis]] = None) -> None:
        self.hypotheses = hypotheses if hypotheses is not None else [Hypothesis("TEST", 0.93)]
        self.crops: list[tuple[int, int]] = []
        self._lock = threading.Lock()

    def recognize(self, image: Image.Image) -> list[Hypothesis]:
        with self._lock:
            self.crops.append(image.size)
        return list(self.hypotheses)

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.crops)


class GateRecognizer(ScriptedRecognizer):
    """Блокирует каждый вызов, пока не выставлен release."""

    def __init__(self, hypotheses: Optional[list[Hypothesis]] = None) -> None:
        super().__init__(hypotheses)
        self.release = threading.Event()

    def recognize(self, image: Image.Image) -> list[Hypothesis]:
        result = super().recognize(image)
        if not self.release.wait(timeout=10):
            raise RuntimeError("gate was never released")
        return result


class SlowRecognizer(ScriptedRecognizer):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def recognize(self, image: Image.Image) -> list[Hypothesis]:
        time.sleep(self.delay)
        return super().recognize(image)


class UnavailableRecognizer:
    def recognize(self, image: Image.Image) -> list[Hypothesis]:
        raise RecognizerUnavailable("recognizer model is not installed")


def drain(stream, timeout: float = 10.0) -> list[JobEvent]:
    """Собирает события потока до терминального включительно."""
    events = []
    while True:
        event = stream.get(timeout=timeout)
        events.append(event)
        if event.terminal:
            return events


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


@pytest.fixture
def word_png() -> bytes:
    """Изображение 100x50 с одним словом TEST."""
    return render_text_png(["TEST"])


@pytest.fixture
def blank_png() -> bytes:
    return to_png(Image.new("RGB", (100, 50), "white"))


@pytest.fixture
def malformed_bytes() -> bytes:
    return b"\x89PNG\r\n\x1a\nthis is not really a png"


@pytest.fixture
def recognizer() -> ScriptedRecognizer:
    return ScriptedRecognizer()
