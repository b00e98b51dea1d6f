"""
Recognizer на основе Tesseract.

Один вызов image_to_data на вырезку слова: текст и уверенность из одного
прохода. По умолчанию режим одного слова (--psm 8), так как сегментатор
уже выделил слово.
"""

import logging

import pytesseract
from PIL import Image, ImageOps

from ocr_engine.errors import RecognizerUnavailable
from ocr_engine.schemas import Hypothesis

logger = logging.getLogger(__name__)

# Tesseract плохо читает мелкие глифы; вырезки увеличиваются до этой высоты
MIN_CROP_HEIGHT = 32
# Белое поле вокруг вырезки, Tesseract нужна бумага вокруг чернил
BORDER_PX = 10

# Сообщения Tesseract об отсутствующих данных языка (traineddata)
MISSING_LANGUAGE_MARKERS = (
    "Failed loading language",
    "Error opening data file",
    "traineddata",
)


def is_missing_language(error: pytesseract.TesseractError) -> bool:
    """Ошибка Tesseract вызвана отсутствием языковых данных."""
    message = str(getattr(error, "message", "") or error)
    return any(marker in message for marker in MISSING_LANGUAGE_MARKERS)


class TesseractRecognizer:
    """
    Распознаватель на бинарнике Tesseract через pytesseract.

    Args:
        lang: языки Tesseract, например "eng" или "rus+eng"
        oem: режим OCR движка
        psm: режим сегментации страницы (8 = одно слово)
    """

    def __init__(self, lang: str = "eng", oem: int = 3, psm: int = 8) -> None:
        self.lang = lang
        self.oem = oem
        self.psm = psm

    @property
    def config(self) -> str:
        return f"--oem {self.oem} --psm {self.psm}"

    def available(self) -> bool:
        """Проверяет, что бинарник Tesseract запускается."""
        try:
            pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError:
            return False
        return True

    def version(self) -> str:
        try:
            return str(pytesseract.get_tesseract_version())
        except pytesseract.TesseractNotFoundError as e:
            raise RecognizerUnavailable(f"Tesseract не найден: {e}") from e

    def recognize(self, image: Image.Image) -> list[Hypothesis]:
        """
        Распознаёт вырезку слова.

        Args:
            image: вырезка одного слова в оттенках серого

        Returns:
            list[Hypothesis]: не больше одной гипотезы; уверенность 0-100
                от Tesseract переводится в 0-1

        Raises:
            RecognizerUnavailable: нет бинарника Tesseract или данных языка
            pytesseract.TesseractError: прочие ошибки Tesseract на этой вырезке
        """
        work = image.convert("L")
        if work.height < MIN_CROP_HEIGHT:
            ratio = MIN_CROP_HEIGHT / max(1, work.height)
            work = work.resize(
                (max(1, int(work.width * ratio)), MIN_CROP_HEIGHT),
                Image.Resampling.BICUBIC,
            )
        work = ImageOps.expand(work, border=BORDER_PX, fill=255)

        try:
            data = pytesseract.image_to_data(
                work,
                lang=self.lang,
                config=self.config,
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractNotFoundError as e:
            raise RecognizerUnavailable(f"Tesseract не найден: {e}") from e
        except pytesseract.TesseractError as e:
            if is_missing_language(e):
                raise RecognizerUnavailable(
                    f"Нет данных языка '{self.lang}' для Tesseract: {e}"
                ) from e
            # Ошибка только этой вырезки: задача упадёт с recognition_error
            logger.warning(f"Tesseract упал на вырезке {work.size}: {e}")
            raise

        words = []
        confidences = []
        for text, conf in zip(data["text"], data["conf"]):
            text = str(text).strip()
            if not text:
                continue
            words.append(text)
            # conf = -1 у записей, которые не являются словами
            if float(conf) >= 0:
                confidences.append(float(conf))

        if not words:
            return []

        avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return [Hypothesis(text=" ".join(words), score=avg_confidence / 100.0)]
