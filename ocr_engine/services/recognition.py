"""
Распознавание сегментированных регионов слов.

Само распознавание текста: внешняя возможность (Recognizer), одна операция
от вырезанного изображения к ранжированным гипотезам текста. Модуль вырезает
регионы, вызывает распознаватель и приводит его ответ к RecognitionCandidate.
"""

import logging
from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

from PIL import Image

from ocr_engine.errors import RecognitionError, RecognizerUnavailable
from ocr_engine.schemas import (
    Hypothesis,
    NormalizedImage,
    RecognitionCandidate,
    RegionKind,
    TextRegion,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class Recognizer(Protocol):
    """
    Возможность распознавания (порт).

    Реализация получает вырезку одного слова в оттенках серого и возвращает
    гипотезы текста с оценками в любом порядке. Если модель или бинарник
    недоступны, выбрасывается RecognizerUnavailable.
    """

    def recognize(self, image: Image.Image) -> Sequence[Hypothesis]:
        ...


class RecognitionEngine:
    """
    Применяет Recognizer к регионам слов нормализованного изображения.

    Args:
        recognizer: распознаватель
        padding: пиксели с каждой стороны региона при вырезке
    """

    def __init__(self, recognizer: Recognizer, padding: int = 2) -> None:
        if padding < 0:
            raise ValueError(f"padding должен быть >= 0, получено {padding}")
        self.recognizer = recognizer
        self.padding = padding

    def crop(self, image: NormalizedImage, region: TextRegion) -> Image.Image:
        """Вырезает регион с отступом, обрезанным по границам изображения."""
        bbox = region.bbox
        left = max(0, bbox.left - self.padding)
        top = max(0, bbox.top - self.padding)
        right = min(image.width, bbox.right + self.padding)
        bottom = min(image.height, bbox.bottom + self.padding)

        # Распознаватель получает свою изменяемую копию
        return Image.fromarray(image.pixels[top:bottom, left:right].copy())

    def recognize(
        self, image: NormalizedImage, region: TextRegion
    ) -> RecognitionCandidate:
        """
        Распознаёт один регион слова.

        Args:
            image: нормализованное изображение, на котором найден регион
            region: регион слова

        Returns:
            RecognitionCandidate: лучшая гипотеза с уверенностью в [0, 1] и
                остальные гипотезы по убыванию оценки

        Raises:
            RecognizerUnavailable: распознаватель недоступен (без повторов)
            RecognitionError: распознаватель упал на этом регионе
        """
        if region.kind != RegionKind.WORD:
            raise ValueError(f"Распознаются только регионы слов, получено {region.kind.value}")

        crop = self.crop(image, region)

        try:
            hypotheses = list(self.recognizer.recognize(crop))
        except RecognizerUnavailable:
            raise
        except Exception as e:
            raise RecognitionError(
                f"Ошибка распознавателя на регионе {region.order}: {e}"
            ) from e

        ranked = sorted(
            (Hypothesis(str(h.text), _clamp(h.score)) for h in hypotheses),
            key=lambda h: h.score,
            reverse=True,
        )

        if not ranked:
            return RecognitionCandidate(region=region, text="", confidence=0.0)

        best, *alternates = ranked
        return RecognitionCandidate(
            region=region,
            text=best.text,
            confidence=best.score,
            alternates=tuple(alternates),
        )

    def recognize_all(
        self,
        image: NormalizedImage,
        regions: Sequence[TextRegion],
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> list[RecognitionCandidate]:
        """
        Распознаёт все регионы слов в порядке чтения.

        Args:
            image: нормализованное изображение
            regions: результат сегментации (регионы не-слов пропускаются)
            progress: вызывается с (done, total) после каждого слова

        Returns:
            list[RecognitionCandidate]: по кандидату на регион слова
        """
        words = [r for r in regions if r.kind == RegionKind.WORD]
        total = len(words)

        candidates: list[RecognitionCandidate] = []
        for done, region in enumerate(words, start=1):
            candidates.append(self.recognize(image, region))
            if progress is not None:
                progress(done, total)

        logger.debug(f"Распознано слов: {total}")
        return candidates


def _clamp(score: float) -> float:
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, value))
