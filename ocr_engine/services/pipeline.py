"""
OCR пайплайн: preprocess -> segment -> recognize -> aggregate.

Каждый этап: отдельный метод, чтобы диспетчер проверял отмену и дедлайн
между этапами. run() выполняет все этапы сразу для разовых вызовов (CLI).
"""

import logging
import time
from typing import Callable, Optional

from ocr_engine.schemas import (
    JobOptions,
    NormalizedImage,
    OcrDocument,
    RawImage,
    RecognitionCandidate,
    TextRegion,
)
from ocr_engine.services import aggregator, preprocessor, segmenter
from ocr_engine.services.recognition import RecognitionEngine, Recognizer

logger = logging.getLogger(__name__)


class OcrPipeline:
    """
    Этапы одной задачи распознавания вокруг Recognizer.

    Args:
        recognizer: распознаватель, общий для всех задач
    """

    def __init__(self, recognizer: Recognizer) -> None:
        self.recognizer = recognizer

    def preprocess(self, raw: RawImage, options: JobOptions) -> NormalizedImage:
        return preprocessor.normalize(raw, options.preprocess)

    def segment(self, image: NormalizedImage, options: JobOptions) -> list[TextRegion]:
        return segmenter.segment(image, options.segmentation)

    def recognize(
        self,
        image: NormalizedImage,
        regions: list[TextRegion],
        options: JobOptions,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> list[RecognitionCandidate]:
        engine = RecognitionEngine(self.recognizer, padding=options.crop_padding)
        return engine.recognize_all(image, regions, progress=progress)

    def aggregate(
        self, candidates: list[RecognitionCandidate], options: JobOptions
    ) -> OcrDocument:
        return aggregator.aggregate(candidates, options.correction)

    def run(self, raw: RawImage, options: Optional[JobOptions] = None) -> OcrDocument:
        """
        Выполняет все этапы без проверок отмены.

        Args:
            raw: входное изображение
            options: опции задачи (по умолчанию, если None)

        Returns:
            OcrDocument: результат распознавания

        Raises:
            OcrEngineError: ошибка любого этапа (DecodeError, DimensionError,
                RecognizerUnavailable, RecognitionError)
        """
        options = options or JobOptions()
        total_start = time.perf_counter()

        stage_start = time.perf_counter()
        image = self.preprocess(raw, options)
        preprocess_ms = _elapsed_ms(stage_start)

        stage_start = time.perf_counter()
        regions = self.segment(image, options)
        segment_ms = _elapsed_ms(stage_start)

        stage_start = time.perf_counter()
        candidates = self.recognize(image, regions, options)
        recognize_ms = _elapsed_ms(stage_start)

        stage_start = time.perf_counter()
        document = self.aggregate(candidates, options)
        aggregate_ms = _elapsed_ms(stage_start)

        logger.info("=" * 60)
        logger.info("РАСПОЗНАВАНИЕ ЗАВЕРШЕНО")
        logger.info(f"   Изображение: {image.width}x{image.height}, наклон {image.skew_angle:.1f}")
        logger.info(f"   Слов: {len(document.words)}, символов: {len(document.text)}")
        logger.info(f"   Уверенность: {document.confidence:.2f}")
        logger.info("-" * 60)
        logger.info(f"   Время по этапам:")
        logger.info(f"      Preprocess: {preprocess_ms}ms")
        logger.info(f"      Segment:    {segment_ms}ms")
        logger.info(f"      Recognize:  {recognize_ms}ms")
        logger.info(f"      Aggregate:  {aggregate_ms}ms")
        logger.info(f"      ИТОГО:      {_elapsed_ms(total_start)}ms")
        logger.info("=" * 60)

        return document


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
