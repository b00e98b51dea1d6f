"""
OCR Engine: ядро распознавания десктопного OCR приложения.

Пайплайн одной задачи:
    preprocess -> segment -> recognize -> aggregate

JobDispatcher выполняет задачи на пуле воркеров, обрабатывает отмену и
таймауты и стримит прогресс и результаты в слой UI.
"""

from ocr_engine.errors import (
    DecodeError,
    DimensionError,
    ErrorKind,
    OcrEngineError,
    RecognizerUnavailable,
)
from ocr_engine.schemas import (
    DispatcherConfig,
    JobOptions,
    JobState,
    OcrDocument,
    RawImage,
)
from ocr_engine.services import JobDispatcher, OcrPipeline, Recognizer

__all__ = [
    "ErrorKind",
    "OcrEngineError",
    "DecodeError",
    "DimensionError",
    "RecognizerUnavailable",
    "RawImage",
    "JobOptions",
    "JobState",
    "DispatcherConfig",
    "OcrDocument",
    "Recognizer",
    "OcrPipeline",
    "JobDispatcher",
]
