"""
Ошибки OCR движка.

Каждая ошибка пайплайна несёт ErrorKind: диспетчер превращает её в событие
Failed своей задачи, не затрагивая остальные задачи.

Ошибки уровня диспетчера (JobNotFound, DispatcherClosed) выбрасываются
вызывающему напрямую и никогда не становятся событиями задачи.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Виды падения задачи в событиях Failed."""

    DECODE_ERROR = "decode_error"
    DIMENSION_ERROR = "dimension_error"
    RECOGNIZER_UNAVAILABLE = "recognizer_unavailable"
    TIMEOUT = "timeout"
    RECOGNITION_ERROR = "recognition_error"
    INTERNAL_ERROR = "internal_error"


class OcrEngineError(Exception):
    """Базовый класс ошибок пайплайна в рамках одной задачи."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR


class DecodeError(OcrEngineError):
    """Буфер не является изображением в поддерживаемом формате."""

    kind = ErrorKind.DECODE_ERROR


class DimensionError(OcrEngineError):
    """Ширина или высота изображения равна нулю."""

    kind = ErrorKind.DIMENSION_ERROR


class RecognizerUnavailable(OcrEngineError):
    """
    Распознаватель недоступен (нет бинарника, не загружена модель языка).

    Фатально для задачи: вызывающему стоит предложить настройку
    распознавателя, а не повторять ту же задачу.
    """

    kind = ErrorKind.RECOGNIZER_UNAVAILABLE


class RecognitionError(OcrEngineError):
    """Распознаватель упал с неожиданной ошибкой на регионе."""

    kind = ErrorKind.RECOGNITION_ERROR


class JobTimeout(OcrEngineError):
    kind = ErrorKind.TIMEOUT


class JobNotFound(KeyError):
    """Неизвестный id задачи."""


class DispatcherClosed(RuntimeError):
    """Отправка после остановки диспетчера."""
