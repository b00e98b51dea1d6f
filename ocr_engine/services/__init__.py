"""
Сервисы OCR движка.

Модули:
    - preprocessor: декодирование, оттенки серого, шумоподавление, выравнивание, бинаризация
    - segmenter: поиск слов/строк/блоков и порядок чтения
    - recognition: порт Recognizer и распознавание регионов
    - tesseract_recognizer: Recognizer на Tesseract
    - aggregator: сборка документа, уверенность, пост-коррекция
    - pipeline: этапы одной задачи
    - dispatcher: очередь задач, пул воркеров, отмена, потоки событий
"""

from ocr_engine.services.aggregator import aggregate
from ocr_engine.services.dispatcher import EventStream, JobDispatcher
from ocr_engine.services.pipeline import OcrPipeline
from ocr_engine.services.preprocessor import normalize
from ocr_engine.services.recognition import RecognitionEngine, Recognizer
from ocr_engine.services.segmenter import segment
from ocr_engine.services.tesseract_recognizer import TesseractRecognizer

__all__ = [
    "normalize",
    "segment",
    "Recognizer",
    "RecognitionEngine",
    "TesseractRecognizer",
    "aggregate",
    "OcrPipeline",
    "JobDispatcher",
    "EventStream",
]
