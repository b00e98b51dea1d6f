"""
Настройки точек входа OCR движка.

Значения читаются из .env файла (или переменных окружения), префикс
OCR_ENGINE_. Настройки читают только точки входа (HTTP сервис, CLI):
ядро получает явные DispatcherConfig / JobOptions, собранные из них.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from ocr_engine.schemas import (
    CorrectionOptions,
    DispatcherConfig,
    JobOptions,
    PreprocessOptions,
)
from ocr_engine.services.tesseract_recognizer import TesseractRecognizer


class Settings(BaseSettings):
    """
    Настройки OCR движка.

    Читает переменные OCR_ENGINE_* из .env файла.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCR_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Сервер ---
    host: str = "127.0.0.1"
    port: int = 8000

    # --- API: лимиты ---
    max_file_size_mb: int = 25

    # --- Диспетчер ---
    # None -> число CPU
    max_concurrent_jobs: Optional[int] = None
    job_timeout_seconds: Optional[float] = None
    # Завершённые задачи сверх лимита вытесняются, самые старые первыми
    max_retained_jobs: int = 256

    # --- Пайплайн ---
    deskew: bool = False
    crop_padding: int = 2
    correction_threshold: float = 0.6

    # --- OCR: Tesseract ---
    tesseract_lang: str = "eng"
    tesseract_oem: int = 3
    tesseract_psm: int = 8

    def job_options(self) -> JobOptions:
        return JobOptions(
            preprocess=PreprocessOptions(deskew=self.deskew),
            correction=CorrectionOptions(confidence_threshold=self.correction_threshold),
            crop_padding=self.crop_padding,
        )

    def dispatcher_config(self) -> DispatcherConfig:
        params: dict = {
            "default_timeout_seconds": self.job_timeout_seconds,
            "default_options": self.job_options(),
            "max_retained_jobs": self.max_retained_jobs,
        }
        if self.max_concurrent_jobs:
            params["max_concurrent_jobs"] = self.max_concurrent_jobs
        return DispatcherConfig(**params)

    def recognizer(self) -> TesseractRecognizer:
        return TesseractRecognizer(
            lang=self.tesseract_lang,
            oem=self.tesseract_oem,
            psm=self.tesseract_psm,
        )
