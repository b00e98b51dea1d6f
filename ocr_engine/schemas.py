"""
Схемы данных OCR движка.

Включает:
    - Pydantic модели опций (предобработка, сегментация, пост-коррекция,
      опции задачи и конфигурация диспетчера)
    - Внутренние dataclass пайплайна: RawImage -> NormalizedImage ->
      TextRegion -> RecognitionCandidate -> OcrDocument
    - Состояния задач и события, которые стримятся в UI
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Literal, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from ocr_engine.errors import ErrorKind


# =============================================================================
# Pydantic модели опций
# =============================================================================


class PreprocessOptions(BaseModel):
    """
    Опции нормализации изображения.

    Attributes:
        grayscale_method: luminance (яркость по ITU-R 601-2) или среднее каналов
        binarize: перевести в чистые чернила/бумагу (0/255)
        threshold_strategy: adaptive (локальное среднее) или fixed порог
        fixed_threshold: порог для стратегии fixed
        adaptive_window: размер окрестности для стратегии adaptive
        adaptive_offset: насколько чернила должны быть темнее локального среднего
        deskew: исправлять небольшой наклон строк
        max_deskew_angle: бóльшие углы считаются шумом
        min_deskew_angle: меньшие углы не исправляются
        denoise_strength: размер медианного фильтра 2 * strength + 1 (0 = выкл)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    grayscale_method: Literal["luminance", "average"] = "luminance"
    binarize: bool = True
    threshold_strategy: Literal["adaptive", "fixed"] = "adaptive"
    fixed_threshold: int = Field(default=128, ge=0, le=255)
    adaptive_window: int = Field(default=25, ge=3)
    adaptive_offset: int = Field(default=10, ge=1, le=255)
    deskew: bool = False
    max_deskew_angle: float = Field(default=45.0, gt=0, le=90)
    min_deskew_angle: float = Field(default=0.5, ge=0)
    denoise_strength: int = Field(default=0, ge=0, le=5)


class SegmentationOptions(BaseModel):
    """
    Пороги сегментации разметки.

    Attributes:
        min_contrast: изображения с меньшим диапазоном яркости считаются пустыми
        min_component_area: слова с меньшим количеством чернил отбрасываются как соринки
        word_gap_ratio: разрыв между колонками (относительно высоты полосы), делящий слова
        min_word_gap: нижняя граница разрыва между словами, пиксели
        block_gap_ratio: разрыв между строками (относительно высоты строки), делящий блоки
        iou_merge_threshold: рамки с IoU выше порога объединяются
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_contrast: int = Field(default=32, ge=0, le=255)
    min_component_area: int = Field(default=4, ge=1)
    word_gap_ratio: float = Field(default=0.5, gt=0)
    min_word_gap: int = Field(default=3, ge=1)
    block_gap_ratio: float = Field(default=1.2, ge=0)
    iou_merge_threshold: float = Field(default=0.5, ge=0, le=1)


class CorrectionRule(BaseModel):
    """
    Замена часто путаемого символа.

    Attributes:
        source: распознанная подстрока
        target: замена
        context: "any" применяется всегда, "alpha" требует, чтобы остальное слово
            было буквами, "numeric" требует, чтобы остальное слово было цифрами
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: str = Field(min_length=1)
    target: str
    context: Literal["any", "alpha", "numeric"] = "any"


DEFAULT_CORRECTION_RULES: tuple[CorrectionRule, ...] = (
    CorrectionRule(source="0", target="O", context="alpha"),
    CorrectionRule(source="1", target="l", context="alpha"),
    CorrectionRule(source="5", target="S", context="alpha"),
    CorrectionRule(source="8", target="B", context="alpha"),
    CorrectionRule(source="O", target="0", context="numeric"),
    CorrectionRule(source="o", target="0", context="numeric"),
    CorrectionRule(source="l", target="1", context="numeric"),
    CorrectionRule(source="I", target="1", context="numeric"),
    CorrectionRule(source="S", target="5", context="numeric"),
    CorrectionRule(source="B", target="8", context="numeric"),
)


class CorrectionOptions(BaseModel):
    """
    Пост-коррекция слов с низкой уверенностью.

    Attributes:
        enabled: применять ли правила вообще
        confidence_threshold: исправляются только слова ниже этой уверенности
        rules: правила замены, применяются по порядку
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    confidence_threshold: float = Field(default=0.6, ge=0, le=1)
    rules: tuple[CorrectionRule, ...] = DEFAULT_CORRECTION_RULES


class JobOptions(BaseModel):
    """
    Опции одной отправки.

    Attributes:
        preprocess: опции нормализации изображения
        segmentation: пороги сегментации
        correction: набор правил пост-коррекции
        crop_padding: пиксели вокруг слова перед распознаванием
        timeout_seconds: дедлайн от начала выполнения
            (None: значение диспетчера)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    preprocess: PreprocessOptions = Field(default_factory=PreprocessOptions)
    segmentation: SegmentationOptions = Field(default_factory=SegmentationOptions)
    correction: CorrectionOptions = Field(default_factory=CorrectionOptions)
    crop_padding: int = Field(default=2, ge=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


def _default_concurrency() -> int:
    return os.cpu_count() or 2


class DispatcherConfig(BaseModel):
    """
    Опции создания диспетчера.

    Attributes:
        max_concurrent_jobs: размер пула воркеров
        default_timeout_seconds: дедлайн для задач, которые его не задают
        default_options: опции отправок без опций
        max_retained_jobs: сколько завершённых задач хранить для status/result
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_concurrent_jobs: int = Field(default_factory=_default_concurrency, ge=1)
    default_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    default_options: JobOptions = Field(default_factory=JobOptions)
    max_retained_jobs: int = Field(default=256, ge=1)


# =============================================================================
# Внутренние dataclass пайплайна
# =============================================================================


@dataclass(frozen=True)
class RawImage:
    """
    Входное изображение, принадлежит задаче, которая его принесла.

    Attributes:
        data: закодированный файл (PNG, JPEG, ...) или сырой буфер пикселей
        width: ширина в пикселях (0 = неизвестна, для закодированных данных)
        height: высота в пикселях (0 = неизвестна, для закодированных данных)
        channels: 1 (L), 3 (RGB) или 4 (RGBA); 0 = неизвестно
        encoded: False для буферов из from_pixels()
    """

    data: bytes
    width: int = 0
    height: int = 0
    channels: int = 0
    encoded: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    @classmethod
    def from_pixels(
        cls, data: bytes, width: int, height: int, channels: int = 1
    ) -> "RawImage":
        return cls(data, width, height, channels, encoded=False)


@dataclass(frozen=True, eq=False)
class NormalizedImage:
    """
    Одноканальная сетка яркости в канонической ориентации.

    Attributes:
        pixels: uint8 массив только для чтения (height, width); 0 = чернила, 255 = бумага
        binarized: пиксели содержат только 0 и 255
        skew_angle: исправленный угол наклона строк, градусы
    """

    pixels: np.ndarray
    binarized: bool = False
    skew_angle: float = 0.0

    def __post_init__(self) -> None:
        self.pixels.setflags(write=False)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True)
class BBox:
    """Прямоугольник в пикселях (right/bottom не включаются)."""

    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    def union(self, other: "BBox") -> "BBox":
        left = min(self.left, other.left)
        top = min(self.top, other.top)
        right = max(self.right, other.right)
        bottom = max(self.bottom, other.bottom)
        return BBox(left, top, right - left, bottom - top)

    def intersection_area(self, other: "BBox") -> int:
        w = min(self.right, other.right) - max(self.left, other.left)
        h = min(self.bottom, other.bottom) - max(self.top, other.top)
        return max(0, w) * max(0, h)

    def iou(self, other: "BBox") -> float:
        inter = self.intersection_area(other)
        union = self.area + other.area - inter
        return inter / union if union > 0 else 0.0

    def vertical_overlap(self, other: "BBox") -> int:
        return max(0, min(self.bottom, other.bottom) - max(self.top, other.top))

    def horizontal_overlap(self, other: "BBox") -> int:
        return max(0, min(self.right, other.right) - max(self.left, other.left))

    def to_dict(self) -> dict:
        return {
            "left": self.left,
            "top": self.top,
            "right": self.right,
            "bottom": self.bottom,
        }


class RegionKind(str, Enum):
    BLOCK = "block"
    LINE = "line"
    WORD = "word"


@dataclass(frozen=True)
class TextRegion:
    """
    Прямоугольник, в котором предположительно есть текст.

    Attributes:
        order: индекс порядка чтения, уникален в пределах одной сегментации
        kind: блок, строка или слово
        bbox: прямоугольник в координатах NormalizedImage
        line: order объемлющей строки (только для слов)
        block: order объемлющего блока (строки и слова)
    """

    order: int
    kind: RegionKind
    bbox: BBox
    line: Optional[int] = None
    block: Optional[int] = None


@dataclass(frozen=True)
class Hypothesis:
    """Гипотеза текста от Recognizer с оценкой."""

    text: str
    score: float


@dataclass(frozen=True)
class RecognitionCandidate:
    """
    Распознанный текст одного региона слова.

    Attributes:
        region: исходный TextRegion из сегментации той же задачи
        text: лучшая гипотеза
        confidence: оценка лучшей гипотезы в [0, 1]
        alternates: остальные гипотезы по убыванию оценки
    """

    region: TextRegion
    text: str
    confidence: float
    alternates: tuple[Hypothesis, ...] = ()


@dataclass(frozen=True)
class OcrWord:
    """
    Слово итогового документа.

    Attributes:
        region: исходный регион слова
        text: текст после пост-коррекции
        raw_text: текст как распознан
        confidence: уверенность распознавания в [0, 1]
        corrected: пост-коррекция изменила текст
    """

    region: TextRegion
    text: str
    raw_text: str
    confidence: float
    alternates: tuple[Hypothesis, ...] = ()
    corrected: bool = False


@dataclass(frozen=True)
class OcrLine:
    order: int
    bbox: BBox
    words: tuple[OcrWord, ...]

    @property
    def text(self) -> str:
        return " ".join(w.text for w in self.words)


@dataclass(frozen=True)
class OcrBlock:
    order: int
    bbox: BBox
    lines: tuple[OcrLine, ...]

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)


@dataclass(frozen=True)
class OcrDocument:
    """
    Итоговый результат распознавания задачи.

    Attributes:
        blocks: иерархия блок -> строка -> слово в порядке чтения
        text: полный текст (пробелы между словами, переводы строк между строками/блоками)
        confidence: среднее уверенностей слов, взвешенное по длине
    """

    blocks: tuple[OcrBlock, ...] = ()
    text: str = ""
    confidence: float = 0.0

    @property
    def words(self) -> list[OcrWord]:
        return [w for b in self.blocks for ln in b.lines for w in ln.words]

    @property
    def regions(self) -> list[TextRegion]:
        return [w.region for w in self.words]

    def to_dict(self) -> dict:
        """Вложенная структура блок -> строка -> слово для JSON ответов."""
        return {
            "text": self.text,
            "confidence": self.confidence,
            "blocks": [
                {
                    "order": block.order,
                    "bbox": block.bbox.to_dict(),
                    "lines": [
                        {
                            "order": line.order,
                            "text": line.text,
                            "bbox": line.bbox.to_dict(),
                            "words": [
                                {
                                    "order": word.region.order,
                                    "text": word.text,
                                    "raw_text": word.raw_text,
                                    "confidence": word.confidence,
                                    "corrected": word.corrected,
                                    "bbox": word.region.bbox.to_dict(),
                                    "alternates": [
                                        {"text": h.text, "score": h.score}
                                        for h in word.alternates
                                    ],
                                }
                                for word in line.words
                            ],
                        }
                        for line in block.lines
                    ],
                }
                for block in self.blocks
            ],
        }

    def to_boxes(self, level: Literal["line", "word"] = "line") -> list[dict]:
        """
        Плоский список {"text", "box"} с четырьмя углами на рамку.

        Этот payload десктопная оболочка рисует поверх изображения:
        углы идут по часовой стрелке от левого верхнего.
        """
        items: list[tuple[str, BBox]] = []
        for block in self.blocks:
            for line in block.lines:
                if level == "line":
                    items.append((line.text, line.bbox))
                else:
                    items.extend((w.text, w.region.bbox) for w in line.words)

        return [
            {
                "text": text,
                "box": [
                    [bbox.left, bbox.top],
                    [bbox.right, bbox.top],
                    [bbox.right, bbox.bottom],
                    [bbox.left, bbox.bottom],
                ],
            }
            for text, bbox in items
        ]


# =============================================================================
# Задачи и события
# =============================================================================


class JobState(str, Enum):
    QUEUED = "queued"
    PREPROCESSING = "preprocessing"
    SEGMENTING = "segmenting"
    RECOGNIZING = "recognizing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.CANCELLED, JobState.FAILED)


# Прямой порядок машины состояний; Cancelled/Failed вне его
STATE_SEQUENCE: tuple[JobState, ...] = (
    JobState.QUEUED,
    JobState.PREPROCESSING,
    JobState.SEGMENTING,
    JobState.RECOGNIZING,
    JobState.AGGREGATING,
    JobState.COMPLETED,
)


@dataclass(frozen=True)
class JobEvent:
    """
    База событий, которые получают подписчики задачи.

    Attributes:
        job_id: задача-владелец
        at: time.monotonic() в момент публикации
    """

    type: ClassVar[str] = "event"
    terminal: ClassVar[bool] = False

    job_id: str
    at: float = field(
        default_factory=time.monotonic, init=False, compare=False, repr=False
    )

    def payload(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {"type": self.type, "job_id": self.job_id, **self.payload()}


@dataclass(frozen=True)
class StateChanged(JobEvent):
    type: ClassVar[str] = "state_changed"

    state: JobState = JobState.QUEUED

    def payload(self) -> dict:
        return {"state": self.state.value}


@dataclass(frozen=True)
class Progress(JobEvent):
    type: ClassVar[str] = "progress"

    stage: JobState = JobState.PREPROCESSING
    fraction: float = 0.0

    def payload(self) -> dict:
        return {"stage": self.stage.value, "fraction": self.fraction}


@dataclass(frozen=True)
class Completed(JobEvent):
    type: ClassVar[str] = "completed"
    terminal: ClassVar[bool] = True

    document: OcrDocument = field(default_factory=OcrDocument)

    def payload(self) -> dict:
        return {"document": self.document.to_dict()}


@dataclass(frozen=True)
class Failed(JobEvent):
    type: ClassVar[str] = "failed"
    terminal: ClassVar[bool] = True

    error_kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    message: str = ""

    def payload(self) -> dict:
        return {"error_kind": self.error_kind.value, "message": self.message}


@dataclass(frozen=True)
class Cancelled(JobEvent):
    type: ClassVar[str] = "cancelled"
    terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class JobInfo:
    """
    Снимок задачи для запросов статуса.

    Attributes:
        job_id: уникальный id отправки
        state: текущее состояние
        error_kind: вид ошибки, если задача упала
        created_at: время отправки
    """

    job_id: str
    state: JobState
    created_at: datetime
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "created_at": self.created_at.isoformat(),
        }
