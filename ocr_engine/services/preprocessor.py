"""
Нормализация изображения: decode -> grayscale -> denoise -> deskew -> binarize.

Готовит канонический одноканальный NormalizedImage для сегментатора.
Каждый шаг возвращает новый массив; буфер RawImage только читается.

Выравнивание через библиотеку deskew (проекционный профиль / пики Хафа):
    - Уменьшение до 1200px по длинной стороне для определения угла
    - Углы за пределами max_deskew_angle считаются шумом, а не текстом

Бинаризация через OpenCV (cv2.threshold / cv2.adaptiveThreshold).
"""

import io
import logging
from typing import Optional

import cv2
import numpy as np
from deskew import determine_skew
from PIL import Image, ImageFilter, UnidentifiedImageError

from ocr_engine.errors import DecodeError, DimensionError
from ocr_engine.schemas import NormalizedImage, PreprocessOptions, RawImage

logger = logging.getLogger(__name__)

# Длинная сторона копии для определения угла: на больших сканах
# детекция медленная, на маленьких копиях теряется точность
SKEW_RESIZE_PX = 1200
SKEW_NUM_PEAKS = 20

_MODES_BY_CHANNELS = {1: "L", 3: "RGB", 4: "RGBA"}


def normalize(
    raw: RawImage, options: Optional[PreprocessOptions] = None
) -> NormalizedImage:
    """
    Нормализует сырое изображение для сегментации.

    Args:
        raw: закодированный файл или сырой буфер пикселей
        options: опции предобработки (по умолчанию, если None)

    Returns:
        NormalizedImage: uint8 сетка, 0 = чернила, 255 = бумага

    Raises:
        DecodeError: буфер не является изображением поддерживаемого формата
        DimensionError: ширина или высота равна нулю
    """
    options = options or PreprocessOptions()

    img = decode(raw)
    gray = to_grayscale(img, options.grayscale_method)

    if options.denoise_strength > 0:
        gray = denoise(gray, options.denoise_strength)

    skew_angle = 0.0
    if options.deskew:
        gray, skew_angle = deskew_image(
            gray, options.max_deskew_angle, options.min_deskew_angle
        )

    if options.binarize:
        gray = binarize(gray, options)

    logger.debug(
        f"Нормализовано {gray.shape[1]}x{gray.shape[0]}, "
        f"наклон={skew_angle:.2f}, бинаризация={options.binarize}"
    )
    return NormalizedImage(gray, binarized=options.binarize, skew_angle=skew_angle)


def decode(raw: RawImage) -> Image.Image:
    """
    Декодирует RawImage в PIL изображение.

    Сырой буфер должен содержать ровно width * height * channels байт.
    У многокадровых файлов (GIF, TIFF) берётся первый кадр.
    """
    if not raw.encoded:
        if raw.width <= 0 or raw.height <= 0:
            raise DimensionError(f"Вырожденный размер изображения {raw.width}x{raw.height}")
        mode = _MODES_BY_CHANNELS.get(raw.channels)
        if mode is None:
            raise DecodeError(f"Неподдерживаемое число каналов: {raw.channels}")
        expected = raw.width * raw.height * raw.channels
        if len(raw.data) != expected:
            raise DecodeError(
                f"В буфере пикселей {len(raw.data)} байт, ожидалось {expected}"
            )
        return Image.frombytes(mode, (raw.width, raw.height), raw.data)

    if not raw.data:
        raise DecodeError("Пустой буфер изображения")

    try:
        img = Image.open(io.BytesIO(raw.data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Неподдерживаемый формат изображения: {e}") from e
    except (OSError, SyntaxError, ValueError) as e:
        # Обрезанные или битые данные известного формата
        raise DecodeError(f"Повреждённые данные изображения: {e}") from e

    width, height = img.size
    if width == 0 or height == 0:
        raise DimensionError(f"Вырожденный размер изображения {width}x{height}")

    return img


def to_grayscale(img: Image.Image, method: str = "luminance") -> np.ndarray:
    """
    Переводит в uint8 сетку яркости, прозрачность накладывается на белый.

    Args:
        img: декодированное изображение любого режима
        method: luminance (ITU-R 601-2) или среднее RGB каналов
    """
    has_alpha = img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )
    if has_alpha:
        rgba = img.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        img = Image.alpha_composite(background, rgba)

    if method == "luminance":
        return np.array(img.convert("L"), dtype=np.uint8)

    rgb = np.asarray(img.convert("RGB"), dtype=np.float32)
    return np.rint(rgb.mean(axis=2)).astype(np.uint8)


def denoise(gray: np.ndarray, strength: int) -> np.ndarray:
    """Медианный фильтр размера 2 * strength + 1."""
    filtered = Image.fromarray(gray).filter(ImageFilter.MedianFilter(2 * strength + 1))
    return np.array(filtered, dtype=np.uint8)


def detect_skew(gray: np.ndarray) -> float:
    """
    Оценивает преобладающий угол строк текста в градусах.

    Изображение исправляется поворотом на угол с обратным знаком.

    Returns:
        float: угол строк в [-45, 45]; 0.0, если строки не найдены
    """
    h, w = gray.shape
    ratio = min(1.0, SKEW_RESIZE_PX / max(w, h))
    work = gray
    if ratio < 1.0:
        small = Image.fromarray(gray).resize(
            (max(1, int(w * ratio)), max(1, int(h * ratio))),
            Image.Resampling.BILINEAR,
        )
        work = np.array(small)

    try:
        correction = determine_skew(work, num_peaks=SKEW_NUM_PEAKS)
    except Exception as e:
        # Мало строк или нет совсем (только картинки, крошечные изображения)
        logger.debug(f"Не удалось определить наклон: {e}")
        correction = None

    if correction is None:
        return 0.0

    # determine_skew возвращает исправляющий поворот
    return -float(correction)


def deskew_image(
    gray: np.ndarray, max_angle: float, min_angle: float
) -> tuple[np.ndarray, float]:
    """
    Поворачивает изображение на угол строк с обратным знаком.

    Args:
        gray: сетка в оттенках серого
        max_angle: углы от него и больше не исправляются (шум, а не текст)
        min_angle: меньшие углы не стоят ресемплинга

    Returns:
        tuple: (исправленная сетка, исправленный угол строк или 0.0)
    """
    angle = detect_skew(gray)

    if abs(angle) >= max_angle:
        logger.info(f"Наклон {angle:.1f} за пределами +/-{max_angle:.0f}, не исправляем")
        return gray, 0.0

    if abs(angle) < max(min_angle, 1e-6):
        return gray, 0.0

    # expand=True расширяет холст, углы не обрезаются
    rotated = Image.fromarray(gray).rotate(
        -angle,
        resample=Image.Resampling.BICUBIC,
        expand=True,
        fillcolor=255,
    )
    return np.array(rotated, dtype=np.uint8), angle


def binarize(gray: np.ndarray, options: PreprocessOptions) -> np.ndarray:
    """
    Переводит в чистые чернила (0) и бумагу (255).

    fixed: пиксель < fixed_threshold считается чернилами.
    adaptive: пиксель темнее среднего по окрестности больше чем на
    adaptive_offset считается чернилами; однородные области всегда бумага.
    """
    gray = np.ascontiguousarray(gray, dtype=np.uint8)

    if options.threshold_strategy == "fixed":
        # THRESH_BINARY: 255 там, где пиксель > порога
        _, out = cv2.threshold(
            gray, options.fixed_threshold - 1, 255, cv2.THRESH_BINARY
        )
        return out

    window = options.adaptive_window
    if window % 2 == 0:
        window += 1
    return cv2.adaptiveThreshold(
        gray,
        255,
        cv2.ADAPTIVE_THRESH_MEAN_C,
        cv2.THRESH_BINARY,
        window,
        options.adaptive_offset,
    )
