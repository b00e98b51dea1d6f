"""
Сегментация разметки: слова -> строки -> блоки с порядком чтения.

Алгоритм (проекционные профили):
    1. Маска чернил (бинарные пиксели или порог Оцу для оттенков серого)
    2. Горизонтальный профиль -> полосы текста; полосы из одних диакритик
       сливаются с полосой под ними
    3. Вертикальный профиль внутри полосы -> рамки слов, разрезаются по
       разрывам шире word_gap_ratio * высота полосы; рамки поджимаются к чернилам
    4. Дубликаты рамок объединяются по IoU
    5. Слова -> строки по вертикальному перекрытию, строки -> блоки по разрыву
    6. Порядок чтения: блоки сверху вниз, затем слева направо, строки
       сверху вниз, слова слева направо

Результат: обход иерархии в прямом порядке, за каждым блоком идут его
строки, за каждой строкой её слова.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import cv2
import numpy as np

from ocr_engine.schemas import (
    BBox,
    NormalizedImage,
    RegionKind,
    SegmentationOptions,
    TextRegion,
)

logger = logging.getLogger(__name__)

# Слова, перекрывающиеся по вертикали хотя бы на эту долю меньшей
# высоты, относятся к одной строке
LINE_OVERLAP_RATIO = 0.5

# Полоса настолько ниже полосы под ней: это ряд диакритик
# (точки над i, ударения, й) той полосы
DIACRITIC_HEIGHT_RATIO = 0.5


@dataclass
class _Line:
    bbox: BBox
    words: list[BBox] = field(default_factory=list)


@dataclass
class _Block:
    bbox: BBox
    lines: list[_Line] = field(default_factory=list)


def segment(
    image: NormalizedImage, options: Optional[SegmentationOptions] = None
) -> list[TextRegion]:
    """
    Находит регионы текста на нормализованном изображении.

    На корректном изображении не падает: пустое или почти пустое
    изображение даёт пустой список.

    Args:
        image: нормализованная сетка яркости
        options: пороги сегментации (по умолчанию, если None)

    Returns:
        list[TextRegion]: регионы со строго возрастающими order
    """
    options = options or SegmentationOptions()

    ink = ink_mask(image, options.min_contrast)
    if ink is None:
        logger.debug("Пустое изображение: нет контраста")
        return []

    words = detect_words(ink, options)
    words = merge_overlapping(words, options.iou_merge_threshold)
    if not words:
        logger.debug("Пустое изображение: нет рамок слов")
        return []

    lines = group_lines(words)
    blocks = group_blocks(lines, options.block_gap_ratio)
    regions = assign_reading_order(blocks)

    logger.debug(
        f"Сегментация: блоков {len(blocks)}, строк {len(lines)}, слов {len(words)}"
    )
    return regions


def ink_mask(image: NormalizedImage, min_contrast: int) -> Optional[np.ndarray]:
    """
    Булева маска чернил или None для пустого изображения.

    Светлый текст на тёмном фоне инвертируется: чернил всегда меньшинство.
    """
    pixels = image.pixels
    if pixels.size == 0:
        return None

    lo, hi = int(pixels.min()), int(pixels.max())
    if hi - lo < max(1, min_contrast):
        return None

    threshold = 128 if image.binarized else otsu_threshold(pixels)
    ink = pixels < threshold

    if ink.mean() > 0.5:
        ink = ~ink

    return ink


def otsu_threshold(pixels: np.ndarray) -> int:
    """Порог Оцу; чернила: pixel < threshold."""
    # cv2 возвращает t, при котором THRESH_BINARY оставляет 255 для pixel > t
    t, _ = cv2.threshold(
        np.array(pixels, dtype=np.uint8),
        0,
        255,
        cv2.THRESH_BINARY + cv2.THRESH_OTSU,
    )
    return int(t) + 1


def _runs(mask: np.ndarray) -> list[tuple[int, int]]:
    """(start, end) каждой серии True, end не включается."""
    padded = np.concatenate(([0], mask.astype(np.int8), [0]))
    diff = np.diff(padded)
    starts = np.flatnonzero(diff == 1)
    ends = np.flatnonzero(diff == -1)
    return list(zip(starts.tolist(), ends.tolist()))


def _merge_runs(runs: list[tuple[int, int]], gap: int) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in runs:
        if merged and start - merged[-1][1] < gap:
            merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def _merge_diacritic_bands(bands: list[tuple[int, int]]) -> list[tuple[int, int]]:
    result: list[tuple[int, int]] = []
    i = 0
    while i < len(bands):
        top, bottom = bands[i]
        if i + 1 < len(bands):
            next_top, next_bottom = bands[i + 1]
            height = bottom - top
            next_height = next_bottom - next_top
            gap = next_top - bottom
            if (
                height < DIACRITIC_HEIGHT_RATIO * next_height
                and gap <= max(2, next_height // 3)
            ):
                bands[i + 1] = (top, next_bottom)
                i += 1
                continue
        result.append((top, bottom))
        i += 1
    return result


def detect_words(ink: np.ndarray, options: SegmentationOptions) -> list[BBox]:
    """
    Рамки слов по проекционным профилям строк и столбцов.

    Args:
        ink: булева маска чернил
        options: пороги разрыва между словами и размера соринок

    Returns:
        list[BBox]: рамки, поджатые к чернилам, сверху вниз
    """
    bands = _merge_diacritic_bands(_runs(ink.any(axis=1)))

    words: list[BBox] = []
    for top, bottom in bands:
        band = ink[top:bottom]
        band_height = bottom - top
        gap = max(options.min_word_gap, int(round(options.word_gap_ratio * band_height)))

        for left, right in _merge_runs(_runs(band.any(axis=0)), gap):
            piece = band[:, left:right]
            if int(piece.sum()) < options.min_component_area:
                continue
            rows = np.flatnonzero(piece.any(axis=1))
            word_top = top + int(rows[0])
            word_bottom = top + int(rows[-1]) + 1
            words.append(BBox(left, word_top, right - left, word_bottom - word_top))

    return words


def merge_overlapping(boxes: list[BBox], threshold: float) -> list[BBox]:
    """
    Объединяет рамки с IoU выше порога.

    Повторяется до стабилизации, цепочки дубликатов схлопываются в одну рамку.
    """
    boxes = sorted(boxes, key=lambda b: (b.top, b.left, b.width, b.height))

    changed = True
    while changed:
        changed = False
        for i in range(len(boxes)):
            for j in range(i + 1, len(boxes)):
                if boxes[i].iou(boxes[j]) > threshold:
                    boxes[i] = boxes[i].union(boxes[j])
                    del boxes[j]
                    changed = True
                    break
            if changed:
                break

    return sorted(boxes, key=lambda b: (b.top, b.left))


def group_lines(words: list[BBox]) -> list[_Line]:
    """
    Группирует рамки слов в строки по вертикальному перекрытию.

    Слово попадает в строку с наибольшим перекрытием, если оно не меньше
    половины меньшей высоты; иначе начинает новую строку.
    """
    lines: list[_Line] = []

    for word in sorted(words, key=lambda b: (b.top, b.left)):
        best: Optional[_Line] = None
        best_overlap = 0
        for line in lines:
            overlap = line.bbox.vertical_overlap(word)
            needed = LINE_OVERLAP_RATIO * min(line.bbox.height, word.height)
            if overlap >= needed and overlap > best_overlap:
                best, best_overlap = line, overlap

        if best is None:
            lines.append(_Line(bbox=word, words=[word]))
        else:
            best.words.append(word)
            best.bbox = best.bbox.union(word)

    for line in lines:
        line.words.sort(key=lambda b: b.left)

    return sorted(lines, key=lambda ln: (ln.bbox.top, ln.bbox.left))


def group_blocks(lines: list[_Line], gap_ratio: float) -> list[_Block]:
    """
    Собирает строки в блоки.

    Строка присоединяется к ближайшему блоку выше, который перекрывает её
    по горизонтали и отстоит не больше чем на gap_ratio * высота строки.
    """
    blocks: list[_Block] = []

    for line in lines:
        best: Optional[_Block] = None
        best_gap: Optional[int] = None
        for block in blocks:
            if block.bbox.horizontal_overlap(line.bbox) == 0:
                continue
            last = block.lines[-1].bbox
            gap = line.bbox.top - block.bbox.bottom
            if gap > gap_ratio * max(last.height, line.bbox.height):
                continue
            if best_gap is None or gap < best_gap:
                best, best_gap = block, gap

        if best is None:
            blocks.append(_Block(bbox=line.bbox, lines=[line]))
        else:
            best.lines.append(line)
            best.bbox = best.bbox.union(line.bbox)

    for block in blocks:
        block.lines.sort(key=lambda ln: (ln.bbox.top, ln.bbox.left))

    return sorted(blocks, key=lambda b: (b.bbox.top, b.bbox.left))


def assign_reading_order(blocks: list[_Block]) -> list[TextRegion]:
    """Разворачивает иерархию в регионы с номерами 0, 1, 2, ... в порядке чтения."""
    regions: list[TextRegion] = []
    order = 0

    for block in blocks:
        block_order = order
        regions.append(TextRegion(order, RegionKind.BLOCK, block.bbox))
        order += 1

        for line in block.lines:
            line_order = order
            regions.append(
                TextRegion(order, RegionKind.LINE, line.bbox, block=block_order)
            )
            order += 1

            for word in line.words:
                regions.append(
                    TextRegion(
                        order,
                        RegionKind.WORD,
                        word,
                        line=line_order,
                        block=block_order,
                    )
                )
                order += 1

    return regions
