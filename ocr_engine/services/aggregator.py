"""
Сборка распознанных слов в OcrDocument.

Алгоритм:
    - Слова одной строки соединяются пробелами
    - Строки и блоки разделяются переводом строки
    - Рамки строк и блоков покрывают все их слова
    - Уверенность: среднее уверенностей слов, взвешенное по длине
    - Слова с низкой уверенностью проходят правила замены символов

Чистая функция входа: одинаковые последовательности кандидатов всегда
дают одинаковые документы.
"""

import logging
import string
from typing import Optional, Sequence

from ocr_engine.schemas import (
    BBox,
    CorrectionOptions,
    OcrBlock,
    OcrDocument,
    OcrLine,
    OcrWord,
    RecognitionCandidate,
    RegionKind,
)

logger = logging.getLogger(__name__)

_NUMERIC_PUNCTUATION = set(".,-/:")


def aggregate(
    candidates: Sequence[RecognitionCandidate],
    correction: Optional[CorrectionOptions] = None,
) -> OcrDocument:
    """
    Строит документ блок -> строка -> слово из кандидатов слов.

    Args:
        candidates: по кандидату на регион слова одной сегментации
        correction: правила пост-коррекции (по умолчанию, если None)

    Returns:
        OcrDocument: иерархия, полный текст и общая уверенность

    Raises:
        ValueError: регион не-слово, нет строки/блока или повтор
            индекса порядка чтения
    """
    correction = correction or CorrectionOptions()
    _validate(candidates)

    # Структура: {block_order: {line_order: [words]}}
    blocks_data: dict[int, dict[int, list[OcrWord]]] = {}

    for candidate in sorted(candidates, key=lambda c: c.region.order):
        raw_text = candidate.text.strip()
        if not raw_text:
            continue

        text = correct_word(raw_text, candidate.confidence, correction)
        word = OcrWord(
            region=candidate.region,
            text=text,
            raw_text=raw_text,
            confidence=candidate.confidence,
            alternates=candidate.alternates,
            corrected=text != raw_text,
        )

        block = blocks_data.setdefault(candidate.region.block, {})
        block.setdefault(candidate.region.line, []).append(word)

    blocks: list[OcrBlock] = []
    for block_order in sorted(blocks_data):
        lines = tuple(
            OcrLine(
                order=line_order,
                bbox=_compute_bbox([w.region.bbox for w in words]),
                words=tuple(words),
            )
            for line_order, words in sorted(blocks_data[block_order].items())
        )
        blocks.append(
            OcrBlock(
                order=block_order,
                bbox=_compute_bbox([ln.bbox for ln in lines]),
                lines=lines,
            )
        )

    text = "\n".join(line.text for block in blocks for line in block.lines)
    words = [w for block in blocks for line in block.lines for w in line.words]

    return OcrDocument(
        blocks=tuple(blocks),
        text=text,
        confidence=weighted_confidence(words),
    )


def _validate(candidates: Sequence[RecognitionCandidate]) -> None:
    seen: set[int] = set()
    for candidate in candidates:
        region = candidate.region
        if region.kind != RegionKind.WORD:
            raise ValueError(f"Регион кандидата {region.order} не слово: {region.kind.value}")
        if region.line is None or region.block is None:
            raise ValueError(f"У региона слова {region.order} нет line/block")
        if region.order in seen:
            raise ValueError(f"Повтор индекса порядка чтения {region.order}")
        seen.add(region.order)


def _compute_bbox(boxes: list[BBox]) -> BBox:
    """Общий bbox для всех рамок."""
    result = boxes[0]
    for box in boxes[1:]:
        result = result.union(box)
    return result


def weighted_confidence(words: Sequence[OcrWord]) -> float:
    """Среднее уверенностей слов, взвешенное по числу символов; 0.0 для пустого списка."""
    total = sum(len(w.text) for w in words)
    if total == 0:
        return 0.0
    return sum(w.confidence * len(w.text) for w in words) / total


def correct_word(text: str, confidence: float, options: CorrectionOptions) -> str:
    """
    Применяет правила замены к слову с низкой уверенностью.

    Слово с уверенностью от порога и выше не меняется. Проверки контекста
    игнорируют пунктуацию по краям: "H0USE," считается буквенным словом.
    """
    if not options.enabled or confidence >= options.confidence_threshold:
        return text

    for rule in options.rules:
        if rule.source not in text:
            continue

        rest = text.replace(rule.source, "").strip(string.punctuation)
        if rule.context == "alpha" and not (rest and rest.isalpha()):
            continue
        if rule.context == "numeric" and not _is_numeric(rest):
            continue

        text = text.replace(rule.source, rule.target)

    return text


def _is_numeric(text: str) -> bool:
    return any(c.isdigit() for c in text) and all(
        c.isdigit() or c in _NUMERIC_PUNCTUATION for c in text
    )
