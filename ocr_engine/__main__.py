"""
Sidecar CLI: распознаёт одно изображение и печатает JSON в stdout.

Десктопная оболочка запускает `ocr-engine IMAGE` и разбирает stdout:
    - успех: [{"text": ..., "box": [[x, y], [x, y], [x, y], [x, y]]}, ...]
    - ошибка: {"error": ..., "kind": ...} и код выхода 1

Логи идут в stderr, чтобы stdout оставался машиночитаемым.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from ocr_engine.config import Settings
from ocr_engine.errors import OcrEngineError
from ocr_engine.schemas import RawImage
from ocr_engine.services.pipeline import OcrPipeline
from ocr_engine.services.recognition import Recognizer

logger = logging.getLogger("ocr_engine")


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ocr-engine",
        description="Распознать текст на изображении и напечатать рамки в JSON.",
    )
    p.add_argument("image", type=Path, help="Путь к файлу изображения.")
    p.add_argument("--lang", default=None, help="Языки Tesseract, например eng или rus+eng.")
    p.add_argument("--deskew", action="store_true", default=None, help="Исправлять наклон строк.")
    p.add_argument(
        "--level",
        choices=("line", "word"),
        default="line",
        help="Уровень рамок в выводе по умолчанию.",
    )
    p.add_argument(
        "--document",
        action="store_true",
        help="Напечатать полный документ блок/строка/слово вместо рамок.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Логировать время этапов в stderr.")
    return p


def main(argv: Optional[list[str]] = None, recognizer: Optional[Recognizer] = None) -> int:
    args = _build_arg_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s [OCR-Engine] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    overrides: dict = {}
    if args.lang:
        overrides["tesseract_lang"] = args.lang
    if args.deskew:
        overrides["deskew"] = True
    settings = Settings(**overrides)

    try:
        image_bytes = args.image.read_bytes()
    except OSError as e:
        _print_json({"error": f"Не удалось прочитать {args.image}: {e.strerror or e}", "kind": "io_error"})
        return 1

    pipeline = OcrPipeline(recognizer or settings.recognizer())

    try:
        document = pipeline.run(RawImage(image_bytes), settings.job_options())
    except OcrEngineError as e:
        logger.warning(f"Ошибка распознавания ({e.kind.value}): {e}")
        _print_json({"error": str(e), "kind": e.kind.value})
        return 1

    if args.document:
        _print_json(document.to_dict())
    else:
        _print_json(document.to_boxes(level=args.level))
    return 0


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


if __name__ == "__main__":
    raise SystemExit(main())
