"""
OCR Engine: локальный HTTP сервис для десктопной оболочки.

Оболочка пересылает сюда действия пользователя и отображает события.

Эндпоинты:
    GET    /health: доступность распознавателя + CPU + конфиг диспетчера
    POST   /jobs: загрузка изображения, возвращает job_id
    GET    /jobs/{job_id}: состояние задачи
    GET    /jobs/{job_id}/result: документ завершённой задачи
    DELETE /jobs/{job_id}: отмена задачи
    DELETE /jobs/{job_id}/record: удалить завершённую задачу из памяти
    GET    /jobs/{job_id}/events: поток событий NDJSON до терминального события

Запуск:
    python -m ocr_engine.main
"""

import json
import logging
import os
import queue
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ocr_engine.config import Settings
from ocr_engine.errors import DispatcherClosed, JobNotFound
from ocr_engine.schemas import JobOptions
from ocr_engine.services.dispatcher import EventStream, JobDispatcher

logger = logging.getLogger(__name__)

# Как долго поток событий ждёт следующее событие, прежде чем проверить,
# не отключился ли клиент (секунды)
STREAM_POLL_SECONDS = 1.0


class UnicodeJSONResponse(JSONResponse):
    """JSON ответ с нормальным отображением кириллицы (без \\uXXXX экранирования)."""

    def render(self, content) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """
    Проверка работоспособности сервиса.

    Проверяет доступность распознавателя и возвращает конфиг диспетчера.

    Returns:
        dict: статус сервиса и информация о системе
    """
    dispatcher: JobDispatcher = request.app.state.dispatcher
    recognizer = dispatcher.pipeline.recognizer

    check = getattr(recognizer, "available", None)
    # available() запускает бинарник Tesseract, не блокируем event loop
    recognizer_ok = await run_in_threadpool(check) if callable(check) else True

    return {
        "status": "ok" if recognizer_ok else "degraded",
        "service": "ocr-engine",
        "cpu_count": os.cpu_count(),
        "recognizer": {
            "name": type(recognizer).__name__,
            "available": recognizer_ok,
        },
        "config": {
            "max_concurrent_jobs": dispatcher.config.max_concurrent_jobs,
            "default_timeout_seconds": dispatcher.config.default_timeout_seconds,
            "max_retained_jobs": dispatcher.config.max_retained_jobs,
            "max_file_size_mb": request.app.state.settings.max_file_size_mb,
        },
    }


@router.post("/jobs")
async def submit_job(
    request: Request,
    file: UploadFile = File(..., description="Изображение для распознавания"),
    options: Optional[str] = Form(
        default=None,
        description='JSON опции задачи: {"preprocess": {"deskew": true}}',
    ),
) -> dict:
    """
    Ставит задачу распознавания в очередь.

    Битые изображения здесь принимаются: задача падает внутри
    с событием decode_error.

    Raises:
        HTTPException: 400 неверные опции, 413 файл слишком большой,
            503 диспетчер остановлен
    """
    dispatcher: JobDispatcher = request.app.state.dispatcher
    settings: Settings = request.app.state.settings

    job_options = _parse_options(options, dispatcher.config.default_options)

    image_bytes = await file.read()
    max_size = settings.max_file_size_mb * 1024 * 1024
    if len(image_bytes) > max_size:
        raise HTTPException(
            status_code=413,
            detail={
                "error": "file_too_large",
                "message": f"Файл слишком большой: {len(image_bytes)} байт, "
                f"максимум: {settings.max_file_size_mb} MB",
            },
        )

    try:
        job_id = dispatcher.submit_job(image_bytes, job_options)
    except DispatcherClosed as e:
        raise HTTPException(status_code=503, detail={"error": "shutting_down", "message": str(e)})

    logger.info(f"Получен файл: {file.filename}, {len(image_bytes)} байт -> задача {job_id}")
    return {"job_id": job_id, "state": "queued"}


@router.get("/jobs/{job_id}")
async def get_job(request: Request, job_id: str) -> dict:
    dispatcher: JobDispatcher = request.app.state.dispatcher
    try:
        return dispatcher.status(job_id).to_dict()
    except JobNotFound:
        raise _not_found(job_id)


@router.get("/jobs/{job_id}/result")
async def get_job_result(request: Request, job_id: str) -> dict:
    """
    Документ завершённой задачи.

    Raises:
        HTTPException: 404 неизвестная задача, 409 задача не завершена
    """
    dispatcher: JobDispatcher = request.app.state.dispatcher
    try:
        info = dispatcher.status(job_id)
        document = dispatcher.result(job_id)
    except JobNotFound:
        raise _not_found(job_id)

    if document is None:
        raise HTTPException(
            status_code=409,
            detail={"error": "not_completed", "state": info.state.value},
        )
    return {"job_id": job_id, "document": document.to_dict(), "boxes": document.to_boxes()}


@router.delete("/jobs/{job_id}")
async def cancel_job(request: Request, job_id: str) -> dict:
    dispatcher: JobDispatcher = request.app.state.dispatcher
    try:
        dispatcher.status(job_id)
    except JobNotFound:
        raise _not_found(job_id)
    return {"job_id": job_id, "cancelled": dispatcher.cancel_job(job_id)}


@router.delete("/jobs/{job_id}/record")
async def forget_job(request: Request, job_id: str) -> dict:
    """
    Удаляет завершённую задачу вместе с результатом.

    Raises:
        HTTPException: 404 неизвестная задача, 409 задача ещё выполняется
    """
    dispatcher: JobDispatcher = request.app.state.dispatcher
    try:
        info = dispatcher.status(job_id)
    except JobNotFound:
        raise _not_found(job_id)

    if not dispatcher.forget(job_id):
        raise HTTPException(
            status_code=409,
            detail={"error": "not_finished", "state": info.state.value},
        )
    return {"job_id": job_id, "forgotten": True}


@router.get("/jobs/{job_id}/events")
async def job_events(request: Request, job_id: str) -> StreamingResponse:
    """
    Стримит события задачи в NDJSON, по событию на строку.

    Поток заканчивается после терминального события (completed, failed,
    cancelled) или когда клиент отключается.
    """
    dispatcher: JobDispatcher = request.app.state.dispatcher
    try:
        stream = dispatcher.event_stream(job_id)
    except JobNotFound:
        raise _not_found(job_id)

    return StreamingResponse(_ndjson(request, stream), media_type="application/x-ndjson")


async def _ndjson(request: Request, stream: EventStream) -> AsyncIterator[str]:
    """
    События потока в виде строк NDJSON.

    Ожидание события идёт в threadpool с таймаутом STREAM_POLL_SECONDS;
    между ожиданиями проверяется, не отключился ли клиент, чтобы
    подписка не висела до конца задачи.
    """
    try:
        while True:
            try:
                event = await run_in_threadpool(stream.get, STREAM_POLL_SECONDS)
            except queue.Empty:
                if await request.is_disconnected():
                    logger.info(f"Клиент отключился от событий задачи {stream.job_id}")
                    return
                continue

            yield json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
            if event.terminal:
                return
    finally:
        stream.close()


def _parse_options(options_json: Optional[str], default: JobOptions) -> JobOptions:
    """
    Парсит JSON опции задачи из поля формы.

    Returns:
        JobOptions: опции задачи или значения диспетчера, если поле пустое
    """
    if not options_json:
        return default

    try:
        return JobOptions.model_validate_json(options_json)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_options",
                "message": f"Неверные опции задачи: {e.errors(include_url=False, include_context=False)}",
            },
        )


def _not_found(job_id: str) -> HTTPException:
    logger.warning(f"Задача не найдена: {job_id}")
    return HTTPException(status_code=404, detail=f"Задача с id={job_id} не найдена")


def create_app(
    dispatcher: Optional[JobDispatcher] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Создаёт FastAPI приложение.

    Args:
        dispatcher: диспетчер для обслуживания; если None, создаётся из
            settings при старте и останавливается при завершении
        settings: настройки сервиса (из .env, если None)
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = dispatcher is None
        app.state.dispatcher = dispatcher or JobDispatcher(
            settings.recognizer(), settings.dispatcher_config()
        )
        try:
            yield
        finally:
            if owned:
                app.state.dispatcher.shutdown(wait=True, cancel_pending=True)

    app = FastAPI(
        title="OCR Engine",
        description="Задачи распознавания для десктопного OCR приложения",
        version="1.0.0",
        default_response_class=UnicodeJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [OCR-Engine] %(message)s",
        datefmt="%H:%M:%S",
    )

    service_settings = Settings()
    logger.info(f"Запуск OCR Engine на {service_settings.host}:{service_settings.port}")
    logger.info(f"CPU ядер: {os.cpu_count()}")

    uvicorn.run(
        create_app(settings=service_settings),
        host=service_settings.host,
        port=service_settings.port,
        log_level="info",
    )
