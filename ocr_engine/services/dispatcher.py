"""
Диспетчер задач: запросы UI -> выполнение пайплайна -> поток событий.

Конкурентность:
    - ThreadPoolExecutor на max_concurrent_jobs воркеров; его очередь
      держит лишние задачи в состоянии Queued в порядке FIFO
    - Этапы одной задачи выполняются последовательно на одном воркере
    - Один лок охраняет таблицу задач, переходы состояний и публикацию

Отмена и таймауты кооперативные: флаг (или истёкший дедлайн)
проверяется на каждой границе этапов, текущий этап дорабатывает.
Ошибка этапа завершает только свою задачу.

Память: у завершённой задачи сразу освобождается исходное изображение,
а в таблице хранится не больше max_retained_jobs завершённых задач
(старые вытесняются, forget() удаляет задачу явно).

Жизненный цикл:
    dispatcher = JobDispatcher(recognizer, config)
    job_id = dispatcher.submit_job(image_bytes)
    for event in dispatcher.event_stream(job_id): ...
    dispatcher.shutdown()  # дожидается задач в работе
"""

import logging
import queue
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Optional, TypeVar

from ocr_engine.errors import (
    DispatcherClosed,
    ErrorKind,
    JobNotFound,
    JobTimeout,
    OcrEngineError,
)
from ocr_engine.schemas import (
    STATE_SEQUENCE,
    Cancelled,
    Completed,
    DispatcherConfig,
    Failed,
    JobEvent,
    JobInfo,
    JobOptions,
    JobState,
    OcrDocument,
    Progress,
    RawImage,
    StateChanged,
)
from ocr_engine.services.pipeline import OcrPipeline
from ocr_engine.services.recognition import Recognizer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _StopJob(Exception):
    """Задача дошла до границы после отмены, таймаута или внешнего завершения."""


@dataclass
class _Job:
    """
    Запись о задаче, принадлежит диспетчеру.

    Attributes:
        job_id: уникальный id отправки
        raw: входное изображение (только чтение); None после завершения
        options: действующие опции задачи
        timeout: дедлайн в секундах от начала выполнения
        state: текущее состояние
        cancel_requested: флаг, проверяемый на границах этапов
        history: все опубликованные события, повторяются поздним подписчикам
        subscribers: открытые потоки событий
    """

    job_id: str
    raw: Optional[RawImage]
    options: JobOptions
    timeout: Optional[float]
    created_at: datetime = field(default_factory=datetime.now)
    state: JobState = JobState.QUEUED
    error_kind: Optional[ErrorKind] = None
    cancel_requested: bool = False
    deadline: Optional[float] = None
    future: Optional[Future] = None
    history: list[JobEvent] = field(default_factory=list)
    subscribers: list["EventStream"] = field(default_factory=list)

    def info(self) -> JobInfo:
        return JobInfo(
            job_id=self.job_id,
            state=self.state,
            created_at=self.created_at,
            error_kind=self.error_kind,
        )


class EventStream:
    """
    Подписка на события одной задачи.

    Итерация отдаёт события в порядке переходов и заканчивается после
    терминального события (Completed, Failed или Cancelled). close()
    отписывает поток досрочно.
    """

    def __init__(self, job_id: str, on_close: Callable[["EventStream"], None]) -> None:
        self.job_id = job_id
        self._queue: "queue.Queue[JobEvent]" = queue.Queue()
        self._on_close = on_close
        self._finished = False

    def _put(self, event: JobEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> JobEvent:
        """
        Следующее событие задачи.

        Raises:
            queue.Empty: за timeout событий не было
        """
        event = self._queue.get(timeout=timeout)
        if event.terminal:
            self._finished = True
            self.close()
        return event

    def __iter__(self) -> Iterator[JobEvent]:
        while not self._finished:
            yield self.get()

    def close(self) -> None:
        self._on_close(self)

    def __enter__(self) -> "EventStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class JobDispatcher:
    """
    Распределяет OCR задачи по пулу воркеров фиксированного размера.

    Args:
        recognizer: распознаватель, общий для всех задач
        config: размер пула, таймаут и опции по умолчанию, лимит хранения
    """

    def __init__(
        self, recognizer: Recognizer, config: Optional[DispatcherConfig] = None
    ) -> None:
        self.config = config or DispatcherConfig()
        self.pipeline = OcrPipeline(recognizer)

        self._lock = threading.RLock()
        self._jobs: dict[str, _Job] = {}
        # id завершённых задач в порядке завершения
        self._finished: deque[str] = deque()
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_jobs,
            thread_name_prefix="ocr-job",
        )

        logger.info(
            f"Диспетчер запущен: воркеров {self.config.max_concurrent_jobs}, "
            f"таймаут {self.config.default_timeout_seconds or 'нет'}"
        )

    # ------------------------------------------------------------------
    # Внешний интерфейс
    # ------------------------------------------------------------------

    def submit(self, raw: RawImage, options: Optional[JobOptions] = None) -> str:
        """
        Ставит задачу распознавания в очередь, возвращает управление сразу.

        Args:
            raw: входное изображение, после отправки не изменяется
            options: опции задачи (по умолчанию из конфигурации диспетчера)

        Returns:
            str: id задачи

        Raises:
            DispatcherClosed: диспетчер остановлен
        """
        options = options or self.config.default_options
        timeout = options.timeout_seconds or self.config.default_timeout_seconds

        with self._lock:
            if self._closed:
                raise DispatcherClosed("Диспетчер остановлен")

            job = _Job(
                job_id=uuid.uuid4().hex,
                raw=raw,
                options=options,
                timeout=timeout,
            )
            self._jobs[job.job_id] = job
            self._publish(job, StateChanged(job.job_id, state=JobState.QUEUED))
            job.future = self._executor.submit(self._execute, job)

        logger.info(f"Задача {job.job_id} в очереди: {len(raw.data)} байт")
        return job.job_id

    def submit_job(self, image_bytes: bytes, options: Optional[JobOptions] = None) -> str:
        """Ставит в очередь задачу для закодированного файла (PNG, JPEG, ...)."""
        return self.submit(RawImage(image_bytes), options)

    def cancel(self, job_id: str) -> bool:
        """
        Запрашивает отмену задачи.

        Задача в очереди отменяется сразу и не выполняет ни одного этапа;
        выполняемая задача останавливается на ближайшей границе этапов.
        Принятая отмена всегда заканчивается событием Cancelled.

        Returns:
            bool: True, если задача в очереди/в работе отменена; False, если
                задача неизвестна или уже завершена
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state.is_terminal:
                return False

            job.cancel_requested = True
            if job.state == JobState.QUEUED:
                if job.future is not None:
                    job.future.cancel()
                self._terminate(job, JobState.CANCELLED, Cancelled(job.job_id))

        logger.info(f"Задача {job_id}: запрошена отмена")
        return True

    def subscribe(self, job_id: str) -> EventStream:
        """
        Открывает поток событий задачи.

        События, опубликованные до подписки, повторяются первыми, поэтому
        подписчик никогда не пропускает начало задачи.

        Raises:
            JobNotFound: неизвестный id задачи
        """
        with self._lock:
            job = self._get(job_id)
            stream = EventStream(job_id, self._unsubscribe)
            for event in job.history:
                stream._put(event)
            if not job.state.is_terminal:
                job.subscribers.append(stream)
        return stream

    # Имена, которые использует командный слой UI
    cancel_job = cancel
    event_stream = subscribe

    def status(self, job_id: str) -> JobInfo:
        """
        Raises:
            JobNotFound: неизвестный id задачи
        """
        with self._lock:
            return self._get(job_id).info()

    def result(self, job_id: str) -> Optional[OcrDocument]:
        """
        Документ завершённой задачи; None, пока она выполняется или если не завершилась успешно.

        Raises:
            JobNotFound: неизвестный id задачи
        """
        with self._lock:
            job = self._get(job_id)
            if job.state != JobState.COMPLETED:
                return None
            final = job.history[-1]
            return final.document if isinstance(final, Completed) else None

    def jobs(self) -> list[JobInfo]:
        with self._lock:
            return [job.info() for job in self._jobs.values()]

    def forget(self, job_id: str) -> bool:
        """
        Удаляет завершённую задачу вместе с историей и результатом.

        Returns:
            bool: True, если задача удалена; False, если она неизвестна
                или ещё не завершена
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.state.is_terminal:
                return False
            del self._jobs[job_id]
            self._finished.remove(job_id)
        return True

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """
        Перестаёт принимать задачи.

        Args:
            wait: дождаться задач в работе (и в очереди, если не отменены)
            cancel_pending: отменить задачи, ещё стоящие в очереди
        """
        with self._lock:
            self._closed = True
            pending = [j.job_id for j in self._jobs.values() if j.state == JobState.QUEUED]

        if cancel_pending:
            for job_id in pending:
                self.cancel(job_id)

        logger.info(f"Остановка диспетчера: wait={wait}, в очереди={len(pending)}")
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "JobDispatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown(wait=True, cancel_pending=True)

    # ------------------------------------------------------------------
    # Сторона воркера
    # ------------------------------------------------------------------

    def _execute(self, job: _Job) -> None:
        """Выполняет этапы одной задачи в потоке воркера."""
        with self._lock:
            if job.state.is_terminal:
                return
            raw = job.raw
            if job.timeout is not None:
                job.deadline = time.monotonic() + job.timeout

        opts = job.options
        start = time.perf_counter()

        try:
            image = self._stage(
                job, JobState.PREPROCESSING,
                lambda: self.pipeline.preprocess(raw, opts),
            )
            regions = self._stage(
                job, JobState.SEGMENTING,
                lambda: self.pipeline.segment(image, opts),
            )
            candidates = self._stage(
                job, JobState.RECOGNIZING,
                lambda: self.pipeline.recognize(
                    image, regions, opts, progress=self._progress_reporter(job)
                ),
            )
            document = self._stage(
                job, JobState.AGGREGATING,
                lambda: self.pipeline.aggregate(candidates, opts),
            )
            self._complete(job, document)
            logger.info(
                f"Задача {job.job_id} завершена: слов {len(document.words)}, "
                f"уверенность {document.confidence:.2f}, "
                f"{int((time.perf_counter() - start) * 1000)}ms"
            )
        except _StopJob:
            pass
        except OcrEngineError as e:
            self._fail(job, e.kind, str(e))
        except Exception as e:
            logger.exception(f"Задача {job.job_id}: непредвиденная ошибка: {e}")
            self._fail(job, ErrorKind.INTERNAL_ERROR, str(e))

    def _stage(self, job: _Job, state: JobState, run: Callable[[], T]) -> T:
        with self._lock:
            self._check_boundary(job)
            self._transition(job, state)

        result = run()

        with self._lock:
            if not job.state.is_terminal:
                self._publish(job, Progress(job.job_id, stage=state, fraction=1.0))
        return result

    def _progress_reporter(self, job: _Job) -> Callable[[int, int], None]:
        def report(done: int, total: int) -> None:
            # Финальный 1.0 публикуется в конце этапа
            if done >= total:
                return
            with self._lock:
                if not job.state.is_terminal:
                    self._publish(
                        job,
                        Progress(job.job_id, stage=JobState.RECOGNIZING, fraction=done / total),
                    )

        return report

    def _check_boundary(self, job: _Job) -> None:
        """Учитывает отмену и дедлайн; вызывающий держит лок."""
        if job.state.is_terminal:
            raise _StopJob()

        if job.cancel_requested:
            logger.info(f"Задача {job.job_id} отменена после {job.state.value}")
            self._terminate(job, JobState.CANCELLED, Cancelled(job.job_id))
            raise _StopJob()

        if job.deadline is not None and time.monotonic() > job.deadline:
            error = JobTimeout(f"Задача превысила дедлайн {job.timeout}s")
            job.error_kind = error.kind
            self._terminate(
                job, JobState.FAILED, Failed(job.job_id, error_kind=error.kind, message=str(error))
            )
            logger.warning(f"Задача {job.job_id}: таймаут")
            raise _StopJob()

    def _transition(self, job: _Job, state: JobState) -> None:
        """Переход вперёд по машине состояний; вызывающий держит лок."""
        current = STATE_SEQUENCE.index(job.state)
        target = STATE_SEQUENCE.index(state)
        if target <= current:
            raise RuntimeError(
                f"Задача {job.job_id}: недопустимый переход {job.state.value} -> {state.value}"
            )
        job.state = state
        self._publish(job, StateChanged(job.job_id, state=state))

    def _complete(self, job: _Job, document: OcrDocument) -> None:
        with self._lock:
            # Последняя граница: отмена или дедлайн во время агрегации
            # важнее результата
            self._check_boundary(job)
            self._terminate(job, JobState.COMPLETED, Completed(job.job_id, document=document))

    def _fail(self, job: _Job, kind: ErrorKind, message: str) -> None:
        with self._lock:
            if job.state.is_terminal:
                return

            if job.cancel_requested:
                # Отмена уже принята: ошибка этапа только логируется
                logger.warning(
                    f"Задача {job.job_id}: ошибка этапа после отмены ({kind.value}): {message}"
                )
                self._terminate(job, JobState.CANCELLED, Cancelled(job.job_id))
                return

            logger.warning(f"Задача {job.job_id} упала ({kind.value}): {message}")
            job.error_kind = kind
            self._terminate(job, JobState.FAILED, Failed(job.job_id, error_kind=kind, message=message))

    def _terminate(self, job: _Job, state: JobState, event: JobEvent) -> None:
        """Переводит в терминальное состояние и закрывает подписки; вызывающий держит лок."""
        job.state = state
        job.raw = None
        self._publish(job, event)
        job.subscribers.clear()

        self._finished.append(job.job_id)
        while len(self._finished) > self.config.max_retained_jobs:
            evicted = self._finished.popleft()
            self._jobs.pop(evicted, None)

    def _publish(self, job: _Job, event: JobEvent) -> None:
        job.history.append(event)
        for stream in job.subscribers:
            stream._put(event)

    def _unsubscribe(self, stream: EventStream) -> None:
        with self._lock:
            job = self._jobs.get(stream.job_id)
            if job is not None and stream in job.subscribers:
                job.subscribers.remove(stream)

    def _get(self, job_id: str) -> _Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job
