"""
Поведение диспетчера: машина состояний, FIFO и лимит параллельности,
отмена, таймауты, изоляция ошибок и хранение завершённых задач.
"""

import time

import pytest

from conftest import (
    GateRecognizer,
    SlowRecognizer,
    UnavailableRecognizer,
    drain,
    wait_for,
)
from ocr_engine.errors import DispatcherClosed, ErrorKind, JobNotFound, RecognizerUnavailable
from ocr_engine.schemas import (
    Cancelled,
    Completed,
    DispatcherConfig,
    Failed,
    JobOptions,
    JobState,
    Progress,
    RegionKind,
    StateChanged,
)
from ocr_engine.services.dispatcher import JobDispatcher

PIPELINE_STATES = [
    JobState.QUEUED,
    JobState.PREPROCESSING,
    JobState.SEGMENTING,
    JobState.RECOGNIZING,
    JobState.AGGREGATING,
]


def _states(events):
    return [e.state for e in events if isinstance(e, StateChanged)]


def _dispatcher(recognizer, workers=2, **config):
    return JobDispatcher(recognizer, DispatcherConfig(max_concurrent_jobs=workers, **config))


def _started_at(events):
    return next(
        e.at for e in events
        if isinstance(e, StateChanged) and e.state == JobState.PREPROCESSING
    )


def test_word_image_completes_with_one_word(recognizer, word_png):
    with _dispatcher(recognizer) as dispatcher:
        job_id = dispatcher.submit_job(word_png)
        events = drain(dispatcher.event_stream(job_id))

    assert _states(events) == PIPELINE_STATES
    final = events[-1]
    assert isinstance(final, Completed)
    assert final.document.text == "TEST"
    words = [r for r in final.document.regions if r.kind == RegionKind.WORD]
    assert len(words) == 1
    assert sum(1 for e in events if e.terminal) == 1


def test_blank_image_completes_empty(recognizer, blank_png):
    with _dispatcher(recognizer) as dispatcher:
        job_id = dispatcher.submit_job(blank_png)
        events = drain(dispatcher.event_stream(job_id))

    final = events[-1]
    assert isinstance(final, Completed)
    assert final.document.text == ""
    assert final.document.regions == []
    assert recognizer.calls == 0


def test_malformed_image_fails_without_progress(recognizer, malformed_bytes):
    with _dispatcher(recognizer) as dispatcher:
        job_id = dispatcher.submit_job(malformed_bytes)
        events = drain(dispatcher.event_stream(job_id))
        info = dispatcher.status(job_id)

    final = events[-1]
    assert isinstance(final, Failed)
    assert final.error_kind == ErrorKind.DECODE_ERROR
    assert not any(isinstance(e, Progress) for e in events)
    assert info.state == JobState.FAILED
    assert info.error_kind == ErrorKind.DECODE_ERROR


def test_progress_is_reported_per_stage(recognizer, word_png):
    with _dispatcher(recognizer) as dispatcher:
        events = drain(dispatcher.event_stream(dispatcher.submit_job(word_png)))

    finished = [e.stage for e in events if isinstance(e, Progress) and e.fraction == 1.0]
    assert finished == PIPELINE_STATES[1:]
    assert all(0.0 <= e.fraction <= 1.0 for e in events if isinstance(e, Progress))


def test_recognizer_unavailable_fails_job(word_png):
    with _dispatcher(UnavailableRecognizer()) as dispatcher:
        events = drain(dispatcher.event_stream(dispatcher.submit_job(word_png)))

    final = events[-1]
    assert isinstance(final, Failed)
    assert final.error_kind == ErrorKind.RECOGNIZER_UNAVAILABLE


def test_failure_does_not_affect_other_jobs(recognizer, word_png, malformed_bytes):
    with _dispatcher(recognizer) as dispatcher:
        bad = dispatcher.submit_job(malformed_bytes)
        good = dispatcher.submit_job(word_png)
        bad_events = drain(dispatcher.event_stream(bad))
        good_events = drain(dispatcher.event_stream(good))

    assert isinstance(bad_events[-1], Failed)
    assert isinstance(good_events[-1], Completed)
    assert good_events[-1].document.text == "TEST"


def test_concurrency_limit_keeps_excess_jobs_queued(word_png):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=2)
    try:
        ids = [dispatcher.submit_job(word_png) for _ in range(3)]
        wait_for(lambda: gate.calls == 2)
        time.sleep(0.1)

        states = [dispatcher.status(job_id).state for job_id in ids]
        assert states == [JobState.RECOGNIZING, JobState.RECOGNIZING, JobState.QUEUED]
        assert gate.calls == 2

        gate.release.set()
        for job_id in ids:
            assert isinstance(drain(dispatcher.event_stream(job_id))[-1], Completed)
    finally:
        gate.release.set()
        dispatcher.shutdown()


def test_jobs_start_in_submission_order(recognizer, word_png):
    with _dispatcher(recognizer, workers=1) as dispatcher:
        ids = [dispatcher.submit_job(word_png) for _ in range(4)]
        histories = [drain(dispatcher.event_stream(job_id)) for job_id in ids]

    started = [_started_at(events) for events in histories]
    assert started == sorted(started)
    # With one worker a job starts only after the previous one completed
    for previous, current in zip(histories, histories[1:]):
        previous_end = previous[-1].at
        current_start = _started_at(current)
        assert previous_end <= current_start


def test_cancel_queued_job_runs_no_stage(word_png):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=1)
    try:
        running = dispatcher.submit_job(word_png)
        queued = dispatcher.submit_job(word_png)
        wait_for(lambda: gate.calls == 1)

        assert dispatcher.cancel_job(queued) is True
        events = drain(dispatcher.event_stream(queued))
        assert [type(e) for e in events] == [StateChanged, Cancelled]
        assert events[0].state == JobState.QUEUED

        gate.release.set()
        assert isinstance(drain(dispatcher.event_stream(running))[-1], Completed)
    finally:
        gate.release.set()
        dispatcher.shutdown()

    assert gate.calls == 1
    assert dispatcher.status(queued).state == JobState.CANCELLED


def test_cancel_running_job_stops_at_next_boundary(word_png):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=1)
    try:
        job_id = dispatcher.submit_job(word_png)
        stream = dispatcher.event_stream(job_id)
        wait_for(lambda: gate.calls == 1)

        assert dispatcher.cancel(job_id) is True
        gate.release.set()
        events = drain(stream)
    finally:
        gate.release.set()
        dispatcher.shutdown()

    assert isinstance(events[-1], Cancelled)
    assert not any(isinstance(e, Completed) for e in events)
    assert JobState.AGGREGATING not in _states(events)
    assert dispatcher.status(job_id).state == JobState.CANCELLED


def test_cancel_terminal_or_unknown_job_returns_false(recognizer, word_png):
    with _dispatcher(recognizer) as dispatcher:
        job_id = dispatcher.submit_job(word_png)
        drain(dispatcher.event_stream(job_id))

        assert dispatcher.cancel(job_id) is False
        assert dispatcher.cancel("no-such-job") is False
        assert dispatcher.status(job_id).state == JobState.COMPLETED


def test_timeout_fails_job(word_png):
    dispatcher = _dispatcher(SlowRecognizer(delay=0.3))
    try:
        job_id = dispatcher.submit_job(word_png, JobOptions(timeout_seconds=0.1))
        events = drain(dispatcher.event_stream(job_id))
    finally:
        dispatcher.shutdown()

    final = events[-1]
    assert isinstance(final, Failed)
    assert final.error_kind == ErrorKind.TIMEOUT
    assert not any(isinstance(e, Completed) for e in events)


def test_dispatcher_default_timeout(word_png):
    dispatcher = _dispatcher(SlowRecognizer(delay=0.3), default_timeout_seconds=0.1)
    try:
        events = drain(dispatcher.event_stream(dispatcher.submit_job(word_png)))
    finally:
        dispatcher.shutdown()

    assert isinstance(events[-1], Failed)
    assert events[-1].error_kind == ErrorKind.TIMEOUT


def test_late_subscriber_gets_full_history(recognizer, word_png):
    with _dispatcher(recognizer) as dispatcher:
        job_id = dispatcher.submit_job(word_png)
        live = drain(dispatcher.event_stream(job_id))
        replay = drain(dispatcher.event_stream(job_id))

    assert replay == live


def test_result_of_completed_job(recognizer, word_png, malformed_bytes):
    with _dispatcher(recognizer) as dispatcher:
        good = dispatcher.submit_job(word_png)
        bad = dispatcher.submit_job(malformed_bytes)
        drain(dispatcher.event_stream(good))
        drain(dispatcher.event_stream(bad))

        assert dispatcher.result(good).text == "TEST"
        assert dispatcher.result(bad) is None
        assert {info.job_id for info in dispatcher.jobs()} == {good, bad}


def test_unknown_job_raises(recognizer):
    with _dispatcher(recognizer) as dispatcher:
        with pytest.raises(JobNotFound):
            dispatcher.status("missing")
        with pytest.raises(JobNotFound):
            dispatcher.event_stream("missing")


def test_shutdown_drains_and_rejects_new_jobs(recognizer, word_png):
    dispatcher = _dispatcher(recognizer, workers=1)
    ids = [dispatcher.submit_job(word_png) for _ in range(3)]
    dispatcher.shutdown(wait=True)

    assert [dispatcher.status(job_id).state for job_id in ids] == [JobState.COMPLETED] * 3
    with pytest.raises(DispatcherClosed):
        dispatcher.submit_job(word_png)


def test_shutdown_can_cancel_pending(word_png):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=1)
    running = dispatcher.submit_job(word_png)
    pending = dispatcher.submit_job(word_png)
    wait_for(lambda: gate.calls == 1)

    dispatcher.shutdown(wait=False, cancel_pending=True)
    gate.release.set()
    drain(dispatcher.event_stream(running))

    assert dispatcher.status(running).state == JobState.COMPLETED
    assert dispatcher.status(pending).state == JobState.CANCELLED
    assert gate.calls == 1


class _FailAfterGate(GateRecognizer):
    """Ждёт release, затем падает так, будто модель выгрузили."""

    def recognize(self, image):
        super().recognize(image)
        raise RecognizerUnavailable("model unloaded")


def test_accepted_cancel_wins_over_stage_failure(word_png):
    gate = _FailAfterGate()
    dispatcher = _dispatcher(gate, workers=1)
    try:
        job_id = dispatcher.submit_job(word_png)
        stream = dispatcher.event_stream(job_id)
        wait_for(lambda: gate.calls == 1)

        assert dispatcher.cancel(job_id) is True
        gate.release.set()
        events = drain(stream)
    finally:
        gate.release.set()
        dispatcher.shutdown()

    assert isinstance(events[-1], Cancelled)
    assert not any(isinstance(e, Failed) for e in events)
    info = dispatcher.status(job_id)
    assert info.state == JobState.CANCELLED
    assert info.error_kind is None


def test_finished_job_releases_input_image(recognizer, word_png, malformed_bytes):
    with _dispatcher(recognizer) as dispatcher:
        good = dispatcher.submit_job(word_png)
        bad = dispatcher.submit_job(malformed_bytes)
        drain(dispatcher.event_stream(good))
        drain(dispatcher.event_stream(bad))

        assert dispatcher._jobs[good].raw is None
        assert dispatcher._jobs[bad].raw is None


def test_cancelled_queued_job_releases_input_image(word_png):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=1)
    try:
        dispatcher.submit_job(word_png)
        queued = dispatcher.submit_job(word_png)
        assert dispatcher.cancel(queued) is True
        assert dispatcher._jobs[queued].raw is None
    finally:
        gate.release.set()
        dispatcher.shutdown()


def test_oldest_finished_jobs_are_evicted(recognizer, word_png):
    with _dispatcher(recognizer, workers=1, max_retained_jobs=2) as dispatcher:
        ids = []
        for _ in range(4):
            job_id = dispatcher.submit_job(word_png)
            drain(dispatcher.event_stream(job_id))
            ids.append(job_id)

        for evicted in ids[:2]:
            with pytest.raises(JobNotFound):
                dispatcher.status(evicted)
        assert [dispatcher.status(job_id).state for job_id in ids[2:]] == [JobState.COMPLETED] * 2
        assert {info.job_id for info in dispatcher.jobs()} == set(ids[2:])


def test_running_jobs_are_never_evicted(word_png, malformed_bytes):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=2, max_retained_jobs=1)
    try:
        running = dispatcher.submit_job(word_png)
        wait_for(lambda: gate.calls == 1)
        for _ in range(3):
            drain(dispatcher.event_stream(dispatcher.submit_job(malformed_bytes)))

        assert dispatcher.status(running).state == JobState.RECOGNIZING
        gate.release.set()
        drain(dispatcher.event_stream(running))
        assert dispatcher.result(running).text == "TEST"
    finally:
        gate.release.set()
        dispatcher.shutdown()


def test_forget_finished_job(recognizer, word_png):
    with _dispatcher(recognizer) as dispatcher:
        job_id = dispatcher.submit_job(word_png)
        drain(dispatcher.event_stream(job_id))

        assert dispatcher.forget(job_id) is True
        with pytest.raises(JobNotFound):
            dispatcher.status(job_id)
        assert dispatcher.forget(job_id) is False
        assert dispatcher.forget("no-such-job") is False


def test_forget_running_job_is_refused(word_png):
    gate = GateRecognizer()
    dispatcher = _dispatcher(gate, workers=1)
    try:
        job_id = dispatcher.submit_job(word_png)
        wait_for(lambda: gate.calls == 1)

        assert dispatcher.forget(job_id) is False
        assert dispatcher.status(job_id).state == JobState.RECOGNIZING
    finally:
        gate.release.set()
        dispatcher.shutdown()
