from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import FakeExtractor


def _dispatcher(extractor, enqueued: list[str] | None = None, **kwargs):
    from fatural.core.db import SessionLocal
    from fatural.core.storage import get_storage
    from fatural.modules.jobs.dispatcher import JobDispatcher

    queue = enqueued if enqueued is not None else []
    return JobDispatcher(
        session_factory=SessionLocal,
        storage=get_storage(),
        extractor=extractor,
        enqueue=kwargs.pop("enqueue", queue.append),
        **kwargs,
    )


def _state(job_id):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.service import get_job

    with SessionLocal() as session:
        return get_job(session, job_id=job_id)


def _trigger(dispatcher, job):
    from fatural.core.db import SessionLocal

    with SessionLocal() as session:
        return dispatcher.trigger(
            session, owner_id=job.owner_id, job_id=str(job.id), source_ref=job.source_ref
        )


def test_trigger_returns_while_processing_then_job_completes(make_job):
    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor([{"name": "Kafe", "amount": "1,50"}])
    enqueued: list[str] = []
    dispatcher = _dispatcher(extractor, enqueued)
    job = make_job()

    outcome = _trigger(dispatcher, job)
    assert outcome.started is True
    assert outcome.job.state == JobState.PROCESSING
    assert enqueued == [str(job.id)]
    assert extractor.calls == []

    assert dispatcher.run(enqueued[0]) == JobState.PROCESSED
    done = _state(job.id)
    assert done.state == JobState.PROCESSED
    assert done.result[0]["name"] == "Kafe"
    assert done.result[0]["amount"] == "1.50"
    assert done.error_detail is None
    assert done.from_cache is False


def test_upstream_failure_ends_in_failed(make_job):
    from fatural.modules.extraction.errors import UpstreamUnavailable
    from fatural.modules.jobs.models import JobState

    dispatcher = _dispatcher(FakeExtractor(error=UpstreamUnavailable("Receipt AI timed out")))
    job = make_job()
    _trigger(dispatcher, job)

    assert dispatcher.run(job.id) == JobState.FAILED
    failed = _state(job.id)
    assert failed.result is None
    assert failed.error_code == "upstream_unavailable"
    assert failed.error_detail == "Receipt AI timed out"
    assert failed.terminal_at is not None


def test_unexpected_error_still_ends_in_failed(make_job):
    from fatural.modules.jobs.models import JobState

    dispatcher = _dispatcher(FakeExtractor(error=KeyError("boom")))
    job = make_job()
    _trigger(dispatcher, job)

    assert dispatcher.run(job.id) == JobState.FAILED
    failed = _state(job.id)
    assert failed.error_code == "internal_error"
    assert "KeyError" in failed.error_detail


def test_duplicate_trigger_is_a_noop(make_job):
    from fatural.modules.jobs.models import JobState

    enqueued: list[str] = []
    dispatcher = _dispatcher(FakeExtractor(), enqueued)
    job = make_job()

    first = _trigger(dispatcher, job)
    second = _trigger(dispatcher, job)
    assert first.started is True
    assert second.started is False
    assert second.job.state == JobState.PROCESSING
    assert len(enqueued) == 1


def test_trigger_on_terminal_job_is_rejected(make_job):
    from fatural.modules.jobs.service import InvalidTransition

    dispatcher = _dispatcher(FakeExtractor())
    job = make_job()
    _trigger(dispatcher, job)
    dispatcher.run(job.id)

    with pytest.raises(InvalidTransition):
        _trigger(dispatcher, job)


def test_trigger_validates_its_input(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import ValidationError

    dispatcher = _dispatcher(FakeExtractor())
    job = make_job()
    with SessionLocal() as session:
        for job_id, ref in [(None, job.source_ref), (str(job.id), ""), ("nope", job.source_ref)]:
            with pytest.raises(ValidationError):
                dispatcher.trigger(session, owner_id=job.owner_id, job_id=job_id, source_ref=ref)
        with pytest.raises(ValidationError):
            dispatcher.trigger(
                session, owner_id=job.owner_id, job_id=str(job.id), source_ref="other/key"
            )
    assert _state(job.id).state == JobState.PENDING


def test_enqueue_failure_fails_the_job(make_job):
    from fatural.modules.jobs.dispatcher import DispatchError
    from fatural.modules.jobs.models import JobState

    def _broken(_job_id: str) -> None:
        raise ConnectionError("broker down")

    dispatcher = _dispatcher(FakeExtractor(), enqueue=_broken)
    job = make_job()
    with pytest.raises(DispatchError):
        _trigger(dispatcher, job)

    failed = _state(job.id)
    assert failed.state == JobState.FAILED
    assert failed.error_code == "dispatch_failed"


def test_zero_items_is_processed_with_empty_result(make_job):
    from fatural.modules.jobs.models import JobState

    dispatcher = _dispatcher(FakeExtractor([]))
    job = make_job()
    _trigger(dispatcher, job)

    assert dispatcher.run(job.id) == JobState.PROCESSED
    assert _state(job.id).result == []


def test_identical_upload_hits_cache_with_one_upstream_call(make_job):
    from conftest import make_png

    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor([{"name": "Buke", "amount": "0,80"}])
    dispatcher = _dispatcher(extractor)
    body = make_png("red")

    first, second = make_job(body), make_job(body)
    for job in (first, second):
        _trigger(dispatcher, job)
        assert dispatcher.run(job.id) == JobState.PROCESSED

    assert extractor.calls == [1]
    assert _state(first.id).from_cache is False
    cached = _state(second.id)
    assert cached.from_cache is True
    assert cached.result == _state(first.id).result


def test_failed_extraction_is_not_cached(make_job):
    from conftest import make_png

    from fatural.modules.extraction.errors import MalformedResponse
    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor(error=MalformedResponse("bad"))
    dispatcher = _dispatcher(extractor)
    body = make_png("blue")

    first, second = make_job(body), make_job(body)
    for job in (first, second):
        _trigger(dispatcher, job)
        assert dispatcher.run(job.id) == JobState.FAILED
    assert extractor.calls == [1, 1]


def test_cache_can_be_disabled(make_job):
    from conftest import make_png

    extractor = FakeExtractor([{"name": "A", "amount": 1}])
    dispatcher = _dispatcher(extractor, cache_enabled=False)
    body = make_png("black")
    for job in (make_job(body), make_job(body)):
        _trigger(dispatcher, job)
        dispatcher.run(job.id)
    assert extractor.calls == [1, 1]


def test_missing_blob_fails_with_storage_error(make_job):
    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor()
    dispatcher = _dispatcher(extractor)
    job = make_job(store=False)
    _trigger(dispatcher, job)

    assert dispatcher.run(job.id) == JobState.FAILED
    assert _state(job.id).error_code == "storage_unavailable"
    assert extractor.calls == []


def test_unsupported_upload_fails_without_upstream_call(make_job):
    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor()
    dispatcher = _dispatcher(extractor)
    job = make_job(b"plain text, not a receipt", filename="notes.txt")
    _trigger(dispatcher, job)

    assert dispatcher.run(job.id) == JobState.FAILED
    assert _state(job.id).error_code == "unsupported_document"
    assert extractor.calls == []


def test_redelivered_task_does_not_extract_twice(make_job):
    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor([{"name": "A", "amount": 1}])
    dispatcher = _dispatcher(extractor)
    job = make_job()
    _trigger(dispatcher, job)

    assert dispatcher.run(job.id) == JobState.PROCESSED
    assert dispatcher.run(job.id) == JobState.PROCESSED
    assert extractor.calls == [1]


def test_claimed_job_is_skipped(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import claim_extraction

    extractor = FakeExtractor()
    dispatcher = _dispatcher(extractor)
    job = make_job()
    _trigger(dispatcher, job)
    with SessionLocal() as session:
        assert claim_extraction(session, job_id=job.id)

    assert dispatcher.run(job.id) == JobState.PROCESSING
    assert extractor.calls == []


def test_unknown_job_run_is_ignored():
    import uuid

    dispatcher = _dispatcher(FakeExtractor())
    assert dispatcher.run(uuid.uuid4()) is None


def test_stale_processing_jobs_are_swept(make_job):
    from sqlalchemy import update

    from fatural.core.db import SessionLocal
    from fatural.core.models import utcnow
    from fatural.modules.jobs.models import Job, JobState

    dispatcher = _dispatcher(FakeExtractor())
    stale, fresh = make_job(), make_job()
    _trigger(dispatcher, stale)
    _trigger(dispatcher, fresh)
    with SessionLocal() as session:
        session.execute(
            update(Job)
            .where(Job.id == stale.id)
            .values(processing_started_at=utcnow() - timedelta(hours=2))
        )
        session.commit()

    assert dispatcher.sweep_stale(older_than_minutes=30) == 1
    swept = _state(stale.id)
    assert swept.state == JobState.FAILED
    assert swept.error_code == "processing_timeout"
    assert _state(fresh.id).state == JobState.PROCESSING


def test_expired_cache_entry_is_refreshed_after_one_upstream_call(make_job):
    from conftest import make_png
    from sqlalchemy import update

    from fatural.core.db import SessionLocal
    from fatural.core.models import utcnow
    from fatural.modules.extraction.models import ExtractionCacheEntry
    from fatural.modules.jobs.models import JobState

    extractor = FakeExtractor([{"name": "Buke", "amount": "0,80"}])
    dispatcher = _dispatcher(extractor, cache_ttl_hours=1)
    body = make_png("green")

    first = make_job(body)
    _trigger(dispatcher, first)
    dispatcher.run(first.id)
    with SessionLocal() as session:
        session.execute(
            update(ExtractionCacheEntry).values(created_at=utcnow() - timedelta(hours=2))
        )
        session.commit()

    second, third = make_job(body), make_job(body)
    for job in (second, third):
        _trigger(dispatcher, job)
        assert dispatcher.run(job.id) == JobState.PROCESSED

    assert extractor.calls == [1, 1]
    assert _state(second.id).from_cache is False
    assert _state(third.id).from_cache is True
