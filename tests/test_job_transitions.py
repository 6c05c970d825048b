from __future__ import annotations

import pytest


def test_job_moves_pending_processing_processed(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import transition_job

    job = make_job()
    assert job.state == JobState.PENDING

    with SessionLocal() as session:
        processing = transition_job(session, job_id=job.id, to_state=JobState.PROCESSING)
        assert processing.state == JobState.PROCESSING
        assert processing.processing_started_at is not None
        assert processing.terminal_at is None

        done = transition_job(
            session, job_id=job.id, to_state=JobState.PROCESSED, result=[{"name": "A"}]
        )
        assert done.state == JobState.PROCESSED
        assert done.result == [{"name": "A"}]
        assert done.error_detail is None
        assert done.terminal_at is not None


def test_terminal_jobs_cannot_move(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import InvalidTransition, get_job, transition_job

    job = make_job()
    with SessionLocal() as session:
        transition_job(session, job_id=job.id, to_state=JobState.PROCESSING)
        transition_job(
            session,
            job_id=job.id,
            to_state=JobState.FAILED,
            error_code="upstream_unavailable",
            error_detail="down",
        )

        with pytest.raises(InvalidTransition) as exc:
            transition_job(session, job_id=job.id, to_state=JobState.PROCESSED, result=[])
        assert exc.value.from_state == JobState.FAILED

        with pytest.raises(InvalidTransition):
            transition_job(session, job_id=job.id, to_state=JobState.PROCESSING)

        failed = get_job(session, job_id=job.id)
        assert failed.state == JobState.FAILED
        assert failed.result is None
        assert failed.error_code == "upstream_unavailable"


def test_pending_job_cannot_skip_processing(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import InvalidTransition, transition_job

    job = make_job()
    with SessionLocal() as session:
        with pytest.raises(InvalidTransition):
            transition_job(session, job_id=job.id, to_state=JobState.PROCESSED, result=[])


def test_terminal_payload_is_validated(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import transition_job

    job = make_job()
    with SessionLocal() as session:
        transition_job(session, job_id=job.id, to_state=JobState.PROCESSING)
        with pytest.raises(ValueError):
            transition_job(session, job_id=job.id, to_state=JobState.FAILED, error_detail=" ")
        with pytest.raises(ValueError):
            transition_job(session, job_id=job.id, to_state=JobState.PROCESSED)


def test_extraction_can_only_be_claimed_once(make_job):
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.models import JobState
    from fatural.modules.jobs.service import claim_extraction, transition_job

    job = make_job()
    with SessionLocal() as session:
        assert claim_extraction(session, job_id=job.id) is False
        transition_job(session, job_id=job.id, to_state=JobState.PROCESSING)
        assert claim_extraction(session, job_id=job.id) is True
        assert claim_extraction(session, job_id=job.id) is False


def test_jobs_are_scoped_to_their_owner(make_job):
    import uuid

    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.service import JobNotFound, get_job_for_owner, list_jobs_for_owner

    job = make_job()
    with SessionLocal() as session:
        with pytest.raises(JobNotFound):
            get_job_for_owner(session, job_id=job.id, owner_id=uuid.uuid4())
        assert [j.id for j in list_jobs_for_owner(session, owner_id=job.owner_id)] == [job.id]
