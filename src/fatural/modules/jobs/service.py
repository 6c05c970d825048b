from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from fatural.core.logging import get_logger, log_event
from fatural.core.models import utcnow
from fatural.modules.jobs.models import Job, JobState

logger = get_logger(__name__)

ALLOWED_PREDECESSORS: dict[JobState, frozenset[JobState]] = {
    JobState.PROCESSING: frozenset({JobState.PENDING}),
    JobState.PROCESSED: frozenset({JobState.PROCESSING}),
    JobState.FAILED: frozenset({JobState.PROCESSING}),
}

MAX_ERROR_DETAIL_CHARS = 500


class JobNotFound(LookupError):
    pass


class ValidationError(ValueError):
    pass


class InvalidTransition(RuntimeError):
    def __init__(self, job_id: uuid.UUID, from_state: JobState, to_state: JobState) -> None:
        super().__init__(
            f"Job {job_id} cannot move from {from_state.value} to {to_state.value}"
        )
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state


def create_job(
    session: Session,
    *,
    owner_id: uuid.UUID,
    source_ref: str,
    filename: str,
    content_type: str | None,
    byte_size: int,
    sha256: str,
) -> Job:
    if not source_ref:
        raise ValidationError("source_ref is required")
    job = Job(
        owner_id=owner_id,
        source_ref=source_ref,
        filename=filename,
        content_type=content_type,
        byte_size=byte_size,
        sha256=sha256,
        state=JobState.PENDING,
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    log_event(
        logger,
        "job.created",
        job_id=str(job.id),
        owner_id=str(owner_id),
        source_ref=source_ref,
        byte_size=byte_size,
    )
    return job


def get_job(session: Session, *, job_id: uuid.UUID) -> Job:
    job = session.scalar(
        select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    )
    if job is None:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def get_job_for_owner(session: Session, *, job_id: uuid.UUID, owner_id: uuid.UUID) -> Job:
    job = get_job(session, job_id=job_id)
    if job.owner_id != owner_id:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def list_jobs_for_owner(
    session: Session, *, owner_id: uuid.UUID, states: Iterable[JobState] | None = None
) -> list[Job]:
    stmt = select(Job).where(Job.owner_id == owner_id)
    if states:
        stmt = stmt.where(Job.state.in_(list(states)))
    return list(session.scalars(stmt.order_by(Job.created_at.desc())))


def _transition_values(
    to_state: JobState,
    *,
    result: list[dict[str, Any]] | None,
    error_code: str | None,
    error_detail: str | None,
    from_cache: bool,
) -> dict[str, Any]:
    now = utcnow()
    values: dict[str, Any] = {"state": to_state, "updated_at": now}
    if to_state == JobState.PROCESSING:
        if result is not None or error_detail:
            raise ValueError("processing carries no payload")
        values["processing_started_at"] = now
    elif to_state == JobState.PROCESSED:
        if result is None or error_detail:
            raise ValueError("processed requires a result and no error")
        values.update(result=result, from_cache=from_cache, terminal_at=now)
    elif to_state == JobState.FAILED:
        detail = (error_detail or "").strip()
        if not detail or result is not None:
            raise ValueError("failed requires an error detail and no result")
        values.update(
            error_code=error_code or "internal_error",
            error_detail=detail[:MAX_ERROR_DETAIL_CHARS],
            terminal_at=now,
        )
    else:
        raise ValueError(f"{to_state.value} is not a transition target")
    return values


def transition_job(
    session: Session,
    *,
    job_id: uuid.UUID,
    to_state: JobState,
    result: list[dict[str, Any]] | None = None,
    error_code: str | None = None,
    error_detail: str | None = None,
    from_cache: bool = False,
) -> Job:
    """Move a job forward along pending -> processing -> processed|failed.

    The state check and the write happen in one conditional UPDATE, so two
    racing writers cannot both win; the loser gets InvalidTransition and the
    row is left as the winner wrote it.
    """
    values = _transition_values(
        to_state,
        result=result,
        error_code=error_code,
        error_detail=error_detail,
        from_cache=from_cache,
    )
    allowed = ALLOWED_PREDECESSORS.get(to_state, frozenset())
    res = session.execute(
        update(Job)
        .where(Job.id == job_id, Job.state.in_(list(allowed)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not res.rowcount:
        session.rollback()
        current = get_job(session, job_id=job_id)
        log_event(
            logger,
            "job.transition.rejected",
            job_id=str(job_id),
            from_state=current.state.value,
            to_state=to_state.value,
        )
        raise InvalidTransition(job_id, current.state, to_state)
    session.commit()

    job = get_job(session, job_id=job_id)
    log_event(
        logger,
        "job.transition",
        job_id=str(job_id),
        to_state=to_state.value,
        error_code=job.error_code,
        from_cache=job.from_cache if to_state == JobState.PROCESSED else None,
    )
    return job


def claim_extraction(session: Session, *, job_id: uuid.UUID) -> bool:
    """Reserve the single extraction attempt of a processing job."""
    res = session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.state == JobState.PROCESSING,
            Job.extraction_claimed_at.is_(None),
        )
        .values(extraction_claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return bool(res.rowcount)


def find_stale_jobs(session: Session, *, started_before: datetime) -> list[Job]:
    return list(
        session.scalars(
            select(Job).where(
                Job.state == JobState.PROCESSING,
                Job.processing_started_at < started_before,
            )
        )
    )
