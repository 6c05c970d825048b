from __future__ import annotations

import hashlib
import uuid

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fatural.api.deps import get_current_user
from fatural.core.config import settings
from fatural.core.db import db_session
from fatural.core.logging import get_logger, log_event
from fatural.core.storage import StorageError, get_storage
from fatural.modules.identity.models import User
from fatural.modules.jobs.dispatcher import DispatchError, JobDispatcher, build_dispatcher
from fatural.modules.jobs.models import Job, JobState
from fatural.modules.jobs.schemas import (
    JobOut,
    JobResultOut,
    JobStatusOut,
    TriggerIn,
    TriggerOut,
)
from fatural.modules.jobs.service import (
    InvalidTransition,
    JobNotFound,
    ValidationError,
    create_job,
    get_job_for_owner,
    list_jobs_for_owner,
)

router = APIRouter(tags=["jobs"])
logger = get_logger(__name__)


def get_dispatcher() -> JobDispatcher:
    return build_dispatcher()


def _sanitize_filename(name: str) -> str:
    name = name.replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())


def _owned_job(session: Session, *, job_id: uuid.UUID, user: User) -> Job:
    try:
        return get_job_for_owner(session, job_id=job_id, owner_id=user.id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from e


def _trigger(
    dispatcher: JobDispatcher, session: Session, *, user: User, job_id, source_ref
) -> TriggerOut:
    try:
        outcome = dispatcher.trigger(
            session, owner_id=user.id, job_id=job_id, source_ref=source_ref
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from e
    except InvalidTransition as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is already {e.from_state.value}",
        ) from e
    except DispatchError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)
        ) from e
    return TriggerOut(
        success=True,
        job_id=outcome.job.id,
        state=outcome.job.state,
        started=outcome.started,
    )


@router.post("/jobs", response_model=JobOut, status_code=status.HTTP_201_CREATED)
def upload_receipt(
    upload: UploadFile = File(...),
    start: bool = Query(default=False),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
) -> JobOut:
    # sync handler: runs in the threadpool, off the event loop
    body = upload.file.read()
    filename = _sanitize_filename(upload.filename or "") or "upload.bin"
    log_event(
        logger,
        "upload.received",
        filename=filename,
        content_type=upload.content_type,
        byte_size=len(body),
    )
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")
    if len(body) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Upload too large"
        )

    storage = get_storage()
    key = f"receipts/{user.id}/{uuid.uuid4()}-{filename}"
    try:
        stored = storage.put(key=key, body=body)
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable"
        ) from e

    try:
        job = create_job(
            session,
            owner_id=user.id,
            source_ref=stored.key,
            filename=filename,
            content_type=upload.content_type,
            byte_size=stored.byte_size,
            sha256=hashlib.sha256(body).hexdigest(),
        )
    except SQLAlchemyError:
        session.rollback()
        # a blob without a job is unreachable
        storage.delete(key=stored.key)
        raise

    if start:
        _trigger(dispatcher, session, user=user, job_id=job.id, source_ref=job.source_ref)
        job = _owned_job(session, job_id=job.id, user=user)
    return JobOut.model_validate(job, from_attributes=True)


@router.post("/jobs/trigger", response_model=TriggerOut)
def trigger_processing(
    payload: TriggerIn,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
) -> TriggerOut:
    return _trigger(
        dispatcher, session, user=user, job_id=payload.job_id, source_ref=payload.source_ref
    )


@router.get("/jobs", response_model=list[JobOut])
def list_jobs(
    state: list[JobState] | None = Query(default=None),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[JobOut]:
    jobs = list_jobs_for_owner(session, owner_id=user.id, states=state)
    return [JobOut.model_validate(j, from_attributes=True) for j in jobs]


@router.get("/jobs/{job_id}/status", response_model=JobStatusOut)
def job_status(
    job_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> JobStatusOut:
    job = _owned_job(session, job_id=job_id, user=user)
    return JobStatusOut(
        job_id=job.id,
        state=job.state,
        error_code=job.error_code,
        error_detail=job.error_detail,
        terminal_at=job.terminal_at,
    )


@router.get("/jobs/{job_id}/result", response_model=JobResultOut)
def job_result(
    job_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> JobResultOut:
    job = _owned_job(session, job_id=job_id, user=user)
    if job.state != JobState.PROCESSED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Job is {job.state.value}"
        )
    return JobResultOut(job_id=job.id, from_cache=job.from_cache, items=job.result or [])
