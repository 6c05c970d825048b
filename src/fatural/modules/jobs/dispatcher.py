from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fatural.core.config import settings
from fatural.core.logging import get_logger, log_event, log_exception, monotonic_ms
from fatural.core.models import utcnow
from fatural.core.storage import ObjectStorage, StorageError
from fatural.modules.extraction.ai import ReceiptExtractor
from fatural.modules.extraction.cache import (
    compute_fingerprint,
    lookup_cached_items,
    store_cached_items,
)
from fatural.modules.extraction.documents import prepare_pages
from fatural.modules.extraction.errors import ExtractionError
from fatural.modules.extraction.normalize import dump_line_items
from fatural.modules.jobs.models import Job, JobState
from fatural.modules.jobs.service import (
    InvalidTransition,
    JobNotFound,
    ValidationError,
    claim_extraction,
    find_stale_jobs,
    get_job,
    get_job_for_owner,
    transition_job,
)

logger = get_logger(__name__)


class StorageUnavailable(RuntimeError):
    code = "storage_unavailable"


class DispatchError(RuntimeError):
    pass


@dataclass(frozen=True)
class TriggerOutcome:
    job: Job
    started: bool


class JobDispatcher:
    """Runs the receipt pipeline for one job at a time.

    `trigger` is the fast synchronous prefix executed inside the request: it
    flips the job to processing and hands the job id to `enqueue`. `run` is the
    out-of-band phase executed by a worker; it always leaves the job terminal.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        storage: ObjectStorage,
        extractor: ReceiptExtractor,
        enqueue: Callable[[str], object],
        cache_enabled: bool = True,
        cache_ttl_hours: int | None = None,
        max_pages: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._extractor = extractor
        self._enqueue = enqueue
        self._cache_enabled = cache_enabled
        self._cache_ttl_hours = cache_ttl_hours
        self._max_pages = max_pages

    def trigger(
        self,
        session: Session,
        *,
        owner_id: uuid.UUID,
        job_id: uuid.UUID | str | None,
        source_ref: str | None,
    ) -> TriggerOutcome:
        if not job_id:
            raise ValidationError("job_id is required")
        if not source_ref or not source_ref.strip():
            raise ValidationError("source_ref is required")
        try:
            job_uuid = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
        except ValueError as e:
            raise ValidationError("job_id is not a valid id") from e

        job = get_job_for_owner(session, job_id=job_uuid, owner_id=owner_id)
        if job.source_ref != source_ref.strip():
            raise ValidationError("source_ref does not match the job")

        if job.state == JobState.PROCESSING:
            log_event(logger, "job.trigger.duplicate", job_id=str(job.id))
            return TriggerOutcome(job=job, started=False)

        try:
            job = transition_job(session, job_id=job.id, to_state=JobState.PROCESSING)
        except InvalidTransition as e:
            if e.from_state != JobState.PROCESSING:
                raise
            log_event(logger, "job.trigger.duplicate", job_id=str(job.id))
            return TriggerOutcome(job=get_job(session, job_id=job.id), started=False)

        try:
            handle = self._enqueue(str(job.id))
        except Exception as e:  # noqa: BLE001
            log_exception(logger, "job.trigger.enqueue_failed", job_id=str(job.id))
            transition_job(
                session,
                job_id=job.id,
                to_state=JobState.FAILED,
                error_code="dispatch_failed",
                error_detail="Could not schedule processing",
            )
            raise DispatchError("Could not schedule processing") from e

        log_event(
            logger,
            "job.trigger.enqueued",
            job_id=str(job.id),
            celery_task_id=getattr(handle, "id", None),
        )
        return TriggerOutcome(job=job, started=True)

    def run(self, job_id: uuid.UUID | str) -> JobState | None:
        """Execute the asynchronous phase. Returns the state the job ended in."""
        job_uuid = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
        with self._session_factory() as session:
            try:
                job = get_job(session, job_id=job_uuid)
            except JobNotFound:
                log_event(logger, "extraction.skip", job_id=str(job_uuid), reason="not_found")
                return None
            if job.state != JobState.PROCESSING:
                log_event(
                    logger,
                    "extraction.skip",
                    job_id=str(job.id),
                    reason="not_processing",
                    state=job.state.value,
                )
                return job.state
            if not claim_extraction(session, job_id=job.id):
                log_event(logger, "extraction.skip", job_id=str(job.id), reason="already_claimed")
                return JobState.PROCESSING

            start = time.monotonic()
            log_event(logger, "extraction.start", job_id=str(job.id), source_ref=job.source_ref)
            try:
                state = self._extract(session, job)
            except ExtractionError as e:
                state = self._fail(session, job, code=e.code, detail=str(e) or e.code)
            except StorageUnavailable as e:
                state = self._fail(session, job, code=e.code, detail=str(e))
            except Exception as e:  # noqa: BLE001
                log_exception(logger, "extraction.error", job_id=str(job.id))
                state = self._fail(
                    session,
                    job,
                    code="internal_error",
                    detail=f"Internal error ({type(e).__name__})",
                )
            log_event(
                logger,
                "extraction.finish",
                job_id=str(job.id),
                state=state.value,
                duration_ms=monotonic_ms(start),
            )
            return state

    def _extract(self, session: Session, job: Job) -> JobState:
        try:
            body = self._storage.get(key=job.source_ref)
        except StorageError as e:
            raise StorageUnavailable("Could not read the uploaded file") from e

        pages = prepare_pages(
            body=body,
            filename=job.filename,
            content_type=job.content_type,
            max_pages=self._max_pages,
        )
        default_date = job.created_at.date()

        fingerprint = compute_fingerprint(owner_id=job.owner_id, pages=pages)
        if self._cache_enabled:
            cached = lookup_cached_items(
                session, fingerprint=fingerprint, ttl_hours=self._cache_ttl_hours
            )
            if cached is not None:
                log_event(
                    logger, "extraction.cache.hit", job_id=str(job.id), fingerprint=fingerprint
                )
                return self._complete(session, job, dump_line_items(cached), from_cache=True)
            log_event(logger, "extraction.cache.miss", job_id=str(job.id), fingerprint=fingerprint)

        items = self._extractor.extract(pages, default_date=default_date)
        if self._cache_enabled:
            try:
                store_cached_items(
                    session,
                    fingerprint=fingerprint,
                    owner_id=job.owner_id,
                    items=items,
                    model=self._extractor.model,
                    ttl_hours=self._cache_ttl_hours,
                )
            except SQLAlchemyError:
                session.rollback()
                log_exception(logger, "extraction.cache.store_failed", job_id=str(job.id))
        return self._complete(session, job, dump_line_items(items), from_cache=False)

    def _complete(
        self, session: Session, job: Job, result: list, *, from_cache: bool
    ) -> JobState:
        try:
            done = transition_job(
                session,
                job_id=job.id,
                to_state=JobState.PROCESSED,
                result=result,
                from_cache=from_cache,
            )
        except InvalidTransition as e:
            log_event(
                logger,
                "extraction.complete.conflict",
                job_id=str(job.id),
                state=e.from_state.value,
            )
            return e.from_state
        return done.state

    def _fail(self, session: Session, job: Job, *, code: str, detail: str) -> JobState:
        session.rollback()
        try:
            failed = transition_job(
                session,
                job_id=job.id,
                to_state=JobState.FAILED,
                error_code=code,
                error_detail=detail,
            )
        except InvalidTransition as e:
            log_event(
                logger,
                "extraction.fail.conflict",
                job_id=str(job.id),
                state=e.from_state.value,
            )
            return e.from_state
        return failed.state

    def sweep_stale(self, *, older_than_minutes: int) -> int:
        return sweep_stale_jobs(self._session_factory, older_than_minutes=older_than_minutes)


def sweep_stale_jobs(session_factory: sessionmaker[Session], *, older_than_minutes: int) -> int:
    """Fail jobs whose worker died before writing a terminal state."""
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    swept = 0
    with session_factory() as session:
        for job in find_stale_jobs(session, started_before=cutoff):
            try:
                transition_job(
                    session,
                    job_id=job.id,
                    to_state=JobState.FAILED,
                    error_code="processing_timeout",
                    error_detail="Processing did not finish in time",
                )
            except InvalidTransition:
                continue
            swept += 1
    if swept:
        log_event(logger, "job.sweep.failed_stale", count=swept)
    return swept


def build_dispatcher(
    *,
    session_factory: sessionmaker[Session] | None = None,
    storage: ObjectStorage | None = None,
    extractor: ReceiptExtractor | None = None,
    enqueue: Callable[[str], object] | None = None,
) -> JobDispatcher:
    """Wire a dispatcher from settings; any collaborator can be passed in instead."""
    if session_factory is None:
        from fatural.core.db import SessionLocal

        session_factory = SessionLocal
    if storage is None:
        from fatural.core.storage import get_storage

        storage = get_storage()
    if extractor is None:
        from fatural.modules.extraction.ai import OpenAIReceiptExtractor

        extractor = OpenAIReceiptExtractor.from_settings()
    if enqueue is None:
        from fatural.worker.tasks import process_job_task

        enqueue = process_job_task.delay
    return JobDispatcher(
        session_factory=session_factory,
        storage=storage,
        extractor=extractor,
        enqueue=enqueue,
        cache_enabled=settings.extraction_cache_enabled,
        cache_ttl_hours=settings.extraction_cache_ttl_hours,
        max_pages=settings.extraction_max_pages,
    )
