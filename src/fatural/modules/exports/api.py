from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from fatural.api.deps import get_current_user
from fatural.core.db import db_session
from fatural.core.logging import get_logger, log_event
from fatural.modules.exports.service import UnknownColumn, build_csv, build_xlsx
from fatural.modules.extraction.normalize import LineItem
from fatural.modules.identity.models import User
from fatural.modules.jobs.models import JobState
from fatural.modules.jobs.service import JobNotFound, get_job_for_owner

router = APIRouter(tags=["exports"])
logger = get_logger(__name__)

_XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _export(
    session: Session, *, job_id: uuid.UUID, user: User, fmt: str, columns: list[str] | None
) -> Response:
    try:
        job = get_job_for_owner(session, job_id=job_id, owner_id=user.id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from e
    if job.state != JobState.PROCESSED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Job is {job.state.value}"
        )

    items = [LineItem.model_validate(i) for i in job.result or []]
    try:
        if fmt == "csv":
            body, media_type = build_csv(items, job_id=job.id, columns=columns), "text/csv"
        else:
            body, media_type = build_xlsx(items, job_id=job.id, columns=columns), _XLSX_MEDIA_TYPE
    except UnknownColumn as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    log_event(logger, "export.generated", job_id=str(job.id), format=fmt, item_count=len(items))
    filename = f"expenses-{str(job.id)[:8]}.{fmt}"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/jobs/{job_id}/export.csv")
def export_csv(
    job_id: uuid.UUID,
    columns: list[str] | None = Query(default=None),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    return _export(session, job_id=job_id, user=user, fmt="csv", columns=columns)


@router.get("/jobs/{job_id}/export.xlsx")
def export_xlsx(
    job_id: uuid.UUID,
    columns: list[str] | None = Query(default=None),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    return _export(session, job_id=job_id, user=user, fmt="xlsx", columns=columns)
