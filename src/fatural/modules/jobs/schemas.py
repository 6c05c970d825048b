from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel

from fatural.modules.extraction.normalize import LineItem
from fatural.modules.jobs.models import JobState


class JobOut(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    source_ref: str
    filename: str
    content_type: str | None
    byte_size: int
    state: JobState
    error_code: str | None
    error_detail: str | None
    created_at: datetime
    terminal_at: datetime | None


class TriggerIn(BaseModel):
    job_id: str | None = None
    source_ref: str | None = None


class TriggerOut(BaseModel):
    success: bool
    job_id: uuid.UUID
    state: JobState
    started: bool


class JobStatusOut(BaseModel):
    job_id: uuid.UUID
    state: JobState
    error_code: str | None = None
    error_detail: str | None = None
    terminal_at: datetime | None = None


class JobResultOut(BaseModel):
    job_id: uuid.UUID
    from_cache: bool
    items: list[LineItem]
