from __future__ import annotations

import uuid

from sqlalchemy import JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from fatural.core.models import Base, Timestamped, UUIDPrimaryKey


class ExtractionCacheEntry(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "extraction_cache"

    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), index=True)
    provider: Mapped[str] = mapped_column(String(50), default="openai")
    model: Mapped[str] = mapped_column(String(100), default="")
    prompt_version: Mapped[str] = mapped_column(String(50))
    result_json: Mapped[list] = mapped_column(JSON, default=list)
