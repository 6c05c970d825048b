from __future__ import annotations

import hashlib
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fatural.core.logging import get_logger, log_event
from fatural.core.models import utcnow
from fatural.modules.extraction.ai import PROMPT_TEMPLATE, PROMPT_VERSION
from fatural.modules.extraction.documents import PageImage
from fatural.modules.extraction.models import ExtractionCacheEntry
from fatural.modules.extraction.normalize import LineItem, dump_line_items

logger = get_logger(__name__)


def compute_fingerprint(
    *,
    owner_id: uuid.UUID,
    pages: Sequence[PageImage],
    prompt_version: str = PROMPT_VERSION,
    prompt: str = PROMPT_TEMPLATE,
) -> str:
    digest = hashlib.sha256()
    for part in (owner_id.bytes, prompt_version.encode("utf-8"), prompt.encode("utf-8")):
        digest.update(len(part).to_bytes(8, "big"))
        digest.update(part)
    for page in pages:
        digest.update(len(page.data).to_bytes(8, "big"))
        digest.update(page.data)
    return digest.hexdigest()


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _read_entry(
    entry: ExtractionCacheEntry, *, ttl_hours: int | None
) -> tuple[list[LineItem] | None, str | None]:
    """Return (items, None) for a usable entry, else (None, why it is stale)."""
    if entry.prompt_version != PROMPT_VERSION:
        return None, "prompt_version"
    if ttl_hours and _as_aware(entry.created_at) < datetime.now(UTC) - timedelta(hours=ttl_hours):
        return None, "expired"
    if not isinstance(entry.result_json, list):
        return None, "invalid"
    try:
        return [LineItem.model_validate(item) for item in entry.result_json], None
    except ValidationError:
        return None, "invalid"


def _get_entry(session: Session, *, fingerprint: str) -> ExtractionCacheEntry | None:
    return session.scalar(
        select(ExtractionCacheEntry).where(ExtractionCacheEntry.fingerprint == fingerprint)
    )


def lookup_cached_items(
    session: Session, *, fingerprint: str, ttl_hours: int | None = None
) -> list[LineItem] | None:
    entry = _get_entry(session, fingerprint=fingerprint)
    if not entry:
        return None
    items, reason = _read_entry(entry, ttl_hours=ttl_hours)
    if reason:
        log_event(logger, "extraction.cache.stale", fingerprint=fingerprint, reason=reason)
    return items


def store_cached_items(
    session: Session,
    *,
    fingerprint: str,
    owner_id: uuid.UUID,
    items: list[LineItem],
    model: str,
    ttl_hours: int | None = None,
) -> None:
    """Create-once per fingerprint; an existing entry is only replaced once it is stale.

    An entry is stale when it is past `ttl_hours`, was written by another prompt
    version, or no longer holds valid line items.
    """
    existing = _get_entry(session, fingerprint=fingerprint)
    if existing is not None:
        _, reason = _read_entry(existing, ttl_hours=ttl_hours)
        if reason is None:
            return
        existing.model = model
        existing.prompt_version = PROMPT_VERSION
        existing.result_json = dump_line_items(items)
        existing.created_at = utcnow()
        session.commit()
        log_event(
            logger,
            "extraction.cache.refreshed",
            fingerprint=fingerprint,
            reason=reason,
            item_count=len(items),
        )
        return

    entry = ExtractionCacheEntry(
        fingerprint=fingerprint,
        owner_id=owner_id,
        provider="openai",
        model=model,
        prompt_version=PROMPT_VERSION,
        result_json=dump_line_items(items),
    )
    try:
        with session.begin_nested():
            session.add(entry)
            session.flush()
    except IntegrityError:
        # Lost a race with an identical extraction; the stored entry wins.
        return
    session.commit()
    log_event(logger, "extraction.cache.stored", fingerprint=fingerprint, item_count=len(items))
