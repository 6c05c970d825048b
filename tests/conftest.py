from __future__ import annotations

import os
import shutil
from datetime import date
from io import BytesIO
from pathlib import Path

import pytest

# Set env before any fatural imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.fatural_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ["OPENAI_API_KEY"] = ""


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import fatural.models  # noqa: F401
    from fatural.core.db import engine
    from fatural.core.models import Base

    import fatural.core.storage as storage_mod

    storage_mod._storage = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


def make_png(color: str = "white", size: tuple[int, int] = (8, 8)) -> bytes:
    from PIL import Image

    out = BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


class FakeExtractor:
    """Stands in for the vision model; returns canned raw items."""

    model = "fake-model"

    def __init__(self, raw_items=None, error: Exception | None = None) -> None:
        self.raw_items = raw_items if raw_items is not None else []
        self.error = error
        self.calls: list[int] = []

    def extract(self, pages, *, default_date: date):
        from fatural.modules.extraction.normalize import normalize_line_items

        self.calls.append(len(pages))
        if self.error is not None:
            raise self.error
        return normalize_line_items(self.raw_items, default_date=default_date)


@pytest.fixture
def member():
    from fatural.core.db import SessionLocal
    from fatural.modules.identity.models import UserRole
    from fatural.modules.identity.service import create_user

    with SessionLocal() as session:
        return create_user(
            session,
            email="member@example.com",
            password="pw",
            role=UserRole.MEMBER,
            full_name="Member",
        )


@pytest.fixture
def auth_headers(member) -> dict[str, str]:
    from fatural.core.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(subject=str(member.id))}"}


@pytest.fixture
def make_job(member):
    """Store a receipt body and create a pending job pointing at it."""
    import hashlib
    import uuid

    from fatural.core.db import SessionLocal
    from fatural.core.storage import get_storage
    from fatural.modules.jobs.service import create_job

    def _make(body: bytes | None = None, *, filename: str = "receipt.png", store: bool = True):
        body = make_png() if body is None else body
        key = f"receipts/{member.id}/{uuid.uuid4()}-{filename}"
        if store:
            get_storage().put(key=key, body=body)
        with SessionLocal() as session:
            return create_job(
                session,
                owner_id=member.id,
                source_ref=key,
                filename=filename,
                content_type="image/png",
                byte_size=len(body),
                sha256=hashlib.sha256(body).hexdigest(),
            )

    return _make
