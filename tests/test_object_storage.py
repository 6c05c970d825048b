from __future__ import annotations

import pytest


def test_local_storage_round_trip(tmp_path):
    from fatural.core.storage import LocalObjectStorage, StorageError

    storage = LocalObjectStorage(tmp_path)
    stored = storage.put(key="receipts/u1/a.png", body=b"abc")
    assert stored.byte_size == 3
    assert storage.get(key="receipts/u1/a.png") == b"abc"

    storage.delete(key="receipts/u1/a.png")
    with pytest.raises(StorageError):
        storage.get(key="receipts/u1/a.png")


def test_local_storage_rejects_keys_outside_root(tmp_path):
    from fatural.core.storage import LocalObjectStorage, StorageError

    storage = LocalObjectStorage(tmp_path / "root")
    with pytest.raises(StorageError):
        storage.put(key="../escape.png", body=b"x")


def test_blob_is_removed_when_job_cannot_be_created(monkeypatch, auth_headers):
    from fastapi.testclient import TestClient
    from sqlalchemy.exc import OperationalError

    from fatural.core.storage import StorageError, get_storage
    from fatural.main import app
    from fatural.modules.jobs import api as jobs_api

    deleted: list[str] = []
    storage = get_storage()
    real_delete = storage.delete

    def _delete(*, key: str) -> None:
        deleted.append(key)
        real_delete(key=key)

    def _create_job(*_args, **_kwargs):
        raise OperationalError("INSERT", {}, Exception("db down"))

    monkeypatch.setattr(storage, "delete", _delete)
    monkeypatch.setattr(jobs_api, "create_job", _create_job)
    app.dependency_overrides[jobs_api.get_dispatcher] = lambda: None
    try:
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.post(
            "/api/jobs",
            headers=auth_headers,
            files={"upload": ("receipt.png", b"\x89PNG\r\n\x1a\nxx", "image/png")},
        )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert len(deleted) == 1
    with pytest.raises(StorageError):
        storage.get(key=deleted[0])
