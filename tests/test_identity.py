from __future__ import annotations


def test_only_admins_can_create_users(monkeypatch, auth_headers):
    from fastapi.testclient import TestClient

    from fatural.bootstrap import bootstrap
    from fatural.core.config import settings
    from fatural.core.db import SessionLocal
    from fatural.core.security import create_access_token
    from fatural.main import app
    from fatural.modules.identity.models import UserRole
    from fatural.modules.identity.service import get_user_by_email

    monkeypatch.setattr(settings, "init_admin_email", "Admin@Example.com, ops@example.com")
    monkeypatch.setattr(settings, "init_admin_password", "secret")
    bootstrap()
    bootstrap()

    with SessionLocal() as session:
        admin = get_user_by_email(session, email="admin@example.com")
        assert admin is not None
        assert admin.role == UserRole.ADMIN
        assert get_user_by_email(session, email="ops@example.com") is not None

    client = TestClient(app)
    payload = {"email": "new@example.com", "password": "pw"}
    assert client.post("/api/users", headers=auth_headers, json=payload).status_code == 403

    admin_headers = {"Authorization": f"Bearer {create_access_token(subject=str(admin.id))}"}
    created = client.post("/api/users", headers=admin_headers, json=payload)
    assert created.status_code == 200
    assert created.json()["role"] == "MEMBER"
    assert client.post("/api/users", headers=admin_headers, json=payload).status_code == 409


def test_bad_credentials_are_rejected(member):
    from fastapi.testclient import TestClient

    from fatural.main import app

    client = TestClient(app)
    resp = client.post("/api/auth/token", data={"username": "member@example.com", "password": "x"})
    assert resp.status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401
