from __future__ import annotations


def test_tasks_are_not_eager_by_default(monkeypatch):
    from fatural.core.config import Settings, settings
    from fatural.worker.celery_app import make_celery

    monkeypatch.delenv("CELERY_EAGER", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    defaults = Settings(_env_file=None)
    assert defaults.environment == "dev"
    assert defaults.celery_eager is False

    monkeypatch.setattr(settings, "environment", "dev")
    monkeypatch.setattr(settings, "celery_eager", False)
    assert make_celery().conf.task_always_eager is False


def test_eager_mode_is_opt_in(monkeypatch):
    from fatural.core.config import settings
    from fatural.worker.celery_app import make_celery

    monkeypatch.setattr(settings, "celery_eager", True)
    assert make_celery().conf.task_always_eager is True
