import importlib

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi.testclient import TestClient

from taskcadence import logging_setup


def _load_main(monkeypatch):
    monkeypatch.setattr(logging_setup, "setup_logging", lambda **kw: None)
    import taskcadence.main as main

    return importlib.reload(main)


def test_healthz_and_routes(settings_tmp, monkeypatch):
    main = _load_main(monkeypatch)
    client = TestClient(main.app)

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"

    paths = {route.path for route in main.app.routes}
    assert "/api/recurring/users/{user_id}/generate" in paths
    assert "/api/recurring/tasks/{task_id}/status" in paths


def test_generation_job_follows_settings(settings_tmp, monkeypatch):
    main = _load_main(monkeypatch)
    sched = BackgroundScheduler(timezone="UTC")

    # settings_tmp disables the periodic pass.
    main.configure_jobs(sched)
    assert {j.id for j in sched.get_jobs()} == {"housekeeping"}

    monkeypatch.setattr(main.settings.generation, "enabled", True)
    main.configure_jobs(sched)
    assert {j.id for j in sched.get_jobs()} == {"housekeeping", "recurring_generation"}


def test_generation_job_logs_failures(settings_tmp, monkeypatch, caplog):
    main = _load_main(monkeypatch)

    def boom(*a, **kw):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(main, "run_for_all_users", boom)
    main._generation_job()
    assert "Error while generating recurring instances" in caplog.text
