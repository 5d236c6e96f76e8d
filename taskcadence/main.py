from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from .config import get_settings
from .db import Base, SessionLocal, engine
from .generation import run_for_all_users
from .locks import purge_expired_locks
from .logging_setup import purge_old_logs, setup_logging
from .migrations import ensure_db_schema
from .routers import api_recurring
from .version import APP_VERSION


settings = get_settings()

setup_logging(level=settings.logging.level, log_dir=settings.logging.directory)
logger = logging.getLogger("taskcadence")


app = FastAPI(title=settings.app.name, version=APP_VERSION)

app.include_router(api_recurring.router, prefix="/api/recurring", tags=["recurring"])


scheduler: BackgroundScheduler | None = None


def _generation_job() -> None:
    try:
        results = run_for_all_users(SessionLocal, source="scheduler")
    except Exception:
        logger.exception("Error while generating recurring instances")
        return

    created = sum(len(r.instances_created) for r in results)
    busy = sum(1 for r in results if r.busy)
    if created or busy:
        logger.info("Recurring generation: %s instance(s) created, %s user(s) busy", created, busy)


def _housekeeping_job() -> None:
    dbj = SessionLocal()
    try:
        purged = purge_expired_locks(dbj)
        if purged:
            logger.info("Purged %s expired generation lock(s)", purged)
    except Exception:
        logger.exception("Error while purging expired generation locks")
    finally:
        dbj.close()

    try:
        deleted = purge_old_logs(retention_days=int(settings.logging.retention_days), log_dir=settings.logging.directory)
        if deleted:
            logger.info("Purged %s old log files", deleted)
    except Exception:
        logger.exception("Failed to purge old log files")


def configure_jobs(sched: BackgroundScheduler) -> None:
    """(Re)register the periodic jobs on `sched`."""
    for job_id in ("recurring_generation", "housekeeping"):
        try:
            sched.remove_job(job_id)
        except Exception:
            pass

    gen = settings.generation
    if gen.enabled and int(gen.interval_minutes) > 0:
        sched.add_job(
            _generation_job,
            "interval",
            minutes=int(gen.interval_minutes),
            id="recurring_generation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    else:
        logger.info("Scheduled recurring generation disabled")

    sched.add_job(
        _housekeeping_job,
        "cron",
        hour=0,
        minute=15,
        id="housekeeping",
        replace_existing=True,
        timezone=settings.app.timezone,
    )


@app.on_event("startup")
def on_startup() -> None:
    global scheduler

    Base.metadata.create_all(bind=engine)

    report = ensure_db_schema(engine)
    app.state.db_migration_report = report
    if report.applied_steps:
        logger.warning("Database schema upgraded to %s (%s)", report.current_db_version, ", ".join(report.applied_steps))

    scheduler = BackgroundScheduler(timezone="UTC")
    configure_jobs(scheduler)
    app.state.scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"status": "ok", "version": APP_VERSION}
