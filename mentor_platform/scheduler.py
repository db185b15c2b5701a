import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from mentor_platform.config import settings
from mentor_platform.db import SessionLocal
from mentor_platform.metrics import run_timed_job
from mentor_platform.services.booking_service import reconcile_overdue_bookings
from mentor_platform.services.notification_service import retry_failed_notifications


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task) -> None:
    run_timed_job(label, lambda: _with_db(task))


def reconcile_overdue_bookings_job():
    _run_job('reconcile_overdue_bookings', lambda db: reconcile_overdue_bookings(db))


def retry_failed_notifications_job():
    _run_job('retry_failed_notifications', lambda db: retry_failed_notifications(db))


def start_scheduler():
    if not settings.enable_background_jobs:
        logger.info('scheduler_disabled')
        return
    scheduler.add_job(
        reconcile_overdue_bookings_job,
        'interval',
        minutes=max(1, settings.reconcile_interval_minutes),
        id='reconcile_overdue_bookings',
        replace_existing=True,
    )
    scheduler.add_job(
        retry_failed_notifications_job,
        'interval',
        minutes=max(1, settings.notification_retry_interval_minutes),
        id='retry_failed_notifications',
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
