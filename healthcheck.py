import sys
from datetime import date, time

import httpx
from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic.runtime.migration import MigrationContext
from sqlalchemy import text

from mentor_platform.config import settings
from mentor_platform.db import SessionLocal, engine
from mentor_platform.models import Booking, NotificationLog, ScheduleSettings, TimeSlot
from mentor_platform.scheduler import scheduler, start_scheduler, stop_scheduler
from mentor_platform.services.slot_generator import generate_slots


EXPECTED_SCHEDULER_JOBS = {
    'reconcile_overdue_bookings',
    'retry_failed_notifications',
}

GREEN = '\033[32m'
RED = '\033[31m'
RESET = '\033[0m'


def run_check(name, fn):
    try:
        message = fn() or ''
        suffix = f' - {message}' if message else ''
        print(f'{GREEN}PASS{RESET} {name}{suffix}')
        return True
    except Exception as exc:
        print(f'{RED}FAIL{RESET} {name} - {exc}')
        return False


def check_db_connectivity_and_write():
    with engine.begin() as conn:
        conn.execute(text('SELECT 1'))
        conn.execute(text('CREATE TABLE IF NOT EXISTS _healthcheck_probe (id INTEGER PRIMARY KEY, note TEXT)'))
        conn.execute(text("INSERT INTO _healthcheck_probe (note) VALUES ('probe')"))
        conn.execute(text("DELETE FROM _healthcheck_probe WHERE note='probe'"))
        conn.execute(text('DROP TABLE IF EXISTS _healthcheck_probe'))
    return 'connect + write ok'


def check_alembic_head():
    cfg = Config('alembic.ini')
    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())
    if not heads:
        raise RuntimeError('No alembic heads found in repository')

    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()

    if current is None:
        raise RuntimeError('No migration version in DB (run alembic upgrade head)')
    if current not in heads:
        raise RuntimeError(f'DB revision {current} is not at head {sorted(heads)}')
    return f'current={current}'


def check_required_env():
    required = {'DATABASE_URL': settings.database_url}
    if (settings.email_mode or '').strip().lower() == 'remote':
        required['EMAIL_SERVICE_URL'] = settings.email_service_url
        required['EMAIL_SENDER'] = settings.email_sender
    missing = [key for key, value in required.items() if not str(value or '').strip()]
    if missing:
        raise RuntimeError(f'Missing env vars: {", ".join(missing)}')
    return 'all required vars present'


def check_email_service():
    if (settings.email_mode or '').strip().lower() != 'remote':
        return f'mode={settings.email_mode} (no remote call)'
    res = httpx.get(f"{settings.email_service_url.rstrip('/')}/health", timeout=settings.email_timeout_seconds)
    if res.status_code != 200:
        raise RuntimeError(f'HTTP {res.status_code} from email service')
    return 'email service reachable'


def check_scheduler_jobs_registered():
    if not settings.enable_background_jobs:
        return 'background jobs disabled'
    start_scheduler()
    try:
        registered = {job.id for job in scheduler.get_jobs()}
        missing = sorted(EXPECTED_SCHEDULER_JOBS - registered)
        if missing:
            raise RuntimeError(f'Missing jobs: {missing}')
        return f'jobs={sorted(registered)}'
    finally:
        stop_scheduler()


def check_scheduling_tables_accessible():
    db = SessionLocal()
    try:
        for model in (ScheduleSettings, TimeSlot, Booking, NotificationLog):
            _ = db.query(model).limit(1).all()
        return 'query ok'
    finally:
        db.close()


def check_slot_generator():
    slots = generate_slots(date(2024, 6, 3), time(9, 0), time(10, 0), 30, 0)
    got = [(slot.start_time.strftime('%H:%M'), slot.end_time.strftime('%H:%M')) for slot in slots]
    if got != [('09:00', '09:30'), ('09:30', '10:00')]:
        raise RuntimeError(f'Unexpected slots: {got}')
    return f'{len(slots)} slots'


def main():
    checks = [
        ('Database connectivity and write access', check_db_connectivity_and_write),
        ('Alembic migration status at head', check_alembic_head),
        ('Required environment variables present', check_required_env),
        ('Email service reachable', check_email_service),
        ('Scheduler jobs registered', check_scheduler_jobs_registered),
        ('Scheduling tables accessible', check_scheduling_tables_accessible),
        ('Slot generator produces expected grid', check_slot_generator),
    ]

    all_ok = True
    for name, fn in checks:
        all_ok = run_check(name, fn) and all_ok

    if not all_ok:
        sys.exit(1)
    sys.exit(0)


if __name__ == '__main__':
    main()
