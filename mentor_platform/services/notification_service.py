from __future__ import annotations

import logging
from datetime import date, time, timedelta

from sqlalchemy.orm import Session

from mentor_platform.communication.client_factory import get_email_client
from mentor_platform.communication.email_clients import BaseEmailClient
from mentor_platform.config import settings
from mentor_platform.core.time_provider import TimeProvider, default_time_provider
from mentor_platform.metrics import record_booking_event
from mentor_platform.models import NotificationLog, NotificationStatus


logger = logging.getLogger(__name__)

EVENT_BOOKING_CONFIRMED = 'booking_confirmed'
EVENT_BOOKING_RESCHEDULED = 'booking_rescheduled'
EVENT_SCHEDULE_UPDATED = 'schedule_updated'


def _fmt_slot(slot_date: date, start_time: time, end_time: time) -> str:
    return f"{slot_date.isoformat()} {start_time.strftime('%H:%M')}-{end_time.strftime('%H:%M')}"


def booking_confirmed_message(*, learner_name: str, mentor_name: str, slot_date: date, start_time: time, end_time: time) -> tuple[str, str]:
    subject = 'Your mentoring session is confirmed'
    body = (
        f"Hi {learner_name or 'there'},\n\n"
        f"{mentor_name or 'Your mentor'} accepted your session request for "
        f"{_fmt_slot(slot_date, start_time, end_time)}.\n"
    )
    return subject, body


def booking_rescheduled_message(
    *,
    recipient_name: str,
    actor_name: str,
    old_slot: tuple[date, time, time],
    new_slot: tuple[date, time, time],
    reason: str,
) -> tuple[str, str]:
    subject = 'Your mentoring session was rescheduled'
    body = (
        f"Hi {recipient_name or 'there'},\n\n"
        f"{actor_name or 'The other participant'} moved your session from "
        f"{_fmt_slot(*old_slot)} to {_fmt_slot(*new_slot)}.\n"
    )
    if reason:
        body += f"Reason: {reason}\n"
    return subject, body


def schedule_updated_message(*, learner_name: str, mentor_name: str, slot_date: date, start_time: time, end_time: time) -> tuple[str, str]:
    subject = 'Session request cancelled: mentor schedule updated'
    body = (
        f"Hi {learner_name or 'there'},\n\n"
        f"{mentor_name or 'Your mentor'} updated their availability and the slot "
        f"{_fmt_slot(slot_date, start_time, end_time)} is no longer offered. "
        "Your pending request was cancelled; please pick another slot.\n"
    )
    return subject, body


def _backoff(attempts: int) -> timedelta:
    return timedelta(minutes=max(1, settings.notification_retry_backoff_minutes) * max(1, attempts))


def _deliver(
    db: Session,
    row: NotificationLog,
    client: BaseEmailClient,
    *,
    time_provider: TimeProvider,
) -> dict:
    now = time_provider.utc_now_naive()
    row.attempts = int(row.attempts or 0) + 1
    reason = ''
    try:
        sent = bool(client.send_email(row.recipient_email, row.subject, row.body))
        if not sent:
            reason = 'rejected_by_provider'
    except Exception as exc:
        sent = False
        reason = str(exc) or exc.__class__.__name__
        logger.exception(
            'notification_send_failed',
            extra={'notification_id': row.id, 'event_type': row.event_type, 'attempts': row.attempts},
        )

    if sent:
        row.status = NotificationStatus.SENT.value
        row.sent_at = now
        row.last_error = ''
        row.next_attempt_at = None
        record_booking_event('notification_sent')
    else:
        row.status = NotificationStatus.FAILED.value
        row.last_error = reason[:1000]
        row.next_attempt_at = now + _backoff(row.attempts)
        record_booking_event('notification_failed')
    db.commit()
    logger.info(
        'notification_dispatch id=%s event=%s status=%s attempts=%s',
        row.id,
        row.event_type,
        row.status,
        row.attempts,
    )
    return {'sent': sent, 'reason': reason, 'notification_id': row.id}


def dispatch_email(
    db: Session,
    *,
    event_type: str,
    recipient_email: str,
    subject: str,
    body: str,
    entity_type: str = '',
    entity_id: int | None = None,
    email_client: BaseEmailClient | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Record an outbox row and try to send it once.

    Delivery problems never raise; the caller gets ``{'sent': False, 'reason': ...}``
    and the row stays ``failed`` for :func:`retry_failed_notifications`.
    """
    if not recipient_email:
        return {'sent': False, 'reason': 'missing_recipient', 'notification_id': None}
    row = NotificationLog(
        event_type=event_type,
        recipient_email=recipient_email,
        subject=subject,
        body=body,
        status=NotificationStatus.PENDING.value,
        attempts=0,
        entity_type=entity_type,
        entity_id=entity_id,
        created_at=time_provider.utc_now_naive(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _deliver(db, row, email_client or get_email_client(), time_provider=time_provider)


def retry_failed_notifications(
    db: Session,
    *,
    email_client: BaseEmailClient | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    now = time_provider.utc_now_naive()
    rows = (
        db.query(NotificationLog)
        .filter(
            NotificationLog.status == NotificationStatus.FAILED.value,
            NotificationLog.attempts < settings.notification_max_attempts,
            NotificationLog.next_attempt_at.is_not(None),
            NotificationLog.next_attempt_at <= now,
        )
        .order_by(NotificationLog.next_attempt_at.asc(), NotificationLog.id.asc())
        .all()
    )
    client = email_client or get_email_client()
    sent = 0
    failed = 0
    for row in rows:
        result = _deliver(db, row, client, time_provider=time_provider)
        if result['sent']:
            sent += 1
        else:
            failed += 1
    if rows:
        logger.info('notification_retry_done attempted=%s sent=%s failed=%s', len(rows), sent, failed)
    return {'attempted': len(rows), 'sent': sent, 'failed': failed}
