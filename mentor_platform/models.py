from datetime import date, datetime, time
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mentor_platform.core.time_provider import default_time_provider
from mentor_platform.db import Base


class Role(str, Enum):
    ADMIN = 'admin'
    MENTOR = 'mentor'
    LEARNER = 'learner'


class UserStatus(str, Enum):
    ACTIVE = 'active'
    DEACTIVATED = 'deactivated'


class BookingStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'
    RESCHEDULED = 'rescheduled'


class SessionType(str, Enum):
    ONLINE = 'online'
    OFFLINE = 'offline'


class NotificationStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    FAILED = 'failed'


# A slot is "confirmed" by a booking in one of these statuses.
CONFIRMED_STATUSES = (BookingStatus.APPROVED.value, BookingStatus.COMPLETED.value)
# Bookings in these statuses lock the owning schedule window against edits.
LOCKING_STATUSES = (
    BookingStatus.APPROVED.value,
    BookingStatus.COMPLETED.value,
    BookingStatus.RESCHEDULED.value,
)


def _utcnow() -> datetime:
    return default_time_provider.utc_now_naive()


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(180), default='')
    role: Mapped[str] = mapped_column(String(20), default=Role.LEARNER.value, index=True)
    status: Mapped[str] = mapped_column(String(20), default=UserStatus.ACTIVE.value, index=True)
    timezone: Mapped[str] = mapped_column(String(60), default='UTC')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, index=True)


class ScheduleSettings(Base):
    __tablename__ = 'schedule_settings'
    __table_args__ = (
        UniqueConstraint('mentor_id', 'week_start_date', 'week_end_date', name='uq_schedule_settings_mentor_window'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    mentor_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    week_start_date: Mapped[date] = mapped_column(Date, index=True)
    week_end_date: Mapped[date] = mapped_column(Date, index=True)
    work_start_time: Mapped[time] = mapped_column(Time, default=time(hour=9, minute=0))
    work_end_time: Mapped[time] = mapped_column(Time, default=time(hour=17, minute=0))
    session_duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=15)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    time_slots: Mapped[list['TimeSlot']] = relationship('TimeSlot', back_populates='schedule')


class TimeSlot(Base):
    __tablename__ = 'mentor_time_slots'
    __table_args__ = (
        UniqueConstraint('mentor_id', 'date', 'start_time', 'end_time', name='uq_mentor_time_slots_mentor_key'),
        Index('ix_mentor_time_slots_mentor_start', 'mentor_id', 'start_at_utc'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    mentor_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey('schedule_settings.id'), index=True)
    slot_date: Mapped[date] = mapped_column('date', Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    start_at_utc: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_at_utc: Mapped[datetime] = mapped_column(DateTime, index=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    schedule: Mapped['ScheduleSettings'] = relationship('ScheduleSettings', back_populates='time_slots')


class Booking(Base):
    __tablename__ = 'session_bookings'
    __table_args__ = (
        Index(
            'uq_session_bookings_confirmed_slot',
            'time_slot_id',
            unique=True,
            sqlite_where=text("status IN ('approved', 'completed')"),
            postgresql_where=text("status IN ('approved', 'completed')"),
        ),
        Index(
            'uq_session_bookings_pending_learner_slot',
            'time_slot_id',
            'learner_id',
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            'uq_session_bookings_approved_learner',
            'learner_id',
            unique=True,
            sqlite_where=text("status = 'approved'"),
            postgresql_where=text("status = 'approved'"),
        ),
        Index('ix_session_bookings_slot_status', 'time_slot_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    time_slot_id: Mapped[int] = mapped_column(ForeignKey('mentor_time_slots.id'), index=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    status: Mapped[str] = mapped_column(String(20), default=BookingStatus.PENDING.value, index=True)
    session_type: Mapped[str] = mapped_column(String(20), default=SessionType.ONLINE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, index=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rescheduled_from_id: Mapped[int | None] = mapped_column(ForeignKey('session_bookings.id'), nullable=True, index=True)
    reschedule_reason: Mapped[str] = mapped_column(String(255), default='')
    cancel_reason: Mapped[str] = mapped_column(String(255), default='')


class NotificationLog(Base):
    __tablename__ = 'notification_logs'
    __table_args__ = (
        Index('ix_notification_logs_status_next_attempt', 'status', 'next_attempt_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    event_type: Mapped[str] = mapped_column(String(60), index=True)
    recipient_email: Mapped[str] = mapped_column(String(255), index=True)
    subject: Mapped[str] = mapped_column(String(255), default='')
    body: Mapped[str] = mapped_column(Text, default='')
    status: Mapped[str] = mapped_column(String(20), default=NotificationStatus.PENDING.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str] = mapped_column(Text, default='')
    entity_type: Mapped[str] = mapped_column(String(40), default='')
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
