"""scheduling core: users, schedule settings, time slots, bookings

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


CONFIRMED_WHERE = "status IN ('approved', 'completed')"
PENDING_WHERE = "status = 'pending'"
APPROVED_WHERE = "status = 'approved'"


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    if not _table_exists(inspector, table_name):
        return False
    return any(idx['name'] == index_name for idx in inspector.get_indexes(table_name))


def _create_index(inspector: sa.Inspector, name: str, table: str, columns: list[str], **kwargs) -> None:
    if not _index_exists(inspector, table, name):
        op.create_index(name, table, columns, **kwargs)


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    if not _table_exists(inspector, 'users'):
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('full_name', sa.String(length=180), nullable=False, server_default=''),
            sa.Column('role', sa.String(length=20), nullable=False, server_default='learner'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('timezone', sa.String(length=60), nullable=False, server_default='UTC'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.PrimaryKeyConstraint('id'),
        )

    inspector = sa.inspect(op.get_bind())
    _create_index(inspector, 'ix_users_email', 'users', ['email'], unique=True)
    _create_index(inspector, 'ix_users_role', 'users', ['role'])
    _create_index(inspector, 'ix_users_status', 'users', ['status'])

    if not _table_exists(inspector, 'schedule_settings'):
        op.create_table(
            'schedule_settings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('mentor_id', sa.Integer(), nullable=False),
            sa.Column('week_start_date', sa.Date(), nullable=False),
            sa.Column('week_end_date', sa.Date(), nullable=False),
            sa.Column('work_start_time', sa.Time(), nullable=False, server_default='09:00:00'),
            sa.Column('work_end_time', sa.Time(), nullable=False, server_default='17:00:00'),
            sa.Column('session_duration_minutes', sa.Integer(), nullable=False, server_default='60'),
            sa.Column('buffer_minutes', sa.Integer(), nullable=False, server_default='15'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.ForeignKeyConstraint(['mentor_id'], ['users.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('mentor_id', 'week_start_date', 'week_end_date', name='uq_schedule_settings_mentor_window'),
        )

    inspector = sa.inspect(op.get_bind())
    _create_index(inspector, 'ix_schedule_settings_mentor_id', 'schedule_settings', ['mentor_id'])

    if not _table_exists(inspector, 'mentor_time_slots'):
        op.create_table(
            'mentor_time_slots',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('mentor_id', sa.Integer(), nullable=False),
            sa.Column('schedule_id', sa.Integer(), nullable=False),
            sa.Column('date', sa.Date(), nullable=False),
            sa.Column('start_time', sa.Time(), nullable=False),
            sa.Column('end_time', sa.Time(), nullable=False),
            sa.Column('start_at_utc', sa.DateTime(), nullable=False),
            sa.Column('end_at_utc', sa.DateTime(), nullable=False),
            sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.ForeignKeyConstraint(['mentor_id'], ['users.id']),
            sa.ForeignKeyConstraint(['schedule_id'], ['schedule_settings.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('mentor_id', 'date', 'start_time', 'end_time', name='uq_mentor_time_slots_mentor_key'),
        )

    inspector = sa.inspect(op.get_bind())
    _create_index(inspector, 'ix_mentor_time_slots_mentor_id', 'mentor_time_slots', ['mentor_id'])
    _create_index(inspector, 'ix_mentor_time_slots_date', 'mentor_time_slots', ['date'])
    _create_index(inspector, 'ix_mentor_time_slots_mentor_start', 'mentor_time_slots', ['mentor_id', 'start_at_utc'])

    if not _table_exists(inspector, 'session_bookings'):
        op.create_table(
            'session_bookings',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('time_slot_id', sa.Integer(), nullable=False),
            sa.Column('learner_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('session_type', sa.String(length=20), nullable=False, server_default='online'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.Column('reviewed_at', sa.DateTime(), nullable=True),
            sa.Column('status_changed_at', sa.DateTime(), nullable=True),
            sa.Column('rescheduled_from_id', sa.Integer(), nullable=True),
            sa.Column('reschedule_reason', sa.String(length=255), nullable=False, server_default=''),
            sa.Column('cancel_reason', sa.String(length=255), nullable=False, server_default=''),
            sa.ForeignKeyConstraint(['time_slot_id'], ['mentor_time_slots.id']),
            sa.ForeignKeyConstraint(['learner_id'], ['users.id']),
            sa.ForeignKeyConstraint(['rescheduled_from_id'], ['session_bookings.id']),
            sa.PrimaryKeyConstraint('id'),
        )

    inspector = sa.inspect(op.get_bind())
    _create_index(inspector, 'ix_session_bookings_time_slot_id', 'session_bookings', ['time_slot_id'])
    _create_index(inspector, 'ix_session_bookings_learner_id', 'session_bookings', ['learner_id'])
    _create_index(inspector, 'ix_session_bookings_status', 'session_bookings', ['status'])
    _create_index(inspector, 'ix_session_bookings_slot_status', 'session_bookings', ['time_slot_id', 'status'])
    _create_index(
        inspector,
        'uq_session_bookings_confirmed_slot',
        'session_bookings',
        ['time_slot_id'],
        unique=True,
        sqlite_where=sa.text(CONFIRMED_WHERE),
        postgresql_where=sa.text(CONFIRMED_WHERE),
    )
    _create_index(
        inspector,
        'uq_session_bookings_pending_learner_slot',
        'session_bookings',
        ['time_slot_id', 'learner_id'],
        unique=True,
        sqlite_where=sa.text(PENDING_WHERE),
        postgresql_where=sa.text(PENDING_WHERE),
    )
    _create_index(
        inspector,
        'uq_session_bookings_approved_learner',
        'session_bookings',
        ['learner_id'],
        unique=True,
        sqlite_where=sa.text(APPROVED_WHERE),
        postgresql_where=sa.text(APPROVED_WHERE),
    )


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    for table in ('session_bookings', 'mentor_time_slots', 'schedule_settings', 'users'):
        if _table_exists(inspector, table):
            op.drop_table(table)
