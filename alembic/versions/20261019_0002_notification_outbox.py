"""notification outbox

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 09:30:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0002'
down_revision = '20261019_0001'
branch_labels = None
depends_on = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    if not _table_exists(inspector, table_name):
        return False
    return any(idx['name'] == index_name for idx in inspector.get_indexes(table_name))


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    if not _table_exists(inspector, 'notification_logs'):
        op.create_table(
            'notification_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_type', sa.String(length=60), nullable=False),
            sa.Column('recipient_email', sa.String(length=255), nullable=False),
            sa.Column('subject', sa.String(length=255), nullable=False, server_default=''),
            sa.Column('body', sa.Text(), nullable=False, server_default=''),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_error', sa.Text(), nullable=False, server_default=''),
            sa.Column('entity_type', sa.String(length=40), nullable=False, server_default=''),
            sa.Column('entity_id', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('(CURRENT_TIMESTAMP)')),
            sa.Column('sent_at', sa.DateTime(), nullable=True),
            sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
        )

    inspector = sa.inspect(op.get_bind())
    for name, columns in (
        ('ix_notification_logs_event_type', ['event_type']),
        ('ix_notification_logs_recipient_email', ['recipient_email']),
        ('ix_notification_logs_status', ['status']),
        ('ix_notification_logs_entity_id', ['entity_id']),
        ('ix_notification_logs_status_next_attempt', ['status', 'next_attempt_at']),
    ):
        if not _index_exists(inspector, 'notification_logs', name):
            op.create_index(name, 'notification_logs', columns)


def downgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    if _table_exists(inspector, 'notification_logs'):
        op.drop_table('notification_logs')
