"""Create notification pipeline tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _create_missing_indexes(inspector, table, indexes):
    existing_indexes = [idx['name'] for idx in inspector.get_indexes(table)]
    for name, columns, unique in indexes:
        if name not in existing_indexes:
            op.create_index(name, table, columns, unique=unique)


def upgrade() -> None:
    # Tables may already exist when created by Base.metadata.create_all at startup
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'processed_webhook_events' not in existing_tables:
        op.create_table(
            'processed_webhook_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
    _create_missing_indexes(inspector, 'processed_webhook_events', [
        ('ix_processed_webhook_events_id', ['id'], False),
        ('ix_processed_webhook_events_event_id', ['event_id'], True),
        ('ix_processed_webhook_events_event_type', ['event_type'], False),
        ('ix_processed_webhook_events_processed_at', ['processed_at'], False),
    ])

    if 'notification_queue' not in existing_tables:
        op.create_table(
            'notification_queue',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('template_slug', sa.String(length=100), nullable=False),
            sa.Column('recipients', sa.JSON(), nullable=False),
            sa.Column('variables', sa.JSON(), nullable=False),
            sa.Column('metadata', sa.JSON(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('dedup_key', sa.String(length=512), nullable=True),
            sa.Column('created_by', sa.String(length=36), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
    _create_missing_indexes(inspector, 'notification_queue', [
        ('ix_notification_queue_template_slug', ['template_slug'], False),
        ('ix_notification_queue_status', ['status'], False),
        ('ix_notification_queue_dedup_key', ['dedup_key'], False),
        ('ix_notification_queue_created_at', ['created_at'], False),
        ('ix_notification_queue_processed_at', ['processed_at'], False),
        ('ix_notification_queue_status_created_at', ['status', 'created_at'], False),
    ])

    if 'email_logs' not in existing_tables:
        op.create_table(
            'email_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('template_slug', sa.String(length=100), nullable=True),
            sa.Column('template_name', sa.String(length=255), nullable=True),
            sa.Column('recipient_email', sa.Text(), nullable=False),
            sa.Column('subject', sa.String(length=500), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('resend_id', sa.String(length=255), nullable=True),
            sa.Column('variables', sa.JSON(), nullable=False),
            sa.Column('metadata', sa.JSON(), nullable=False),
            sa.Column('dedup_key', sa.String(length=512), nullable=True),
            sa.Column('triggered_by', sa.String(length=20), nullable=False, server_default='queue'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
    _create_missing_indexes(inspector, 'email_logs', [
        ('ix_email_logs_id', ['id'], False),
        ('ix_email_logs_template_slug', ['template_slug'], False),
        ('ix_email_logs_status', ['status'], False),
        ('ix_email_logs_dedup_key', ['dedup_key'], False),
        ('ix_email_logs_created_at', ['created_at'], False),
        ('ix_email_logs_dedup_lookup', ['template_slug', 'dedup_key', 'created_at'], False),
    ])

    if 'system_email_templates' not in existing_tables:
        op.create_table(
            'system_email_templates',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('slug', sa.String(length=100), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('subject', sa.String(length=500), nullable=False),
            sa.Column('html_template', sa.Text(), nullable=False),
            sa.Column('sender_email', sa.String(length=255), nullable=True),
            sa.Column('sender_name', sa.String(length=255), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('copy_to_admins', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
    _create_missing_indexes(inspector, 'system_email_templates', [
        ('ix_system_email_templates_id', ['id'], False),
        ('ix_system_email_templates_slug', ['slug'], True),
    ])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in ('system_email_templates', 'email_logs', 'notification_queue', 'processed_webhook_events'):
        if table in existing_tables:
            for idx in inspector.get_indexes(table):
                op.drop_index(idx['name'], table_name=table)
            op.drop_table(table)
