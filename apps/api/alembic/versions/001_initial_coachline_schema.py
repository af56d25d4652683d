"""initial coachline schema

Revision ID: 001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'member_role',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('member_id', sa.Text(), nullable=False),
        sa.Column('roles', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='active'),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status IN ('active', 'inactive')", name='ck_member_role_status'),
        sa.CheckConstraint("roles <> ''", name='ck_member_role_roles_non_empty'),
    )
    op.create_index('ix_member_role_member_id', 'member_role', ['member_id'], unique=True)

    op.create_table(
        'trainer_client_assignment',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trainer_id', sa.Text(), nullable=False),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='active'),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status IN ('active', 'inactive', 'paused')", name='ck_assignment_status'),
    )
    op.create_index('ix_trainer_client_assignment_trainer_id', 'trainer_client_assignment', ['trainer_id'])
    op.create_index('ix_trainer_client_assignment_client_id', 'trainer_client_assignment', ['client_id'])
    op.create_index(
        'uq_assignment_active_pair',
        'trainer_client_assignment',
        ['trainer_id', 'client_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'protected_record',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('collection', sa.Text(), nullable=False),
        sa.Column('client_id', sa.Text(), nullable=True),
        sa.Column('trainer_id', sa.Text(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_protected_record_collection', 'protected_record', ['collection'])
    op.create_index('ix_protected_record_client_id', 'protected_record', ['client_id'])
    op.create_index('ix_protected_record_trainer_id', 'protected_record', ['trainer_id'])
    op.create_index('ix_protected_record_collection_client', 'protected_record', ['collection', 'client_id'])

    op.create_table(
        'workout_activity',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('program_id', sa.Text(), nullable=True),
        sa.Column('workout_day_id', sa.Text(), nullable=True),
        sa.Column('completed', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('corrected_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_workout_activity_client_id', 'workout_activity', ['client_id'])
    op.create_index('ix_workout_activity_client_occurred', 'workout_activity', ['client_id', 'occurred_at'])

    op.create_table(
        'workout_feedback',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('program_id', sa.Text(), nullable=True),
        sa.Column('activity_id', sa.String(36), sa.ForeignKey('workout_activity.id'), nullable=True),
        sa.Column('difficulty_rating', sa.Integer(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('difficulty_rating BETWEEN 1 AND 5', name='ck_feedback_difficulty_range'),
    )
    op.create_index('ix_workout_feedback_client_id', 'workout_feedback', ['client_id'])
    op.create_index('ix_workout_feedback_activity_id', 'workout_feedback', ['activity_id'])

    op.create_table(
        'check_in_message',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('trainer_id', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('responded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reengaged_within_72h', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_check_in_message_client_id', 'check_in_message', ['client_id'])
    op.create_index('ix_check_in_message_trainer_id', 'check_in_message', ['trainer_id'])

    op.create_table(
        'reminder_dismissal',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trainer_id', sa.Text(), nullable=False),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('dismissed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('dismissed_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cleared_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('trainer_id', 'client_id', name='uq_reminder_dismissal_pair'),
    )

    op.create_table(
        'client_profile',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.Text(), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('first_name', sa.Text(), nullable=True),
        sa.Column('last_name', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_client_profile_client_id', 'client_profile', ['client_id'], unique=True)

    op.create_table(
        'access_audit_event',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('actor_member_id', sa.Text(), nullable=True),
        sa.Column('acting_role', sa.Text(), nullable=True),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('collection', sa.Text(), nullable=True),
        sa.Column('record_id', sa.Text(), nullable=True),
        sa.Column('target_client_id', sa.Text(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
    )
    op.create_index('ix_access_audit_event_created_at', 'access_audit_event', ['created_at'])
    op.create_index('ix_access_audit_event_actor_member_id', 'access_audit_event', ['actor_member_id'])
    op.create_index('ix_access_audit_event_action', 'access_audit_event', ['action'])


def downgrade() -> None:
    op.drop_table('access_audit_event')
    op.drop_table('client_profile')
    op.drop_table('reminder_dismissal')
    op.drop_table('check_in_message')
    op.drop_table('workout_feedback')
    op.drop_table('workout_activity')
    op.drop_table('protected_record')
    op.drop_index('uq_assignment_active_pair', table_name='trainer_client_assignment')
    op.drop_table('trainer_client_assignment')
    op.drop_table('member_role')
