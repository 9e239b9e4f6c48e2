"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUBTASK_STATUSES = (
    'pending', 'translating', 'translation_complete', 'llm_verifying', 'llm_verified',
    'review_ready', 'review_queued', 'review_active', 'review_complete', 'llm_reverifying',
    'iteration_complete', 'finalized', 'failed',
)


def upgrade() -> None:
    # Create tasks table
    op.create_table(
        'tasks',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('status', sa.Enum('pending', 'processing', 'completed', 'failed', name='taskstatus'), nullable=False, index=True),
        sa.Column('source', sa.JSON(), nullable=False),
        sa.Column('guidelines', sa.JSON(), nullable=True),
        sa.Column('languages', sa.JSON(), nullable=True),
        sa.Column('max_iterations', sa.Integer(), nullable=False, default=3),
        sa.Column('confidence_threshold', sa.Float(), nullable=False, default=4.5),
        sa.Column('progress', sa.Integer(), nullable=False, default=0),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create language_subtasks table
    op.create_table(
        'language_subtasks',
        sa.Column('id', sa.String(80), primary_key=True),
        sa.Column('task_id', sa.String(64), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('language', sa.String(16), nullable=False),
        sa.Column('status', sa.Enum(*SUBTASK_STATUSES, name='subtaskstatus'), nullable=False, index=True),
        sa.Column('current_iteration', sa.Integer(), nullable=False, default=0),
        sa.Column('max_iterations', sa.Integer(), nullable=False, default=3),
        sa.Column('confidence_threshold', sa.Float(), nullable=False, default=4.5),
        sa.Column('translated_text', sa.Text(), nullable=True),
        sa.Column('review_batch_ids', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('task_id', 'language', name='uq_subtask_task_language'),
    )

    # Create iterations table
    op.create_table(
        'iterations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('subtask_id', sa.String(80), sa.ForeignKey('language_subtasks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('number', sa.Integer(), nullable=False),
        sa.Column('llm_verification', sa.JSON(), nullable=True),
        sa.Column('human_review', sa.JSON(), nullable=True),
        sa.Column('llm_reverification', sa.JSON(), nullable=True),
        sa.Column('combined_score', sa.Float(), nullable=True),
        sa.Column('needs_another_iteration', sa.Boolean(), nullable=True),
        sa.Column('final_reason', sa.Enum('threshold_met', 'max_iterations_reached', name='finalreason'), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('subtask_id', 'number', name='uq_iteration_number'),
    )

    # Create delivery_attempts table
    op.create_table(
        'delivery_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('task_id', sa.String(64), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('destination', sa.Text(), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False, default=1),
        sa.Column('outcome', sa.Enum('success', 'failed', name='deliveryoutcome'), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create review_batches table
    op.create_table(
        'review_batches',
        sa.Column('batch_id', sa.String(64), primary_key=True),
        sa.Column('task_id', sa.String(64), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('languages', sa.JSON(), nullable=True),
        sa.Column('iteration_numbers', sa.JSON(), nullable=True),
        sa.Column('status', sa.Enum('created', 'study_created', 'published', 'completed', name='reviewbatchstatus'), nullable=False),
        sa.Column('study_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create review_studies table
    op.create_table(
        'review_studies',
        sa.Column('study_id', sa.String(100), primary_key=True),
        sa.Column('task_id', sa.String(64), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('batch_id', sa.String(64), nullable=False),
        sa.Column('languages', sa.JSON(), nullable=True),
        sa.Column('iteration_numbers', sa.JSON(), nullable=True),
        sa.Column('study_status', sa.String(32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('review_studies')
    op.drop_table('review_batches')
    op.drop_table('delivery_attempts')
    op.drop_table('iterations')
    op.drop_table('language_subtasks')
    op.drop_table('tasks')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS reviewbatchstatus')
    op.execute('DROP TYPE IF EXISTS deliveryoutcome')
    op.execute('DROP TYPE IF EXISTS finalreason')
    op.execute('DROP TYPE IF EXISTS subtaskstatus')
    op.execute('DROP TYPE IF EXISTS taskstatus')
