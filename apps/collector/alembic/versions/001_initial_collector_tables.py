"""Initial collector tables

Revision ID: 001_initial_collector_tables
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_collector_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create source, catalog, task and report tables."""

    # Resource sites
    op.create_table('sources',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('source_type', sa.String(length=20), nullable=False, server_default=sa.text("'cms'")),
        sa.Column('response_format', sa.String(length=10), nullable=False, server_default=sa.text("'auto'")),
        sa.Column('weight', sa.Integer(), nullable=False, server_default=sa.text('50')),
        sa.Column('timeout', sa.Float(), nullable=True),
        sa.Column('categories', sa.JSON(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_sources'),
        sa.UniqueConstraint('name', name='uq_sources_name')
    )

    op.create_table('source_health',
        sa.Column('source_name', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'healthy'")),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('source_name', name='pk_source_health')
    )

    # Canonical catalog
    op.create_table('videos',
        sa.Column('id', sa.String(length=40), nullable=False),
        sa.Column('match_key', sa.String(length=600), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('year', sa.String(length=10), nullable=False, server_default=sa.text("''")),
        sa.Column('area', sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column('language', sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column('cast', sa.JSON(), nullable=False),
        sa.Column('director', sa.JSON(), nullable=False),
        sa.Column('writer', sa.JSON(), nullable=False),
        sa.Column('synopsis', sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('remarks', sa.String(length=255), nullable=False, server_default=sa.text("''")),
        sa.Column('cover', sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('category_name', sa.String(length=100), nullable=False, server_default=sa.text("''")),
        sa.Column('play_routes', sa.JSON(), nullable=False),
        sa.Column('source_names', sa.JSON(), nullable=False),
        sa.Column('source_priority', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('quality_score', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('last_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.PrimaryKeyConstraint('id', name='pk_videos'),
        sa.UniqueConstraint('match_key', name='uq_videos_match_key')
    )
    op.create_index('ix_videos_title', 'videos', ['title'])
    op.create_index('ix_videos_category_id', 'videos', ['category_id'])
    op.create_index('ix_videos_quality_score', 'videos', ['quality_score'])
    op.create_index('ix_videos_is_valid', 'videos', ['is_valid'])
    op.create_index('ix_videos_last_validated_at', 'videos', ['last_validated_at'])

    # Collection runs
    op.create_table('collection_tasks',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('target_category', sa.Integer(), nullable=True),
        sa.Column('max_pages', sa.Integer(), nullable=True),
        sa.Column('current_page', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('total_pages', sa.Integer(), nullable=True),
        sa.Column('videos_collected', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('videos_updated', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('videos_skipped', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('checkpoint', sa.JSON(), nullable=False),
        sa.Column('source_outcomes', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_collection_tasks')
    )
    op.create_index('ix_collection_tasks_type', 'collection_tasks', ['type'])
    op.create_index('ix_collection_tasks_status', 'collection_tasks', ['status'])
    op.create_index('ix_collection_tasks_created_at', 'collection_tasks', ['created_at'])

    op.create_table('task_leases',
        sa.Column('scope', sa.String(length=50), nullable=False),
        sa.Column('task_id', sa.Uuid(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['task_id'], ['collection_tasks.id'], name='fk_task_leases_task_id_collection_tasks', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('scope', name='pk_task_leases')
    )

    # Dead link reports
    op.create_table('invalid_url_reports',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('video_id', sa.String(length=40), nullable=False),
        sa.Column('video_title', sa.String(length=500), nullable=False, server_default=sa.text("''")),
        sa.Column('play_url', sa.Text(), nullable=False),
        sa.Column('error_type', sa.String(length=50), nullable=False, server_default=sa.text("'unreachable'")),
        sa.Column('reported_by', sa.String(length=20), nullable=False, server_default=sa.text("'user'")),
        sa.Column('is_fixed', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_invalid_url_reports')
    )
    op.create_index('ix_invalid_url_reports_video_id', 'invalid_url_reports', ['video_id'])
    op.create_index('ix_invalid_url_reports_created_at', 'invalid_url_reports', ['created_at'])


def downgrade() -> None:
    """Drop collector tables."""
    op.drop_table('invalid_url_reports')
    op.drop_table('task_leases')
    op.drop_table('collection_tasks')
    op.drop_table('videos')
    op.drop_table('source_health')
    op.drop_table('sources')
