"""Single-source collection tasks

Revision ID: 002_source_tasks
Revises: 001_initial_collector_tables
Create Date: 2026-10-18 15:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_source_tasks'
down_revision: Union[str, None] = '001_initial_collector_tables'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add the target source column and widen lease scopes to hold source names."""
    op.add_column('collection_tasks', sa.Column('target_source', sa.String(length=100), nullable=True))
    op.alter_column(
        'task_leases', 'scope',
        existing_type=sa.String(length=50),
        type_=sa.String(length=120),
        existing_nullable=False,
    )


def downgrade() -> None:
    """Drop the target source column."""
    op.alter_column(
        'task_leases', 'scope',
        existing_type=sa.String(length=120),
        type_=sa.String(length=50),
        existing_nullable=False,
    )
    op.drop_column('collection_tasks', 'target_source')
