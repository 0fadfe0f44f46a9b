"""processed_events idempotency table

Revision ID: b7e1c2d3a4f5
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'b7e1c2d3a4f5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One row per event_id per UTC day partition
    op.create_table('processed_events',
        sa.Column('partition_key', sa.String(length=10), nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('event_name', sa.String(length=100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('partition_key', 'event_id'),
    )


def downgrade() -> None:
    op.drop_table('processed_events')
