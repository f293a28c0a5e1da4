"""add_handoff_and_queue_control

Revision ID: c7e2d9a4b813
Revises: a1c3e5f70b21
Create Date: 2026-10-17 14:03:27.550214

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'c7e2d9a4b813'
down_revision: Union[str, None] = 'a1c3e5f70b21'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OLD_OPEN_CONVERSATION = "status IN ('active', 'closed')"
OPEN_CONVERSATION = "status IN ('active', 'closed', 'escalated')"


def _replace_open_index(where: str) -> None:
    op.drop_index('uq_conversation_open_per_customer', table_name='pipeline_conversation')
    op.create_index(
        'uq_conversation_open_per_customer',
        'pipeline_conversation',
        ['tenant_id', 'customer_phone'],
        unique=True,
        sqlite_where=sa.text(where),
        postgresql_where=sa.text(where),
    )


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column('pipeline_conversation', sa.Column('escalation_reason', sa.Text(), nullable=True))
    op.add_column('pipeline_conversation', sa.Column('escalated_at', sa.DateTime(), nullable=True))
    op.add_column('pipeline_conversation', sa.Column('completed_at', sa.DateTime(), nullable=True))
    op.add_column('pipeline_conversation', sa.Column('resolution_time_seconds', sa.Integer(), nullable=True))
    op.add_column('pipeline_conversation', sa.Column('satisfaction_score', sa.Integer(), nullable=True))
    # Escalated conversations stay open
    _replace_open_index(OPEN_CONVERSATION)

    op.add_column('webhook_log', sa.Column('signing_tenant_id', sa.String(50), nullable=True))
    op.add_column('webhook_log', sa.Column('reprocessed_at', sa.DateTime(), nullable=True))

    op.create_table(
        'pipeline_queue_control',
        sa.Column('queue', sa.String(50), nullable=False),
        sa.Column('paused', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('queue')
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('pipeline_queue_control')

    op.drop_column('webhook_log', 'reprocessed_at')
    op.drop_column('webhook_log', 'signing_tenant_id')

    _replace_open_index(OLD_OPEN_CONVERSATION)
    op.drop_column('pipeline_conversation', 'satisfaction_score')
    op.drop_column('pipeline_conversation', 'resolution_time_seconds')
    op.drop_column('pipeline_conversation', 'completed_at')
    op.drop_column('pipeline_conversation', 'escalated_at')
    op.drop_column('pipeline_conversation', 'escalation_reason')
