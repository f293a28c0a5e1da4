"""create_pipeline_tables

Revision ID: a1c3e5f70b21
Revises:
Create Date: 2026-10-17 09:12:44.381907

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f70b21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_CONVERSATION = "status IN ('active', 'closed')"
LIVE_JOB = "status IN ('pending', 'processing')"


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'tenant_tenant',
        sa.Column('id', sa.String(50), nullable=False),
        sa.Column('organization', sa.String(100), nullable=False),
        sa.Column('routing_phone', sa.String(32), nullable=True),
        sa.Column('business_context', sa.Text(), nullable=True),
        sa.Column('ai_enabled_default', sa.Boolean(), nullable=False),
        sa.Column('daily_budget', sa.Float(), nullable=True),
        sa.Column('monthly_budget', sa.Float(), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('webhook_secret', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('routing_phone')
    )

    op.create_table(
        'pipeline_conversation',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(50), nullable=False),
        sa.Column('customer_phone', sa.String(32), nullable=False),
        sa.Column('customer_name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('ai_enabled', sa.Boolean(), nullable=False),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenant_tenant.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_pipeline_conversation_id'), 'pipeline_conversation', ['id'], unique=False)
    op.create_index(op.f('ix_pipeline_conversation_tenant_id'), 'pipeline_conversation', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_pipeline_conversation_customer_phone'), 'pipeline_conversation', ['customer_phone'], unique=False)
    # At most one open conversation per tenant + customer
    op.create_index(
        'uq_conversation_open_per_customer',
        'pipeline_conversation',
        ['tenant_id', 'customer_phone'],
        unique=True,
        sqlite_where=sa.text(OPEN_CONVERSATION),
        postgresql_where=sa.text(OPEN_CONVERSATION),
    )

    op.create_table(
        'pipeline_message',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sender_type', sa.String(20), nullable=False),
        sa.Column('message_type', sa.String(20), nullable=False),
        sa.Column('provider_message_id', sa.String(255), nullable=True),
        sa.Column('delivery_status', sa.String(20), nullable=False),
        sa.Column('failed_reason', sa.Text(), nullable=True),
        sa.Column('reply_to_id', sa.Integer(), nullable=True),
        sa.Column('model_used', sa.String(100), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('cost', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['pipeline_conversation.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_message_id'),
        sa.UniqueConstraint('reply_to_id')
    )
    op.create_index(op.f('ix_pipeline_message_id'), 'pipeline_message', ['id'], unique=False)
    op.create_index(op.f('ix_pipeline_message_conversation_id'), 'pipeline_message', ['conversation_id'], unique=False)

    op.create_table(
        'interaction_session',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('phone_number', sa.String(32), nullable=False),
        sa.Column('session_data', sa.JSON(), nullable=False),
        sa.Column('last_activity', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_interaction_session_phone_number'), 'interaction_session', ['phone_number'], unique=False)
    op.create_index(op.f('ix_interaction_session_expires_at'), 'interaction_session', ['expires_at'], unique=False)

    op.create_table(
        'llm_usage_record',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(50), nullable=False),
        sa.Column('phone_number', sa.String(32), nullable=True),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('prompt_tokens', sa.Integer(), nullable=False),
        sa.Column('completion_tokens', sa.Integer(), nullable=False),
        sa.Column('total_tokens', sa.Integer(), nullable=False),
        sa.Column('cost', sa.Float(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('is_fallback', sa.Boolean(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenant_tenant.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_llm_usage_record_id'), 'llm_usage_record', ['id'], unique=False)
    op.create_index('ix_llm_usage_tenant_created', 'llm_usage_record', ['tenant_id', 'created_at'], unique=False)

    op.create_table(
        'knowledge_snippet',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenant_tenant.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_knowledge_snippet_id'), 'knowledge_snippet', ['id'], unique=False)
    op.create_index(op.f('ix_knowledge_snippet_tenant_id'), 'knowledge_snippet', ['tenant_id'], unique=False)

    op.create_table(
        'webhook_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('payload_truncated', sa.Boolean(), nullable=False),
        sa.Column('signature', sa.String(255), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('status', sa.String(30), nullable=True),
        sa.Column('processed_messages', sa.Integer(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_log_id'), 'webhook_log', ['id'], unique=False)
    op.create_index(op.f('ix_webhook_log_created_at'), 'webhook_log', ['created_at'], unique=False)

    op.create_table(
        'pipeline_job',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('queue', sa.String(50), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('ordering_key', sa.String(100), nullable=True),
        sa.Column('dedupe_key', sa.String(150), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_pipeline_job_id'), 'pipeline_job', ['id'], unique=False)
    op.create_index('ix_job_claim', 'pipeline_job', ['queue', 'status', 'run_at'], unique=False)
    op.create_index('ix_job_ordering', 'pipeline_job', ['ordering_key', 'status'], unique=False)
    # A dedupe key identifies at most one live job
    op.create_index(
        'uq_job_live_dedupe_key',
        'pipeline_job',
        ['dedupe_key'],
        unique=True,
        sqlite_where=sa.text(LIVE_JOB),
        postgresql_where=sa.text(LIVE_JOB),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('uq_job_live_dedupe_key', table_name='pipeline_job')
    op.drop_index('ix_job_ordering', table_name='pipeline_job')
    op.drop_index('ix_job_claim', table_name='pipeline_job')
    op.drop_index(op.f('ix_pipeline_job_id'), table_name='pipeline_job')
    op.drop_table('pipeline_job')

    op.drop_index(op.f('ix_webhook_log_created_at'), table_name='webhook_log')
    op.drop_index(op.f('ix_webhook_log_id'), table_name='webhook_log')
    op.drop_table('webhook_log')

    op.drop_index(op.f('ix_knowledge_snippet_tenant_id'), table_name='knowledge_snippet')
    op.drop_index(op.f('ix_knowledge_snippet_id'), table_name='knowledge_snippet')
    op.drop_table('knowledge_snippet')

    op.drop_index('ix_llm_usage_tenant_created', table_name='llm_usage_record')
    op.drop_index(op.f('ix_llm_usage_record_id'), table_name='llm_usage_record')
    op.drop_table('llm_usage_record')

    op.drop_index(op.f('ix_interaction_session_expires_at'), table_name='interaction_session')
    op.drop_index(op.f('ix_interaction_session_phone_number'), table_name='interaction_session')
    op.drop_table('interaction_session')

    op.drop_index(op.f('ix_pipeline_message_conversation_id'), table_name='pipeline_message')
    op.drop_index(op.f('ix_pipeline_message_id'), table_name='pipeline_message')
    op.drop_table('pipeline_message')

    op.drop_index('uq_conversation_open_per_customer', table_name='pipeline_conversation')
    op.drop_index(op.f('ix_pipeline_conversation_customer_phone'), table_name='pipeline_conversation')
    op.drop_index(op.f('ix_pipeline_conversation_tenant_id'), table_name='pipeline_conversation')
    op.drop_index(op.f('ix_pipeline_conversation_id'), table_name='pipeline_conversation')
    op.drop_table('pipeline_conversation')

    op.drop_table('tenant_tenant')
