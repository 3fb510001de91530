"""Initial schema: brands, api_settings, leads, processing_queue, ai_batches

Revision ID: 3f1c9a6d2e84
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a6d2e84'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('brands',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('subscription_plan', sa.Text(), nullable=False, server_default='trial'),
        sa.Column('leads_used_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_leads_per_month', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('api_settings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Text(), nullable=False),
        sa.Column('brand_id', sa.Integer(), nullable=False),
        sa.Column('esp_provider', sa.Text(), nullable=False, server_default='smartlead'),
        sa.Column('encrypted_api_key', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', name='uq_api_settings_account_id'),
    )

    op.create_table('leads',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Integer(), nullable=False),
        sa.Column('email_account_id', sa.Text(), nullable=True),
        sa.Column('lead_email', sa.Text(), nullable=False),
        sa.Column('first_name', sa.Text(), nullable=True),
        sa.Column('last_name', sa.Text(), nullable=True),
        sa.Column('website', sa.Text(), nullable=True),
        sa.Column('phone', sa.Text(), nullable=True),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('lead_category', sa.Text(), nullable=True),
        sa.Column('campaign_id', sa.Text(), nullable=True),
        sa.Column('campaign_name', sa.Text(), nullable=True),
        sa.Column('external_lead_id', sa.Text(), nullable=True),
        sa.Column('conversation', sa.JSON(), nullable=True),
        sa.Column('parsed_conversation', sa.JSON(), nullable=True),
        sa.Column('intent', sa.Integer(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='INBOX'),
        sa.Column('last_reply_time', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_leads_brand_email', 'leads', ['brand_id', 'lead_email'])
    op.create_index('ix_leads_unprocessed', 'leads', ['processed', 'created_at'])

    op.create_table('processing_queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('task_type', sa.String(length=32), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('brand_id', sa.Integer(), nullable=True),
        sa.Column('lead_id', sa.Integer(), nullable=True),
        sa.Column('batch_handle', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processing_queue_claim', 'processing_queue', ['status', 'priority', 'created_at'])
    op.create_index('ix_processing_queue_lead_id', 'processing_queue', ['lead_id'])

    op.create_table('ai_batches',
        sa.Column('batch_handle', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='processing'),
        sa.Column('brand_id', sa.Integer(), nullable=True),
        sa.Column('task_ids', sa.JSON(), nullable=False),
        sa.Column('lead_ids', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('batch_handle'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('ai_batches')
    op.drop_index('ix_processing_queue_lead_id', table_name='processing_queue')
    op.drop_index('ix_processing_queue_claim', table_name='processing_queue')
    op.drop_table('processing_queue')
    op.drop_index('ix_leads_unprocessed', table_name='leads')
    op.drop_index('ix_leads_brand_email', table_name='leads')
    op.drop_table('leads')
    op.drop_table('api_settings')
    op.drop_table('brands')
