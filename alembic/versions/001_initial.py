"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2025-07-05

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE feemodeltype AS ENUM ('FREE_TIER', 'CREDIT_BASED')")
    op.execute("CREATE TYPE usageeventstatus AS ENUM ('PENDING', 'CAPTURED', 'CANCELLED', 'EXPIRED')")
    op.execute("CREATE TYPE topupstatus AS ENUM ('PENDING', 'CONFIRMED', 'FAILED')")

    # Developers table
    op.create_table(
        'developers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('privy_id', sa.String(255), nullable=False, unique=True),
        sa.Column('wallet_address', sa.String(42), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Agents table
    op.create_table(
        'agents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('fee_model_type', postgresql.ENUM('FREE_TIER', 'CREDIT_BASED', name='feemodeltype', create_type=False),
                  nullable=False),
        sa.Column('fee_model_config', postgresql.JSONB(), nullable=False),
        sa.Column('developer_id', sa.String(36), sa.ForeignKey('developers.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # User balances table
    op.create_table(
        'user_balances',
        sa.Column('user_wallet_address', sa.String(42), primary_key=True),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id'), primary_key=True),
        sa.Column('eth_balance', sa.Numeric(38, 18), nullable=False, server_default='0'),
        sa.Column('credit_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Usage events table
    op.create_table(
        'usage_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('status', postgresql.ENUM('PENDING', 'CAPTURED', 'CANCELLED', 'EXPIRED',
                                            name='usageeventstatus', create_type=False),
                  nullable=False, server_default='PENDING'),
        sa.Column('fee_deducted', sa.Numeric(38, 18), nullable=True),
        sa.Column('credits_deducted', sa.BigInteger(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('agent_id', sa.String(36), sa.ForeignKey('agents.id'), nullable=False),
        sa.Column('user_wallet_address', sa.String(42), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_usage_events_agent_idempotency', 'usage_events',
                    ['agent_id', 'idempotency_key'], unique=True)

    # Top-up transactions table
    op.create_table(
        'topup_transactions',
        sa.Column('tx_hash', sa.String(66), primary_key=True),
        sa.Column('status', postgresql.ENUM('PENDING', 'CONFIRMED', 'FAILED', name='topupstatus', create_type=False),
                  nullable=False, server_default='PENDING'),
        sa.Column('user_wallet_address', sa.String(42), nullable=False),
        sa.Column('agent_id', sa.String(36), nullable=False),
        sa.Column('amount_in_eth', sa.String(78), nullable=False),
        sa.Column('credits_to_top_up', sa.BigInteger(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )


def downgrade() -> None:
    # Drop tables
    op.drop_table('topup_transactions')
    op.drop_index('ix_usage_events_agent_idempotency', 'usage_events')
    op.drop_table('usage_events')
    op.drop_table('user_balances')
    op.drop_table('agents')
    op.drop_table('developers')

    # Drop enum types
    op.execute("DROP TYPE topupstatus")
    op.execute("DROP TYPE usageeventstatus")
    op.execute("DROP TYPE feemodeltype")
