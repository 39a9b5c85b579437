"""Add query indexes

Revision ID: 002_query_indexes
Revises: 001_initial
Create Date: 2025-07-06

Covers the developer dashboard listing, the free-tier usage count
and the pending top-up scan.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '002_query_indexes'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_index('ix_agents_developer', 'agents', ['developer_id'])
    op.create_index('ix_topup_tx_status', 'topup_transactions', ['status'])
    op.create_index('ix_usage_events_agent_wallet_status', 'usage_events',
                    ['agent_id', 'user_wallet_address', 'status'])


def downgrade() -> None:
    op.drop_index('ix_usage_events_agent_wallet_status', 'usage_events')
    op.drop_index('ix_topup_tx_status', 'topup_transactions')
    op.drop_index('ix_agents_developer', 'agents')
