"""ticker correlations, sync warnings

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table('ticker_correlations',
        sa.Column('ticker_a', sa.String(), nullable=False),
        sa.Column('ticker_b', sa.String(), nullable=False),
        sa.Column('period_days', sa.Integer(), nullable=False),
        sa.Column('correlation', sa.Float(), nullable=False),
        sa.Column('calculated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.CheckConstraint('ticker_a < ticker_b', name='ck_ticker_correlations_order'),
        sa.PrimaryKeyConstraint('ticker_a', 'ticker_b', 'period_days')
    )
    op.create_index(op.f('ix_ticker_correlations_ticker_a'), 'ticker_correlations', ['ticker_a'], unique=False)
    op.create_index(op.f('ix_ticker_correlations_ticker_b'), 'ticker_correlations', ['ticker_b'], unique=False)

    op.add_column('data_sync_log', sa.Column('warnings', sa.JSON(), nullable=True))


def downgrade() -> None:
    op.drop_column('data_sync_log', 'warnings')
    op.drop_index(op.f('ix_ticker_correlations_ticker_b'), table_name='ticker_correlations')
    op.drop_index(op.f('ix_ticker_correlations_ticker_a'), table_name='ticker_correlations')
    op.drop_table('ticker_correlations')
