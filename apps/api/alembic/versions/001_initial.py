"""initial

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # asset_universe
    op.create_table('asset_universe',
        sa.Column('ticker', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('data_start_date', sa.Date(), nullable=True),
        sa.Column('data_end_date', sa.Date(), nullable=True),
        sa.Column('total_bars', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('ticker')
    )
    op.create_index(op.f('ix_asset_universe_ticker'), 'asset_universe', ['ticker'], unique=False)

    # market_daily_bars
    op.create_table('market_daily_bars',
        sa.Column('ticker', sa.String(), nullable=False),
        sa.Column('bar_date', sa.Date(), nullable=False),
        sa.Column('open', sa.Float(), nullable=False),
        sa.Column('high', sa.Float(), nullable=False),
        sa.Column('low', sa.Float(), nullable=False),
        sa.Column('close', sa.Float(), nullable=False),
        sa.Column('volume', sa.BigInteger(), nullable=False),
        sa.Column('vwap', sa.Float(), nullable=True),
        sa.Column('transactions', sa.Integer(), nullable=True),
        sa.Column('daily_return', sa.Float(), nullable=True),
        sa.Column('log_return', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('ticker', 'bar_date')
    )

    # market_signals_daily
    op.create_table('market_signals_daily',
        sa.Column('ticker', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('metric', sa.String(), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('ticker', 'date', 'metric')
    )

    # data_sync_log
    op.create_table('data_sync_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('sync_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tickers_total', sa.Integer(), nullable=True),
        sa.Column('tickers_succeeded', sa.Integer(), nullable=True),
        sa.Column('tickers_failed', sa.Integer(), nullable=True),
        sa.Column('bars_written', sa.Integer(), nullable=True),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    # backtest_runs
    op.create_table('backtest_runs',
        sa.Column('run_id', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.Column('params_json', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('results_json', sa.JSON(), nullable=True),
        sa.Column('error', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('run_id')
    )

    # backtest_trades
    op.create_table('backtest_trades',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(), nullable=False),
        sa.Column('instrument_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('entry_price', sa.Float(), nullable=False),
        sa.Column('exit_date', sa.Date(), nullable=False),
        sa.Column('exit_price', sa.Float(), nullable=False),
        sa.Column('size', sa.Float(), nullable=False),
        sa.Column('pnl', sa.Float(), nullable=False),
        sa.Column('pnl_percent', sa.Float(), nullable=False),
        sa.Column('holding_days', sa.Integer(), nullable=False),
        sa.Column('exit_reason', sa.String(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['backtest_runs.run_id'], ),
        sa.PrimaryKeyConstraint('id')
    )

    # backtest_equity_curve
    op.create_table('backtest_equity_curve',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('capital', sa.Float(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['backtest_runs.run_id'], ),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade() -> None:
    op.drop_table('backtest_equity_curve')
    op.drop_table('backtest_trades')
    op.drop_table('backtest_runs')
    op.drop_table('data_sync_log')
    op.drop_table('market_signals_daily')
    op.drop_table('market_daily_bars')
    op.drop_index(op.f('ix_asset_universe_ticker'), table_name='asset_universe')
    op.drop_table('asset_universe')
