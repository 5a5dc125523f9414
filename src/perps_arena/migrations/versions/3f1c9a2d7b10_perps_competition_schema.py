"""Perps competition schema

Revision ID: 3f1c9a2d7b10
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '3f1c9a2d7b10'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(precision=30, scale=10)


def _metric_columns():
    return [
        sa.Column('calmar_ratio', MONEY, nullable=True),
        sa.Column('sortino_ratio', MONEY, nullable=True),
        sa.Column('simple_return', MONEY, nullable=True),
        sa.Column('annualized_return', MONEY, nullable=True),
        sa.Column('max_drawdown', MONEY, nullable=True),
        sa.Column('downside_deviation', MONEY, nullable=True),
        sa.Column('snapshot_count', sa.Integer(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""

    # Create agents table
    op.create_table('agents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('owner', sa.String(length=255), nullable=False),
        sa.Column('wallet_address', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_agents_id'), 'agents', ['id'], unique=False)
    op.create_index(op.f('ix_agents_name'), 'agents', ['name'], unique=True)
    op.create_index(op.f('ix_agents_owner'), 'agents', ['owner'], unique=False)
    op.create_index(op.f('ix_agents_wallet_address'), 'agents', ['wallet_address'], unique=False)

    # Create competitions table
    op.create_table('competitions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_participants', sa.Integer(), nullable=True),
        sa.Column('registered_participants', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_competitions_id'), 'competitions', ['id'], unique=False)
    op.create_index(op.f('ix_competitions_name'), 'competitions', ['name'], unique=False)
    op.create_index(op.f('ix_competitions_status'), 'competitions', ['status'], unique=False)

    # Create competition_participants table
    op.create_table('competition_participants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('competition_id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('deactivation_reason', sa.String(length=255), nullable=True),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('final_rank', sa.Integer(), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('competition_id', 'agent_id', name='uq_competition_agent')
    )
    op.create_index(op.f('ix_competition_participants_id'), 'competition_participants', ['id'], unique=False)
    op.create_index(op.f('ix_competition_participants_competition_id'), 'competition_participants', ['competition_id'], unique=False)
    op.create_index(op.f('ix_competition_participants_agent_id'), 'competition_participants', ['agent_id'], unique=False)
    op.create_index('idx_participants_competition_status', 'competition_participants', ['competition_id', 'status'], unique=False)

    # Create perps_competition_config table
    op.create_table('perps_competition_config',
        sa.Column('competition_id', sa.Integer(), nullable=False),
        sa.Column('data_source', sa.String(length=50), nullable=False),
        sa.Column('data_source_config', sa.JSON(), nullable=False),
        sa.Column('evaluation_metric', sa.String(length=50), nullable=False),
        sa.Column('initial_capital', MONEY, nullable=False),
        sa.Column('self_funding_threshold_usd', MONEY, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('competition_id')
    )

    # Create perpetual_positions table
    op.create_table('perpetual_positions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('competition_id', sa.Integer(), nullable=False),
        sa.Column('provider_position_id', sa.String(length=100), nullable=False),
        sa.Column('provider_trade_id', sa.String(length=100), nullable=True),
        sa.Column('asset', sa.String(length=20), nullable=False),
        sa.Column('is_long', sa.Boolean(), nullable=False),
        sa.Column('leverage', MONEY, nullable=True),
        sa.Column('position_size', MONEY, nullable=False),
        sa.Column('collateral_amount', MONEY, nullable=False),
        sa.Column('entry_price', MONEY, nullable=False),
        sa.Column('current_price', MONEY, nullable=True),
        sa.Column('liquidation_price', MONEY, nullable=True),
        sa.Column('pnl_usd_value', MONEY, nullable=True),
        sa.Column('pnl_percentage', MONEY, nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_position_id', 'competition_id', name='uq_perp_position_provider_id')
    )
    op.create_index(op.f('ix_perpetual_positions_id'), 'perpetual_positions', ['id'], unique=False)
    op.create_index('idx_perp_positions_agent_comp', 'perpetual_positions', ['agent_id', 'competition_id'], unique=False)
    op.create_index('idx_perp_positions_status', 'perpetual_positions', ['status'], unique=False)

    # Create perps_account_summaries table
    op.create_table('perps_account_summaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('competition_id', sa.Integer(), nullable=False),
        sa.Column('initial_capital', MONEY, nullable=True),
        sa.Column('total_equity', MONEY, nullable=False),
        sa.Column('available_balance', MONEY, nullable=True),
        sa.Column('margin_used', MONEY, nullable=True),
        sa.Column('total_pnl', MONEY, nullable=True),
        sa.Column('total_realized_pnl', MONEY, nullable=True),
        sa.Column('total_unrealized_pnl', MONEY, nullable=True),
        sa.Column('total_volume', MONEY, nullable=True),
        sa.Column('total_fees_paid', MONEY, nullable=True),
        sa.Column('total_trades', sa.Integer(), nullable=True),
        sa.Column('average_trade_size', MONEY, nullable=True),
        sa.Column('open_positions_count', sa.Integer(), nullable=True),
        sa.Column('closed_positions_count', sa.Integer(), nullable=True),
        sa.Column('liquidated_positions_count', sa.Integer(), nullable=True),
        sa.Column('roi', MONEY, nullable=True),
        sa.Column('roi_percent', MONEY, nullable=True),
        sa.Column('account_status', sa.String(length=20), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_perps_account_summaries_id'), 'perps_account_summaries', ['id'], unique=False)
    op.create_index('idx_perps_summaries_agent_comp_timestamp', 'perps_account_summaries', ['agent_id', 'competition_id', 'timestamp'], unique=False)
    op.create_index('idx_perps_summaries_timestamp', 'perps_account_summaries', ['timestamp'], unique=False)

    # Create perps_self_funding_alerts table
    op.create_table('perps_self_funding_alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('competition_id', sa.Integer(), nullable=False),
        sa.Column('expected_equity', MONEY, nullable=False),
        sa.Column('actual_equity', MONEY, nullable=False),
        sa.Column('unexplained_amount', MONEY, nullable=False),
        sa.Column('account_snapshot', sa.JSON(), nullable=False),
        sa.Column('detection_method', sa.String(length=50), nullable=True),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed', sa.Boolean(), nullable=False),
        sa.Column('review_note', sa.Text(), nullable=True),
        sa.Column('action_taken', sa.String(length=50), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_perps_self_funding_alerts_id'), 'perps_self_funding_alerts', ['id'], unique=False)
    op.create_index('idx_perps_alerts_agent_comp', 'perps_self_funding_alerts', ['agent_id', 'competition_id'], unique=False)
    op.create_index('idx_perps_alerts_comp_reviewed', 'perps_self_funding_alerts', ['competition_id', 'reviewed'], unique=False)

    # Create risk_metrics_snapshots table
    op.create_table('risk_metrics_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('competition_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        *_metric_columns(),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_risk_metrics_snapshots_id'), 'risk_metrics_snapshots', ['id'], unique=False)
    op.create_index('idx_risk_snapshots_agent_comp_time', 'risk_metrics_snapshots', ['agent_id', 'competition_id', 'timestamp'], unique=False)
    op.create_index('idx_risk_snapshots_comp_time', 'risk_metrics_snapshots', ['competition_id', 'timestamp'], unique=False)

    # Create perps_risk_metrics table
    op.create_table('perps_risk_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=False),
        sa.Column('competition_id', sa.Integer(), nullable=False),
        *_metric_columns(),
        sa.Column('calculation_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('agent_id', 'competition_id', name='uq_perps_metrics_agent_comp')
    )
    op.create_index(op.f('ix_perps_risk_metrics_id'), 'perps_risk_metrics', ['id'], unique=False)
    op.create_index('idx_perps_metrics_calmar', 'perps_risk_metrics', ['competition_id', 'calmar_ratio'], unique=False)
    op.create_index('idx_perps_metrics_sortino', 'perps_risk_metrics', ['competition_id', 'sortino_ratio'], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('perps_risk_metrics')
    op.drop_table('risk_metrics_snapshots')
    op.drop_table('perps_self_funding_alerts')
    op.drop_table('perps_account_summaries')
    op.drop_table('perpetual_positions')
    op.drop_table('perps_competition_config')
    op.drop_table('competition_participants')
    op.drop_table('competitions')
    op.drop_table('agents')
