"""
Perpetual futures venue data.

Positions are upserted on ``(provider_position_id, competition_id)`` and
account summaries are appended once per successful sync; the latest
summary by timestamp is an agent's current state.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Numeric, JSON, Text, ForeignKey, Index, UniqueConstraint
)
from datetime import datetime, timezone
from .base import Base

# Money, prices and ratios
MONEY = Numeric(30, 10)


class PositionStatus:
    OPEN = "Open"
    CLOSED = "Closed"
    LIQUIDATED = "Liquidated"


class PerpetualPosition(Base):
    """An agent's position on the venue as of the latest sync."""
    __tablename__ = "perpetual_positions"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    competition_id = Column(Integer, ForeignKey("competitions.id"), nullable=False)

    # Provider-agnostic identifiers
    provider_position_id = Column(String(100), nullable=False)
    provider_trade_id = Column(String(100))

    # Position details
    asset = Column(String(20), nullable=False)
    is_long = Column(Boolean, nullable=False)
    leverage = Column(MONEY)
    position_size = Column(MONEY, nullable=False)
    collateral_amount = Column(MONEY, nullable=False)

    # Prices
    entry_price = Column(MONEY, nullable=False)
    current_price = Column(MONEY)
    liquidation_price = Column(MONEY)

    # PnL
    pnl_usd_value = Column(MONEY)
    pnl_percentage = Column(MONEY)

    status = Column(String(20), nullable=False, default=PositionStatus.OPEN)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_updated_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    captured_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('provider_position_id', 'competition_id', name='uq_perp_position_provider_id'),
        Index('idx_perp_positions_agent_comp', 'agent_id', 'competition_id'),
        Index('idx_perp_positions_status', 'status'),
    )

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def __repr__(self):
        side = "long" if self.is_long else "short"
        return (
            f"<PerpetualPosition(id={self.id}, agent_id={self.agent_id}, asset='{self.asset}', "
            f"{side}, status='{self.status}')>"
        )


class PerpsAccountSummary(Base):
    """Append-only account snapshot per agent per competition."""
    __tablename__ = "perps_account_summaries"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    competition_id = Column(Integer, ForeignKey("competitions.id"), nullable=False)

    # Core equity metrics
    initial_capital = Column(MONEY)
    total_equity = Column(MONEY, nullable=False)
    available_balance = Column(MONEY)
    margin_used = Column(MONEY)

    # PnL metrics
    total_pnl = Column(MONEY)
    total_realized_pnl = Column(MONEY)
    total_unrealized_pnl = Column(MONEY)

    # Trading activity
    total_volume = Column(MONEY)
    total_fees_paid = Column(MONEY)
    total_trades = Column(Integer)
    average_trade_size = Column(MONEY)

    # Position counts
    open_positions_count = Column(Integer)
    closed_positions_count = Column(Integer)
    liquidated_positions_count = Column(Integer)

    # Performance
    roi = Column(MONEY)
    roi_percent = Column(MONEY)

    account_status = Column(String(20))

    # Raw provider response for audit
    raw_data = Column(JSON)

    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_perps_summaries_agent_comp_timestamp', 'agent_id', 'competition_id', 'timestamp'),
        Index('idx_perps_summaries_timestamp', 'timestamp'),
    )

    def __repr__(self):
        return (
            f"<PerpsAccountSummary(agent_id={self.agent_id}, competition_id={self.competition_id}, "
            f"equity={self.total_equity}, timestamp={self.timestamp})>"
        )


class SelfFundingAlert(Base):
    """Unexplained equity increase detected for an agent during a competition."""
    __tablename__ = "perps_self_funding_alerts"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    competition_id = Column(Integer, ForeignKey("competitions.id"), nullable=False)

    # Detection details
    expected_equity = Column(MONEY, nullable=False)
    actual_equity = Column(MONEY, nullable=False)
    unexplained_amount = Column(MONEY, nullable=False)
    account_snapshot = Column(JSON, nullable=False)
    detection_method = Column(String(50))  # balance_reconciliation, transfer_history
    severity = Column(String(20), nullable=False, default="warning")

    # Review status
    detected_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    reviewed = Column(Boolean, nullable=False, default=False)
    review_note = Column(Text)
    action_taken = Column(String(50))
    reviewed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_perps_alerts_agent_comp', 'agent_id', 'competition_id'),
        Index('idx_perps_alerts_comp_reviewed', 'competition_id', 'reviewed'),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('severity', 'warning')
        kwargs.setdefault('reviewed', False)
        kwargs.setdefault('detected_at', datetime.now(timezone.utc))
        super().__init__(**kwargs)

    def __repr__(self):
        return (
            f"<SelfFundingAlert(agent_id={self.agent_id}, competition_id={self.competition_id}, "
            f"unexplained={self.unexplained_amount}, severity='{self.severity}')>"
        )
