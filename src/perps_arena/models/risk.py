"""
Risk metric storage.

RiskMetricsSnapshot is an append-only time series; PerpsRiskMetrics keeps
the latest values per (agent, competition) and is what rankings read.
A metric that is undefined is stored as NULL, never as zero.
"""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from datetime import datetime, timezone
from .base import Base
from .perps import MONEY


class RiskMetricsSnapshot(Base):
    """Risk metrics computed at one point in time."""
    __tablename__ = "risk_metrics_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    competition_id = Column(Integer, ForeignKey("competitions.id"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    calmar_ratio = Column(MONEY)
    sortino_ratio = Column(MONEY)
    simple_return = Column(MONEY)
    annualized_return = Column(MONEY)
    max_drawdown = Column(MONEY)
    downside_deviation = Column(MONEY)
    snapshot_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('idx_risk_snapshots_agent_comp_time', 'agent_id', 'competition_id', 'timestamp'),
        Index('idx_risk_snapshots_comp_time', 'competition_id', 'timestamp'),
    )

    def __repr__(self):
        return (
            f"<RiskMetricsSnapshot(agent_id={self.agent_id}, competition_id={self.competition_id}, "
            f"calmar={self.calmar_ratio}, timestamp={self.timestamp})>"
        )


class PerpsRiskMetrics(Base):
    """Latest risk metrics per agent per competition."""
    __tablename__ = "perps_risk_metrics"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    competition_id = Column(Integer, ForeignKey("competitions.id"), nullable=False)

    calmar_ratio = Column(MONEY)
    sortino_ratio = Column(MONEY)
    simple_return = Column(MONEY)
    annualized_return = Column(MONEY)
    max_drawdown = Column(MONEY)
    downside_deviation = Column(MONEY)
    snapshot_count = Column(Integer, nullable=False, default=0)

    calculation_timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint('agent_id', 'competition_id', name='uq_perps_metrics_agent_comp'),
        Index('idx_perps_metrics_calmar', 'competition_id', 'calmar_ratio'),
        Index('idx_perps_metrics_sortino', 'competition_id', 'sortino_ratio'),
    )

    def __repr__(self):
        return (
            f"<PerpsRiskMetrics(agent_id={self.agent_id}, competition_id={self.competition_id}, "
            f"calmar={self.calmar_ratio}, sortino={self.sortino_ratio})>"
        )
