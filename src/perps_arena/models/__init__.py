"""
Perps Arena Database Models

This package contains all SQLAlchemy models for the perps arena:
- Agent: Autonomous trading agents and their venue accounts
- Competition: Competitions, participants and perps configuration
- Perps: Positions, account summaries and self-funding alerts
- Risk: Risk metric time series and latest values
"""

from .base import Base
from .agent import Agent
from .competition import (
    Competition,
    CompetitionParticipant,
    PerpsCompetitionConfig,
    CompetitionStatus,
    CompetitionType,
    ParticipantStatus,
    EvaluationMetric,
)
from .perps import PerpetualPosition, PerpsAccountSummary, SelfFundingAlert, PositionStatus
from .risk import RiskMetricsSnapshot, PerpsRiskMetrics

__all__ = [
    "Base",
    "Agent",
    "Competition",
    "CompetitionParticipant",
    "PerpsCompetitionConfig",
    "CompetitionStatus",
    "CompetitionType",
    "ParticipantStatus",
    "EvaluationMetric",
    "PerpetualPosition",
    "PerpsAccountSummary",
    "SelfFundingAlert",
    "PositionStatus",
    "RiskMetricsSnapshot",
    "PerpsRiskMetrics",
]
