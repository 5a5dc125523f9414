"""
Competition models for perpetual futures trading competitions.

A competition moves forward through pending -> active -> ending -> ended.
``registered_participants`` is a denormalized count of participants whose
status is ``active``; it is only ever changed by in-SQL expressions.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Numeric, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from decimal import Decimal
from .base import Base


class CompetitionStatus:
    PENDING = "pending"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


class CompetitionType:
    PERPETUAL_FUTURES = "perpetual_futures"
    PAPER_TRADING = "paper_trading"


class ParticipantStatus:
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    DISQUALIFIED = "disqualified"


class EvaluationMetric:
    CALMAR_RATIO = "calmar_ratio"
    SORTINO_RATIO = "sortino_ratio"
    SIMPLE_RETURN = "simple_return"

    ALL = (CALMAR_RATIO, SORTINO_RATIO, SIMPLE_RETURN)


class Competition(Base):
    """
    Trading competition.

    Perpetual futures competitions are scored from venue data synced by the
    perps engine; paper trading competitions are managed elsewhere.
    """
    __tablename__ = "competitions"

    # Primary fields
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text)

    type = Column(String(50), nullable=False, default=CompetitionType.PERPETUAL_FUTURES)
    status = Column(String(50), nullable=False, default=CompetitionStatus.PENDING, index=True)

    # Scheduling
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))

    # Participant Limits
    max_participants = Column(Integer)
    registered_participants = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    participants = relationship("CompetitionParticipant", back_populates="competition")
    perps_config = relationship("PerpsCompetitionConfig", back_populates="competition", uselist=False)

    def __init__(self, **kwargs):
        kwargs.setdefault('type', CompetitionType.PERPETUAL_FUTURES)
        kwargs.setdefault('status', CompetitionStatus.PENDING)
        kwargs.setdefault('max_participants', None)
        kwargs.setdefault('registered_participants', 0)

        now = datetime.now(timezone.utc)
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)

        super().__init__(**kwargs)

    @property
    def is_active(self) -> bool:
        return self.status == CompetitionStatus.ACTIVE

    @property
    def is_perps(self) -> bool:
        return self.type == CompetitionType.PERPETUAL_FUTURES

    @property
    def spots_remaining(self):
        """Remaining capacity, or None when unlimited"""
        if self.max_participants is None:
            return None
        return max(0, self.max_participants - self.registered_participants)

    def __repr__(self):
        return f"<Competition(id={self.id}, name='{self.name}', type='{self.type}', status='{self.status}')>"


class CompetitionParticipant(Base):
    """
    Agent participation in a competition.

    Rows are never deleted: leaving, withdrawing or disqualification only
    change ``status`` so history and final rankings survive.
    """
    __tablename__ = "competition_participants"

    id = Column(Integer, primary_key=True, index=True)
    competition_id = Column(Integer, ForeignKey("competitions.id"), nullable=False, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False, index=True)

    status = Column(String(50), nullable=False, default=ParticipantStatus.ACTIVE)
    deactivation_reason = Column(String(255))
    deactivated_at = Column(DateTime(timezone=True))

    # Frozen when the competition ends
    final_rank = Column(Integer)

    joined_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    agent = relationship("Agent", back_populates="participations")
    competition = relationship("Competition", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('competition_id', 'agent_id', name='uq_competition_agent'),
        Index('idx_participants_competition_status', 'competition_id', 'status'),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('status', ParticipantStatus.ACTIVE)

        now = datetime.now(timezone.utc)
        kwargs.setdefault('joined_at', now)
        kwargs.setdefault('updated_at', now)

        super().__init__(**kwargs)

    @property
    def is_active(self) -> bool:
        return self.status == ParticipantStatus.ACTIVE

    def __repr__(self):
        return (
            f"<CompetitionParticipant(competition_id={self.competition_id}, "
            f"agent_id={self.agent_id}, status='{self.status}')>"
        )


class PerpsCompetitionConfig(Base):
    """
    Perpetual futures settings for a competition.

    ``data_source`` is one of external_api, onchain_indexing or hybrid;
    ``data_source_config`` holds the provider connection parameters
    (for external_api: ``{"provider": "hyperliquid", "api_url": ...}``).
    """
    __tablename__ = "perps_competition_config"

    competition_id = Column(Integer, ForeignKey("competitions.id"), primary_key=True)

    data_source = Column(String(50), nullable=False, default="external_api")
    data_source_config = Column(JSON, nullable=False, default=dict)

    evaluation_metric = Column(String(50), nullable=False, default=EvaluationMetric.CALMAR_RATIO)
    initial_capital = Column(Numeric(30, 10), nullable=False, default=Decimal("500"))

    # Self-funding detection; null disables monitoring
    self_funding_threshold_usd = Column(Numeric(30, 10))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    competition = relationship("Competition", back_populates="perps_config")

    def __init__(self, **kwargs):
        kwargs.setdefault('data_source', 'external_api')
        kwargs.setdefault('data_source_config', {})
        kwargs.setdefault('evaluation_metric', EvaluationMetric.CALMAR_RATIO)
        kwargs.setdefault('initial_capital', Decimal("500"))

        now = datetime.now(timezone.utc)
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)

        super().__init__(**kwargs)

    def provider_config(self) -> dict:
        """Provider connection parameters merged with the data source type"""
        return {"type": self.data_source, **(self.data_source_config or {})}

    def __repr__(self):
        return (
            f"<PerpsCompetitionConfig(competition_id={self.competition_id}, "
            f"data_source='{self.data_source}', metric='{self.evaluation_metric}')>"
        )
