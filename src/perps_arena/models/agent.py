"""
Agent model for autonomous trading agents.

An agent trades on an external perpetual-futures venue; the arena only
observes its account through ``wallet_address``.
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from .base import Base


class Agent(Base):
    """
    Autonomous trading agent registered with the arena.

    ``wallet_address`` identifies the agent's account on the venue (an
    on-chain address, or a sub-account email for exchange-hosted accounts).
    Agents without one are skipped by the sync engine.
    """
    __tablename__ = "agents"

    # Primary fields
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    owner = Column(String(255), nullable=False, index=True)

    # Venue account identifier
    wallet_address = Column(String(255), index=True)

    # Agent Status
    status = Column(String(50), default="active")  # active, suspended, deleted

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    participations = relationship("CompetitionParticipant", back_populates="agent")

    def __init__(self, **kwargs):
        kwargs.setdefault('status', 'active')

        now = datetime.now(timezone.utc)
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)

        super().__init__(**kwargs)

    @property
    def is_active(self) -> bool:
        """Check if agent is currently active"""
        return self.status == "active"

    @property
    def can_sync(self) -> bool:
        """Agents without a venue account cannot be synced"""
        return bool(self.wallet_address)

    def __repr__(self):
        return f"<Agent(id={self.id}, name='{self.name}', owner='{self.owner}', wallet='{self.wallet_address}')>"
