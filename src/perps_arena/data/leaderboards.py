"""
Competition leaderboards for perpetual futures competitions.

Provides ranking functionality including:
- Composition of latest equity, latest risk metrics and participation status
- Ranking by the competition's evaluation metric (Calmar, Sortino or simple return)
- Deterministic tie-breaking (metric presence, then equity, then agent id)
- Paged leaderboard queries with a short-lived in-process cache
"""

import time
import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import List, Dict, Any, Optional, Hashable, Tuple
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from perps_arena.config import LeaderboardConfig
from perps_arena.models.agent import Agent
from perps_arena.models.competition import (
    CompetitionParticipant, PerpsCompetitionConfig, ParticipantStatus, EvaluationMetric
)
from perps_arena.models.perps import PerpsAccountSummary
from perps_arena.models.risk import PerpsRiskMetrics
from perps_arena.exceptions import ValidationError

logger = logging.getLogger(__name__)


class TTLCache:
    """
    Small max-age cache.

    Entries are stored as ``(value, inserted_at)`` and checked against
    ``ttl_seconds`` at lookup; expired entries are dropped on read.
    """

    def __init__(self, ttl_seconds: float, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, inserted_at = entry
        if self._clock() - inserted_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any):
        self._entries[key] = (value, self._clock())

    def invalidate(self, predicate=None):
        """Drop every entry, or only the keys matching ``predicate``."""
        if predicate is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if predicate(k)]:
            del self._entries[key]

    def __len__(self):
        return len(self._entries)


@dataclass
class RankedAgent:
    """One row of a competition leaderboard."""

    agent_id: int
    agent_name: str
    rank: int
    status: str
    score: Optional[Decimal]
    total_equity: Optional[Decimal]
    calmar_ratio: Optional[Decimal] = None
    sortino_ratio: Optional[Decimal] = None
    simple_return: Optional[Decimal] = None
    annualized_return: Optional[Decimal] = None
    max_drawdown: Optional[Decimal] = None
    downside_deviation: Optional[Decimal] = None
    has_risk_metrics: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == ParticipantStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LeaderboardRanker:
    """
    Ranks competition participants.

    Active participants are sorted by the evaluation metric descending with
    missing values last; ties go to higher equity, then lower agent id.
    Withdrawn and disqualified participants all share rank = total
    participant count. Rankings are cached per (competition, metric) until
    the TTL elapses or ``invalidate`` is called after a sync.
    """

    def __init__(self, config: Optional[LeaderboardConfig] = None):
        self.config = config or LeaderboardConfig.from_env()
        self.cache = TTLCache(self.config.cache_ttl_seconds)

    def invalidate(self, competition_id: Optional[int] = None):
        """Forget cached rankings, for one competition or all of them."""
        if competition_id is None:
            self.cache.invalidate()
        else:
            self.cache.invalidate(lambda key: key[0] == competition_id)
        logger.debug(f"Leaderboard cache invalidated (competition={competition_id})")

    async def get_evaluation_metric(self, session: AsyncSession, competition_id: int) -> str:
        metric = await session.scalar(
            select(PerpsCompetitionConfig.evaluation_metric)
            .where(PerpsCompetitionConfig.competition_id == competition_id)
        )
        return metric or EvaluationMetric.CALMAR_RATIO

    async def rank(self, session: AsyncSession, competition_id: int,
                   evaluation_metric: Optional[str] = None,
                   use_cache: bool = True) -> List[RankedAgent]:
        """
        Compute the full ranking for a competition.

        Args:
            session: Database session to read with
            competition_id: Competition to rank
            evaluation_metric: Metric to sort by; defaults to the competition's configured metric
            use_cache: Set False to force a fresh computation (e.g. when freezing final ranks)

        Returns:
            Ranked agents, active participants first
        """
        if evaluation_metric is None:
            evaluation_metric = await self.get_evaluation_metric(session, competition_id)
        if evaluation_metric not in EvaluationMetric.ALL:
            raise ValidationError(f"Unknown evaluation metric: {evaluation_metric}")

        cache_key = (competition_id, evaluation_metric)
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        participants = (await session.execute(
            select(CompetitionParticipant, Agent)
            .join(Agent, CompetitionParticipant.agent_id == Agent.id)
            .where(CompetitionParticipant.competition_id == competition_id)
            .execution_options(populate_existing=True)
        )).all()

        equity = await self._latest_equity(session, competition_id)
        metrics = {
            row.agent_id: row
            for row in (await session.scalars(
                select(PerpsRiskMetrics)
                .where(PerpsRiskMetrics.competition_id == competition_id)
                .execution_options(populate_existing=True)
            )).all()
        }

        total = len(participants)
        entries = []
        for participant, agent in participants:
            risk = metrics.get(agent.id)
            entries.append(RankedAgent(
                agent_id=agent.id,
                agent_name=agent.name,
                rank=total,
                status=participant.status,
                score=getattr(risk, evaluation_metric) if risk else None,
                total_equity=equity.get(agent.id),
                calmar_ratio=risk.calmar_ratio if risk else None,
                sortino_ratio=risk.sortino_ratio if risk else None,
                simple_return=risk.simple_return if risk else None,
                annualized_return=risk.annualized_return if risk else None,
                max_drawdown=risk.max_drawdown if risk else None,
                downside_deviation=risk.downside_deviation if risk else None,
                has_risk_metrics=risk is not None,
            ))

        active = sorted((e for e in entries if e.is_active), key=self._sort_key)
        inactive = sorted((e for e in entries if not e.is_active), key=lambda e: e.agent_id)

        for position, entry in enumerate(active, start=1):
            entry.rank = position

        ranked = active + inactive
        self.cache.set(cache_key, ranked)

        logger.info(
            f"Ranked competition {competition_id} by {evaluation_metric}: "
            f"{len(active)} active, {len(inactive)} inactive"
        )
        return ranked

    @staticmethod
    def _sort_key(entry: RankedAgent):
        # Python sorts ascending: metric presence first, then metric desc, equity desc, id asc
        has_score = entry.score is not None
        has_equity = entry.total_equity is not None
        return (
            not has_score,
            -entry.score if has_score else Decimal(0),
            not has_equity,
            -entry.total_equity if has_equity else Decimal(0),
            entry.agent_id,
        )

    async def _latest_equity(self, session: AsyncSession, competition_id: int) -> Dict[int, Decimal]:
        """Latest total equity per agent, by summary timestamp."""
        latest = (
            select(
                PerpsAccountSummary.agent_id,
                func.max(PerpsAccountSummary.timestamp).label("latest_ts")
            )
            .where(PerpsAccountSummary.competition_id == competition_id)
            .group_by(PerpsAccountSummary.agent_id)
            .subquery()
        )

        rows = (await session.execute(
            select(PerpsAccountSummary.agent_id, PerpsAccountSummary.id, PerpsAccountSummary.total_equity)
            .join(latest, and_(
                PerpsAccountSummary.agent_id == latest.c.agent_id,
                PerpsAccountSummary.timestamp == latest.c.latest_ts
            ))
            .where(PerpsAccountSummary.competition_id == competition_id)
            .order_by(PerpsAccountSummary.agent_id, PerpsAccountSummary.id)
        )).all()

        # Equal timestamps: the later insert wins
        return {agent_id: total_equity for agent_id, _, total_equity in rows}

    async def get_competition_agents_with_metrics(self, session: AsyncSession, competition_id: int,
                                                  limit: Optional[int] = None,
                                                  offset: int = 0) -> Dict[str, Any]:
        """
        Paged leaderboard.

        Returns:
            ``{"agents": [RankedAgent, ...], "total": int}``
        """
        limit = limit if limit is not None else self.config.default_page_size
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative")

        ranked = await self.rank(session, competition_id)
        return {
            "agents": ranked[offset:offset + limit],
            "total": len(ranked),
        }
