from typing import List, Dict, Optional, Iterable, Any
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update, and_
from perps_arena.models.competition import (
    Competition, CompetitionParticipant, PerpsCompetitionConfig, CompetitionStatus, CompetitionType,
    EvaluationMetric
)
from perps_arena.competition.lifecycle import CompetitionStateMachine
from perps_arena.competition.registry import ParticipantRegistry
from perps_arena.data.leaderboards import LeaderboardRanker
from perps_arena.exceptions import ValidationError, NotFoundError
import logging

logger = logging.getLogger(__name__)


class CompetitionManager:
    def __init__(self, db_session: AsyncSession, ranker: Optional[LeaderboardRanker] = None):
        self.db = db_session
        self.registry = ParticipantRegistry(db_session)
        self.lifecycle = CompetitionStateMachine(db_session)
        self.ranker = ranker or LeaderboardRanker()

    async def create_competition(self, name: str, start_date: Optional[datetime] = None,
                                 end_date: Optional[datetime] = None,
                                 max_participants: Optional[int] = None,
                                 competition_type: str = CompetitionType.PERPETUAL_FUTURES,
                                 perps_config: Optional[Dict[str, Any]] = None) -> Competition:
        """Create a pending competition, with perps settings for perps competitions"""

        if max_participants is not None and max_participants < 1:
            raise ValidationError("max_participants must be at least 1")
        if start_date and end_date and end_date <= start_date:
            raise ValidationError("Competition end date must be after start date")

        settings = dict(perps_config or {})
        metric = settings.get('evaluation_metric', EvaluationMetric.CALMAR_RATIO)
        if metric not in EvaluationMetric.ALL:
            raise ValidationError(f"Unknown evaluation metric: {metric}")

        competition = Competition(
            name=name,
            type=competition_type,
            start_date=start_date,
            end_date=end_date,
            max_participants=max_participants,
            status=CompetitionStatus.PENDING
        )

        try:
            self.db.add(competition)
            await self.db.flush()

            if competition_type == CompetitionType.PERPETUAL_FUTURES:
                threshold = settings.get('self_funding_threshold_usd')
                self.db.add(PerpsCompetitionConfig(
                    competition_id=competition.id,
                    data_source=settings.get('data_source', 'external_api'),
                    data_source_config=settings.get('data_source_config', {}),
                    evaluation_metric=metric,
                    initial_capital=Decimal(str(settings.get('initial_capital', '500'))),
                    self_funding_threshold_usd=Decimal(str(threshold)) if threshold is not None else None
                ))

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create competition {name}: {e}")
            raise

        logger.info(f"Created {competition_type} competition: {name} (ID: {competition.id})")
        return competition

    # Membership

    async def join_competition(self, competition_id: int, agent_id: int) -> bool:
        """Register agent for competition with capacity validation"""
        return await self.registry.join(competition_id, agent_id)

    async def leave_competition(self, competition_id: int, agent_id: int,
                                reason: Optional[str] = None) -> bool:
        return await self.registry.leave(competition_id, agent_id, reason)

    async def disqualify_agent(self, competition_id: int, agent_id: int, reason: str) -> bool:
        return await self.registry.disqualify(competition_id, agent_id, reason)

    async def reactivate_agent(self, competition_id: int, agent_id: int) -> bool:
        return await self.registry.reactivate(competition_id, agent_id)

    async def add_agents(self, competition_id: int, agent_ids: Iterable[int]) -> List[int]:
        """Bulk registration; returns the newly registered agent ids"""
        return await self.registry.bulk_join(competition_id, agent_ids)

    # Lifecycle

    async def start_competition(self, competition_id: int) -> Optional[Competition]:
        return await self.lifecycle.start_competition(competition_id)

    async def mark_competition_as_ending(self, competition_id: int) -> Optional[Competition]:
        return await self.lifecycle.mark_ending(competition_id)

    async def mark_competition_as_ended(self, competition_id: int) -> Optional[Competition]:
        """
        Finalize an ending competition and freeze every participant's final rank.

        The status transition and the rank writes share one transaction; a
        caller that loses the race gets None and nothing is written.
        """
        try:
            competition = await self.lifecycle.mark_ended(competition_id, session=self.db)
            if competition is None:
                await self.db.rollback()
                return None

            ranked = await self.ranker.rank(self.db, competition_id, use_cache=False)
            now = datetime.now(timezone.utc)
            for entry in ranked:
                await self.db.execute(
                    update(CompetitionParticipant)
                    .where(and_(
                        CompetitionParticipant.competition_id == competition_id,
                        CompetitionParticipant.agent_id == entry.agent_id
                    ))
                    .values(final_rank=entry.rank, updated_at=now)
                    .execution_options(synchronize_session=False)
                )

            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to finalize competition {competition_id}: {e}")
            raise

        self.ranker.invalidate(competition_id)
        logger.info(f"Competition {competition_id} ended; froze final ranks for {len(ranked)} participants")
        return competition

    async def find_competitions_needing_ending(self) -> List[Competition]:
        return await self.lifecycle.find_competitions_needing_ending()

    async def find_competitions_needing_starting(self) -> List[Competition]:
        return await self.lifecycle.find_competitions_needing_starting()

    # Leaderboard

    async def get_competition_agents_with_metrics(self, competition_id: int,
                                                  limit: Optional[int] = None,
                                                  offset: int = 0) -> Dict[str, Any]:
        if not await self.db.get(Competition, competition_id):
            raise NotFoundError("Competition", competition_id)
        return await self.ranker.get_competition_agents_with_metrics(self.db, competition_id, limit, offset)
