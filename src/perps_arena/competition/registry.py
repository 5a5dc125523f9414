from typing import List, Optional, Iterable
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, func
from perps_arena.models.competition import Competition, CompetitionParticipant, ParticipantStatus
from perps_arena.models.agent import Agent
from perps_arena.exceptions import CapacityExceededError, NotFoundError
from perps_arena.db import upsert_insert
import logging

logger = logging.getLogger(__name__)


class ParticipantRegistry:
    """
    Competition membership with capacity enforcement.

    Every mutation runs in its own transaction holding a row lock on the
    competition, and ``registered_participants`` only changes through in-SQL
    increments/decrements, so the counter always equals the number of
    active participants no matter how calls interleave.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _lock_competition(self, competition_id: int) -> Competition:
        competition = await self.db.scalar(
            select(Competition)
            .where(Competition.id == competition_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not competition:
            raise NotFoundError("Competition", competition_id)
        return competition

    async def _adjust_counter(self, competition_id: int, delta: int):
        await self.db.execute(
            update(Competition)
            .where(Competition.id == competition_id)
            .values(
                registered_participants=Competition.registered_participants + delta,
                updated_at=datetime.now(timezone.utc)
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _check_capacity(competition: Competition, adding: int):
        if competition.max_participants is None:
            return
        if competition.registered_participants + adding > competition.max_participants:
            raise CapacityExceededError(competition.id, competition.max_participants, adding)

    async def join(self, competition_id: int, agent_id: int) -> bool:
        """
        Register an agent.

        Returns False when the agent already has a participant row (duplicate
        joins are no-ops). Raises CapacityExceededError when the competition is
        full, and NotFoundError for an unknown competition or agent.
        """
        try:
            competition = await self._lock_competition(competition_id)

            if not await self.db.get(Agent, agent_id):
                raise NotFoundError("Agent", agent_id)

            now = datetime.now(timezone.utc)
            stmt = upsert_insert(self.db, CompetitionParticipant).values(
                competition_id=competition_id,
                agent_id=agent_id,
                status=ParticipantStatus.ACTIVE,
                joined_at=now,
                updated_at=now
            ).on_conflict_do_nothing(index_elements=['competition_id', 'agent_id'])
            result = await self.db.execute(stmt)

            if result.rowcount == 0:
                await self.db.commit()
                logger.debug(f"Agent {agent_id} already registered for competition {competition_id}")
                return False

            # Raising here rolls the insert back with the rest of the transaction
            self._check_capacity(competition, 1)

            await self._adjust_counter(competition_id, 1)
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to register agent {agent_id} for competition {competition_id}: {e}")
            raise

        logger.info(f"Agent {agent_id} registered for competition {competition_id}")
        return True

    async def _deactivate(self, competition_id: int, agent_id: int, status: str,
                          reason: Optional[str]) -> bool:
        try:
            await self._lock_competition(competition_id)

            now = datetime.now(timezone.utc)
            result = await self.db.execute(
                update(CompetitionParticipant)
                .where(and_(
                    CompetitionParticipant.competition_id == competition_id,
                    CompetitionParticipant.agent_id == agent_id,
                    CompetitionParticipant.status == ParticipantStatus.ACTIVE
                ))
                .values(
                    status=status,
                    deactivation_reason=reason,
                    deactivated_at=now,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                if not await self._get_participant(competition_id, agent_id):
                    raise NotFoundError("Participant", f"{competition_id}/{agent_id}")
                await self.db.commit()
                logger.debug(f"Agent {agent_id} not active in competition {competition_id}; nothing to do")
                return False

            await self._adjust_counter(competition_id, -1)
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to set agent {agent_id} to '{status}' in competition {competition_id}: {e}")
            raise

        logger.info(f"Agent {agent_id} {status} from competition {competition_id}: {reason}")
        return True

    async def leave(self, competition_id: int, agent_id: int, reason: Optional[str] = None) -> bool:
        """
        Withdraw an agent voluntarily.

        Returns False if it was not active. Raises NotFoundError if it never joined.
        """
        return await self._deactivate(
            competition_id, agent_id, ParticipantStatus.WITHDRAWN, reason or "Withdrew from competition"
        )

    async def disqualify(self, competition_id: int, agent_id: int, reason: str) -> bool:
        """Disqualify an active agent. Returns False if it was not active."""
        return await self._deactivate(competition_id, agent_id, ParticipantStatus.DISQUALIFIED, reason)

    async def reactivate(self, competition_id: int, agent_id: int) -> bool:
        """
        Move a withdrawn or disqualified participant back to active.

        Capacity is re-checked under the competition lock. Returns False when
        the participant is already active.
        """
        try:
            competition = await self._lock_competition(competition_id)

            participant = await self._get_participant(competition_id, agent_id)
            if not participant:
                raise NotFoundError("Participant", f"{competition_id}/{agent_id}")
            if participant.status == ParticipantStatus.ACTIVE:
                await self.db.commit()
                return False

            self._check_capacity(competition, 1)

            result = await self.db.execute(
                update(CompetitionParticipant)
                .where(and_(
                    CompetitionParticipant.competition_id == competition_id,
                    CompetitionParticipant.agent_id == agent_id,
                    CompetitionParticipant.status != ParticipantStatus.ACTIVE
                ))
                .values(
                    status=ParticipantStatus.ACTIVE,
                    deactivation_reason=None,
                    deactivated_at=None,
                    updated_at=datetime.now(timezone.utc)
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.db.commit()
                return False

            await self._adjust_counter(competition_id, 1)
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to reactivate agent {agent_id} in competition {competition_id}: {e}")
            raise

        logger.info(f"Agent {agent_id} reactivated in competition {competition_id}")
        return True

    async def bulk_join(self, competition_id: int, agent_ids: Iterable[int]) -> List[int]:
        """
        Register many agents in one transaction.

        Duplicates in the input and agents that already have a participant row
        are skipped, so retrying a batch is safe. Capacity is checked against
        the number of new registrations. Returns the newly registered ids.
        """
        unique_ids = list(dict.fromkeys(agent_ids))
        if not unique_ids:
            return []

        try:
            competition = await self._lock_competition(competition_id)

            known = set((await self.db.scalars(
                select(Agent.id).where(Agent.id.in_(unique_ids))
            )).all())
            missing = [agent_id for agent_id in unique_ids if agent_id not in known]
            if missing:
                raise NotFoundError("Agent", missing[0])

            existing = set((await self.db.scalars(
                select(CompetitionParticipant.agent_id).where(and_(
                    CompetitionParticipant.competition_id == competition_id,
                    CompetitionParticipant.agent_id.in_(unique_ids)
                ))
            )).all())
            new_ids = [agent_id for agent_id in unique_ids if agent_id not in existing]

            if not new_ids:
                await self.db.commit()
                logger.debug(f"All {len(unique_ids)} agents already registered for competition {competition_id}")
                return []

            self._check_capacity(competition, len(new_ids))

            now = datetime.now(timezone.utc)
            stmt = upsert_insert(self.db, CompetitionParticipant).values([
                {
                    'competition_id': competition_id,
                    'agent_id': agent_id,
                    'status': ParticipantStatus.ACTIVE,
                    'joined_at': now,
                    'updated_at': now,
                }
                for agent_id in new_ids
            ]).on_conflict_do_nothing(index_elements=['competition_id', 'agent_id'])
            result = await self.db.execute(stmt)

            inserted = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(new_ids)
            await self._adjust_counter(competition_id, inserted)
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to bulk register agents for competition {competition_id}: {e}")
            raise

        logger.info(f"Registered {len(new_ids)} agents for competition {competition_id}")
        return new_ids

    async def _get_participant(self, competition_id: int, agent_id: int) -> Optional[CompetitionParticipant]:
        return await self.db.scalar(
            select(CompetitionParticipant)
            .where(and_(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.agent_id == agent_id
            ))
            .execution_options(populate_existing=True)
        )

    async def get_participant(self, competition_id: int, agent_id: int) -> Optional[CompetitionParticipant]:
        return await self._get_participant(competition_id, agent_id)

    async def get_active_agent_ids(self, competition_id: int) -> List[int]:
        result = await self.db.scalars(
            select(CompetitionParticipant.agent_id)
            .where(and_(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.status == ParticipantStatus.ACTIVE
            ))
            .order_by(CompetitionParticipant.agent_id)
        )
        return list(result.all())

    async def count_active(self, competition_id: int) -> int:
        return await self.db.scalar(
            select(func.count(CompetitionParticipant.id))
            .where(and_(
                CompetitionParticipant.competition_id == competition_id,
                CompetitionParticipant.status == ParticipantStatus.ACTIVE
            ))
        ) or 0
