"""
Competition lifecycle state machine.

Status only moves forward: pending -> active -> ending -> ended. Every
transition is a single conditional UPDATE guarded by the expected current
status, so when several workers race for the same transition exactly one
of them gets the updated record back and the rest get ``None``.
"""

from typing import List, Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_
from perps_arena.models.competition import Competition, CompetitionStatus
import logging

logger = logging.getLogger(__name__)


class CompetitionStateMachine:
    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def _transition(self, competition_id: int, from_status: str, to_status: str,
                          session: Optional[AsyncSession] = None, **values) -> Optional[Competition]:
        """Conditionally move a competition from ``from_status`` to ``to_status``.

        When ``session`` is given the caller owns the transaction and nothing is
        committed here.
        """
        owns_transaction = session is None
        session = session or self.db
        now = datetime.now(timezone.utc)

        try:
            result = await session.execute(
                update(Competition)
                .where(and_(
                    Competition.id == competition_id,
                    Competition.status == from_status
                ))
                .values(status=to_status, updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                if owns_transaction:
                    await session.commit()
                logger.info(
                    f"Competition {competition_id} not in '{from_status}'; "
                    f"transition to '{to_status}' skipped"
                )
                return None

            competition = await session.get(Competition, competition_id, populate_existing=True)
            if owns_transaction:
                await session.commit()

        except Exception as e:
            if owns_transaction:
                await session.rollback()
            logger.error(f"Failed to move competition {competition_id} to '{to_status}': {e}")
            raise

        logger.info(f"Competition {competition_id}: {from_status} -> {to_status}")
        return competition

    async def start_competition(self, competition_id: int) -> Optional[Competition]:
        """pending -> active, stamping the actual start time."""
        return await self._transition(
            competition_id,
            CompetitionStatus.PENDING,
            CompetitionStatus.ACTIVE,
            start_date=datetime.now(timezone.utc)
        )

    async def mark_ending(self, competition_id: int) -> Optional[Competition]:
        """
        Claim the end of an active competition.

        Sets status to ``ending`` and ``end_date`` to now. Returns None when the
        competition is not active (already claimed by another worker, or never
        started).
        """
        return await self._transition(
            competition_id,
            CompetitionStatus.ACTIVE,
            CompetitionStatus.ENDING,
            end_date=datetime.now(timezone.utc)
        )

    async def mark_ended(self, competition_id: int,
                         session: Optional[AsyncSession] = None) -> Optional[Competition]:
        """
        Finalize a competition that is ``ending``.

        Pass ``session`` to make the transition part of a larger transaction
        (e.g. freezing final ranks), so both commit or roll back together.
        """
        return await self._transition(
            competition_id,
            CompetitionStatus.ENDING,
            CompetitionStatus.ENDED,
            session=session
        )

    async def find_competitions_needing_ending(self) -> List[Competition]:
        """
        Active competitions whose end date has passed, plus any stuck in ``ending``
        (a worker crashed between the two phases of finalization).
        """
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(Competition)
            .where(or_(
                and_(
                    Competition.status == CompetitionStatus.ACTIVE,
                    Competition.end_date.is_not(None),
                    Competition.end_date <= now
                ),
                Competition.status == CompetitionStatus.ENDING
            ))
            .order_by(Competition.end_date)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_competitions_needing_starting(self) -> List[Competition]:
        """Pending competitions whose start date has arrived, oldest first."""
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(Competition)
            .where(and_(
                Competition.status == CompetitionStatus.PENDING,
                Competition.start_date.is_not(None),
                Competition.start_date <= now
            ))
            .order_by(Competition.start_date)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_active_competitions(self, competition_type: Optional[str] = None) -> List[Competition]:
        """All active competitions, optionally filtered by type."""
        query = select(Competition).where(Competition.status == CompetitionStatus.ACTIVE)
        if competition_type:
            query = query.where(Competition.type == competition_type)

        result = await self.db.execute(query.order_by(Competition.id).execution_options(populate_existing=True))
        return list(result.scalars().all())
