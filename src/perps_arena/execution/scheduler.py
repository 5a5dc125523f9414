import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Dict, List, Optional

from perps_arena.competition.manager import CompetitionManager
from perps_arena.competition.lifecycle import CompetitionStateMachine
from perps_arena.config import configure_logging
from perps_arena.data.alerting import AlertingSystem, create_alerting_system
from perps_arena.data.leaderboards import LeaderboardRanker
from perps_arena.db import Database, get_database
from perps_arena.models.competition import Competition, CompetitionStatus, CompetitionType
from perps_arena.sync.processor import PerpsDataProcessor, PerpsProcessingResult

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Configuration for the competition scheduler"""

    # Loop intervals (seconds)
    sync_interval: int = 60
    lifecycle_interval: int = 10

    # Pause after an unexpected loop error
    error_backoff: int = 60

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        """Create configuration from environment variables"""
        return cls(
            sync_interval=int(os.getenv('SYNC_INTERVAL', 60)),
            lifecycle_interval=int(os.getenv('LIFECYCLE_CHECK_INTERVAL', 10)),
            error_backoff=int(os.getenv('SCHEDULER_ERROR_BACKOFF', 60)),
        )


class CompetitionScheduler:
    """
    Drives competitions on a timer.

    Two loops run side by side: the sync loop processes every active perps
    competition, and the lifecycle loop starts competitions whose start date
    has arrived and ends those past their end date. Several schedulers may
    run at once; conditional status transitions make a second claim a no-op.
    """

    def __init__(self, database: Optional[Database] = None, config: Optional[SchedulerConfig] = None,
                 ranker: Optional[LeaderboardRanker] = None, alerting: Optional[AlertingSystem] = None,
                 processor: Optional[PerpsDataProcessor] = None):
        self.config = config or SchedulerConfig.from_env()
        self.database = database
        self.ranker = ranker or LeaderboardRanker()
        self.alerting = alerting or AlertingSystem()
        self.processor = processor
        self.is_running = False
        self.scheduler_tasks: List[asyncio.Task] = []

    async def _ensure_database(self):
        """Ensure database connection and processor are initialized"""
        if not self.database:
            self.database = await get_database()
        if not self.processor:
            self.processor = PerpsDataProcessor(self.database, ranker=self.ranker, alerting=self.alerting)

    async def start(self):
        """Start the scheduler loops"""
        if self.is_running:
            logger.warning("Competition scheduler is already running")
            return

        await self._ensure_database()
        self.is_running = True
        logger.info("Starting competition scheduler")

        self.scheduler_tasks.append(asyncio.create_task(self._sync_loop()))
        self.scheduler_tasks.append(asyncio.create_task(self._lifecycle_loop()))

        logger.info(f"Started {len(self.scheduler_tasks)} scheduler tasks")

    async def stop(self):
        """Stop the scheduler gracefully"""
        self.is_running = False
        logger.info("Stopping competition scheduler")

        for task in self.scheduler_tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(f"Error stopping scheduler task: {e}")

        self.scheduler_tasks.clear()
        logger.info("Competition scheduler stopped")

    async def _sync_loop(self):
        while self.is_running:
            try:
                await self.run_sync_cycle()
                await asyncio.sleep(self.config.sync_interval)
            except Exception as e:
                logger.error(f"Error in sync loop: {e}")
                await asyncio.sleep(self.config.error_backoff)

    async def _lifecycle_loop(self):
        while self.is_running:
            try:
                await self.run_lifecycle_cycle()
                await asyncio.sleep(self.config.lifecycle_interval)
            except Exception as e:
                logger.error(f"Error in competition lifecycle: {e}")
                await asyncio.sleep(self.config.error_backoff)

    async def run_sync_cycle(self) -> Dict[int, PerpsProcessingResult]:
        """Process every active perpetual futures competition once."""
        await self._ensure_database()

        async with self.database.get_session() as session:
            competitions = await CompetitionStateMachine(session).find_active_competitions(
                CompetitionType.PERPETUAL_FUTURES
            )
            competition_ids = [competition.id for competition in competitions]

        results = {}
        for competition_id in competition_ids:
            result = await self.processor.process_perps_competition(competition_id)
            if result.error:
                logger.error(f"Sync of competition {competition_id} failed: {result.error}")
            results[competition_id] = result
        return results

    async def run_lifecycle_cycle(self):
        """Start due competitions, then end due ones."""
        await self._ensure_database()

        async with self.database.get_session() as session:
            manager = CompetitionManager(session, ranker=self.ranker)
            to_start = [c.id for c in await manager.find_competitions_needing_starting()]
            to_end = [c.id for c in await manager.find_competitions_needing_ending()]

        for competition_id in to_start:
            try:
                await self.start_competition(competition_id)
            except Exception as e:
                logger.error(f"Failed to start competition {competition_id}: {e}")

        for competition_id in to_end:
            try:
                await self.end_competition(competition_id)
            except Exception as e:
                logger.error(f"Failed to end competition {competition_id}: {e}")

    async def start_competition(self, competition_id: int) -> Optional[Competition]:
        """Activate a pending competition and take its first snapshot."""
        await self._ensure_database()

        async with self.database.get_session() as session:
            competition = await CompetitionManager(session, ranker=self.ranker).start_competition(competition_id)
            is_perps = competition is not None and competition.is_perps

        if competition is None:
            logger.info(f"Competition {competition_id} already started elsewhere, skipping")
            return None

        if is_perps:
            # Baseline snapshot; no self-funding checks before any data exists
            result = await self.processor.process_perps_competition(competition_id, skip_monitoring=True)
            if result.error:
                logger.warning(f"Initial sync for competition {competition_id} failed: {result.error}")

        logger.info(f"Started competition {competition_id}")
        return competition

    async def end_competition(self, competition_id: int) -> Optional[Competition]:
        """
        End a competition: claim it, run a final sync, then freeze ranks.

        A competition left in ``ending`` by an interrupted run is resumed.
        Returns None when another worker already finished it.
        """
        await self._ensure_database()

        async with self.database.get_session() as session:
            manager = CompetitionManager(session, ranker=self.ranker)
            competition = await manager.mark_competition_as_ending(competition_id)
            if competition is None:
                current = await session.get(Competition, competition_id, populate_existing=True)
                if current is None or current.status != CompetitionStatus.ENDING:
                    logger.info(f"Competition {competition_id} is not active or ending, skipping")
                    return None
                logger.info(f"Resuming end of competition {competition_id}")
                competition = current
            is_perps = competition.is_perps

        if is_perps:
            result = await self.processor.process_perps_competition(competition_id)
            synced = len(result.sync_result.successful)
            failed = len(result.sync_result.failed)
            logger.info(f"Final sync for competition {competition_id}: {synced}/{synced + failed} agents synced")
            if failed or result.error:
                logger.warning(
                    f"Final sync for competition {competition_id} incomplete "
                    f"({failed} agents failed{', error: ' + result.error if result.error else ''})"
                )

        async with self.database.get_session() as session:
            ended = await CompetitionManager(session, ranker=self.ranker).mark_competition_as_ended(competition_id)

        if ended is None:
            logger.info(f"Competition {competition_id} was already ended")
        return ended


async def run_scheduler():
    """Run the scheduler until interrupted."""
    configure_logging()
    database = await get_database()
    alerting = create_alerting_system()
    scheduler = CompetitionScheduler(database=database, alerting=alerting)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()
        await alerting.close()
        await database.close()


def main():
    """Console entry point."""
    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted")
