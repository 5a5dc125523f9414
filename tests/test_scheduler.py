import asyncio

import pytest

from perps_arena.competition.manager import CompetitionManager
from perps_arena.competition.registry import ParticipantRegistry
from perps_arena.config import LeaderboardConfig, RiskConfig
from perps_arena.data.alerting import AlertingSystem
from perps_arena.data.leaderboards import LeaderboardRanker
from perps_arena.execution.scheduler import CompetitionScheduler, SchedulerConfig
from perps_arena.models.competition import Competition, CompetitionStatus
from perps_arena.sync.processor import PerpsDataProcessor

from conftest import (
    FakeProvider, account, wallet, create_agents, create_competition, register, start, hours_ago
)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def scheduler(database, provider, fast_batch_config):
    ranker = LeaderboardRanker(LeaderboardConfig())
    alerting = AlertingSystem()
    processor = PerpsDataProcessor(
        database,
        ranker=ranker,
        alerting=alerting,
        batch_config=fast_batch_config,
        risk_config=RiskConfig(),
        provider_factory=lambda provider_config, timeout=30.0: provider
    )
    return CompetitionScheduler(
        database=database,
        config=SchedulerConfig(sync_interval=60, lifecycle_interval=60, error_backoff=60),
        ranker=ranker,
        alerting=alerting,
        processor=processor
    )


async def status_of(database, competition_id):
    async with database.get_session() as session:
        return (await session.get(Competition, competition_id)).status


async def test_lifecycle_cycle_starts_and_ends_due_competitions(database, scheduler, provider):
    due_to_start = await create_competition(database, start_date=hours_ago(1))
    due_to_end = await create_competition(database, end_date=hours_ago(1))
    leader, trailer = await create_agents(database, 2)
    [newcomer] = await create_agents(database, 1)
    await register(database, due_to_end, [leader, trailer])
    await register(database, due_to_start, [newcomer])
    await start(database, due_to_end)

    provider.accounts.update({
        wallet(leader): account("1500"),
        wallet(trailer): account("900"),
        wallet(newcomer): account("1000"),
    })

    await scheduler.run_lifecycle_cycle()

    assert await status_of(database, due_to_start) == CompetitionStatus.ACTIVE
    assert await status_of(database, due_to_end) == CompetitionStatus.ENDED
    # Initial snapshot for the new competition, final sync for the ended one
    assert provider.calls == {wallet(newcomer): 1, wallet(leader): 1, wallet(trailer): 1}

    async with database.get_session() as session:
        registry = ParticipantRegistry(session)
        assert (await registry.get_participant(due_to_end, leader)).final_rank == 1
        assert (await registry.get_participant(due_to_end, trailer)).final_rank == 2


async def test_end_competition_resumes_an_interrupted_ending(database, scheduler, provider):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])
    await start(database, competition_id)
    provider.accounts[wallet(agent_id)] = account("1000")

    # A previous worker claimed the competition and died before the final sync
    async with database.get_session() as session:
        await CompetitionManager(session).mark_competition_as_ending(competition_id)

    ended = await scheduler.end_competition(competition_id)

    assert ended.status == CompetitionStatus.ENDED
    assert provider.calls == {wallet(agent_id): 1}
    assert await scheduler.end_competition(competition_id) is None


async def test_start_competition_twice(database, scheduler):
    competition_id = await create_competition(database)

    assert (await scheduler.start_competition(competition_id)).status == CompetitionStatus.ACTIVE
    assert await scheduler.start_competition(competition_id) is None


async def test_sync_cycle_covers_active_perps_competitions(database, scheduler, provider):
    active = await create_competition(database)
    pending = await create_competition(database)
    first, second = await create_agents(database, 2)
    await register(database, active, [first])
    await register(database, pending, [second])
    await start(database, active)
    provider.accounts.update({wallet(first): account("1000"), wallet(second): account("1000")})

    results = await scheduler.run_sync_cycle()

    assert list(results) == [active]
    assert results[active].sync_result.successful_agent_ids == [first]
    assert wallet(second) not in provider.calls


async def test_start_and_stop(scheduler):
    await scheduler.start()
    assert scheduler.is_running
    assert len(scheduler.scheduler_tasks) == 2

    await scheduler.start()
    assert len(scheduler.scheduler_tasks) == 2

    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.scheduler_tasks == []
