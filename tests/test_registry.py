import asyncio

import pytest

from perps_arena.competition.manager import CompetitionManager
from perps_arena.competition.registry import ParticipantRegistry
from perps_arena.exceptions import CapacityExceededError, NotFoundError
from perps_arena.models.competition import Competition, ParticipantStatus

from conftest import create_agents, create_competition, register


async def join(database, competition_id, agent_id):
    async with database.get_session() as session:
        return await CompetitionManager(session).join_competition(competition_id, agent_id)


async def counter_and_active(database, competition_id):
    async with database.get_session() as session:
        competition = await session.get(Competition, competition_id)
        active = await ParticipantRegistry(session).count_active(competition_id)
        return competition.registered_participants, active


async def test_concurrent_joins_never_exceed_capacity(database):
    competition_id = await create_competition(database, max_participants=2)
    agents = await create_agents(database, 3)

    results = await asyncio.gather(
        *(join(database, competition_id, agent_id) for agent_id in agents),
        return_exceptions=True
    )

    assert sum(1 for r in results if r is True) == 2
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], CapacityExceededError)
    assert await counter_and_active(database, competition_id) == (2, 2)


async def test_duplicate_join_is_a_no_op(database):
    competition_id = await create_competition(database, max_participants=5)
    [agent_id] = await create_agents(database, 1)

    assert await join(database, competition_id, agent_id) is True
    assert await join(database, competition_id, agent_id) is False
    assert await counter_and_active(database, competition_id) == (1, 1)


async def test_join_unknown_competition_or_agent(database):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)

    with pytest.raises(NotFoundError):
        await join(database, competition_id + 100, agent_id)
    with pytest.raises(NotFoundError):
        await join(database, competition_id, agent_id + 100)


async def test_leave_frees_a_spot_and_reactivate_rechecks_capacity(database):
    competition_id = await create_competition(database, max_participants=2)
    first, second, third = await create_agents(database, 3)
    await register(database, competition_id, [first, second])

    async with database.get_session() as session:
        assert await CompetitionManager(session).leave_competition(competition_id, first, "bored") is True
    async with database.get_session() as session:
        # Second leave is not an error
        assert await CompetitionManager(session).leave_competition(competition_id, first) is False
    assert await counter_and_active(database, competition_id) == (1, 1)

    assert await join(database, competition_id, third) is True
    with pytest.raises(CapacityExceededError):
        async with database.get_session() as session:
            await CompetitionManager(session).reactivate_agent(competition_id, first)

    async with database.get_session() as session:
        participant = await ParticipantRegistry(session).get_participant(competition_id, first)
        assert participant.status == ParticipantStatus.WITHDRAWN
        assert participant.deactivation_reason == "bored"
    assert await counter_and_active(database, competition_id) == (2, 2)


async def test_leave_or_disqualify_without_participant_row(database):
    competition_id = await create_competition(database)
    member, stranger = await create_agents(database, 2)
    await register(database, competition_id, [member])

    with pytest.raises(NotFoundError):
        async with database.get_session() as session:
            await CompetitionManager(session).leave_competition(competition_id, stranger)
    with pytest.raises(NotFoundError):
        async with database.get_session() as session:
            await CompetitionManager(session).disqualify_agent(competition_id, stranger, "self-funding")

    assert await counter_and_active(database, competition_id) == (1, 1)


async def test_disqualify_then_reactivate(database):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])

    async with database.get_session() as session:
        assert await CompetitionManager(session).disqualify_agent(competition_id, agent_id, "self-funding")
    assert await counter_and_active(database, competition_id) == (0, 0)

    async with database.get_session() as session:
        assert await CompetitionManager(session).reactivate_agent(competition_id, agent_id) is True
    async with database.get_session() as session:
        assert await CompetitionManager(session).reactivate_agent(competition_id, agent_id) is False

    async with database.get_session() as session:
        participant = await ParticipantRegistry(session).get_participant(competition_id, agent_id)
        assert participant.status == ParticipantStatus.ACTIVE
        assert participant.deactivation_reason is None
    assert await counter_and_active(database, competition_id) == (1, 1)


async def test_bulk_join_is_idempotent(database):
    competition_id = await create_competition(database, max_participants=10)
    agents = await create_agents(database, 4)

    added = await register(database, competition_id, agents[:3] + agents[:1])
    assert added == agents[:3]

    added = await register(database, competition_id, agents)
    assert added == agents[3:]

    assert await register(database, competition_id, agents) == []
    assert await counter_and_active(database, competition_id) == (4, 4)


async def test_bulk_join_over_capacity_registers_nobody(database):
    competition_id = await create_competition(database, max_participants=2)
    agents = await create_agents(database, 3)

    with pytest.raises(CapacityExceededError):
        await register(database, competition_id, agents)

    assert await counter_and_active(database, competition_id) == (0, 0)


async def test_active_agent_ids_exclude_withdrawn(database):
    competition_id = await create_competition(database)
    first, second, third = await create_agents(database, 3)
    await register(database, competition_id, [third, first, second])

    async with database.get_session() as session:
        await CompetitionManager(session).leave_competition(competition_id, second)

    async with database.get_session() as session:
        assert await ParticipantRegistry(session).get_active_agent_ids(competition_id) == [first, third]


async def test_database_health_check(database):
    health = await database.health_check()
    assert health["status"] == "healthy"
    assert health["checks"]["connectivity"]["status"] == "pass"
