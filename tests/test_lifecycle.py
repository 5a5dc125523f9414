import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from perps_arena.competition.manager import CompetitionManager
from perps_arena.competition.registry import ParticipantRegistry
from perps_arena.exceptions import ValidationError
from perps_arena.models.competition import Competition, CompetitionStatus

from conftest import (
    create_agents, create_competition, start, register, add_summary, add_risk_metrics, hours_ago
)


async def status_of(database, competition_id):
    async with database.get_session() as session:
        return (await session.get(Competition, competition_id)).status


async def mark_ending(database, competition_id):
    async with database.get_session() as session:
        return await CompetitionManager(session).mark_competition_as_ending(competition_id)


async def mark_ended(database, competition_id):
    async with database.get_session() as session:
        return await CompetitionManager(session).mark_competition_as_ended(competition_id)


async def test_create_competition_rejects_bad_dates(database):
    async with database.get_session() as session:
        with pytest.raises(ValidationError):
            await CompetitionManager(session).create_competition(
                "Backwards",
                start_date=datetime.now(timezone.utc),
                end_date=datetime.now(timezone.utc) - timedelta(days=1)
            )


async def test_transitions_only_move_forward(database):
    competition_id = await create_competition(database)

    # Cannot end a competition that never started
    assert await mark_ending(database, competition_id) is None
    assert await mark_ended(database, competition_id) is None

    started = await start(database, competition_id)
    assert started.status == CompetitionStatus.ACTIVE
    assert started.start_date is not None
    assert await start(database, competition_id) is None

    ending = await mark_ending(database, competition_id)
    assert ending.status == CompetitionStatus.ENDING
    assert ending.end_date is not None

    ended = await mark_ended(database, competition_id)
    assert ended.status == CompetitionStatus.ENDED
    assert await mark_ended(database, competition_id) is None


async def test_only_one_concurrent_mark_ending_wins(database):
    competition_id = await create_competition(database)
    await start(database, competition_id)

    results = await asyncio.gather(
        mark_ending(database, competition_id),
        mark_ending(database, competition_id),
    )

    assert sum(1 for r in results if r is not None) == 1
    assert await status_of(database, competition_id) == CompetitionStatus.ENDING


async def test_find_competitions_needing_ending(database):
    overdue = await create_competition(database, end_date=hours_ago(1))
    running = await create_competition(database, end_date=datetime.now(timezone.utc) + timedelta(days=1))
    open_ended = await create_competition(database)
    stuck = await create_competition(database)
    for competition_id in (overdue, running, open_ended, stuck):
        await start(database, competition_id)
    await mark_ending(database, stuck)

    async with database.get_session() as session:
        found = {c.id for c in await CompetitionManager(session).find_competitions_needing_ending()}

    assert found == {overdue, stuck}


async def test_find_competitions_needing_starting(database):
    due = await create_competition(database, start_date=hours_ago(1))
    await create_competition(database, start_date=datetime.now(timezone.utc) + timedelta(hours=1))
    await create_competition(database)

    async with database.get_session() as session:
        found = [c.id for c in await CompetitionManager(session).find_competitions_needing_starting()]

    assert found == [due]


async def test_mark_ended_freezes_final_ranks(database):
    competition_id = await create_competition(database)
    first, second, quitter = await create_agents(database, 3)
    await register(database, competition_id, [first, second, quitter])
    await start(database, competition_id)

    await add_risk_metrics(database, first, competition_id, calmar_ratio="2.5")
    await add_risk_metrics(database, second, competition_id, calmar_ratio="0.8")
    await add_summary(database, first, competition_id, "1200")
    await add_summary(database, second, competition_id, "1100")

    async with database.get_session() as session:
        await CompetitionManager(session).leave_competition(competition_id, quitter)

    await mark_ending(database, competition_id)
    assert await mark_ended(database, competition_id) is not None

    async with database.get_session() as session:
        registry = ParticipantRegistry(session)
        ranks = {
            agent_id: (await registry.get_participant(competition_id, agent_id)).final_rank
            for agent_id in (first, second, quitter)
        }

    assert ranks == {first: 1, second: 2, quitter: 3}
    assert await status_of(database, competition_id) == CompetitionStatus.ENDED
