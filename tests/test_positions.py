from decimal import Decimal

import pytest
from sqlalchemy import select, func

from perps_arena.exceptions import PersistenceError
from perps_arena.exchanges.base import AccountSummaryData
from perps_arena.models.perps import PerpsAccountSummary, PositionStatus
from perps_arena.sync import positions
from perps_arena.sync.positions import PositionSyncOrchestrator

from conftest import create_agents, create_competition, register, position


@pytest.fixture
async def agent_in_competition(database):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])
    return agent_id, competition_id


def summary(equity="1000"):
    return AccountSummaryData(total_equity=Decimal(equity), total_pnl=Decimal("0"))


async def summary_count(database, agent_id, competition_id):
    async with database.get_session() as session:
        return await session.scalar(
            select(func.count(PerpsAccountSummary.id)).where(
                PerpsAccountSummary.agent_id == agent_id,
                PerpsAccountSummary.competition_id == competition_id
            )
        )


async def test_resync_of_same_payload_updates_in_place(database, agent_in_competition):
    agent_id, competition_id = agent_in_competition
    orchestrator = PositionSyncOrchestrator(database)
    payload = [position("pos-1"), position("pos-2", symbol="ETH", side="short")]

    await orchestrator.sync_agent(agent_id, competition_id, payload, summary())
    payload[0].pnl_usd_value = Decimal("42.5")
    result = await orchestrator.sync_agent(agent_id, competition_id, payload, summary())

    stored = await orchestrator.get_positions(agent_id, competition_id)
    assert len(stored) == 2
    assert result.positions_upserted == 2
    assert result.positions_closed == 0
    by_id = {p.provider_position_id: p for p in stored}
    assert by_id["pos-1"].pnl_usd_value == Decimal("42.5")
    assert by_id["pos-2"].is_long is False
    assert all(p.status == PositionStatus.OPEN for p in stored)
    assert await summary_count(database, agent_id, competition_id) == 2


async def test_positions_missing_from_payload_are_closed(database, agent_in_competition):
    agent_id, competition_id = agent_in_competition
    orchestrator = PositionSyncOrchestrator(database)

    await orchestrator.sync_agent(
        agent_id, competition_id, [position("pos-1"), position("pos-2")], summary()
    )
    result = await orchestrator.sync_agent(agent_id, competition_id, [position("pos-2")], summary())

    assert result.positions_closed == 1
    closed = await orchestrator.get_positions(agent_id, competition_id, status=PositionStatus.CLOSED)
    assert [p.provider_position_id for p in closed] == ["pos-1"]
    assert closed[0].closed_at is not None


async def test_empty_payload_closes_every_open_position(database, agent_in_competition):
    agent_id, competition_id = agent_in_competition
    orchestrator = PositionSyncOrchestrator(database)

    await orchestrator.sync_agent(
        agent_id, competition_id, [position("pos-1"), position("pos-2")], summary()
    )
    result = await orchestrator.sync_agent(agent_id, competition_id, [], summary("900"))

    assert result.positions_closed == 2
    assert await orchestrator.get_positions(agent_id, competition_id, status=PositionStatus.OPEN) == []


async def test_failed_sync_rolls_back_the_whole_agent(database, agent_in_competition, monkeypatch):
    agent_id, competition_id = agent_in_competition
    orchestrator = PositionSyncOrchestrator(database)

    await orchestrator.sync_agent(agent_id, competition_id, [position("pos-1")], summary())

    # total_equity is NOT NULL: the summary insert fails after the upsert and close-stale steps
    def broken_summary(summary_data, agent_id, competition_id, timestamp):
        return PerpsAccountSummary(agent_id=agent_id, competition_id=competition_id,
                                   timestamp=timestamp, total_equity=None)

    monkeypatch.setattr(positions, "summary_record", broken_summary)
    with pytest.raises(PersistenceError):
        await orchestrator.sync_agent(agent_id, competition_id, [position("pos-3")], summary())

    stored = await orchestrator.get_positions(agent_id, competition_id)
    assert [(p.provider_position_id, p.status) for p in stored] == [("pos-1", PositionStatus.OPEN)]
    assert await summary_count(database, agent_id, competition_id) == 1
