from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from perps_arena.competition.manager import CompetitionManager
from perps_arena.config import LeaderboardConfig, RiskConfig
from perps_arena.data.alerting import AlertingSystem
from perps_arena.data.leaderboards import LeaderboardRanker
from perps_arena.exceptions import InvalidConfigurationError
from perps_arena.models.perps import PerpsAccountSummary
from perps_arena.models.risk import PerpsRiskMetrics
from perps_arena.sync.processor import PerpsDataProcessor

from conftest import (
    FakeProvider, HANG, account, position, wallet, create_agents, create_competition, register, start
)


class ProviderFactory:
    """Hands out a prepared provider and records the configs it was asked for."""

    def __init__(self, provider):
        self.provider = provider
        self.configs = []

    def __call__(self, provider_config, timeout=30.0):
        self.configs.append(provider_config)
        return self.provider


@pytest.fixture
def ranker():
    return LeaderboardRanker(LeaderboardConfig(cache_ttl_seconds=300))


@pytest.fixture
def alerting():
    return AlertingSystem()


@pytest.fixture
def make_processor(database, ranker, alerting, fast_batch_config):
    def build(provider):
        factory = ProviderFactory(provider)
        processor = PerpsDataProcessor(
            database,
            ranker=ranker,
            alerting=alerting,
            batch_config=fast_batch_config,
            risk_config=RiskConfig(),
            provider_factory=factory
        )
        return processor, factory
    return build


async def latest_summaries(database, competition_id):
    async with database.get_session() as session:
        rows = (await session.scalars(
            select(PerpsAccountSummary).where(PerpsAccountSummary.competition_id == competition_id)
        )).all()
    return {row.agent_id: row for row in rows}


async def test_one_timeout_does_not_fail_the_run(database, make_processor, ranker):
    competition_id = await create_competition(database)
    agents = await create_agents(database, 5)
    await register(database, competition_id, agents)
    await start(database, competition_id)

    slow = agents[2]
    provider = FakeProvider({
        wallet(agent_id): HANG if agent_id == slow else account("1000", positions=[position(f"p-{agent_id}")])
        for agent_id in agents
    })
    processor, factory = make_processor(provider)
    ranker.cache.set((competition_id, "calmar_ratio"), ["stale"])

    result = await processor.process_perps_competition(competition_id)

    assert result.ok
    assert sorted(result.sync_result.successful_agent_ids) == [a for a in agents if a != slow]
    assert [(f.agent_id, f.error) for f in result.sync_result.failed] == [(slow, "timeout")]
    assert set(await latest_summaries(database, competition_id)) == {a for a in agents if a != slow}

    assert result.risk_metrics_result.successful == 4
    assert result.risk_metrics_result.failed == 0
    async with database.get_session() as session:
        scored = set((await session.scalars(select(PerpsRiskMetrics.agent_id))).all())
    assert scored == {a for a in agents if a != slow}

    assert factory.configs == [{"type": "external_api", "provider": "hyperliquid"}]
    assert provider.closed is True
    assert ranker.cache.get((competition_id, "calmar_ratio")) is None


async def test_only_active_participants_with_wallets_are_synced(database, make_processor):
    competition_id = await create_competition(database)
    synced, withdrawn = await create_agents(database, 2)
    [no_wallet] = await create_agents(database, 1, with_wallet=False)
    await register(database, competition_id, [synced, withdrawn, no_wallet])
    await start(database, competition_id)
    async with database.get_session() as session:
        await CompetitionManager(session).leave_competition(competition_id, withdrawn)

    provider = FakeProvider({wallet(synced): account("1000"), wallet(withdrawn): account("1000")})
    processor, _ = make_processor(provider)

    result = await processor.process_perps_competition(competition_id)

    assert result.sync_result.successful_agent_ids == [synced]
    assert result.sync_result.failed == []
    assert list(provider.calls) == [wallet(synced)]


async def test_risk_metrics_only_for_active_competitions(database, make_processor):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])

    processor, _ = make_processor(FakeProvider({wallet(agent_id): account("1000")}))
    result = await processor.process_perps_competition(competition_id)

    assert result.ok
    assert result.sync_result.successful_agent_ids == [agent_id]
    assert result.risk_metrics_result is None


async def test_self_funding_monitoring(database, make_processor, alerting):
    competition_id = await create_competition(
        database, initial_capital="1000", self_funding_threshold_usd="100"
    )
    honest, funded = await create_agents(database, 2)
    await register(database, competition_id, [honest, funded])
    await start(database, competition_id)

    provider = FakeProvider({
        wallet(honest): account("1200", total_pnl="200"),
        wallet(funded): account("1800", total_pnl="0"),
    })
    processor, _ = make_processor(provider)

    first_sync = await processor.process_perps_competition(competition_id, skip_monitoring=True)
    assert first_sync.monitoring_result is None

    result = await processor.process_perps_competition(competition_id)

    assert result.monitoring_result.alerts_created == 1
    assert [a["alert"]["agent_id"] for a in alerting.sent_alerts if a["alert"]["type"] == "self_funding"] == [funded]


async def test_monitoring_waits_for_start_date(database, make_processor):
    competition_id = await create_competition(
        database,
        start_date=datetime.now(timezone.utc) + timedelta(hours=2),
        self_funding_threshold_usd="100"
    )
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])

    provider = FakeProvider({wallet(agent_id): account("1000")})
    processor, factory = make_processor(provider)

    result = await processor.process_perps_competition(competition_id)

    assert result.ok
    assert result.sync_result.successful == []
    assert provider.calls == {}
    assert factory.configs == []


async def test_errors_are_reported_not_raised(database, make_processor):
    processor, _ = make_processor(FakeProvider())
    missing = await processor.process_perps_competition(424242)
    assert missing.error == "Competition 424242 not found"

    competition_id = await create_competition(database, data_source_config={"provider": None})
    bad_config = await processor.process_perps_competition(competition_id)
    assert "provider name" in bad_config.error


async def test_provider_closed_when_sync_blows_up(database, make_processor, monkeypatch):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])

    provider = FakeProvider({wallet(agent_id): account("1000")})
    processor, _ = make_processor(provider)

    async def explode(*args, **kwargs):
        raise InvalidConfigurationError("database went away")

    monkeypatch.setattr(processor.coordinator, "process_agents", explode)
    result = await processor.process_perps_competition(competition_id)

    assert result.error == "database went away"
    assert provider.closed is True
