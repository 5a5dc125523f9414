from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from perps_arena.config import RiskConfig
from perps_arena.models.risk import RiskMetricsSnapshot, PerpsRiskMetrics
from perps_arena.risk.engine import RiskMetricsEngine
from perps_arena.risk.metrics import calculate_risk_metrics, max_drawdown, period_returns, annualize

from conftest import create_agents, create_competition, register, add_summary, hours_ago

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def series(*values, step=timedelta(hours=1)):
    return [(T0 + step * i, Decimal(str(value))) for i, value in enumerate(values)]


def test_up_down_up_series():
    metrics = calculate_risk_metrics(series(1000, 1200, 900, 1100), Decimal("1000"))

    assert metrics.simple_return == Decimal("0.1")
    assert metrics.annualized_return == metrics.simple_return
    assert metrics.max_drawdown == Decimal("0.25")
    assert metrics.calmar_ratio == Decimal("0.4")
    assert metrics.downside_deviation == (Decimal("0.0625") / 3).sqrt()
    assert metrics.sortino_ratio == pytest.approx(Decimal("0.1") / metrics.downside_deviation)
    assert metrics.to_dict()["snapshot_count"] == 4


def test_no_losses_means_no_calmar_or_sortino():
    metrics = calculate_risk_metrics(series(1000, 1050, 1100), Decimal("1000"))

    assert metrics.simple_return == Decimal("0.1")
    assert metrics.max_drawdown == 0
    assert metrics.calmar_ratio is None
    assert metrics.downside_deviation == 0
    assert metrics.sortino_ratio is None


def test_single_snapshot_only_has_simple_return():
    metrics = calculate_risk_metrics(series(1100), Decimal("1000"))

    assert metrics.simple_return == Decimal("0.1")
    assert metrics.max_drawdown is None
    assert metrics.calmar_ratio is None
    assert metrics.sortino_ratio is None
    assert metrics.snapshot_count == 1


def test_no_snapshots():
    metrics = calculate_risk_metrics([])
    assert metrics.snapshot_count == 0
    assert metrics.simple_return is None


def test_zero_capital_yields_nulls_not_zeros():
    metrics = calculate_risk_metrics(series(0, 0), Decimal("0"))

    assert metrics.simple_return is None
    assert metrics.calmar_ratio is None
    assert metrics.sortino_ratio is None


def test_missing_initial_capital_falls_back_to_first_equity():
    metrics = calculate_risk_metrics(series(2000, 2200))
    assert metrics.simple_return == Decimal("0.1")


def test_max_drawdown_is_measured_from_running_peak():
    equity = [Decimal(v) for v in (100, 150, 120, 200, 100, 180)]
    assert max_drawdown(equity) == Decimal("0.5")


def test_period_returns_skip_zero_starts():
    returns = period_returns([Decimal(0), Decimal(100), Decimal(110)])
    assert returns == [Decimal("0.1")]


def test_annualization_compounds_over_days():
    result = annualize(Decimal("0.1"), T0, T0 + timedelta(days=2), 365)
    assert float(result) == pytest.approx(1.1 ** (365 / 2) - 1, rel=1e-9)

    # Under a day the period return is kept
    assert annualize(Decimal("0.1"), T0, T0 + timedelta(hours=6), 365) == Decimal("0.1")
    # Total loss
    assert annualize(Decimal("-1"), T0, T0 + timedelta(days=10), 365) == Decimal("-1")


def test_annualized_return_feeds_calmar_when_enabled():
    config = RiskConfig(annualize_returns=True)
    points = series(1000, 800, 1100, step=timedelta(days=1))

    metrics = calculate_risk_metrics(points, Decimal("1000"), config)

    assert metrics.annualized_return != metrics.simple_return
    assert metrics.calmar_ratio == metrics.annualized_return / Decimal("0.2")


async def test_engine_stores_latest_and_appends_history(database):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)
    await register(database, competition_id, [agent_id])
    for hours, equity in ((3, "1000"), (2, "1200"), (1, "900")):
        await add_summary(database, agent_id, competition_id, equity, timestamp=hours_ago(hours))

    engine = RiskMetricsEngine(database, RiskConfig())
    first = await engine.calculate_and_save(agent_id, competition_id)
    await add_summary(database, agent_id, competition_id, "1100")
    second = await engine.calculate_and_save(agent_id, competition_id)

    assert first.simple_return == Decimal("-0.1")
    assert first.calmar_ratio == Decimal("-0.4")
    assert second.simple_return == Decimal("0.1")

    latest = await engine.get_latest(agent_id, competition_id)
    assert latest.simple_return == Decimal("0.1")
    assert latest.calmar_ratio == Decimal("0.4")
    assert latest.snapshot_count == 4

    async with database.get_session() as session:
        assert await session.scalar(select(func.count(PerpsRiskMetrics.id))) == 1
        assert await session.scalar(select(func.count(RiskMetricsSnapshot.id))) == 2


async def test_engine_with_no_summaries_stores_nulls(database):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)

    metrics = await RiskMetricsEngine(database, RiskConfig()).calculate_and_save(agent_id, competition_id)

    assert metrics.snapshot_count == 0
    latest = await RiskMetricsEngine(database, RiskConfig()).get_latest(agent_id, competition_id)
    assert latest.calmar_ratio is None
    assert latest.sortino_ratio is None
