from decimal import Decimal

import pytest

from perps_arena.config import MonitoringConfig
from perps_arena.data.alerting import AlertingSystem
from perps_arena.data.monitoring import SelfFundingMonitor, account_snapshot
from perps_arena.exceptions import NotFoundError

from conftest import account, create_agents, create_competition

CAPITAL = Decimal("1000")


def summary(equity, total_pnl="0"):
    return account(equity, total_pnl=total_pnl).account_summary


@pytest.fixture
def alerting():
    return AlertingSystem()


@pytest.fixture
def monitor(database, alerting):
    return SelfFundingMonitor(database, alerting, MonitoringConfig(
        reconciliation_threshold=Decimal("100"),
        critical_amount_threshold=Decimal("500")
    ))


def test_reconcile_within_threshold(monitor):
    # 1000 + 150 pnl explains 1150; 80 of noise is tolerated
    assert monitor.reconcile(1, summary("1230", total_pnl="150"), CAPITAL) is None
    assert monitor.reconcile(1, summary("1100"), CAPITAL) is None


def test_reconcile_severity(monitor):
    warning = monitor.reconcile(1, summary("1300"), CAPITAL)
    assert warning.severity == "warning"
    assert warning.expected_equity == Decimal("1000")
    assert warning.unexplained_amount == Decimal("300")

    critical = monitor.reconcile(1, summary("1600", total_pnl="-50"), CAPITAL)
    assert critical.severity == "critical"
    assert critical.unexplained_amount == Decimal("650")


def test_withdrawals_are_detected_too(monitor):
    detection = monitor.reconcile(1, summary("700"), CAPITAL)
    assert detection.unexplained_amount == Decimal("-300")
    assert detection.severity == "warning"


def test_account_snapshot_is_json_safe():
    snapshot = account_snapshot(summary("1234.50", total_pnl="1E+2"))
    assert snapshot["total_equity"] == "1234.50"
    assert snapshot["total_pnl"] == "100"
    assert "raw_data" not in snapshot


async def test_monitor_creates_alerts_and_publishes(database, monitor, alerting):
    competition_id = await create_competition(database)
    clean, deposited = await create_agents(database, 2)

    result = await monitor.monitor_agents(competition_id, {
        clean: summary("1050", total_pnl="50"),
        deposited: summary("2000"),
    }, CAPITAL)

    assert sorted(result.successful) == sorted([clean, deposited])
    assert result.alerts_created == 1

    [alert] = await monitor.get_alerts(competition_id)
    assert alert.agent_id == deposited
    assert alert.severity == "critical"
    assert alert.unexplained_amount == Decimal("1000")
    assert alert.detection_method == "balance_reconciliation"
    assert alert.account_snapshot["total_equity"] == "2000"
    assert alert.reviewed is False

    [published] = alerting.sent_alerts
    assert published["alert"]["type"] == "self_funding"
    assert published["alert"]["agent_id"] == deposited


async def test_unreviewed_alert_suppresses_repeats_until_reviewed(database, monitor):
    competition_id = await create_competition(database)
    [agent_id] = await create_agents(database, 1)

    await monitor.monitor_agents(competition_id, {agent_id: summary("1500")}, CAPITAL)
    repeat = await monitor.monitor_agents(competition_id, {agent_id: summary("1500")}, CAPITAL)

    assert repeat.skipped == [agent_id]
    assert repeat.alerts_created == 0

    [alert] = await monitor.get_alerts(competition_id, reviewed=False)
    reviewed = await monitor.review_alert(alert.id, "Confirmed deposit", action_taken="warned")
    assert reviewed.reviewed is True
    assert reviewed.reviewed_at is not None

    after_review = await monitor.monitor_agents(competition_id, {agent_id: summary("1500")}, CAPITAL)
    assert after_review.alerts_created == 1
    assert len(await monitor.get_alerts(competition_id)) == 2
    assert len(await monitor.get_alerts(competition_id, reviewed=True)) == 1


async def test_review_unknown_alert(monitor):
    with pytest.raises(NotFoundError):
        await monitor.review_alert(999, "nothing to see")
