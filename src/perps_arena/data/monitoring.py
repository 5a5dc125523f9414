"""
Self-funding detection for perpetual futures competitions.

An agent's equity should only move by its trading P&L. Equity that cannot be
explained by ``initial_capital + total_pnl`` points to deposits or
withdrawals on the venue account and is recorded for review.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set

from sqlalchemy import select, and_

from perps_arena.config import MonitoringConfig
from perps_arena.data.alerting import AlertingSystem
from perps_arena.db import Database
from perps_arena.exceptions import NotFoundError
from perps_arena.exchanges.base import AccountSummaryData
from perps_arena.models.perps import SelfFundingAlert
from perps_arena.sync.decimals import to_decimal_or_zero, to_plain_string

logger = logging.getLogger(__name__)

DETECTION_METHOD = "balance_reconciliation"


@dataclass
class Detection:
    agent_id: int
    expected_equity: Decimal
    actual_equity: Decimal
    unexplained_amount: Decimal
    severity: str


@dataclass
class MonitoringResult:
    successful: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    alerts_created: int = 0


def account_snapshot(summary: AccountSummaryData) -> Dict:
    """JSON-safe copy of a venue summary, without the raw payload."""
    snapshot = {}
    for key, value in asdict(summary).items():
        if key == "raw_data":
            continue
        snapshot[key] = to_plain_string(value) if isinstance(value, Decimal) else value
    return snapshot


class SelfFundingMonitor:
    def __init__(self, database: Database, alerting: Optional[AlertingSystem] = None,
                 config: Optional[MonitoringConfig] = None):
        self.database = database
        self.alerting = alerting or AlertingSystem()
        self.config = config or MonitoringConfig.from_env()

    def reconcile(self, agent_id: int, summary: AccountSummaryData,
                  initial_capital: Decimal) -> Optional[Detection]:
        """Compare actual equity with ``initial_capital + total_pnl``."""
        actual = to_decimal_or_zero(summary.total_equity)
        expected = initial_capital + to_decimal_or_zero(summary.total_pnl)
        unexplained = actual - expected

        if abs(unexplained) <= self.config.reconciliation_threshold:
            return None

        severity = "critical" if abs(unexplained) > self.config.critical_amount_threshold else "warning"
        logger.warning(
            f"Balance discrepancy for agent {agent_id}: expected ${expected:.2f}, "
            f"actual ${actual:.2f}, unexplained ${unexplained:.2f}"
        )
        return Detection(
            agent_id=agent_id,
            expected_equity=expected,
            actual_equity=actual,
            unexplained_amount=unexplained,
            severity=severity,
        )

    async def _agents_with_open_alerts(self, session, competition_id: int, agent_ids: List[int]) -> Set[int]:
        result = await session.execute(
            select(SelfFundingAlert.agent_id).where(and_(
                SelfFundingAlert.competition_id == competition_id,
                SelfFundingAlert.agent_id.in_(agent_ids),
                SelfFundingAlert.reviewed.is_(False)
            )).distinct()
        )
        return set(result.scalars().all())

    async def monitor_agents(self, competition_id: int, account_summaries: Dict[int, AccountSummaryData],
                             initial_capital: Decimal) -> MonitoringResult:
        """
        Reconcile freshly synced summaries and store an alert per discrepancy.

        Agents that still have an unreviewed alert are skipped so one
        deposit does not produce an alert on every sync.

        Args:
            competition_id: Competition being monitored
            account_summaries: Venue summaries keyed by agent id
            initial_capital: Starting capital configured for the competition
        """
        result = MonitoringResult()
        if not account_summaries:
            return result

        detections: List[Detection] = []
        async with self.database.get_session() as session:
            open_alerts = await self._agents_with_open_alerts(
                session, competition_id, list(account_summaries)
            )

            for agent_id, summary in account_summaries.items():
                if agent_id in open_alerts:
                    logger.debug(f"Agent {agent_id} already has an unreviewed alert, skipping")
                    result.skipped.append(agent_id)
                    continue
                try:
                    detection = self.reconcile(agent_id, summary, initial_capital)
                except (ArithmeticError, TypeError) as e:
                    logger.error(f"Error monitoring agent {agent_id}: {e}")
                    result.failed[agent_id] = str(e)
                    continue

                result.successful.append(agent_id)
                if detection is None:
                    continue

                detections.append(detection)
                session.add(SelfFundingAlert(
                    agent_id=agent_id,
                    competition_id=competition_id,
                    expected_equity=detection.expected_equity,
                    actual_equity=detection.actual_equity,
                    unexplained_amount=detection.unexplained_amount,
                    account_snapshot={
                        **account_snapshot(summary),
                        "note": "Unexplained balance discrepancy. May include funding rates or venue fees.",
                    },
                    detection_method=DETECTION_METHOD,
                    severity=detection.severity,
                ))

        result.alerts_created = len(detections)
        for detection in detections:
            await self.alerting.self_funding_detected(
                competition_id, detection.agent_id, detection.unexplained_amount, detection.severity
            )

        logger.info(
            f"Monitoring for competition {competition_id}: {len(result.successful)} checked, "
            f"{len(result.skipped)} skipped, {result.alerts_created} alerts created"
        )
        return result

    async def get_alerts(self, competition_id: int, reviewed: Optional[bool] = None) -> List[SelfFundingAlert]:
        async with self.database.get_session() as session:
            query = select(SelfFundingAlert).where(SelfFundingAlert.competition_id == competition_id)
            if reviewed is not None:
                query = query.where(SelfFundingAlert.reviewed.is_(reviewed))
            result = await session.scalars(query.order_by(SelfFundingAlert.id))
            return list(result.all())

    async def review_alert(self, alert_id: int, review_note: str,
                           action_taken: Optional[str] = None) -> SelfFundingAlert:
        """Mark an alert reviewed so the agent is monitored again."""
        async with self.database.get_session() as session:
            alert = await session.get(SelfFundingAlert, alert_id)
            if alert is None:
                raise NotFoundError("SelfFundingAlert", alert_id)
            alert.reviewed = True
            alert.review_note = review_note
            alert.action_taken = action_taken
            alert.reviewed_at = datetime.now(timezone.utc)
        logger.info(f"Self-funding alert {alert_id} reviewed (action: {action_taken or 'none'})")
        return alert
