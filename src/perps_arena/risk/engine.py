import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, and_

from perps_arena.config import RiskConfig
from perps_arena.db import Database, upsert_insert
from perps_arena.models.perps import PerpsAccountSummary
from perps_arena.models.risk import RiskMetricsSnapshot, PerpsRiskMetrics
from perps_arena.risk.metrics import RiskMetrics, calculate_risk_metrics

logger = logging.getLogger(__name__)

METRIC_COLUMNS = (
    "calmar_ratio",
    "sortino_ratio",
    "simple_return",
    "annualized_return",
    "max_drawdown",
    "downside_deviation",
    "snapshot_count",
)


class RiskMetricsEngine:
    """Computes an agent's risk metrics from its account summaries and stores them."""

    def __init__(self, database: Database, config: Optional[RiskConfig] = None):
        self.database = database
        self.config = config or RiskConfig.from_env()

    async def calculate_and_save(self, agent_id: int, competition_id: int) -> RiskMetrics:
        """
        Recompute metrics for one agent.

        Appends a RiskMetricsSnapshot and upserts the latest PerpsRiskMetrics
        row in the same transaction.
        """
        async with self.database.get_session() as session:
            summaries = (await session.execute(
                select(
                    PerpsAccountSummary.timestamp,
                    PerpsAccountSummary.total_equity,
                    PerpsAccountSummary.initial_capital
                )
                .where(and_(
                    PerpsAccountSummary.agent_id == agent_id,
                    PerpsAccountSummary.competition_id == competition_id
                ))
                .order_by(PerpsAccountSummary.timestamp, PerpsAccountSummary.id)
            )).all()

            initial_capital = summaries[0].initial_capital if summaries else None
            metrics = calculate_risk_metrics(
                [(row.timestamp, row.total_equity) for row in summaries],
                initial_capital,
                self.config
            )

            now = datetime.now(timezone.utc)
            values = {column: getattr(metrics, column) for column in METRIC_COLUMNS}

            session.add(RiskMetricsSnapshot(
                agent_id=agent_id,
                competition_id=competition_id,
                timestamp=now,
                **values
            ))

            stmt = upsert_insert(session, PerpsRiskMetrics).values(
                agent_id=agent_id,
                competition_id=competition_id,
                calculation_timestamp=now,
                **values
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["agent_id", "competition_id"],
                set_={
                    **{column: stmt.excluded[column] for column in METRIC_COLUMNS},
                    "calculation_timestamp": stmt.excluded.calculation_timestamp,
                }
            )
            await session.execute(stmt)

        logger.debug(
            f"Risk metrics for agent {agent_id} in competition {competition_id}: "
            f"calmar={metrics.calmar_ratio}, sortino={metrics.sortino_ratio}, "
            f"return={metrics.simple_return}, snapshots={metrics.snapshot_count}"
        )
        return metrics

    async def get_latest(self, agent_id: int, competition_id: int) -> Optional[PerpsRiskMetrics]:
        async with self.database.get_session() as session:
            return await session.scalar(
                select(PerpsRiskMetrics).where(and_(
                    PerpsRiskMetrics.agent_id == agent_id,
                    PerpsRiskMetrics.competition_id == competition_id
                ))
            )
