"""
Scheduled entry point for syncing a perpetual futures competition.

One run fetches every active agent's venue data, persists it, optionally
checks for self-funding, recomputes risk metrics and drops cached
leaderboards. Failures are reported in the result, never raised.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select, and_

from perps_arena.config import BatchConfig, MonitoringConfig, RiskConfig
from perps_arena.data.alerting import AlertingSystem
from perps_arena.data.leaderboards import LeaderboardRanker
from perps_arena.data.monitoring import SelfFundingMonitor, MonitoringResult
from perps_arena.db import Database
from perps_arena.exceptions import NotFoundError, InvalidConfigurationError
from perps_arena.exchanges.base import PerpsDataProvider
from perps_arena.exchanges.factory import create_provider, validate_provider_config
from perps_arena.models.agent import Agent
from perps_arena.models.competition import (
    Competition, CompetitionParticipant, CompetitionStatus, CompetitionType,
    ParticipantStatus, PerpsCompetitionConfig
)
from perps_arena.risk.engine import RiskMetricsEngine
from perps_arena.sync.batch import AgentWallet, BatchCoordinator, BatchSyncResult, RiskMetricsBatchResult
from perps_arena.sync.positions import PositionSyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_CAPITAL = Decimal("500")


@dataclass
class PerpsProcessingResult:
    sync_result: BatchSyncResult = field(default_factory=BatchSyncResult)
    monitoring_result: Optional[MonitoringResult] = None
    risk_metrics_result: Optional[RiskMetricsBatchResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _CompetitionContext:
    status: str
    start_date: Optional[datetime]
    provider_config: dict
    initial_capital: Decimal
    self_funding_threshold: Optional[Decimal]
    agents: List[AgentWallet]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PerpsDataProcessor:
    """
    Runs one sync pass over a perps competition.

    ``provider_factory`` defaults to :func:`create_provider`; any callable
    taking ``(provider_config, timeout=...)`` and returning a
    :class:`PerpsDataProvider` can be supplied.
    """

    def __init__(self, database: Database, ranker: Optional[LeaderboardRanker] = None,
                 alerting: Optional[AlertingSystem] = None,
                 batch_config: Optional[BatchConfig] = None,
                 risk_config: Optional[RiskConfig] = None,
                 provider_factory: Callable[..., PerpsDataProvider] = create_provider):
        self.database = database
        self.ranker = ranker or LeaderboardRanker()
        self.alerting = alerting or AlertingSystem()
        self.batch_config = batch_config or BatchConfig.from_env()
        self.provider_factory = provider_factory

        self.orchestrator = PositionSyncOrchestrator(database)
        self.risk_engine = RiskMetricsEngine(database, risk_config)
        self.coordinator = BatchCoordinator(
            database, self.orchestrator, self.risk_engine, self.alerting, self.batch_config
        )

    @staticmethod
    def should_run_monitoring(threshold: Optional[Decimal]) -> bool:
        return threshold is not None and threshold >= 0

    async def _load_context(self, competition_id: int) -> _CompetitionContext:
        async with self.database.get_session() as session:
            competition = await session.get(Competition, competition_id, populate_existing=True)
            if competition is None:
                raise NotFoundError("Competition", competition_id)

            perps_config = await session.get(PerpsCompetitionConfig, competition_id, populate_existing=True)
            if perps_config is None:
                raise InvalidConfigurationError(
                    f"No perps configuration found for competition {competition_id}"
                )

            if competition.type != CompetitionType.PERPETUAL_FUTURES:
                raise InvalidConfigurationError(
                    f"Competition {competition_id} is not a perpetual futures competition"
                )

            rows = (await session.execute(
                select(Agent.id, Agent.wallet_address)
                .join(CompetitionParticipant, CompetitionParticipant.agent_id == Agent.id)
                .where(and_(
                    CompetitionParticipant.competition_id == competition_id,
                    CompetitionParticipant.status == ParticipantStatus.ACTIVE,
                    Agent.status == "active",
                    Agent.wallet_address.isnot(None),
                    Agent.wallet_address != ""
                ))
                .order_by(Agent.id)
            )).all()

            return _CompetitionContext(
                status=competition.status,
                start_date=_as_utc(competition.start_date),
                provider_config=perps_config.provider_config(),
                initial_capital=perps_config.initial_capital or DEFAULT_INITIAL_CAPITAL,
                self_funding_threshold=perps_config.self_funding_threshold_usd,
                agents=[AgentWallet(agent_id=row.id, wallet_address=row.wallet_address) for row in rows],
            )

    async def process_perps_competition(self, competition_id: int,
                                        skip_monitoring: bool = False) -> PerpsProcessingResult:
        """
        Sync, monitor and score a perpetual futures competition.

        Args:
            competition_id: Competition to process
            skip_monitoring: Skip self-funding checks (used for the first sync)

        Returns:
            PerpsProcessingResult; ``error`` is set when the run could not
            complete, with whatever partial sync result was reached
        """
        result = PerpsProcessingResult()
        provider: Optional[PerpsDataProvider] = None

        try:
            context = await self._load_context(competition_id)

            run_monitoring = not skip_monitoring and self.should_run_monitoring(context.self_funding_threshold)
            if run_monitoring:
                if context.start_date is None:
                    raise InvalidConfigurationError(
                        f"Competition {competition_id} has no start date, cannot monitor self-funding"
                    )
                if context.start_date > datetime.now(timezone.utc):
                    logger.warning(
                        f"Competition {competition_id} hasn't started yet "
                        f"(starts {context.start_date.isoformat()})"
                    )
                    return result

            validate_provider_config(context.provider_config)
            provider = self.provider_factory(context.provider_config, timeout=self.batch_config.provider_timeout)
            logger.info(
                f"Processing perps competition {competition_id} with provider {provider.get_name()} "
                f"({len(context.agents)} agents)"
            )

            result.sync_result = await self.coordinator.process_agents(competition_id, context.agents, provider)
            synced = result.sync_result.successful_agent_ids

            if run_monitoring and synced:
                monitor = SelfFundingMonitor(
                    self.database,
                    self.alerting,
                    MonitoringConfig.from_env(threshold=context.self_funding_threshold)
                )
                result.monitoring_result = await monitor.monitor_agents(
                    competition_id,
                    {agent_id: result.sync_result.account_summaries[agent_id] for agent_id in synced},
                    context.initial_capital
                )

            if context.status == CompetitionStatus.ACTIVE and synced:
                logger.info(f"Calculating risk metrics for {len(synced)} agents in competition {competition_id}")
                result.risk_metrics_result = await self.coordinator.compute_risk_metrics(competition_id, synced)

            self.ranker.invalidate(competition_id)

        except Exception as e:
            logger.error(f"Error processing perps competition {competition_id}: {e}")
            result.error = str(e) or type(e).__name__

        finally:
            if provider is not None:
                await provider.close()

        return result
