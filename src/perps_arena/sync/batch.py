"""
Batched, concurrent processing of a competition's agents.

Agents are handled in groups of ``batch_size``; inside a group every agent
runs concurrently and one agent's failure never aborts the others.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, and_

from perps_arena.config import BatchConfig
from perps_arena.data.alerting import AlertingSystem
from perps_arena.db import Database
from perps_arena.exceptions import ProviderFetchError
from perps_arena.exchanges.base import PerpsDataProvider, AccountDataBatch, AccountSummaryData, mask_wallet_address
from perps_arena.models.perps import PerpsAccountSummary
from perps_arena.risk.engine import RiskMetricsEngine
from perps_arena.sync.positions import PositionSyncOrchestrator, AgentSyncResult

logger = logging.getLogger(__name__)


@dataclass
class AgentWallet:
    agent_id: int
    wallet_address: str


@dataclass
class FailedAgentSync:
    agent_id: int
    error: str


@dataclass
class BatchSyncResult:
    successful: List[AgentSyncResult] = field(default_factory=list)
    failed: List[FailedAgentSync] = field(default_factory=list)
    # Raw venue summaries of synced agents, reused by the monitor
    account_summaries: Dict[int, AccountSummaryData] = field(default_factory=dict)

    @property
    def successful_agent_ids(self) -> List[int]:
        return [result.agent_id for result in self.successful]


@dataclass
class RiskMetricsBatchResult:
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    failed_groups: int = 0
    total_groups: int = 0


def chunked(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BatchCoordinator:
    """Runs provider fetches and risk calculations over groups of agents."""

    def __init__(self, database: Database, orchestrator: PositionSyncOrchestrator,
                 risk_engine: RiskMetricsEngine, alerting: Optional[AlertingSystem] = None,
                 config: Optional[BatchConfig] = None):
        self.database = database
        self.orchestrator = orchestrator
        self.risk_engine = risk_engine
        self.alerting = alerting or AlertingSystem()
        self.config = config or BatchConfig.from_env()

    async def process_agents(self, competition_id: int, agents: Sequence[AgentWallet],
                             provider: PerpsDataProvider) -> BatchSyncResult:
        """
        Fetch and persist venue data for every agent.

        Args:
            competition_id: Competition being synced
            agents: Agents with their venue wallets
            provider: Data provider for the competition

        Returns:
            BatchSyncResult with per-agent successes and failures
        """
        result = BatchSyncResult()
        if not agents:
            return result

        total_groups = (len(agents) + self.config.batch_size - 1) // self.config.batch_size
        for group_number, group in enumerate(chunked(list(agents), self.config.batch_size), start=1):
            logger.debug(
                f"Syncing group {group_number}/{total_groups} "
                f"({len(group)} agents) for competition {competition_id}"
            )

            outcomes = await asyncio.gather(
                *(self._sync_one(competition_id, agent, provider) for agent in group),
                return_exceptions=True
            )

            for agent, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    error = str(outcome) or type(outcome).__name__
                    logger.error(f"Failed to sync agent {agent.agent_id} in competition {competition_id}: {error}")
                    result.failed.append(FailedAgentSync(agent_id=agent.agent_id, error=error))
                else:
                    sync_result, summary = outcome
                    result.successful.append(sync_result)
                    result.account_summaries[agent.agent_id] = summary

        logger.info(
            f"Competition {competition_id} sync: {len(result.successful)} successful, "
            f"{len(result.failed)} failed"
        )
        return result

    async def _sync_one(self, competition_id: int, agent: AgentWallet, provider: PerpsDataProvider):
        initial_capital = await self._initial_capital(agent.agent_id, competition_id)
        data = await self._fetch_with_retries(agent, provider, initial_capital)
        sync_result = await self.orchestrator.sync_agent(
            agent.agent_id, competition_id, data.positions, data.account_summary
        )
        return sync_result, data.account_summary

    async def _initial_capital(self, agent_id: int, competition_id: int) -> Optional[Decimal]:
        """Equity of the agent's first stored summary, if any."""
        async with self.database.get_session() as session:
            first = await session.scalar(
                select(PerpsAccountSummary.total_equity)
                .where(and_(
                    PerpsAccountSummary.agent_id == agent_id,
                    PerpsAccountSummary.competition_id == competition_id
                ))
                .order_by(PerpsAccountSummary.timestamp, PerpsAccountSummary.id)
                .limit(1)
            )
        if first is None or first < 0:
            return None
        return first

    async def _fetch_with_retries(self, agent: AgentWallet, provider: PerpsDataProvider,
                                  initial_capital: Optional[Decimal]) -> AccountDataBatch:
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    provider.get_account_data_batch(agent.wallet_address, initial_capital),
                    timeout=self.config.provider_timeout
                )
            except (ProviderFetchError, asyncio.TimeoutError) as e:
                error = e if isinstance(e, ProviderFetchError) else ProviderFetchError(
                    "timeout", provider=provider.get_name(), wallet=agent.wallet_address
                )
                if attempt == attempts:
                    logger.error(
                        f"Fetch for agent {agent.agent_id} ({mask_wallet_address(agent.wallet_address)}) "
                        f"failed after {attempts} attempts: {error}"
                    )
                    if error is e:
                        raise
                    raise error from e

                delay = self.config.backoff_delay(attempt)
                logger.warning(
                    f"Fetch for agent {agent.agent_id} failed (attempt {attempt}/{attempts}): {error}; "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)

    async def compute_risk_metrics(self, competition_id: int, agent_ids: Sequence[int]) -> RiskMetricsBatchResult:
        """
        Recompute risk metrics for the given agents.

        A group counts as failed when its failure rate reaches
        ``batch_failure_threshold``. Once the share of failed groups reaches
        ``systemic_failure_threshold`` a critical alert is raised (once per
        run) and processing carries on.
        """
        result = RiskMetricsBatchResult()
        if not agent_ids:
            return result

        dropped_errors = 0
        alerted = False

        for group in chunked(list(agent_ids), self.config.batch_size):
            result.total_groups += 1
            outcomes = await asyncio.gather(
                *(self._risk_with_retries(agent_id, competition_id) for agent_id in group),
                return_exceptions=True
            )

            group_failures = 0
            for agent_id, outcome in zip(group, outcomes):
                if outcome is None:
                    result.successful += 1
                    continue
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome

                result.failed += 1
                group_failures += 1
                if len(result.errors) < self.config.max_errors_to_store:
                    result.errors.append(f"Agent {agent_id}: {outcome or 'Unknown error'}")
                else:
                    dropped_errors += 1

            group_rate = group_failures / len(group)
            if group_rate >= self.config.batch_failure_threshold:
                result.failed_groups += 1
                logger.warning(
                    f"Risk metrics group failure in competition {competition_id}: "
                    f"{group_failures}/{len(group)} agents failed ({round(group_rate * 100)}%)"
                )

            systemic_rate = result.failed_groups / result.total_groups
            if systemic_rate >= self.config.systemic_failure_threshold:
                logger.error(
                    f"SYSTEMIC FAILURE: {result.failed_groups}/{result.total_groups} risk metrics groups "
                    f"failing in competition {competition_id}; continuing"
                )
                if not alerted:
                    alerted = True
                    await self.alerting.systemic_failure(
                        competition_id, "risk_metrics", result.failed_groups,
                        result.total_groups, self.config.systemic_failure_threshold
                    )
                    if len(result.errors) < self.config.max_errors_to_store:
                        result.errors.append(
                            f"SYSTEMIC ALERT: {round(systemic_rate * 100)}% of groups failing "
                            f"(threshold: {round(self.config.systemic_failure_threshold * 100)}%)"
                        )

        if dropped_errors:
            result.errors.append(f"... and {dropped_errors} more errors")
            logger.warning(
                f"Error list capped at {self.config.max_errors_to_store} entries; "
                f"{result.failed} agents failed in total"
            )

        if result.failed_groups:
            logger.warning(
                f"Risk metrics for competition {competition_id} completed degraded: "
                f"{result.failed_groups}/{result.total_groups} groups failed, "
                f"{result.successful} successful, {result.failed} failed"
            )
        return result

    async def _risk_with_retries(self, agent_id: int, competition_id: int) -> Optional[str]:
        """Returns None on success, the last error message otherwise."""
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self.config.backoff_delay(attempt - 1))
            try:
                await self.risk_engine.calculate_and_save(agent_id, competition_id)
                if attempt > 1:
                    logger.info(f"Risk metrics for agent {agent_id} succeeded on attempt {attempt}")
                return None
            except Exception as e:
                logger.warning(
                    f"Risk metrics failed for agent {agent_id} (attempt {attempt}/{attempts}): {e}"
                )
                error = str(e) or type(e).__name__
        logger.error(f"Risk metrics for agent {agent_id} failed after {attempts} attempts")
        return error
