"""
Venue data synchronization.

- decimals: numeric normalization for venue payloads
- positions: per-agent atomic persistence of positions and summaries
- batch: grouped, concurrent sync and risk recomputation
- processor: scheduled per-competition entry point (import
  ``perps_arena.sync.processor`` directly)
"""

from .positions import PositionSyncOrchestrator, AgentSyncResult
from .batch import BatchCoordinator, BatchSyncResult, RiskMetricsBatchResult, AgentWallet

__all__ = [
    "PositionSyncOrchestrator",
    "AgentSyncResult",
    "BatchCoordinator",
    "BatchSyncResult",
    "RiskMetricsBatchResult",
    "AgentWallet",
]
