"""
Risk metrics for perpetual futures competitions.

- metrics: Calmar, Sortino, drawdown and return calculations (Decimal)
- engine: loads equity history and persists computed metrics
"""

from .metrics import RiskMetrics, calculate_risk_metrics
from .engine import RiskMetricsEngine

__all__ = ['RiskMetrics', 'calculate_risk_metrics', 'RiskMetricsEngine']
