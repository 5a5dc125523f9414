"""
Risk-adjusted performance metrics from an equity time series.

All arithmetic is Decimal. A metric that cannot be computed from the data
(too few snapshots, zero capital, no drawdown, no losing periods) is None,
never zero, so rankings can tell "no data" apart from "flat".
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, localcontext
from typing import List, Optional, Sequence, Tuple

from perps_arena.config import RiskConfig

EquityPoint = Tuple[datetime, Decimal]

SECONDS_PER_DAY = Decimal(86400)


@dataclass
class RiskMetrics:
    simple_return: Optional[Decimal] = None
    annualized_return: Optional[Decimal] = None
    max_drawdown: Optional[Decimal] = None
    calmar_ratio: Optional[Decimal] = None
    downside_deviation: Optional[Decimal] = None
    sortino_ratio: Optional[Decimal] = None
    snapshot_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def simple_return(initial: Decimal, latest: Decimal) -> Optional[Decimal]:
    if initial is None or initial <= 0:
        return None
    return (latest - initial) / initial


def max_drawdown(equity: Sequence[Decimal]) -> Decimal:
    """Largest peak-to-trough decline as a positive fraction of the peak."""
    peak = None
    worst = Decimal(0)
    for value in equity:
        if peak is None or value > peak:
            peak = value
        if peak > 0:
            drawdown = (peak - value) / peak
            if drawdown > worst:
                worst = drawdown
    return worst


def period_returns(equity: Sequence[Decimal]) -> List[Decimal]:
    """Returns between consecutive snapshots; periods starting at zero equity are skipped."""
    returns = []
    for previous, current in zip(equity, equity[1:]):
        if previous > 0:
            returns.append((current - previous) / previous)
    return returns


def downside_deviation(returns: Sequence[Decimal]) -> Optional[Decimal]:
    """sqrt(sum(min(r, 0)^2) / N) over every period, target return 0."""
    if not returns:
        return None
    squared = sum((min(r, Decimal(0)) ** 2 for r in returns), Decimal(0))
    return (squared / len(returns)).sqrt()


def annualize(period_return: Decimal, start: datetime, end: datetime, days_per_year: int) -> Decimal:
    """Compound a period return to a full year; periods under a day are returned unchanged."""
    days = Decimal(str((end - start).total_seconds())) / SECONDS_PER_DAY
    if days < 1:
        return period_return

    growth = 1 + period_return
    if growth <= 0:
        return Decimal(-1)

    with localcontext() as ctx:
        ctx.prec = 28
        return growth ** (Decimal(days_per_year) / days) - 1


def calculate_risk_metrics(points: Sequence[EquityPoint],
                           initial_capital: Optional[Decimal] = None,
                           config: Optional[RiskConfig] = None) -> RiskMetrics:
    """
    Compute all metrics from equity snapshots ordered by time.

    Args:
        points: ``(timestamp, total_equity)`` pairs, oldest first
        initial_capital: Starting capital; the first equity value is used when missing or not positive
        config: Annualization settings
    """
    config = config or RiskConfig()
    metrics = RiskMetrics(snapshot_count=len(points))
    if not points:
        return metrics

    equity = [value for _, value in points]
    initial = initial_capital if initial_capital is not None and initial_capital > 0 else equity[0]
    metrics.simple_return = simple_return(initial, equity[-1])

    if len(points) < 2 or metrics.simple_return is None:
        return metrics

    if config.annualize_returns:
        metrics.annualized_return = annualize(
            metrics.simple_return, points[0][0], points[-1][0], config.days_per_year
        )
    else:
        metrics.annualized_return = metrics.simple_return

    metrics.max_drawdown = max_drawdown(equity)
    if metrics.max_drawdown > 0:
        metrics.calmar_ratio = metrics.annualized_return / metrics.max_drawdown

    returns = period_returns(equity)
    metrics.downside_deviation = downside_deviation(returns)
    if metrics.downside_deviation:
        metrics.sortino_ratio = metrics.annualized_return / metrics.downside_deviation

    return metrics
