from .leaderboards import LeaderboardRanker, RankedAgent, TTLCache
from .alerting import AlertingSystem, create_alerting_system
from .monitoring import SelfFundingMonitor, MonitoringResult

__all__ = [
    "LeaderboardRanker",
    "RankedAgent",
    "TTLCache",
    "AlertingSystem",
    "create_alerting_system",
    "SelfFundingMonitor",
    "MonitoringResult",
]
