import json
from collections import deque
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from perps_arena.config import config

logger = logging.getLogger(__name__)

SEVERITIES = ('info', 'warning', 'critical')


class AlertingSystem:
    """
    Operational alerting for the sync engine and integrity monitoring.

    Alerts are always written to the log at a level matching their severity
    and, when a Redis client is configured, published over Redis pub/sub and
    stored with a TTL for dashboards.
    """

    def __init__(self, redis_client=None):
        """
        Initialize the alerting system.

        Args:
            redis_client: Async Redis client for pub/sub and alert storage (optional)
        """
        self.redis_client = redis_client
        # Recent alerts, newest last
        self.sent_alerts: deque = deque(maxlen=100)

    async def publish_alert(self, alert: Dict[str, Any]) -> Dict[str, Any]:
        """
        Publish alert to notification channels.

        Args:
            alert: Alert dictionary with at least 'type' and 'severity'

        Returns:
            The published message envelope
        """
        now = datetime.now(timezone.utc)
        severity = alert.get('severity', 'info')
        message = {
            'alert': alert,
            'published_at': now.isoformat(),
            'alert_id': f"{alert['type']}:{alert.get('competition_id', 'system')}:{int(now.timestamp())}"
        }
        self.sent_alerts.append(message)

        log_level = {'critical': logging.CRITICAL, 'warning': logging.WARNING}.get(severity, logging.INFO)
        logger.log(log_level, f"ALERT [{severity}] {alert['type']}: {alert.get('message', '')}")

        if self.redis_client is None:
            return message

        try:
            payload = json.dumps(message, default=str)

            # General, severity-specific and competition-specific channels
            await self.redis_client.publish('alerts', payload)
            await self.redis_client.publish(f'alerts:{severity}', payload)
            if 'competition_id' in alert:
                await self.redis_client.publish(f'competition:{alert["competition_id"]}:alerts', payload)

            # Store in Redis for dashboard access (with TTL)
            await self.redis_client.setex(f'alert:{message["alert_id"]}', 3600, payload)

            logger.debug(f"Published alert {message['alert_id']}")

        except RedisError as e:
            logger.error(f"Failed to publish alert {message['alert_id']}: {e}")

        return message

    async def systemic_failure(self, competition_id: int, operation: str, failed_groups: int,
                               total_groups: int, threshold: float) -> Dict[str, Any]:
        """Alert that a large share of processing groups are failing."""
        rate = failed_groups / total_groups if total_groups else 0.0
        return await self.publish_alert({
            'type': 'systemic_failure',
            'severity': 'critical',
            'competition_id': competition_id,
            'operation': operation,
            'failed_groups': failed_groups,
            'total_groups': total_groups,
            'failure_rate': round(rate, 4),
            'threshold': threshold,
            'message': (
                f"{round(rate * 100)}% of {operation} batches failing in competition {competition_id} "
                f"({failed_groups}/{total_groups}, threshold {round(threshold * 100)}%)"
            ),
            'timestamp': datetime.now(timezone.utc).isoformat()
        })

    async def self_funding_detected(self, competition_id: int, agent_id: int, unexplained_amount,
                                    severity: str) -> Dict[str, Any]:
        return await self.publish_alert({
            'type': 'self_funding',
            'severity': severity,
            'competition_id': competition_id,
            'agent_id': agent_id,
            'unexplained_amount': str(unexplained_amount),
            'message': f"Agent {agent_id} has ${unexplained_amount} unexplained equity",
            'timestamp': datetime.now(timezone.utc).isoformat()
        })

    async def close(self):
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None


def create_alerting_system(redis_url: Optional[str] = None) -> AlertingSystem:
    """Alerting backed by Redis when a URL is configured, log-only otherwise."""
    redis_url = redis_url or config.redis_url
    if not redis_url:
        logger.info("No REDIS_URL configured; alerts will only be logged")
        return AlertingSystem()
    return AlertingSystem(aioredis.from_url(redis_url, decode_responses=True))
