"""
Competition lifecycle and membership.

- CompetitionStateMachine: pending -> active -> ending -> ended transitions
- ParticipantRegistry: joins, leaves and capacity enforcement
- CompetitionManager: facade used by the scheduler and callers
"""

from .lifecycle import CompetitionStateMachine
from .registry import ParticipantRegistry
from .manager import CompetitionManager

__all__ = [
    "CompetitionStateMachine",
    "ParticipantRegistry",
    "CompetitionManager",
]
