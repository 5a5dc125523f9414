"""
Competition execution.

This module runs the timed sync and lifecycle loops for perpetual futures
competitions.
"""

from .scheduler import CompetitionScheduler, SchedulerConfig

__all__ = [
    'CompetitionScheduler',
    'SchedulerConfig',
]
