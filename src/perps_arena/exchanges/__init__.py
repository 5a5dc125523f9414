"""
Perps arena venue data providers.

This module provides a standardized interface to perpetual futures venues
for reading agent account and position data.
"""

from .base import PerpsDataProvider, PositionData, AccountSummaryData, AccountDataBatch
from .factory import create_provider, validate_provider_config

__all__ = [
    'PerpsDataProvider',
    'PositionData',
    'AccountSummaryData',
    'AccountDataBatch',
    'create_provider',
    'validate_provider_config',
]
