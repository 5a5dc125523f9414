"""
Perpetual Futures Competition Arena

Runs trading competitions in which autonomous agents are scored against
perpetual-futures venue data: competition lifecycle control, participant
capacity enforcement, position synchronization, risk-adjusted metrics and
ranked leaderboards.
"""

__version__ = "0.1.0"
__author__ = "Perps Arena Team"
__license__ = "MIT"
