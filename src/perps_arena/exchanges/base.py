"""
Provider-agnostic perpetual futures data types and the provider interface.

Providers translate a venue's account and position payloads into these
types. A provider either returns data that reflects the venue's actual
state (an empty position list means the account has no open positions) or
raises ``ProviderFetchError``; it never returns an empty result to signal
a failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional


@dataclass
class PositionData:
    """A single position as reported by the venue."""

    provider_position_id: str
    symbol: str
    side: str  # long, short
    position_size_usd: Decimal
    leverage: Optional[Decimal] = None
    collateral_amount: Optional[Decimal] = None
    entry_price: Optional[Decimal] = None
    current_price: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    pnl_usd_value: Optional[Decimal] = None
    pnl_percentage: Optional[Decimal] = None
    status: str = "Open"  # Open, Closed, Liquidated
    provider_trade_id: Optional[str] = None
    opened_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_long(self) -> bool:
        return self.side == "long"


@dataclass
class AccountSummaryData:
    """Account-level snapshot as reported by the venue."""

    total_equity: Decimal
    account_status: str = "active"
    initial_capital: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    margin_used: Optional[Decimal] = None
    total_pnl: Optional[Decimal] = None
    total_realized_pnl: Optional[Decimal] = None
    total_unrealized_pnl: Optional[Decimal] = None
    total_volume: Optional[Decimal] = None
    total_trades: Optional[int] = None
    total_fees_paid: Optional[Decimal] = None
    open_positions_count: Optional[int] = None
    closed_positions_count: Optional[int] = None
    liquidated_positions_count: Optional[int] = None
    roi: Optional[Decimal] = None
    roi_percent: Optional[Decimal] = None
    average_trade_size: Optional[Decimal] = None
    raw_data: Optional[Any] = None


@dataclass
class AccountDataBatch:
    """Summary and positions fetched together."""

    account_summary: AccountSummaryData
    positions: List[PositionData] = field(default_factory=list)


class PerpsDataProvider(ABC):
    """
    Interface every perpetual futures data source implements.

    ``get_account_data_batch`` has a default built from the two single
    calls; providers that can serve both from one request override it.
    """

    @abstractmethod
    def get_name(self) -> str:
        """Provider name used in logs and configuration."""

    @abstractmethod
    async def get_account_summary(self, wallet_address: str,
                                  initial_capital: Optional[Decimal] = None) -> AccountSummaryData:
        """Fetch the account summary for a venue account."""

    @abstractmethod
    async def get_positions(self, wallet_address: str) -> List[PositionData]:
        """Fetch the open positions for a venue account."""

    async def get_account_data_batch(self, wallet_address: str,
                                     initial_capital: Optional[Decimal] = None) -> AccountDataBatch:
        summary = await self.get_account_summary(wallet_address, initial_capital)
        positions = await self.get_positions(wallet_address)
        return AccountDataBatch(account_summary=summary, positions=positions)

    async def is_healthy(self) -> bool:
        return True

    async def close(self):
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def mask_wallet_address(address: str) -> str:
    """Shorten a wallet address for logs."""
    if not address or len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def compute_roi(total_equity: Decimal, initial_capital: Optional[Decimal]) -> Optional[Decimal]:
    """Fractional return on initial capital, None when capital is missing or zero."""
    if initial_capital is None or initial_capital <= 0:
        return None
    return (total_equity - initial_capital) / initial_capital
