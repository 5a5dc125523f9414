"""
Binance Futures data provider for arena sub-accounts.

Each agent trades from a Binance sub-account under the arena's master
account; the agent's ``wallet_address`` is the sub-account email. Account
and position data are read through the master account's sub-account
futures endpoints, supporting both testnet and production environments.
"""

from binance import AsyncClient
from binance.exceptions import BinanceAPIException, BinanceRequestException
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import asyncio
import logging

from perps_arena.exceptions import ProviderFetchError
from perps_arena.exchanges.base import (
    PerpsDataProvider, AccountSummaryData, PositionData, AccountDataBatch, mask_wallet_address, compute_roi
)
from perps_arena.sync.decimals import to_decimal, ZERO

logger = logging.getLogger(__name__)

# USDT-margined futures
USDT_FUTURES = 1


class BinanceFuturesProvider(PerpsDataProvider):
    """
    Async Binance sub-account futures reader with lazy connection.

    Calls are bounded by ``timeout``; API errors and timeouts surface as
    ``ProviderFetchError``.
    """

    def __init__(self, api_key: str, secret_key: str, testnet: bool = False, timeout: float = 30.0):
        """
        Initialize Binance Futures provider.

        Args:
            api_key: Master account API key
            secret_key: Master account secret key
            testnet: Whether to use testnet (default: False for production)
            timeout: Per-request timeout in seconds
        """
        self.client: Optional[AsyncClient] = None
        self.api_key = api_key
        self.secret_key = secret_key
        self.testnet = testnet
        self.timeout = timeout
        self._connection_lock = asyncio.Lock()

    def get_name(self) -> str:
        return "binance"

    async def connect(self):
        """
        Establish connection to the Binance API.

        Raises:
            ProviderFetchError: If connection fails
        """
        async with self._connection_lock:
            if self.client is not None:
                return

            try:
                self.client = await asyncio.wait_for(
                    AsyncClient.create(
                        api_key=self.api_key,
                        api_secret=self.secret_key,
                        testnet=self.testnet
                    ),
                    timeout=self.timeout
                )
                logger.info(f"Connected to Binance API ({'testnet' if self.testnet else 'production'})")
            except (BinanceAPIException, BinanceRequestException, asyncio.TimeoutError, OSError) as e:
                logger.error(f"Failed to connect to Binance: {e}")
                self.client = None
                raise ProviderFetchError(f"Binance connection failed: {e}", provider=self.get_name()) from e

    async def _call(self, method_name: str, email: str) -> Dict:
        if not self.client:
            await self.connect()

        method = getattr(self.client, method_name)
        try:
            return await asyncio.wait_for(method(email=email, futuresType=USDT_FUTURES), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Binance {method_name} timeout for {mask_wallet_address(email)}")
            raise ProviderFetchError("timeout", provider=self.get_name(), wallet=email)
        except (BinanceAPIException, BinanceRequestException) as e:
            logger.error(f"Binance {method_name} failed for {mask_wallet_address(email)}: {e}")
            raise ProviderFetchError(f"Binance API error: {e}", provider=self.get_name(), wallet=email) from e

    async def _get_account(self, email: str) -> Dict:
        response = await self._call("get_subaccount_futures_details", email)
        account = response.get("futureAccountResp") if isinstance(response, dict) else None
        if not account or "totalMarginBalance" not in account:
            raise ProviderFetchError("Malformed futures account response", provider=self.get_name(), wallet=email)
        return account

    async def _get_position_risk(self, email: str) -> List[Dict]:
        response = await self._call("get_subaccount_futures_positionrisk", email)
        if not isinstance(response, dict):
            raise ProviderFetchError("Malformed position risk response", provider=self.get_name(), wallet=email)
        return response.get("futurePositionRiskVos") or []

    def _build_summary(self, account: Dict, open_count: int,
                       initial_capital: Optional[Decimal]) -> AccountSummaryData:
        total_equity = to_decimal(account.get("totalMarginBalance"))
        if total_equity is None:
            raise ProviderFetchError("Missing margin balance", provider=self.get_name())

        unrealized = to_decimal(account.get("totalUnrealizedProfit"))
        wallet_balance = to_decimal(account.get("totalWalletBalance"))
        effective_capital = initial_capital if initial_capital is not None else total_equity
        roi = compute_roi(total_equity, effective_capital)

        return AccountSummaryData(
            total_equity=total_equity,
            initial_capital=effective_capital,
            available_balance=to_decimal(account.get("availableBalance", account.get("maxWithdrawAmount"))),
            margin_used=to_decimal(account.get("totalInitialMargin")),
            total_pnl=total_equity - effective_capital,
            total_realized_pnl=(
                wallet_balance - effective_capital if wallet_balance is not None else None
            ),
            total_unrealized_pnl=unrealized,
            open_positions_count=open_count,
            roi=roi,
            roi_percent=roi * 100 if roi is not None else None,
            account_status="active" if open_count else "inactive",
            raw_data={k: v for k, v in account.items() if k != "assets"},
        )

    @staticmethod
    def _build_positions(rows: List[Dict], email: str) -> List[PositionData]:
        now = datetime.now(timezone.utc)
        positions = []

        for row in rows:
            amount = to_decimal(row.get("positionAmount"))
            if amount is None or amount.is_zero():
                continue

            mark_price = to_decimal(row.get("markPrice"))
            entry_price = to_decimal(row.get("entryPrice"))
            leverage = to_decimal(row.get("leverage"))
            pnl = to_decimal(row.get("unrealizedProfit"))
            notional = abs(amount) * mark_price if mark_price is not None else ZERO
            collateral = notional / leverage if leverage else None
            pnl_percentage = pnl / collateral * 100 if pnl is not None and collateral else None

            positions.append(PositionData(
                # One-way mode: at most one position per symbol per sub-account
                provider_position_id=f"{email}-{row['symbol']}",
                symbol=row["symbol"],
                side="long" if amount > 0 else "short",
                position_size_usd=notional,
                leverage=leverage,
                collateral_amount=collateral,
                entry_price=entry_price,
                current_price=mark_price,
                liquidation_price=to_decimal(row.get("liquidationPrice")),
                pnl_usd_value=pnl,
                pnl_percentage=pnl_percentage,
                status="Open",
                last_updated_at=now,
            ))

        return positions

    async def get_account_summary(self, wallet_address: str,
                                  initial_capital: Optional[Decimal] = None) -> AccountSummaryData:
        batch = await self.get_account_data_batch(wallet_address, initial_capital)
        return batch.account_summary

    async def get_positions(self, wallet_address: str) -> List[PositionData]:
        rows = await self._get_position_risk(wallet_address)
        try:
            return self._build_positions(rows, wallet_address)
        except (KeyError, TypeError) as e:
            raise ProviderFetchError(
                f"Malformed Binance payload: {e}", provider=self.get_name(), wallet=wallet_address
            ) from e

    async def get_account_data_batch(self, wallet_address: str,
                                     initial_capital: Optional[Decimal] = None) -> AccountDataBatch:
        account, rows = await asyncio.gather(
            self._get_account(wallet_address),
            self._get_position_risk(wallet_address),
        )
        try:
            positions = self._build_positions(rows, wallet_address)
            summary = self._build_summary(account, len(positions), initial_capital)
        except (KeyError, TypeError) as e:
            raise ProviderFetchError(
                f"Malformed Binance payload: {e}", provider=self.get_name(), wallet=wallet_address
            ) from e

        logger.debug(
            f"Fetched Binance data for {mask_wallet_address(wallet_address)}: "
            f"equity={summary.total_equity}, positions={len(positions)}"
        )
        return AccountDataBatch(account_summary=summary, positions=positions)

    async def is_healthy(self) -> bool:
        try:
            if not self.client:
                await self.connect()
            await asyncio.wait_for(self.client.ping(), timeout=self.timeout)
            return True
        except (ProviderFetchError, BinanceAPIException, BinanceRequestException, asyncio.TimeoutError) as e:
            logger.warning(f"Binance health check failed: {e}")
            return False

    async def close(self):
        """Close the Binance client connection."""
        if self.client:
            await self.client.close_connection()
            self.client = None
            logger.info("Closed Binance connection")
