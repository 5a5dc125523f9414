"""
Hyperliquid perpetual futures data provider.

Reads account state from the public Hyperliquid info endpoint: clearinghouse
state for equity and open positions, recent fills for volume, fees and
realized PnL. Wallets are on-chain addresses.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from perps_arena.exceptions import ProviderFetchError
from perps_arena.exchanges.base import (
    PerpsDataProvider, AccountSummaryData, PositionData, AccountDataBatch, mask_wallet_address, compute_roi
)
from perps_arena.sync.decimals import to_decimal, to_decimal_or_zero, ZERO

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.hyperliquid.xyz"

# Fills window used for volume and fee statistics
FILLS_LOOKBACK_MS = 7 * 24 * 60 * 60 * 1000


class HyperliquidPerpsProvider(PerpsDataProvider):
    """
    Async Hyperliquid info API client.

    One request is made per call; retries and backoff are the caller's
    concern. HTTP errors, timeouts and malformed payloads are raised as
    ``ProviderFetchError``.
    """

    def __init__(self, api_url: Optional[str] = None, timeout: float = 30.0):
        """
        Initialize Hyperliquid provider.

        Args:
            api_url: Base API URL (default: mainnet)
            timeout: Per-request timeout in seconds
        """
        self.api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    def get_name(self) -> str:
        return "hyperliquid"

    async def _post(self, body: Dict[str, Any]) -> Any:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession()

        try:
            async with self.session.post(
                f"{self.api_url}/info",
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Hyperliquid API error {response.status} for {body['type']}: {error_text[:200]}")
                    raise ProviderFetchError(
                        f"Hyperliquid API error: {response.status}", provider=self.get_name()
                    )
                return await response.json()

        except asyncio.TimeoutError:
            logger.error(f"Hyperliquid request timeout for {body['type']}")
            raise ProviderFetchError("timeout", provider=self.get_name())
        except aiohttp.ClientError as e:
            logger.error(f"Hyperliquid request failed for {body['type']}: {e}")
            raise ProviderFetchError(f"Hyperliquid request failed: {e}", provider=self.get_name()) from e
        except ValueError as e:
            # Body was not JSON
            logger.error(f"Hyperliquid returned an unreadable body for {body['type']}: {e}")
            raise ProviderFetchError(f"Malformed Hyperliquid response: {e}", provider=self.get_name()) from e

    async def _get_clearinghouse_state(self, wallet_address: str) -> Dict[str, Any]:
        state = await self._post({"type": "clearinghouseState", "user": wallet_address})
        if not isinstance(state, dict) or "marginSummary" not in state:
            raise ProviderFetchError(
                "Malformed clearinghouse state", provider=self.get_name(), wallet=wallet_address
            )
        return state

    async def _get_recent_fills(self, wallet_address: str) -> List[Dict[str, Any]]:
        start_time = int(time.time() * 1000) - FILLS_LOOKBACK_MS
        fills = await self._post({"type": "userFillsByTime", "user": wallet_address, "startTime": start_time})
        return fills or []

    @staticmethod
    def _open_asset_positions(state: Dict[str, Any]) -> List[Dict[str, Any]]:
        positions = []
        for asset in state.get("assetPositions") or []:
            position = asset.get("position") if isinstance(asset, dict) else None
            if not position:
                continue
            size = to_decimal(position.get("szi"))
            if size is None or size.is_zero():
                continue
            positions.append(position)
        return positions

    @staticmethod
    def _trading_stats(fills: List[Dict[str, Any]]) -> Dict[str, Any]:
        total_volume = ZERO
        total_fees = ZERO
        closed_pnl = ZERO

        for fill in fills:
            total_volume += to_decimal_or_zero(fill.get("px")) * to_decimal_or_zero(fill.get("sz"))
            total_fees += to_decimal_or_zero(fill.get("fee"))
            closed_pnl += to_decimal_or_zero(fill.get("closedPnl"))

        return {
            "total_volume": total_volume,
            "total_fees": total_fees,
            "trade_count": len(fills),
            "closed_pnl": closed_pnl,
        }

    def _build_summary(self, state: Dict[str, Any], fills: List[Dict[str, Any]],
                       initial_capital: Optional[Decimal]) -> AccountSummaryData:
        margin = state["marginSummary"]
        account_value = to_decimal(margin.get("accountValue"))
        if account_value is None:
            raise ProviderFetchError("Missing account value", provider=self.get_name())

        open_positions = self._open_asset_positions(state)
        unrealized = sum((to_decimal_or_zero(p.get("unrealizedPnl")) for p in open_positions), ZERO)
        stats = self._trading_stats(fills)

        # The venue does not track initial capital; fall back to current equity
        effective_capital = initial_capital if initial_capital is not None else account_value
        roi = compute_roi(account_value, effective_capital)

        return AccountSummaryData(
            total_equity=account_value,
            initial_capital=effective_capital,
            available_balance=to_decimal(margin.get("totalRawUsd")),
            margin_used=to_decimal(margin.get("totalMarginUsed")),
            total_pnl=unrealized + stats["closed_pnl"],
            total_realized_pnl=stats["closed_pnl"],
            total_unrealized_pnl=unrealized,
            total_volume=stats["total_volume"],
            total_trades=stats["trade_count"],
            total_fees_paid=stats["total_fees"],
            open_positions_count=len(open_positions),
            closed_positions_count=0,
            liquidated_positions_count=0,
            roi=roi,
            roi_percent=roi * 100 if roi is not None else None,
            average_trade_size=(
                stats["total_volume"] / stats["trade_count"] if stats["trade_count"] else ZERO
            ),
            account_status="active" if open_positions else "inactive",
        )

    def _build_positions(self, state: Dict[str, Any], wallet_address: str) -> List[PositionData]:
        now = datetime.now(timezone.utc)
        positions = []

        for position in self._open_asset_positions(state):
            size = to_decimal(position["szi"])
            position_value = to_decimal(position.get("positionValue"))
            current_price = (
                abs(position_value) / abs(size) if position_value is not None else None
            )
            roe = to_decimal(position.get("returnOnEquity"))
            leverage = position.get("leverage") or {}

            positions.append(PositionData(
                # No position ids on Hyperliquid: one position per coin per account
                provider_position_id=f"{wallet_address}-{position['coin']}",
                symbol=position["coin"],
                side="long" if size > 0 else "short",
                position_size_usd=abs(position_value) if position_value is not None else ZERO,
                leverage=to_decimal(leverage.get("value")),
                collateral_amount=to_decimal(position.get("marginUsed")),
                entry_price=to_decimal(position.get("entryPx")),
                current_price=current_price,
                liquidation_price=to_decimal(position.get("liquidationPx")),
                pnl_usd_value=to_decimal(position.get("unrealizedPnl")),
                pnl_percentage=roe * 100 if roe is not None else None,
                status="Open",
                last_updated_at=now,
            ))

        return positions

    def _parse(self, builder, wallet_address: str, *args):
        try:
            return builder(*args)
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderFetchError(
                f"Malformed Hyperliquid payload: {e}", provider=self.get_name(), wallet=wallet_address
            ) from e

    async def get_account_summary(self, wallet_address: str,
                                  initial_capital: Optional[Decimal] = None) -> AccountSummaryData:
        logger.debug(f"Fetching Hyperliquid account summary for {mask_wallet_address(wallet_address)}")
        state, fills = await asyncio.gather(
            self._get_clearinghouse_state(wallet_address),
            self._get_recent_fills(wallet_address),
        )
        return self._parse(self._build_summary, wallet_address, state, fills, initial_capital)

    async def get_positions(self, wallet_address: str) -> List[PositionData]:
        logger.debug(f"Fetching Hyperliquid positions for {mask_wallet_address(wallet_address)}")
        state = await self._get_clearinghouse_state(wallet_address)
        return self._parse(self._build_positions, wallet_address, state, wallet_address)

    async def get_account_data_batch(self, wallet_address: str,
                                     initial_capital: Optional[Decimal] = None) -> AccountDataBatch:
        """Summary and positions from a single clearinghouse state request."""
        state, fills = await asyncio.gather(
            self._get_clearinghouse_state(wallet_address),
            self._get_recent_fills(wallet_address),
        )
        summary = self._parse(self._build_summary, wallet_address, state, fills, initial_capital)
        positions = self._parse(self._build_positions, wallet_address, state, wallet_address)

        logger.debug(
            f"Fetched Hyperliquid data for {mask_wallet_address(wallet_address)}: "
            f"equity={summary.total_equity}, positions={len(positions)}"
        )
        return AccountDataBatch(account_summary=summary, positions=positions)

    async def is_healthy(self) -> bool:
        try:
            mids = await self._post({"type": "allMids"})
            return isinstance(mids, dict) and len(mids) > 0
        except ProviderFetchError as e:
            logger.warning(f"Hyperliquid health check failed: {e}")
            return False

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
            logger.info("Closed Hyperliquid session")
        self.session = None
