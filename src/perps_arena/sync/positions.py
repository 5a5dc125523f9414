"""
Per-agent persistence of venue data.

One agent's sync is a single transaction: upsert the reported positions,
close any stored open position the venue no longer reports, then append an
account summary. A failure anywhere rolls back all three.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from sqlalchemy import select, update, and_
from sqlalchemy.exc import SQLAlchemyError

from perps_arena.db import Database, upsert_insert
from perps_arena.exceptions import PersistenceError
from perps_arena.exchanges.base import PositionData, AccountSummaryData
from perps_arena.models.perps import PerpetualPosition, PerpsAccountSummary, PositionStatus
from perps_arena.sync.decimals import to_decimal, to_decimal_or_zero

logger = logging.getLogger(__name__)

# Columns refreshed when a known position is reported again
UPSERT_UPDATE_COLUMNS = (
    "current_price",
    "pnl_usd_value",
    "pnl_percentage",
    "status",
    "last_updated_at",
    "closed_at",
    "captured_at",
)


@dataclass
class AgentSyncResult:
    agent_id: int
    competition_id: int
    positions_upserted: int
    positions_closed: int
    summary: PerpsAccountSummary


def position_row(position: PositionData, agent_id: int, competition_id: int,
                 captured_at: datetime) -> Dict:
    """Column values for one reported position."""
    return {
        "agent_id": agent_id,
        "competition_id": competition_id,
        "provider_position_id": position.provider_position_id,
        "provider_trade_id": position.provider_trade_id,
        "asset": position.symbol,
        "is_long": position.is_long,
        "leverage": to_decimal(position.leverage),
        "position_size": to_decimal_or_zero(position.position_size_usd),
        "collateral_amount": to_decimal_or_zero(position.collateral_amount),
        "entry_price": to_decimal_or_zero(position.entry_price),
        "current_price": to_decimal(position.current_price),
        "liquidation_price": to_decimal(position.liquidation_price),
        "pnl_usd_value": to_decimal(position.pnl_usd_value),
        "pnl_percentage": to_decimal(position.pnl_percentage),
        "status": position.status,
        "created_at": position.opened_at or captured_at,
        "last_updated_at": position.last_updated_at,
        "closed_at": position.closed_at,
        "captured_at": captured_at,
    }


def summary_record(summary: AccountSummaryData, agent_id: int, competition_id: int,
                   timestamp: datetime) -> PerpsAccountSummary:
    return PerpsAccountSummary(
        agent_id=agent_id,
        competition_id=competition_id,
        timestamp=timestamp,
        total_equity=to_decimal_or_zero(summary.total_equity),
        initial_capital=to_decimal_or_zero(summary.initial_capital),
        available_balance=to_decimal(summary.available_balance),
        margin_used=to_decimal(summary.margin_used),
        total_pnl=to_decimal(summary.total_pnl),
        total_realized_pnl=to_decimal(summary.total_realized_pnl),
        total_unrealized_pnl=to_decimal(summary.total_unrealized_pnl),
        total_volume=to_decimal(summary.total_volume),
        total_fees_paid=to_decimal(summary.total_fees_paid),
        total_trades=summary.total_trades,
        average_trade_size=to_decimal(summary.average_trade_size),
        open_positions_count=summary.open_positions_count,
        closed_positions_count=summary.closed_positions_count,
        liquidated_positions_count=summary.liquidated_positions_count,
        roi=to_decimal(summary.roi),
        roi_percent=to_decimal(summary.roi_percent),
        account_status=summary.account_status,
        raw_data=summary.raw_data,
    )


class PositionSyncOrchestrator:
    """Writes one agent's venue snapshot atomically."""

    def __init__(self, database: Database):
        self.database = database

    async def sync_agent(self, agent_id: int, competition_id: int,
                         positions: List[PositionData],
                         account_summary: AccountSummaryData) -> AgentSyncResult:
        """
        Persist an agent's positions and account summary.

        Positions are matched on (provider_position_id, competition_id), so
        syncing the same payload twice changes nothing but timestamps. Stored
        open positions missing from the payload's open set are closed; an
        empty payload closes them all.

        Raises:
            PersistenceError: The transaction failed and was rolled back
        """
        now = datetime.now(timezone.utc)

        # Last report wins when a payload repeats an id
        rows = {
            p.provider_position_id: position_row(p, agent_id, competition_id, now)
            for p in positions
        }
        open_ids = [pid for pid, row in rows.items() if row["status"] == PositionStatus.OPEN]

        try:
            async with self.database.get_session() as session:
                if rows:
                    stmt = upsert_insert(session, PerpetualPosition).values(list(rows.values()))
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["provider_position_id", "competition_id"],
                        set_={column: stmt.excluded[column] for column in UPSERT_UPDATE_COLUMNS}
                    )
                    await session.execute(stmt)

                closed = await self._close_stale_positions(session, agent_id, competition_id, open_ids, now)

                summary = summary_record(account_summary, agent_id, competition_id, now)
                session.add(summary)
                await session.flush()

        except SQLAlchemyError as e:
            logger.error(f"Sync failed for agent {agent_id} in competition {competition_id}: {e}")
            raise PersistenceError(f"Failed to persist perps data for agent {agent_id}: {e}") from e

        logger.debug(
            f"Synced agent {agent_id} in competition {competition_id}: "
            f"{len(rows)} positions upserted, {closed} closed"
        )
        return AgentSyncResult(
            agent_id=agent_id,
            competition_id=competition_id,
            positions_upserted=len(rows),
            positions_closed=closed,
            summary=summary,
        )

    @staticmethod
    async def _close_stale_positions(session, agent_id: int, competition_id: int,
                                     open_ids: List[str], now: datetime) -> int:
        conditions = [
            PerpetualPosition.agent_id == agent_id,
            PerpetualPosition.competition_id == competition_id,
            PerpetualPosition.status == PositionStatus.OPEN,
        ]
        if open_ids:
            conditions.append(PerpetualPosition.provider_position_id.not_in(open_ids))

        result = await session.execute(
            update(PerpetualPosition)
            .where(and_(*conditions))
            .values(status=PositionStatus.CLOSED, closed_at=now, last_updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def get_positions(self, agent_id: int, competition_id: int,
                            status: Optional[str] = None) -> List[PerpetualPosition]:
        async with self.database.get_session() as session:
            query = select(PerpetualPosition).where(and_(
                PerpetualPosition.agent_id == agent_id,
                PerpetualPosition.competition_id == competition_id
            ))
            if status:
                query = query.where(PerpetualPosition.status == status)
            result = await session.scalars(query.order_by(PerpetualPosition.id))
            return list(result.all())
