import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

import pytest

from perps_arena.competition.manager import CompetitionManager
from perps_arena.config import BatchConfig
from perps_arena.db import Database
from perps_arena.exchanges.base import (
    PerpsDataProvider, PositionData, AccountSummaryData, AccountDataBatch
)
from perps_arena.exceptions import ProviderFetchError
from perps_arena.models.agent import Agent
from perps_arena.models.perps import PerpsAccountSummary
from perps_arena.models.risk import PerpsRiskMetrics

HANG = "hang"

_agent_names = itertools.count(1)


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'arena.db'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def fast_batch_config():
    return BatchConfig(retry_base_delay=0, retry_max_delay=0, provider_timeout=0.05)


async def create_agents(database: Database, count: int, with_wallet: bool = True) -> List[int]:
    """Agents whose wallet is ``wallet(agent_id)``."""
    async with database.get_session() as session:
        agents = [Agent(name=f"agent-{next(_agent_names)}", owner="tests") for _ in range(count)]
        session.add_all(agents)
        await session.flush()
        if with_wallet:
            for agent in agents:
                agent.wallet_address = wallet(agent.id)
        return [agent.id for agent in agents]


async def create_competition(database: Database, max_participants: Optional[int] = None,
                             start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                             **perps_config) -> int:
    perps_config.setdefault("data_source_config", {"provider": "hyperliquid"})
    async with database.get_session() as session:
        competition = await CompetitionManager(session).create_competition(
            "Test Cup",
            start_date=start_date,
            end_date=end_date,
            max_participants=max_participants,
            perps_config=perps_config
        )
        return competition.id


async def start(database: Database, competition_id: int):
    async with database.get_session() as session:
        return await CompetitionManager(session).start_competition(competition_id)


async def register(database: Database, competition_id: int, agent_ids: List[int]):
    async with database.get_session() as session:
        return await CompetitionManager(session).add_agents(competition_id, agent_ids)


async def add_summary(database: Database, agent_id: int, competition_id: int, equity,
                      timestamp: Optional[datetime] = None, initial_capital="1000"):
    async with database.get_session() as session:
        session.add(PerpsAccountSummary(
            agent_id=agent_id,
            competition_id=competition_id,
            total_equity=Decimal(str(equity)),
            initial_capital=Decimal(str(initial_capital)),
            timestamp=timestamp or datetime.now(timezone.utc)
        ))


async def add_risk_metrics(database: Database, agent_id: int, competition_id: int, **values):
    async with database.get_session() as session:
        session.add(PerpsRiskMetrics(
            agent_id=agent_id,
            competition_id=competition_id,
            snapshot_count=values.pop("snapshot_count", 2),
            **{key: Decimal(str(value)) if value is not None else None for key, value in values.items()}
        ))


def hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def account(equity, total_pnl=None, positions: Optional[List[PositionData]] = None) -> AccountDataBatch:
    return AccountDataBatch(
        account_summary=AccountSummaryData(
            total_equity=Decimal(str(equity)),
            total_pnl=Decimal(str(total_pnl)) if total_pnl is not None else None,
        ),
        positions=positions or []
    )


def position(position_id: str, symbol: str = "BTC", side: str = "long", size="1000",
             pnl="10", status: str = "Open") -> PositionData:
    return PositionData(
        provider_position_id=position_id,
        symbol=symbol,
        side=side,
        position_size_usd=Decimal(size),
        leverage=Decimal("5"),
        collateral_amount=Decimal(size) / 5,
        entry_price=Decimal("50000"),
        current_price=Decimal("50500"),
        pnl_usd_value=Decimal(pnl),
        status=status,
    )


Behavior = Union[AccountDataBatch, Exception, str, List]


class FakeProvider(PerpsDataProvider):
    """
    In-memory venue keyed by wallet address.

    A wallet maps to an AccountDataBatch, an exception to raise, ``HANG`` to
    never answer, or a list of those consumed one call at a time.
    """

    def __init__(self, accounts: Optional[Dict[str, Behavior]] = None):
        self.accounts = accounts or {}
        self.calls: Dict[str, int] = {}
        self.closed = False

    def get_name(self) -> str:
        return "fake"

    async def get_account_data_batch(self, wallet_address: str,
                                     initial_capital: Optional[Decimal] = None) -> AccountDataBatch:
        self.calls[wallet_address] = self.calls.get(wallet_address, 0) + 1
        behavior = self.accounts.get(wallet_address)
        if isinstance(behavior, list):
            behavior = behavior.pop(0) if len(behavior) > 1 else behavior[0]

        if behavior is None:
            raise ProviderFetchError("unknown wallet", provider="fake", wallet=wallet_address)
        if behavior == HANG:
            await asyncio.sleep(3600)
        if isinstance(behavior, Exception):
            raise behavior
        return behavior

    async def get_account_summary(self, wallet_address: str,
                                  initial_capital: Optional[Decimal] = None) -> AccountSummaryData:
        return (await self.get_account_data_batch(wallet_address, initial_capital)).account_summary

    async def get_positions(self, wallet_address: str) -> List[PositionData]:
        return (await self.get_account_data_batch(wallet_address)).positions

    async def close(self):
        self.closed = True


def wallet(i: int) -> str:
    return f"0x{i:040x}"
