"""
Shared fixtures: a private in-memory database per test, a controllable clock
and deterministic random sources.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

import pytest
from sqlalchemy import update

from minetoearn.core.database import (
    init_database, close_database, get_async_session, DatabaseManager
)
from minetoearn.models.machine import Machine
from minetoearn.models.player import PlayerState
from minetoearn.services.game_config import ConfigRepository, resolve_config
from minetoearn.services.ledger import PlayerLedger


WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20
START = datetime(2026, 3, 1, 12, 0, 0)


class FixedRandom:
    """Always returns the same draw."""

    def __init__(self, value: float):
        self.value = value

    def random(self) -> float:
        return self.value


class ScriptedRandom:
    """Returns the given draws in order, then ``fallback`` forever."""

    def __init__(self, draws: Iterable[float], fallback: float = 0.99):
        self.draws = list(draws)
        self.fallback = fallback
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        if self.draws:
            return self.draws.pop(0)
        return self.fallback


class Clock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
async def database():
    """Fresh in-memory SQLite database with every table created."""
    await init_database("sqlite+aiosqlite://")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
async def file_database(tmp_path):
    """SQLite file database; each session gets its own connection."""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'game.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def config():
    return resolve_config()


async def create_player(
    player_id: str,
    now: datetime = START,
    oil: float = 0.0,
    diamonds: int = 0,
    wallet: Optional[str] = WALLET,
) -> None:
    """Create a player through the ledger, then set balances directly."""
    async with get_async_session() as db:
        config = await ConfigRepository(db).load()
        await PlayerLedger(db).ensure_player(player_id, config, now=now, wallet_address=wallet)
        await db.execute(
            update(PlayerState)
            .where(PlayerState.player_id == player_id)
            .values(oil_balance=oil, diamond_balance=diamonds)
        )


async def get_player(player_id: str) -> PlayerState:
    async with get_async_session() as db:
        return await PlayerLedger(db).get_player(player_id)


async def get_machines(player_id: str):
    async with get_async_session() as db:
        return await PlayerLedger(db).list_machines(player_id)


async def starter_machine(player_id: str) -> Machine:
    machines = await get_machines(player_id)
    return machines[0]


async def set_global_setting(key: str, value: str) -> None:
    async with get_async_session() as db:
        await ConfigRepository(db).set_global_setting(key, value)
