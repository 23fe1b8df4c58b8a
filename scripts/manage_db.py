#!/usr/bin/env python3
"""
Database and operations management script for the mining backend.

    python scripts/manage_db.py init
    python scripts/manage_db.py reconcile 42
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from minetoearn.core.database import init_database, close_database, get_async_session, DatabaseManager
from minetoearn.core.logging import setup_logging, get_logger
from minetoearn.scheduler.sweep_scheduler import CashoutSweepScheduler
from minetoearn.services.cashout.payment_rail import shutdown_payment_rail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import ConfigRepository
from minetoearn.services.purchases import shutdown_payment_verifier
from minetoearn.utils.timeutils import utc_now

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database and cashout management commands")


@app.command()
def init():
    """Create tables and seed the base game configuration."""
    async def _init():
        setup_logging()
        await init_database()
        try:
            await DatabaseManager.create_tables()
            async with get_async_session() as db:
                record = await ConfigRepository(db).seed_base()
            console.print(f"✅ Database initialized (config version {record.version})")
        finally:
            await close_database()

    asyncio.run(_init())


@app.command("seed-config")
def seed_config():
    """Store the built-in base configuration when none exists yet."""
    async def _seed():
        setup_logging()
        await init_database()
        try:
            async with get_async_session() as db:
                record = await ConfigRepository(db).seed_base()
            console.print(f"🌱 Base config at version {record.version}")
        finally:
            await close_database()

    asyncio.run(_seed())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)

    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    alembic_cfg = Config("alembic.ini")
    command.downgrade(alembic_cfg, revision)

    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command()
def health():
    """Check database health."""
    async def _health() -> bool:
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


@app.command()
def reconcile(round_id: Optional[int] = typer.Argument(None, help="Limit the check to one round")):
    """Check cashout rounds, requests and payouts for inconsistencies."""
    async def _reconcile():
        setup_logging()
        await init_database()
        try:
            async with get_async_session() as db:
                return await CashoutRoundManager(db).reconcile(utc_now(), round_id=round_id)
        finally:
            await close_database()

    report = asyncio.run(_reconcile())

    table = Table(title="Cashout Reconciliation")
    table.add_column("Check", style="cyan")
    table.add_column("Rounds / payouts", style="green")
    for name, value in report.to_dict().items():
        if name == "ok":
            continue
        table.add_row(name, ", ".join(str(v) for v in value) if value else "-")
    console.print(table)

    if not report.ok:
        console.print("❌ Inconsistencies found")
        sys.exit(1)
    console.print("✅ Ledger consistent")


@app.command()
def sweep():
    """Run one sweep pass: purchases, finalization, payouts, reconciliation."""
    async def _sweep():
        setup_logging()
        await init_database()
        try:
            return await CashoutSweepScheduler().run_once()
        finally:
            await shutdown_payment_rail()
            await shutdown_payment_verifier()
            await close_database()

    result = asyncio.run(_sweep())

    table = Table(title="Sweep Pass")
    table.add_column("Step", style="cyan")
    table.add_column("Result", style="green")
    table.add_row("Purchases", str(result.purchases or {}))
    table.add_row("Finalized rounds", ", ".join(map(str, result.finalized_rounds)) or "-")
    for executed in result.executed_rounds:
        table.add_row(
            f"Round {executed['round_id']}",
            f"paid={executed['paid']} failed={executed['failed']} refunded={executed['refunded']}"
        )
    console.print(table)

    if result.errors:
        for error in result.errors:
            console.print(f"❌ {error}")
        sys.exit(1)


@app.command()
def status():
    """Show database and configuration status."""
    table = Table(title="Backend Status")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")

    async def _status():
        setup_logging()
        await init_database()
        try:
            is_healthy = await DatabaseManager.health_check()
            table.add_row("Database", "✅ Connected" if is_healthy else "❌ Disconnected")
            if is_healthy:
                async with get_async_session() as db:
                    config = await ConfigRepository(db).load()
                    current = await CashoutRoundManager(db).get_current_round(utc_now())
                table.add_row("Config version", str(config.version))
                table.add_row("Cashout", "enabled" if config.cashout.enabled else "disabled")
                table.add_row("Open round", str(current.id) if current else "-")
        finally:
            await close_database()

    asyncio.run(_status())
    console.print(table)


if __name__ == "__main__":
    app()
