"""
API dependencies for FastAPI endpoints.
"""

from typing import AsyncGenerator

from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.core.database import get_async_session
from minetoearn.services.cashout.payment_rail import PaymentRail, get_payment_rail
from minetoearn.services.purchases import PaymentVerifier, get_payment_verifier
from minetoearn.services.rate_limiter import RateLimiter, get_rate_limiter
from minetoearn.utils.validation import validate_player_id


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency; commits when the route succeeds."""
    async with get_async_session() as session:
        yield session


async def get_player_id(
    x_player_id: str = Header(..., alias="X-Player-Id", description="Authenticated player id")
) -> str:
    """Player identity forwarded by the authenticating gateway."""
    return validate_player_id(x_player_id)


async def get_limiter() -> RateLimiter:
    return await get_rate_limiter()


async def get_rail() -> PaymentRail:
    return await get_payment_rail()


async def get_verifier() -> PaymentVerifier:
    return await get_payment_verifier()
