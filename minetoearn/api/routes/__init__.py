"""API routes package."""

from . import game, cashout, purchases

__all__ = ["game", "cashout", "purchases"]
