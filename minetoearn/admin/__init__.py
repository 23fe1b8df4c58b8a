"""
Operator API for cashout rounds, reconciliation and game settings.
"""

from .admin_auth import AdminAuth, require_admin_auth
from .admin_routes import admin_router

__all__ = [
    "AdminAuth",
    "require_admin_auth",
    "admin_router"
]
