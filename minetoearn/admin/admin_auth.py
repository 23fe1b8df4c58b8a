"""
Admin authentication for operator endpoints.
"""

import hmac
from typing import Optional

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from minetoearn.core.config import settings
from minetoearn.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


class AdminAuth:
    """Checks the Bearer token against the configured admin API key."""

    def __init__(self, admin_api_key: Optional[str] = None):
        self.admin_api_key = admin_api_key

    @property
    def api_key(self) -> Optional[str]:
        return self.admin_api_key or settings.admin_api_key

    def is_valid_api_key(self, api_key: str) -> bool:
        if not self.api_key or not api_key:
            return False
        return hmac.compare_digest(api_key.encode(), self.api_key.encode())

    def authenticate_request(self, credentials: Optional[HTTPAuthorizationCredentials]) -> dict:
        if credentials and self.is_valid_api_key(credentials.credentials.strip()):
            return {"auth_type": "api_key", "authenticated": True, "admin": True}
        return {"authenticated": False, "admin": False}


# Global admin auth instance
admin_auth = AdminAuth()


async def require_admin_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> dict:
    """
    Dependency that requires admin authentication.

    Raises HTTPException 401 when the token is missing or wrong.
    """
    auth_result = admin_auth.authenticate_request(credentials)

    if not auth_result["admin"]:
        token = credentials.credentials if credentials else ""
        logger.warning(
            "Admin authentication failed",
            token_preview=token[:4] + "..." if len(token) > 4 else token
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return auth_result
