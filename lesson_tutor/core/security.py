"""
Security Module - API key authentication

Requests carry the key in the X-API-Key header. With no key configured
every request is allowed (development mode).
"""
import logging
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from lesson_tutor.core.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_api_key(api_key: Optional[str]) -> bool:
    """
    Verify an API key.

    Returns:
        True if valid (or no key is configured), False otherwise
    """
    if not settings.api_key:
        return True
    return api_key == settings.api_key


async def require_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> Optional[str]:
    """
    Dependency that rejects requests without a valid API key.

    Raises:
        HTTPException 401: key configured and missing or wrong
    """
    if verify_api_key(api_key):
        return api_key
    logger.warning("Rejected request with missing or invalid API key")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "ApiKey"},
    )
