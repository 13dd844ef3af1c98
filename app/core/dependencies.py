from fastapi import Header
from typing import Optional
import hmac
import logging
from app.config import settings
from app.core.exceptions import AuthorizationError

logger = logging.getLogger(__name__)


async def require_internal_token(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token")
) -> None:
    """
    Dependency guarding internal endpoints (webhook handler, scheduler, admin).
    Open when INTERNAL_API_TOKEN is not configured.
    """
    expected = settings.internal_api_token
    if not expected:
        return

    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        logger.warning("Rejected internal request with missing or invalid token")
        raise AuthorizationError("Invalid internal token")
