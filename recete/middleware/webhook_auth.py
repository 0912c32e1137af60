"""
Webhook Authentication
Validates internal event endpoints using a shared secret in X-API-Key
"""
import hmac
import logging

from fastapi import Header, HTTPException, status

from recete.config import settings

logger = logging.getLogger(__name__)


def get_webhook_secret(x_api_key: str = Header(None, alias="X-API-Key", description="API Key for webhook authentication")) -> str:
    """
    Dependency validating the X-API-Key header against WEBHOOK_SECRET_KEY.

    Usage in FastAPI endpoints:
        @router.post("/events/...")
        async def endpoint(secret: str = Depends(get_webhook_secret), ...):

    Raises:
        HTTPException: 500 if no secret is configured, 401 if missing or invalid
    """
    expected_secret = settings.WEBHOOK_SECRET_KEY

    if not expected_secret:
        logger.error("WEBHOOK_SECRET_KEY environment variable is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook authentication is not properly configured"
        )

    if not x_api_key:
        logger.warning("Webhook request missing X-API-Key header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header"
        )

    if not hmac.compare_digest(x_api_key, expected_secret):
        logger.warning(f"Invalid webhook secret. Provided: {x_api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret key"
        )

    logger.debug("✅ Webhook request authenticated")
    return x_api_key
