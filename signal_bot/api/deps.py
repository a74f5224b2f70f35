"""Shared API dependencies."""

import hmac

from fastapi import Header, HTTPException, status

from signal_bot.config import settings


def require_api_token(x_api_token: str | None = Header(default=None)):
    """Check the admin token header when one is configured."""
    if not settings.api_token:
        return
    if x_api_token is None or not hmac.compare_digest(x_api_token, settings.api_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token",
        )


def check_webhook_secret(secret: str):
    """Validate the shared secret sent inside a webhook body."""
    if not settings.webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured",
        )
    if not hmac.compare_digest(secret or "", settings.webhook_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
