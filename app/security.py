"""Shared-secret checks for internal trigger and cron endpoints."""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException

from app.config import DEV_BATCH_SECRET, settings

logger = logging.getLogger(__name__)


def _matches(provided: Optional[str], expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided.encode(), expected.encode())


def require_batch_secret(x_batch_secret: Optional[str] = Header(None)) -> None:
    """Trigger endpoints accept only callers presenting BATCH_SECRET.

    The placeholder secret is honoured in development only.
    """
    expected = settings.BATCH_SECRET
    if expected == DEV_BATCH_SECRET and settings.ENVIRONMENT != "development":
        logger.error("BATCH_SECRET is not configured; rejecting trigger call")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not _matches(x_batch_secret, expected):
        logger.warning("Rejected trigger call with invalid batch secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Cron endpoints require ``Authorization: Bearer CRON_SECRET`` when one is set."""
    if not settings.CRON_SECRET:
        return
    if not _matches(authorization, f"Bearer {settings.CRON_SECRET}"):
        logger.warning("Rejected cron call with invalid credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")
