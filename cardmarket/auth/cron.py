"""Caller verification for scheduled and notifier entry points."""

import hmac
import logging

from fastapi import HTTPException, Request

from cardmarket.config import settings

logger = logging.getLogger(__name__)


def _matches(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def verify_cron_request(request: Request) -> str:
    """Accept the scheduler's X-Cron-Secret header or an admin bearer token.

    Returns the caller type ("cron" or "admin").
    """
    if _matches(request.headers.get("X-Cron-Secret"), settings.cron_secret):
        return "cron"

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
        if _matches(token, settings.cron_secret):
            return "cron"
        if _matches(token, settings.admin_secret):
            return "admin"

    logger.warning(
        "Unauthorized lifecycle request to %s from %s",
        request.url.path, request.client.host if request.client else "unknown",
    )
    raise HTTPException(status_code=401, detail="Unauthorized")
