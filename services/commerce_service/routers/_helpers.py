"""Shared dependencies for commerce routers."""

import hmac
from typing import Optional

from fastapi import Depends, Header
from libs.common.config import get_settings
from libs.db.session import get_session_factory
from services.commerce_service.errors import AuthError
from services.commerce_service.services.read_cache import ReadCache, get_read_cache
from services.commerce_service.services.stock_validator import StockValidator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def get_stock_validator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    cache: ReadCache = Depends(get_read_cache),
) -> StockValidator:
    return StockValidator(session_factory, cache)


async def require_cleanup_key(
    authorization: Optional[str] = Header(None),
) -> None:
    """Guard for the scheduler-facing cleanup endpoint (``Bearer <CLEANUP_API_KEY>``)."""
    expected = get_settings().CLEANUP_API_KEY
    scheme, _, token = (authorization or "").partition(" ")
    if (
        not expected
        or scheme.lower() != "bearer"
        or not hmac.compare_digest(token.strip(), expected)
    ):
        raise AuthError("Unauthorized")
