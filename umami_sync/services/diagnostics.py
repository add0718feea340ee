"""Operational checks: connectivity of every external system and sync status."""

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from umami_sync.core.config import Settings
from umami_sync.services.sync import build_api, build_source
from umami_sync.services.umami_api import UmamiApiClient
from umami_sync.services.umami_db import UmamiSessionSource
from umami_sync.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)


async def check_store(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"User store connection test failed: {e}")
        return False


async def check_api(api: UmamiApiClient, website_ids: list[str]) -> bool:
    """Log in to the API and drop the token again. Skipped without websites."""
    if not website_ids:
        logger.warning("No Umami website ids configured; skipping API check")
        return False

    try:
        await api.authenticate()
        return True
    except Exception as e:
        logger.error(f"API connection test failed: {e}")
        return False
    finally:
        api.clear_token()


async def check_connections(
    source: UmamiSessionSource,
    api: UmamiApiClient,
    session_factory: async_sessionmaker[AsyncSession],
    website_ids: list[str],
) -> dict[str, Any]:
    """Test the Umami database, the Umami API and the user store."""
    results = {
        "database": await source.test_connection(),
        "api": await check_api(api, website_ids),
        "store": await check_store(session_factory),
        "website_ids": list(website_ids),
    }
    logger.info(f"Connection test results: {results}")
    return results


async def check_configured_connections(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> dict[str, Any]:
    """check_connections() with clients built from settings and closed afterwards."""
    source = build_source(settings)
    api = build_api(settings)
    try:
        return await check_connections(source, api, session_factory, settings.website_ids)
    finally:
        await api.close()
        await source.close()


async def get_sync_status(watermarks: WatermarkStore) -> dict[str, Any]:
    """Current watermark document as plain JSON-ready data."""
    return (await watermarks.read()).to_dict()
