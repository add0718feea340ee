"""Tests for connectivity checks and status reporting."""

from datetime import datetime

import pytest

from conftest import FakeSessionSource, FakeUmamiApi
from umami_sync.services.diagnostics import check_connections, get_sync_status
from umami_sync.services.umami_db import SourceUnavailable
from umami_sync.services.watermark import WatermarkStore


@pytest.mark.asyncio
async def test_all_connections_ok(session_factory):
    api = FakeUmamiApi()

    results = await check_connections(FakeSessionSource(), api, session_factory, ["site-a"])

    assert results == {"database": True, "api": True, "store": True, "website_ids": ["site-a"]}
    assert api.token is None


@pytest.mark.asyncio
async def test_failures_reported_per_system(session_factory):
    source = FakeSessionSource(error=SourceUnavailable("down"))
    api = FakeUmamiApi(fail_auth=True)

    results = await check_connections(source, api, session_factory, ["site-a"])

    assert results["database"] is False
    assert results["api"] is False
    assert results["store"] is True
    assert api.clear_calls == 1


@pytest.mark.asyncio
async def test_api_check_skipped_without_websites(session_factory):
    api = FakeUmamiApi()

    results = await check_connections(FakeSessionSource(), api, session_factory, [])

    assert results["api"] is False
    assert api.auth_calls == 0


@pytest.mark.asyncio
async def test_sync_status(session_factory):
    store = WatermarkStore(session_factory)
    await store.advance_global_watermark(datetime(2025, 3, 2, 12, 0))

    status = await get_sync_status(store)

    assert status["lastSuccessfulSyncAt"] == "2025-03-02T12:00:00"
    assert status["partitionStatus"] == {}
