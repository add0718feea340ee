"""Tests for the watermark store."""

from datetime import datetime, timedelta

import pytest

from umami_sync.services.watermark import PartitionStatus, Watermark, WatermarkStore

NOW = datetime(2025, 3, 2, 12, 0)


class TestRead:

    @pytest.mark.asyncio
    async def test_empty_store_reads_as_no_watermark(self, session_factory):
        watermark = await WatermarkStore(session_factory).read()

        assert watermark == Watermark()
        assert watermark.to_dict() == {
            "lastSuccessfulSyncAt": None,
            "lastSessionSyncAt": None,
            "lastAnalyticsSyncAt": None,
            "partitionStatus": {},
        }


class TestPartitionStatus:

    @pytest.mark.asyncio
    async def test_upsert_creates_singleton(self, session_factory):
        store = WatermarkStore(session_factory)

        await store.upsert_partition_status(
            "site-a",
            PartitionStatus(last_sync_at=NOW, last_day_synced="2025-03-02", sessions_processed=5),
        )

        watermark = await store.read()
        assert watermark.last_successful_sync_at is None
        status = watermark.partition_status["site-a"]
        assert status.last_sync_at == NOW
        assert status.last_day_synced == "2025-03-02"
        assert status.sessions_processed == 5
        assert status.error_count == 0

    @pytest.mark.asyncio
    async def test_upsert_leaves_other_websites_alone(self, session_factory):
        store = WatermarkStore(session_factory)
        await store.upsert_partition_status("site-a", PartitionStatus(sessions_processed=1))
        await store.upsert_partition_status("site-b", PartitionStatus(sessions_processed=2))

        statuses = (await store.read()).partition_status

        assert statuses["site-a"].sessions_processed == 1
        assert statuses["site-b"].sessions_processed == 2

    @pytest.mark.asyncio
    async def test_increment_creates_then_adds(self, session_factory):
        store = WatermarkStore(session_factory)

        assert await store.increment_partition_error("site-a") == 1
        assert await store.increment_partition_error("site-a") == 2

        status = (await store.read()).partition_status["site-a"]
        assert status.error_count == 2
        assert status.last_sync_at is None
        assert status.sessions_processed is None

    @pytest.mark.asyncio
    async def test_increment_keeps_previous_success_fields(self, session_factory):
        store = WatermarkStore(session_factory)
        await store.upsert_partition_status(
            "site-a", PartitionStatus(last_sync_at=NOW, last_day_synced="2025-03-02", sessions_processed=4),
        )

        await store.increment_partition_error("site-a")

        status = (await store.read()).partition_status["site-a"]
        assert status.error_count == 1
        assert status.sessions_processed == 4
        assert status.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_successful_upsert_resets_error_count(self, session_factory):
        store = WatermarkStore(session_factory)
        await store.increment_partition_error("site-a")
        await store.increment_partition_error("site-a")

        await store.upsert_partition_status("site-a", PartitionStatus(last_sync_at=NOW, sessions_processed=0))

        assert (await store.read()).partition_status["site-a"].error_count == 0


class TestGlobalWatermark:

    @pytest.mark.asyncio
    async def test_advance_sets_all_timestamps(self, session_factory):
        store = WatermarkStore(session_factory)
        await store.upsert_partition_status("site-a", PartitionStatus(sessions_processed=3))

        await store.advance_global_watermark(NOW)

        watermark = await store.read()
        assert watermark.last_successful_sync_at == NOW
        assert watermark.last_session_sync_at == NOW
        assert watermark.last_analytics_sync_at == NOW
        assert watermark.partition_status["site-a"].sessions_processed == 3

    @pytest.mark.asyncio
    async def test_to_dict_is_json_ready(self, session_factory):
        store = WatermarkStore(session_factory)
        await store.advance_global_watermark(NOW)

        doc = (await store.read()).to_dict()

        assert doc["lastSuccessfulSyncAt"] == "2025-03-02T12:00:00"


class TestLease:

    @pytest.mark.asyncio
    async def test_lease_is_exclusive(self, session_factory):
        store = WatermarkStore(session_factory)
        ttl = timedelta(minutes=30)

        assert await store.acquire_lease("run-1", NOW, ttl) is True
        assert await store.acquire_lease("run-2", NOW + timedelta(minutes=5), ttl) is False

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, session_factory):
        store = WatermarkStore(session_factory)
        ttl = timedelta(minutes=30)
        await store.acquire_lease("run-1", NOW, ttl)

        assert await store.acquire_lease("run-2", NOW + timedelta(minutes=31), ttl) is True

    @pytest.mark.asyncio
    async def test_release_frees_lease(self, session_factory):
        store = WatermarkStore(session_factory)
        ttl = timedelta(minutes=30)
        await store.acquire_lease("run-1", NOW, ttl)

        await store.release_lease("run-1")

        assert await store.acquire_lease("run-2", NOW, ttl) is True

    @pytest.mark.asyncio
    async def test_release_by_other_owner_is_ignored(self, session_factory):
        store = WatermarkStore(session_factory)
        ttl = timedelta(minutes=30)
        await store.acquire_lease("run-1", NOW, ttl)

        await store.release_lease("run-2")

        assert await store.acquire_lease("run-3", NOW, ttl) is False


class TestPartitionStatusDocument:

    def test_from_document_tolerates_missing_keys(self):
        status = PartitionStatus.from_document({"errorCount": 3})

        assert status == PartitionStatus(error_count=3)

    def test_document_keys(self):
        doc = PartitionStatus(last_sync_at=NOW, last_day_synced="2025-03-02", sessions_processed=7).to_document()

        assert doc == {
            "lastSyncAt": "2025-03-02T12:00:00",
            "lastDaySynced": "2025-03-02",
            "sessionsProcessed": 7,
            "errorCount": 0,
        }
