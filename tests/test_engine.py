"""
End-to-end tests for the analytics engine facade
"""

import asyncio
import logging
import pytest
from datetime import timedelta
from unittest.mock import patch

from heroes_analytics.engine import AnalyticsEngine
from heroes_analytics.models.behavioral_event import EventSyncState
from heroes_analytics.services.sync.connectivity import ConnectivityMonitor, NetworkQuality


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def engine(test_settings, fake_server):
    """Running engine with consent granted, past its first (empty) sync cycle"""
    engine = await AnalyticsEngine.create(
        test_settings,
        http_transport=fake_server.transport,
        connectivity=ConnectivityMonitor(NetworkQuality.HIGH, connection_type="wifi")
    )
    await engine.grant_consent()
    await engine.start()
    await _wait_until(lambda: engine.tasks.last_sync_at is not None)
    yield engine
    await engine.close()


class TestEndToEnd:
    """Test record -> store -> sync"""

    @pytest.mark.asyncio
    async def test_recorded_events_are_synced(self, engine, fake_server):
        for score in (1, 2, 3):
            engine.record("empathy_response", "empathy", {"empathy_score": score}, {"classroom_id": "room-1"})
        await engine.flush()

        results = await engine.sync_now()

        assert [r.status for r in results] == ["committed"]
        sent = fake_server.requests[0]["events"]
        assert [e["behavioralIndicators"]["empathy_score"] for e in sent] == [1, 2, 3]
        assert fake_server.requests[0]["deviceMeta"]["connectionType"] == "wifi"

        diagnostics = await engine.diagnostics()
        assert diagnostics["events"] == {"pending": 0, "synced": 3, "failed": 0}

    @pytest.mark.asyncio
    async def test_pii_never_leaves_the_device(self, engine, fake_server):
        engine.record("lesson_start", "engagement", {"notes": "call me at 555-123-4567"})
        engine.record("lesson_start", "engagement", {"empathy_score": 4})
        await engine.flush()

        await engine.sync_now()

        assert len(fake_server.received_ids) == 1
        assert "555-123-4567" not in str(fake_server.requests)
        assert (await engine.diagnostics())["compliance_violations"] == 1

    @pytest.mark.asyncio
    async def test_record_never_raises(self, engine):
        with patch.object(engine.capture, "record", side_effect=RuntimeError("boom")):
            engine.record("lesson_start", "engagement")

    @pytest.mark.asyncio
    async def test_offline_defers_sync(self, engine, fake_server):
        engine.record("lesson_start", "engagement", {})
        await engine.flush()
        engine.go_offline()

        results = await engine.sync_now()

        assert results == []
        assert fake_server.requests == []
        assert (await engine.diagnostics())["pending_sync"] == 1

    @pytest.mark.asyncio
    async def test_critical_battery_defers_sync(self, engine, fake_server):
        engine.record("lesson_start", "engagement", {})
        await engine.flush()
        engine.update_battery(12)

        assert await engine.sync_now() == []
        assert fake_server.requests == []

        engine.update_battery(90)
        await engine.sync_now()

        assert len(fake_server.received_ids) == 1
        assert (await engine.diagnostics())["pending_sync"] == 0
        assert (await engine.diagnostics())["sync"]["battery_level"] == "high"


class TestSettingsSurface:
    """Test the facilitator settings API"""

    @pytest.mark.asyncio
    async def test_profile_is_returned_as_copy(self, engine):
        profile = engine.get_compliance_profile()
        profile.retention_days = 1

        assert engine.get_compliance_profile().retention_days == 90

    @pytest.mark.asyncio
    async def test_update_compliance_profile(self, engine):
        profile = await engine.update_compliance_profile(retention_days=30)

        assert profile.retention_days == 30
        assert engine.consent_manager.profile.retention_days == 30

    @pytest.mark.asyncio
    async def test_update_rejects_disabling_anonymity(self, engine):
        with pytest.raises(ValueError):
            await engine.update_compliance_profile(anonymous_only=False)

    @pytest.mark.asyncio
    async def test_withdraw_consent_clears_everything(self, engine, fake_server):
        for _ in range(3):
            engine.record("navigation", "engagement", {})
        await engine.flush()
        await engine.sync_now()
        engine.record("navigation", "engagement", {})
        await engine.flush()

        result = await engine.withdraw_consent()

        assert result["events_deleted"] == 4
        diagnostics = await engine.diagnostics()
        assert diagnostics["events"] == {"pending": 0, "synced": 0, "failed": 0}
        assert diagnostics["compliance"]["consent_level"] == "NO_CONSENT"

        engine.record("navigation", "engagement", {})
        await engine.flush()
        assert await engine.store.total_count() == 0
        assert await engine.sync_now() == []

    @pytest.mark.asyncio
    async def test_profile_survives_restart(self, engine, test_settings, fake_server):
        await engine.update_compliance_profile(retention_days=21)
        engine.record("navigation", "engagement", {})
        await engine.flush()
        await engine.close()

        reopened = await AnalyticsEngine.create(test_settings, http_transport=fake_server.transport)
        try:
            assert reopened.get_compliance_profile().consent_granted
            assert reopened.get_compliance_profile().retention_days == 21
            assert await reopened.store.pending_count() == 1
        finally:
            await reopened.close()


class TestRetention:
    """Test retention through the facade"""

    @pytest.mark.asyncio
    async def test_retention_sweep_removes_old_synced_events(self, engine):
        engine.record("navigation", "engagement", {})
        await engine.flush()
        await engine.sync_now()
        event = (await engine.store.list_all())[0]

        result = await engine.run_retention_sweep(now=event.recorded_at + timedelta(days=91))

        assert result.events_deleted == 1
        diagnostics = await engine.diagnostics()
        assert diagnostics["last_retention_sweep"]["events_deleted"] == 1

    @pytest.mark.asyncio
    async def test_unsynced_events_survive_sweep(self, engine):
        engine.go_offline()
        engine.record("navigation", "engagement", {})
        await engine.flush()
        event = (await engine.store.list_all())[0]

        await engine.run_retention_sweep(now=event.recorded_at + timedelta(days=365))

        assert (await engine.store.get(event.id)).sync_state == EventSyncState.PENDING


class TestDiagnostics:

    @pytest.mark.asyncio
    async def test_diagnostics_contain_only_aggregates(self, engine):
        engine.record("lesson_start", "engagement", {"empathy_score": 5})
        await engine.flush()

        diagnostics = await engine.diagnostics()

        assert set(diagnostics) == {
            "events", "pending_sync", "held_for_review", "batches", "capture", "sync",
            "compliance", "compliance_violations", "last_sync_at", "last_retention_sweep",
            "store_trimmed",
        }
        assert diagnostics["capture"]["stored"] == 1
        assert diagnostics["compliance"]["compliance_score"] == 100.0
        assert diagnostics["last_retention_sweep"] is None


class TestLogging:

    @pytest.mark.asyncio
    async def test_create_configures_package_logger(self, engine, test_settings):
        logger = logging.getLogger("heroes_analytics")

        assert logger.handlers
        assert logger.level == logging.getLevelName(test_settings.LOG_LEVEL.upper())
