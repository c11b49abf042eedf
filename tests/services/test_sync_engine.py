"""
Test cases for the sync engine

Uses an in-process fake ingestion server (httpx.MockTransport) so the whole
claim -> upload -> reconcile path runs against a real SQLite store.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest

from heroes_analytics.compliance.audit_service import AuditEventType
from heroes_analytics.models.behavioral_event import EventSyncState
from heroes_analytics.models.sync_batch import BatchStatus
from heroes_analytics.services.sync.batch_assembler import BatchAssembler
from heroes_analytics.services.sync.connectivity import ConnectivityMonitor, NetworkQuality, BatteryLevel
from heroes_analytics.services.sync.retry import RetryPolicy
from heroes_analytics.services.sync.sync_engine import SyncEngine, CycleStatus, DeferReason
from heroes_analytics.services.sync.transport import SyncTransport


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(NetworkQuality.HIGH, connection_type="wifi")


@pytest.fixture
def assembler(store, test_settings):
    return BatchAssembler(store, test_settings)


@pytest.fixture
async def sync_transport(test_settings, fake_server):
    transport = SyncTransport(test_settings, transport=fake_server.transport)
    yield transport
    await transport.stop()


@pytest.fixture
def sync_engine(store, assembler, sync_transport, consent_manager, connectivity, test_settings):
    """Sync engine with immediate retries and a three-attempt cap"""
    return SyncEngine(
        store,
        assembler,
        sync_transport,
        consent_manager,
        connectivity,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, jitter_ratio=0),
        config=test_settings
    )


class BlockingServer:
    """Fake server that holds each upload until released"""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.started.set()
        await self.release.wait()
        body = json.loads(request.content)
        return httpx.Response(200, json={"accepted": [e["id"] for e in body["events"]], "rejected": []})


@pytest.fixture
async def blocking_engine(sync_engine, test_settings):
    server = BlockingServer()
    sync_engine.transport = SyncTransport(test_settings, transport=httpx.MockTransport(server.handler))
    yield sync_engine, server
    await sync_engine.transport.stop()


async def _append_many(store, make_event, count):
    return [await store.append(make_event()) for _ in range(count)]


class TestSuccessfulSync:
    """Test the committed path"""

    @pytest.mark.asyncio
    async def test_three_events_sync_in_order(self, sync_engine, store, make_event, fake_server, assembler):
        ids = await _append_many(store, make_event, 3)

        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.COMMITTED.value
        assert result.accepted == 3
        assert fake_server.received_ids == ids
        for event_id in ids:
            assert (await store.get(event_id)).sync_state == EventSyncState.SYNCED

        batch = await assembler.get_batch(result.batch_id)
        assert batch.status == BatchStatus.COMMITTED
        assert batch.attempt_count == 1
        assert batch.accepted_count == 3
        assert batch.completed_at is not None

    @pytest.mark.asyncio
    async def test_payload_carries_only_sanitized_fields(self, sync_engine, store, make_event, fake_server):
        await store.append(make_event(indicators={"empathy_score": 5, "student_name": "Sam"}))

        await sync_engine.sync_once()

        event = fake_server.requests[0]["events"][0]
        assert event["behavioralIndicators"] == {"empathy_score": 5}
        assert event["compliance"]["_coppa_compliance"] == "COPPA_ANONYMIZED"
        assert len(event["sessionId"]) == 64

    @pytest.mark.asyncio
    async def test_idle_when_nothing_pending(self, sync_engine):
        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.IDLE.value
        assert not result.had_work

    @pytest.mark.asyncio
    async def test_drain_sends_every_batch(self, sync_engine, store, make_event, connectivity, fake_server):
        connectivity.update(NetworkQuality.LOW)
        await _append_many(store, make_event, 25)

        results = await sync_engine.drain()

        assert [r.accepted for r in results] == [20, 5]
        assert len(fake_server.requests) == 2
        assert await store.pending_count() == 0

    @pytest.mark.asyncio
    async def test_low_battery_uses_small_batches(self, sync_engine, store, make_event, connectivity):
        connectivity.update_battery(BatteryLevel.LOW)
        await _append_many(store, make_event, 25)

        results = await sync_engine.drain()

        assert [r.accepted for r in results] == [20, 5]

    @pytest.mark.asyncio
    async def test_stray_acknowledgements_are_ignored(self, sync_engine, store, make_event, fake_server):
        await _append_many(store, make_event, 2)
        fake_server.extra_accepted = ["not-in-this-batch"]

        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.COMMITTED.value
        assert result.accepted == 2


class TestPartialFailure:
    """Test per-event failures within a batch"""

    @pytest.mark.asyncio
    async def test_rejected_event_is_requeued(self, sync_engine, store, make_event, fake_server, assembler):
        ids = await _append_many(store, make_event, 3)
        fake_server.rejections = {ids[1]: "schema_error"}

        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.PARTIALLY_FAILED.value
        assert (result.accepted, result.failed) == (2, 1)
        rejected = await store.get(ids[1])
        assert rejected.sync_state == EventSyncState.PENDING
        assert rejected.sync_attempts == 1
        assert rejected.sync_error == "schema_error"
        assert rejected.batch_id is None
        assert rejected.next_attempt_at is not None
        assert (await assembler.get_batch(result.batch_id)).rejected_count == 1

    @pytest.mark.asyncio
    async def test_unmentioned_event_counts_as_failed_attempt(self, sync_engine, store, make_event, fake_server):
        ids = await _append_many(store, make_event, 2)
        fake_server.accept = lambda event_id: event_id != ids[0]

        result = await sync_engine.sync_once()

        missing = await store.get(ids[0])
        assert result.failed == 1
        assert missing.sync_attempts == 1
        assert missing.sync_error == "not acknowledged"

    @pytest.mark.asyncio
    async def test_failed_event_is_retried_in_next_cycle(self, sync_engine, store, make_event, fake_server):
        ids = await _append_many(store, make_event, 2)
        fake_server.rejections = {ids[0]: "busy"}
        await sync_engine.sync_once()

        fake_server.rejections = {}
        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.COMMITTED.value
        assert await store.count_by_state() == {"pending": 0, "synced": 2, "failed": 0}

    @pytest.mark.asyncio
    async def test_backoff_delays_retry(self, sync_engine, store, make_event, fake_server):
        sync_engine.retry_policy = RetryPolicy(max_attempts=3, base_delay=300, jitter_ratio=0)
        await store.append(make_event())
        fake_server.status_code = 503
        await sync_engine.sync_once()

        fake_server.status_code = 200
        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.IDLE.value
        assert len(fake_server.requests) == 1


    @pytest.mark.asyncio
    async def test_general_events_back_off_longer_than_behavioral(self, sync_engine, store, make_event, fake_server):
        sync_engine.retry_policy = RetryPolicy(max_attempts=3, base_delay=60, jitter_ratio=0)
        behavioral_id = await store.append(make_event(indicators={"empathy_score": 3}))
        general_id = await store.append(make_event(interaction_type="navigation"))
        fake_server.status_code = 503

        await sync_engine.sync_once()

        behavioral = await store.get(behavioral_id)
        general = await store.get(general_id)
        assert behavioral.next_attempt_at - behavioral.last_sync_attempt_at == timedelta(seconds=60)
        assert general.next_attempt_at - general.last_sync_attempt_at == timedelta(seconds=120)


class TestAttemptCap:
    """Test terminal failure at the attempt cap"""

    @pytest.mark.asyncio
    async def test_event_fails_after_max_attempts(self, sync_engine, store, make_event, fake_server):
        event_id = await store.append(make_event())
        fake_server.status_code = 503

        results = [await sync_engine.sync_once() for _ in range(3)]

        event = await store.get(event_id)
        assert event.sync_state == EventSyncState.FAILED
        assert event.sync_attempts == 3
        assert results[-1].terminal == 1
        assert sync_engine.stats["events_failed_terminal"] == 1

    @pytest.mark.asyncio
    async def test_failed_event_is_not_claimed_again(self, sync_engine, store, make_event, fake_server, assembler):
        await store.append(make_event())
        fake_server.status_code = 503
        for _ in range(3):
            await sync_engine.sync_once()

        assert await assembler.claim_batch() is None

    @pytest.mark.asyncio
    async def test_released_event_syncs(self, sync_engine, store, make_event, fake_server):
        event_id = await store.append(make_event())
        fake_server.status_code = 503
        for _ in range(3):
            await sync_engine.sync_once()

        await store.release_for_review([event_id])
        await sync_engine.circuit_breaker.reset()
        fake_server.status_code = 200
        await sync_engine.sync_once()

        assert (await store.get(event_id)).sync_state == EventSyncState.SYNCED


class TestPermanentRejection:
    """Test 4xx batch rejections"""

    @pytest.mark.asyncio
    async def test_client_error_holds_events_for_review(self, sync_engine, store, make_event, fake_server, assembler):
        ids = await _append_many(store, make_event, 2)
        fake_server.status_code = 422

        result = await sync_engine.sync_once()

        assert result.status == CycleStatus.PARTIALLY_FAILED.value
        for event_id in ids:
            event = await store.get(event_id)
            assert event.sync_state == EventSyncState.PENDING
            assert event.requires_review is True
            assert event.sync_attempts == 0
        assert sync_engine.circuit_breaker.failure_count == 0
        assert await assembler.claim_batch() is None

    @pytest.mark.asyncio
    async def test_released_events_resync(self, sync_engine, store, make_event, fake_server):
        await _append_many(store, make_event, 2)
        fake_server.status_code = 422
        await sync_engine.sync_once()

        await store.release_for_review()
        fake_server.status_code = 200
        result = await sync_engine.sync_once()

        assert result.accepted == 2

    @pytest.mark.asyncio
    async def test_rejection_is_audited_for_operator_action(self, sync_engine, store, make_event, fake_server, audit_service):
        await _append_many(store, make_event, 2)
        fake_server.status_code = 413

        result = await sync_engine.sync_once()

        entries = await audit_service.list_events(AuditEventType.SYNC_REJECTED)
        assert len(entries) == 1
        assert entries[0].requires_action is True
        assert entries[0].severity_level == "error"
        assert entries[0].technical_details["batch_id"] == result.batch_id
        assert entries[0].technical_details["events_held"] == 2


class TestDeferral:
    """Test cycles that do not transmit"""

    @pytest.mark.asyncio
    async def test_deferred_without_consent(self, sync_engine, store, make_event, consent_manager, fake_server):
        await store.append(make_event())
        await consent_manager.withdraw_consent()

        result = await sync_engine.sync_once()

        assert result.deferred_reason == DeferReason.CONSENT_NOT_GRANTED.value
        assert fake_server.requests == []

    @pytest.mark.asyncio
    async def test_deferred_when_offline(self, sync_engine, store, make_event, connectivity, fake_server):
        await store.append(make_event())
        connectivity.go_offline()

        result = await sync_engine.sync_once()

        assert result.deferred_reason == DeferReason.OFFLINE.value
        assert fake_server.requests == []
        assert await store.pending_count() == 1

    @pytest.mark.asyncio
    async def test_deferred_when_no_network(self, sync_engine, connectivity):
        connectivity.update(NetworkQuality.NONE)

        result = await sync_engine.sync_once()

        assert result.deferred
        assert result.deferred_reason == DeferReason.OFFLINE.value

    @pytest.mark.asyncio
    async def test_deferred_when_battery_critical(self, sync_engine, store, make_event, connectivity, fake_server):
        await store.append(make_event())
        connectivity.update_battery(10)

        result = await sync_engine.sync_once()

        assert result.deferred_reason == DeferReason.BATTERY_CRITICAL.value
        assert fake_server.requests == []

        connectivity.update_battery(BatteryLevel.NORMAL)
        assert (await sync_engine.sync_once()).accepted == 1

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_transient_failures(self, sync_engine, store, make_event, fake_server):
        await _append_many(store, make_event, 2)
        fake_server.status_code = 503
        for _ in range(3):
            await sync_engine.sync_once()

        result = await sync_engine.sync_once()

        assert result.deferred_reason == DeferReason.CIRCUIT_OPEN.value
        assert len(fake_server.requests) == 3


class TestCancellation:
    """Test cancellation and concurrent deletion of an in-flight batch"""

    @pytest.mark.asyncio
    async def test_cancel_reverts_batch_to_open(self, blocking_engine, store, make_event, assembler):
        engine, server = blocking_engine
        ids = await _append_many(store, make_event, 2)

        task = asyncio.create_task(engine.sync_once())
        await server.started.wait()
        batch = await assembler.next_open_batch()
        assert batch is None

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        batch = await assembler.next_open_batch()
        assert batch.event_ids == ids
        assert batch.attempt_count == 0
        for event_id in ids:
            event = await store.get(event_id)
            assert event.sync_state == EventSyncState.PENDING
            assert event.sync_attempts == 0

    @pytest.mark.asyncio
    async def test_reopened_batch_is_resumed(self, blocking_engine, store, make_event, assembler):
        engine, server = blocking_engine
        await _append_many(store, make_event, 2)
        task = asyncio.create_task(engine.sync_once())
        await server.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        reopened = await assembler.next_open_batch()

        server.release.set()
        result = await engine.sync_once()

        assert result.batch_id == reopened.batch_id
        assert result.status == CycleStatus.COMMITTED.value

    @pytest.mark.asyncio
    async def test_cancel_during_reconciliation_reopens_batch(self, sync_engine, store, make_event, assembler):
        ids = await _append_many(store, make_event, 2)
        reconciling = asyncio.Event()

        async def stalled_mark_synced(session, event_ids):
            reconciling.set()
            await asyncio.Event().wait()

        with patch.object(store, "mark_synced_in", new=stalled_mark_synced):
            task = asyncio.create_task(sync_engine.sync_once())
            await reconciling.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        batch = await assembler.next_open_batch()
        assert batch.event_ids == ids
        assert batch.attempt_count == 0
        for event_id in ids:
            event = await store.get(event_id)
            assert event.sync_state == EventSyncState.PENDING
            assert event.batch_id == batch.batch_id
        assert sync_engine.stats["batches_cancelled"] == 1

        result = await sync_engine.sync_once()

        assert result.batch_id == batch.batch_id
        assert result.status == CycleStatus.COMMITTED.value

    @pytest.mark.asyncio
    async def test_cancel_after_outcome_committed_keeps_result(self, sync_engine, store, make_event, assembler):
        ids = await _append_many(store, make_event, 1)
        result = await sync_engine.sync_once()

        reverted = await sync_engine._revert_to_open(result.batch_id)

        assert reverted is False
        assert (await assembler.get_batch(result.batch_id)).status == BatchStatus.COMMITTED
        assert (await store.get(ids[0])).sync_state == EventSyncState.SYNCED

    @pytest.mark.asyncio
    async def test_withdrawal_during_upload_discards_outcome(self, blocking_engine, store, make_event, consent_manager):
        engine, server = blocking_engine
        await _append_many(store, make_event, 2)

        task = asyncio.create_task(engine.sync_once())
        await server.started.wait()
        await consent_manager.withdraw_consent()
        server.release.set()
        result = await task

        assert result.status == CycleStatus.DISCARDED.value
        assert await store.total_count() == 0


class TestStatus:
    """Test engine status reporting"""

    @pytest.mark.asyncio
    async def test_get_status(self, sync_engine, store, make_event):
        await store.append(make_event())
        await sync_engine.sync_once()

        status = sync_engine.get_status()

        assert status["online"] is True
        assert status["network_quality"] == "high"
        assert status["battery_level"] == "normal"
        assert status["strategy"] == "aggressive"
        assert status["stats"]["events_synced"] == 1
        assert status["circuit_breaker"]["state"] == "closed"
