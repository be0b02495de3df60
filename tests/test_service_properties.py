"""
Property-based tests for the Monitor Service facade.

Uses Hypothesis for property-based testing to verify configuration
updates and the end-to-end check flow: sync, probe, deliver, record.
"""

import asyncio
import io
import json
import random

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from url_monitor.audit_logger import AuditLogger
from url_monitor.config import MonitorConfig
from url_monitor.enums import EventType, JobName, ProbeStatus
from url_monitor.exceptions import ConfigError
from url_monitor.models import CheckBatch, CheckSummary, DeliveryAttempt
from url_monitor.service import MonitorService
from url_monitor.store import MemoryStore, StateStore


REMOTE = "https://list.test/items"
CALLBACK = "https://hooks.test/callback"

REMOTE_ITEMS = [
    {"id": 1, "url": "https://a.test/", "callback_name": "alpha"},
    {"id": 2, "url": "https://b.test/", "callback_name": "beta"},
    {"id": 3, "url": "https://c.test/"},
]


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.new_event_loop().run_until_complete(coro)


async def no_sleep(_):
    pass


class MockNetwork:
    """Routes requests by host and records webhook payloads."""

    def __init__(self, items=None, statuses=None) -> None:
        self.items = REMOTE_ITEMS if items is None else items
        self.statuses = statuses or {"a.test": 200, "b.test": 500}
        self.webhooks: list[httpx.Request] = []
        self.list_fetches = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "list.test":
            self.list_fetches += 1
            return httpx.Response(200, json=self.items)
        if host == "hooks.test":
            self.webhooks.append(request)
            return httpx.Response(200)
        if host in self.statuses:
            return httpx.Response(self.statuses[host])
        raise httpx.ConnectError("[Errno -2] Name or service not known", request=request)

    def payloads(self) -> list[dict]:
        return [json.loads(request.content) for request in self.webhooks]


def make_config(**options) -> MonitorConfig:
    config = MonitorConfig()
    config.probe.per_host = None
    config.probe.min_jitter_seconds = 0.0
    config.probe.max_jitter_seconds = 0.0
    config.apply_options({"remoteEndpoint": REMOTE, "callbackEndpoint": CALLBACK, **options})
    return config


def make_service(network, config=None, store=None, sleep=no_sleep) -> MonitorService:
    return MonitorService(
        config=config or make_config(),
        store=store if store is not None else StateStore(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(network)),
        logger=AuditLogger(output_stream=io.StringIO()),
        sleep=sleep,
        rng=random.Random(0),
    )


class TestConfigureProperty:
    """
    Property-based tests for host configuration.

    **Feature: url-monitor, Property 27: Configuration updates are all-or-nothing**
    """

    @given(
        check_ms=st.integers(min_value=1000, max_value=10**8),
        sync_ms=st.integers(min_value=1000, max_value=10**8),
        batch_size=st.integers(min_value=1, max_value=50),
    )
    @settings(max_examples=100, deadline=None)
    def test_valid_options_apply_and_persist(
        self, check_ms: int, sync_ms: int, batch_size: int
    ) -> None:
        """
        Property 27: Valid options.

        *For any* valid option set, the service configuration, the job
        intervals and the persisted configuration SHALL reflect it.
        """
        store = StateStore()
        service = make_service(MockNetwork(), store=store)

        service.configure({
            "checkIntervalMs": check_ms,
            "syncIntervalMs": sync_ms,
            "batchSize": batch_size,
        })

        assert service.config.probe.interval_seconds == check_ms / 1000
        assert service.config.sync.interval_seconds == sync_ms / 1000
        assert service.scheduler.get_job(JobName.CHECK.value).interval_seconds == check_ms / 1000
        assert service.scheduler.get_job(JobName.SYNC.value).interval_seconds == sync_ms / 1000
        assert store.load_config()["probe"]["batch_size"] == batch_size

    @given(
        bad=st.sampled_from([
            {"maxRetries": 0},
            {"timeoutMs": -5},
            {"callbackEndpoint": "ftp://hooks.test"},
            {"strictValidation": "yes"},
            {"pollEveryMs": 100},
        ])
    )
    @settings(max_examples=50, deadline=None)
    def test_invalid_option_changes_nothing(self, bad: dict) -> None:
        """
        Property 27b: Atomic rejection.

        *For any* option set containing an invalid entry, configure SHALL
        raise and leave the configuration untouched.
        """
        service = make_service(MockNetwork())
        before = service.config.to_dict()

        with pytest.raises(ConfigError):
            service.configure({"batchSize": 17, **bad})

        assert service.config.to_dict() == before

    def test_max_retries_applies_to_sync_and_delivery(self) -> None:
        service = make_service(MockNetwork())
        service.configure({"maxRetries": 5, "retryDelayMs": 250})
        assert service.config.sync.retry.max_retries == 5
        assert service.config.delivery.retry.max_retries == 5
        assert service.config.delivery.retry.base_delay_seconds == 0.25
        assert service.delivery.max_attempts == 5

    def test_config_loaded_from_store(self) -> None:
        store = StateStore()
        store.save_config(make_config(batchSize=9).to_dict())
        service = MonitorService(store=store, logger=AuditLogger(output_stream=io.StringIO()))
        assert service.config.probe.batch_size == 9
        assert service.config.sync.remote_endpoint == REMOTE
        run_async(service.close())


class TestCheckFlowProperty:
    """
    Property-based tests for the end-to-end check job.

    **Feature: url-monitor, Property 28: Every check cycle is recorded and delivered once**
    """

    def test_scenario_first_check_syncs_probes_and_delivers(self) -> None:
        network = MockNetwork()
        store = StateStore()
        service = make_service(network, store=store)
        received = []
        service.events.subscribe(received.append)

        report = run_async(service.run_check_now())

        assert network.list_fetches == 1
        statuses = [(r.url, r.status) for r in report.batch.results]
        assert statuses == [
            ("https://a.test/", ProbeStatus.ACTIVE),
            ("https://b.test/", ProbeStatus.INACTIVE),
            ("https://c.test/", ProbeStatus.ERROR),
        ]
        assert report.batch.results[2].error_kind == "dns_error"
        assert report.delivery.delivered

        (payload,) = network.payloads()
        assert payload["batchId"] == report.batch.batch_id
        assert payload["summary"] == {"total": 3, "active": 1, "inactive": 2}

        assert len(store.check_history()) == 1
        assert store.pending_deliveries() == []
        stats = store.load_service_stats()
        assert stats.total_checks == 1
        assert stats.successful_checks == 1
        assert stats.successful_callbacks == 1

        types = [event.type for event in received]
        assert types == [EventType.SYNC_SUCCESS, EventType.CHECK_COMPLETED, EventType.DELIVERY_SUCCESS]

    def test_callback_name_filter(self) -> None:
        network = MockNetwork()
        service = make_service(network, config=make_config(callbackName="alpha"))

        report = run_async(service.run_check_now())

        assert [r.url for r in report.batch.results] == ["https://a.test/", "https://c.test/"]

    def test_item_callback_url_used_without_configured_endpoint(self) -> None:
        items = [{"id": 1, "url": "https://a.test/", "callback_url": "https://hooks.test/item"}]
        network = MockNetwork(items=items)
        service = make_service(network, config=make_config(callbackEndpoint=None))

        report = run_async(service.run_check_now())

        assert report.delivery.delivered
        assert str(network.webhooks[0].url) == "https://hooks.test/item"

    def test_no_endpoint_means_no_delivery(self) -> None:
        network = MockNetwork(items=[{"id": 1, "url": "https://a.test/"}])
        service = make_service(network, config=make_config(callbackEndpoint=None))

        report = run_async(service.run_check_now())

        assert report.delivery is None
        assert network.webhooks == []
        assert any(entry["level"] == "warn" for entry in service.recent_logs())

    def test_failed_sync_without_snapshot_skips_check(self) -> None:
        network = MockNetwork(items={"unexpected": True})
        service = make_service(network, config=make_config(maxRetries=1))

        assert run_async(service.run_check_now()) is None
        assert network.webhooks == []

    def test_existing_snapshot_is_not_refetched(self) -> None:
        network = MockNetwork()
        service = make_service(network)

        async def run_test():
            await service.run_sync_now()
            await service.run_check_now()

        run_async(run_test())
        assert network.list_fetches == 1

    def test_new_remote_endpoint_is_synced_before_checking(self) -> None:
        network = MockNetwork()
        store = StateStore()
        service = make_service(network, store=store)

        async def run_test():
            await service.run_check_now()
            service.configure({"remoteEndpoint": "https://list.test/v2"})
            return await service.run_check_now()

        report = run_async(run_test())

        assert network.list_fetches == 2
        assert report.batch.summary.total == 3
        assert store.load_snapshot().source == "https://list.test/v2"
        assert service.status()["snapshot"]["source"] == "https://list.test/v2"

    @given(active=st.integers(min_value=0, max_value=4), down=st.integers(min_value=0, max_value=4))
    @settings(max_examples=50, deadline=None)
    def test_check_success_counts_active_targets(self, active: int, down: int) -> None:
        """
        Property 28: Check accounting.

        *For any* mix of healthy and failing targets, a check SHALL count as
        successful exactly when at least one target is active or there are
        no targets.
        """
        items = [{"id": i, "url": f"https://up{i}.test/"} for i in range(active)]
        items += [{"id": 100 + i, "url": f"https://down{i}.test/"} for i in range(down)]
        statuses = {f"up{i}.test": 200 for i in range(active)}
        statuses.update({f"down{i}.test": 503 for i in range(down)})
        store = StateStore()
        service = make_service(MockNetwork(items=items, statuses=statuses), store=store)

        report = run_async(service.run_check_now())

        stats = store.load_service_stats()
        assert report.batch.summary.total == active + down
        assert report.batch.summary.active == active
        assert stats.total_checks == 1
        assert stats.successful_checks == (1 if active > 0 or down == 0 else 0)
        assert (report.delivery is not None) == (active + down > 0)


class TestLifecycle:
    """Start, wake-up, replay and status."""

    def test_start_requires_remote_endpoint(self) -> None:
        config = make_config()
        config.sync.remote_endpoint = None
        service = make_service(MockNetwork(), config=config)

        with pytest.raises(ConfigError) as exc_info:
            run_async(service.start())
        assert exc_info.value.code == "missing_endpoint"

    def test_start_runs_both_jobs_and_persists_flags(self) -> None:
        network = MockNetwork()
        store = StateStore()
        service = make_service(network, store=store, sleep=None)

        async def run_test():
            await service.start()
            for _ in range(200):
                await asyncio.sleep(0)
                if store.check_history():
                    break
            assert service.scheduler.has_live_timer(JobName.SYNC.value)
            assert service.scheduler.has_live_timer(JobName.CHECK.value)
            await service.close()

        run_async(run_test())

        assert store.enabled_jobs() == [JobName.CHECK.value, JobName.SYNC.value]
        assert len(store.check_history()) == 1
        assert not service.scheduler.has_live_timer(JobName.CHECK.value)

    def test_stop_clears_flags(self) -> None:
        store = StateStore()
        service = make_service(MockNetwork(), store=store, sleep=None)

        async def run_test():
            await service.start()
            service.stop()
            await service.close()

        run_async(run_test())
        assert store.enabled_jobs() == []

    def test_handle_wake_rearms_and_checks(self) -> None:
        network = MockNetwork()
        store = StateStore()
        store.set_job_enabled(JobName.CHECK.value, True, 900.0)
        service = make_service(network, store=store, sleep=None)

        async def run_test():
            report = await service.handle_wake()
            assert service.scheduler.has_live_timer(JobName.CHECK.value)
            assert not service.scheduler.has_live_timer(JobName.SYNC.value)
            await service.close()
            return report

        report = run_async(run_test())
        assert report.batch.summary.total == 3
        assert len(network.webhooks) == 1

    def test_replay_failed_deliveries_updates_stats(self) -> None:
        store = StateStore()
        store.archive_failed_delivery(
            DeliveryAttempt(
                batch=CheckBatch(batch_id="old", results=[], summary=CheckSummary.of([]), at="t"),
                endpoint=CALLBACK,
                attempts_made=3,
                next_attempt_at="t",
                created_at="t",
            )
        )
        network = MockNetwork()
        service = make_service(network, store=store)

        (outcome,) = run_async(service.replay_failed_deliveries())

        assert outcome.delivered
        assert store.failed_deliveries() == []
        assert store.load_service_stats().successful_callbacks == 1
        assert network.payloads()[0]["batchId"] == "old"

    def test_handle_wake_resumes_pending_delivery_and_counts_it(self) -> None:
        store = StateStore()
        store.add_pending_delivery(
            DeliveryAttempt(
                batch=CheckBatch(batch_id="left-over", results=[], summary=CheckSummary.of([]), at="t"),
                endpoint=CALLBACK,
                attempts_made=1,
                next_attempt_at="t",
                created_at="t",
            )
        )
        network = MockNetwork()
        service = make_service(network, store=store)

        async def run_test():
            report = await service.handle_wake()
            await service.close()
            return report

        report = run_async(run_test())

        assert report.delivery.delivered
        assert network.payloads()[0]["batchId"] == "left-over"
        assert len(network.webhooks) == 2
        assert store.pending_deliveries() == []
        stats = store.load_service_stats()
        assert stats.successful_callbacks == 2
        assert stats.total_checks == 1

    def test_status_and_reset(self) -> None:
        store = StateStore()
        service = make_service(MockNetwork(), store=store)
        run_async(service.run_check_now())

        status = service.status()
        assert status["snapshot"]["items"] == 3
        assert status["pending_deliveries"] == 0
        assert status["failed_deliveries"] == 0
        assert status["jobs"]["check"]["runs"] == 1
        assert status["service_stats"]["total_checks"] == 1
        assert status["sync_stats"]["successful_syncs"] == 1
        assert status["device"]["id"] == store.device_id()
        assert "hmac_secret" not in json.dumps(status)

        service.reset_stats()
        assert store.load_service_stats().total_checks == 0
        assert store.load_sync_stats().total_syncs == 0
        assert len(service.sync_history()) == 1
        assert len(service.check_history()) == 1


class ReadOnlyBackend:
    """Backend whose reads work and whose writes fail, like a full disk."""

    def __init__(self, inner: MemoryStore) -> None:
        self.inner = inner

    def get(self, key):
        return self.inner.get(key)

    def set(self, key, value):
        raise OSError("No space left on device")

    def delete(self, key):
        raise OSError("No space left on device")

    def keys(self):
        return self.inner.keys()


class TestStoreFailureProperty:
    """
    Property-based tests for degraded persistence.

    **Feature: url-monitor, Property 36: Store write failures never abort a check cycle**
    """

    @given(active=st.integers(min_value=1, max_value=4))
    @settings(max_examples=20, deadline=None)
    def test_check_completes_when_writes_fail(self, active: int) -> None:
        """
        Property 36: Degraded persistence.

        *For any* item list, a check against a store that rejects writes
        SHALL still return a CheckReport with a delivery outcome, and each
        rejected write SHALL be logged as an error.
        """
        items = [{"id": i, "url": f"https://up{i}.test/"} for i in range(active)]
        network = MockNetwork(items=items, statuses={f"up{i}.test": 200 for i in range(active)})
        inner = MemoryStore()
        seeding = make_service(network, store=StateStore(inner))
        assert run_async(seeding.run_sync_now()).success
        run_async(seeding.close())

        service = make_service(network, store=StateStore(ReadOnlyBackend(inner)))

        async def run_test():
            report = await service.run_check_now()
            await service.close()
            return report

        report = run_async(run_test())

        assert report is not None
        assert report.batch.summary.active == active
        assert report.delivery.delivered
        assert len(network.webhooks) == 1

        errors = [entry["message"] for entry in service.recent_logs() if entry["level"] == "error"]
        assert "Check history could not be persisted" in errors
        assert "Delivery bookkeeping could not be persisted" in errors
        assert "Statistics could not be persisted" in errors
