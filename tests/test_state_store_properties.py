"""
Property-based tests for the State Store module.

Uses Hypothesis for property-based testing to verify persistence round
trips, tamper detection and the bounded histories and delivery queues.
"""

import json
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from url_monitor.diff_engine import build_items, fingerprint
from url_monitor.enums import ProbeStatus
from url_monitor.exceptions import StoreError, TamperingError
from url_monitor.models import (
    CheckBatch,
    CheckSummary,
    DeliveryAttempt,
    ProbeResult,
    Snapshot,
    SyncStats,
)
from url_monitor.store import JsonFileStore, KeyValueStore, MemoryStore, StateStore


# Strategies for generating test data

json_scalar = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-10**6, max_value=10**6),
    st.text(max_size=20),
)

json_value = st.recursive(
    json_scalar,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(st.text(max_size=8), children, max_size=4),
    ),
    max_leaves=10,
)


@st.composite
def batch_strategy(draw, batch_id=None) -> CheckBatch:
    """Generate check batches with a few probe results."""
    count = draw(st.integers(min_value=0, max_value=4))
    results = [
        ProbeResult(
            identity=f"id:{i}",
            url=f"https://host{i}.test/",
            status=draw(st.sampled_from(list(ProbeStatus))),
            latency_ms=draw(st.integers(min_value=0, max_value=30000)),
            at="2025-01-01T00:00:00+00:00",
            status_code=draw(st.one_of(st.none(), st.sampled_from([200, 404, 500]))),
        )
        for i in range(count)
    ]
    return CheckBatch(
        batch_id=batch_id or draw(st.uuids()).hex,
        results=results,
        summary=CheckSummary.of(results),
        at="2025-01-01T00:00:00+00:00",
    )


def make_attempt(batch_id: str, attempts_made: int = 0) -> DeliveryAttempt:
    return DeliveryAttempt(
        batch=CheckBatch(
            batch_id=batch_id,
            results=[],
            summary=CheckSummary.of([]),
            at="2025-01-01T00:00:00+00:00",
        ),
        endpoint="https://hooks.test/cb",
        attempts_made=attempts_made,
        next_attempt_at="2025-01-01T00:00:00+00:00",
        created_at="2025-01-01T00:00:00+00:00",
    )


class TestMemoryStoreProperty:
    """
    Property-based tests for the in-memory backend.

    **Feature: url-monitor, Property 5: Stored values are isolated from callers**
    """

    @given(key=st.text(min_size=1, max_size=10), value=json_value)
    @settings(max_examples=100, deadline=None)
    def test_round_trip(self, key: str, value) -> None:
        """
        Property 5: Round trip.

        *For any* JSON-compatible value, get SHALL return what set stored.
        """
        store = MemoryStore()
        store.set(key, value)
        assert store.get(key) == value

    def test_mutating_a_read_value_does_not_change_the_store(self) -> None:
        store = MemoryStore()
        store.set("items", [{"id": 1}])
        value = store.get("items")
        value.append({"id": 2})
        assert store.get("items") == [{"id": 1}]

    def test_delete_and_keys(self) -> None:
        store = MemoryStore({"b": 1, "a": 2})
        assert store.keys() == ["a", "b"]
        store.delete("a")
        store.delete("missing")
        assert store.keys() == ["b"]
        assert store.get("a") is None

    def test_backends_satisfy_protocol(self) -> None:
        assert isinstance(MemoryStore(), KeyValueStore)
        with tempfile.TemporaryDirectory() as tmpdir:
            assert isinstance(JsonFileStore(Path(tmpdir) / "s.json", "secret"), KeyValueStore)


class TestJsonFileStoreProperty:
    """
    Property-based tests for the HMAC-protected file backend.

    **Feature: url-monitor, Property 6: File state survives restarts and detects tampering**
    """

    @given(
        entries=st.dictionaries(st.text(min_size=1, max_size=10), json_value, max_size=5),
        secret=st.text(min_size=1, max_size=32),
    )
    @settings(max_examples=50, deadline=None)
    def test_values_survive_a_new_instance(self, entries: dict, secret: str) -> None:
        """
        Property 6: Persistence round trip.

        *For any* set of entries, a fresh store on the same file with the
        same secret SHALL read back every entry.
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            store = JsonFileStore(path, secret)
            for key, value in entries.items():
                store.set(key, value)

            reopened = JsonFileStore(path, secret)
            for key, value in entries.items():
                assert reopened.get(key) == value
            assert reopened.keys() == sorted(entries)

    def test_modified_file_raises_tampering_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            JsonFileStore(path, "secret").set("device_id", "abc")

            document = json.loads(path.read_text(encoding="utf-8"))
            document["data"]["device_id"] = "forged"
            path.write_text(json.dumps(document), encoding="utf-8")

            with pytest.raises(TamperingError) as exc_info:
                JsonFileStore(path, "secret").get("device_id")
            assert exc_info.value.code == "hmac_mismatch"

    def test_wrong_secret_raises_tampering_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            JsonFileStore(path, "secret").set("key", 1)
            with pytest.raises(TamperingError):
                JsonFileStore(path, "other").get("key")

    def test_corrupt_file_raises_store_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            path.write_text("{not json", encoding="utf-8")
            with pytest.raises(StoreError) as exc_info:
                JsonFileStore(path, "secret").get("key")
            assert exc_info.value.code == "parse_error"

    def test_missing_secret_is_rejected(self) -> None:
        with pytest.raises(StoreError):
            JsonFileStore(Path("unused.json"), "")

    def test_no_temporary_file_left_behind(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "state.json"
            JsonFileStore(path, "secret").set("key", {"a": 1})
            assert path.exists()
            assert sorted(p.name for p in path.parent.iterdir()) == ["state.json"]

    def test_instances_sharing_a_file_keep_each_others_writes(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            runner = StateStore(JsonFileStore(path, "secret"))
            one_shot = StateStore(JsonFileStore(path, "secret"))

            runner.save_config({"sync": {"remote_endpoint": "https://list.test/items"}})
            one_shot.set_job_enabled("check", True, 60.0)
            runner.save_config({"sync": {"remote_endpoint": "https://list.test/v2"}})

            fresh = StateStore(JsonFileStore(path, "secret"))
            assert fresh.enabled_jobs() == ["check"]
            assert fresh.load_config()["sync"]["remote_endpoint"] == "https://list.test/v2"
            assert runner.job_enabled("check")


class TestStateStoreSnapshotProperty:
    """
    Property-based tests for snapshot persistence.

    **Feature: url-monitor, Property 7: Snapshots are replaced as a whole**
    """

    @given(ids=st.lists(st.integers(min_value=1, max_value=1000), max_size=8, unique=True))
    @settings(max_examples=100, deadline=None)
    def test_snapshot_round_trip(self, ids: list[int]) -> None:
        """
        Property 7: Snapshot round trip.

        *For any* item list, the loaded snapshot SHALL carry the same items,
        identities and fingerprint.
        """
        items = build_items([{"id": i, "url": f"https://h{i}.test/", "tag": i % 3} for i in ids])
        snapshot = Snapshot(items=items, fingerprint=fingerprint(items), captured_at="t0")

        store = StateStore()
        store.save_snapshot(snapshot)
        loaded = store.load_snapshot()

        assert [item.identity for item in loaded.items] == [item.identity for item in items]
        assert [item.to_dict() for item in loaded.items] == [item.to_dict() for item in items]
        assert loaded.fingerprint == snapshot.fingerprint
        assert loaded.captured_at == "t0"

    def test_missing_snapshot_is_none(self) -> None:
        assert StateStore().load_snapshot() is None

    def test_identities_rederived_for_older_records(self) -> None:
        backend = MemoryStore({
            "snapshot": {
                "items": [{"id": 3, "url": "https://a.test"}, {"url": "https://b.test"}],
                "fingerprint": "f",
                "timestamp": "t",
            }
        })
        loaded = StateStore(backend).load_snapshot()
        assert [item.identity for item in loaded.items] == ["id:3", "url:https://b.test"]

    def test_snapshot_is_scoped_to_its_source(self) -> None:
        store = StateStore()
        items = build_items([{"id": 1, "url": "https://a.test"}])
        store.save_snapshot(
            Snapshot(items=items, fingerprint=fingerprint(items), captured_at="t", source="https://list.test/a")
        )

        assert store.load_snapshot("https://list.test/a").source == "https://list.test/a"
        assert store.load_snapshot("https://list.test/b") is None
        assert store.load_snapshot() is not None

    def test_snapshot_without_source_is_absent_for_a_named_source(self) -> None:
        backend = MemoryStore({"snapshot": {"items": [], "fingerprint": "f", "timestamp": "t"}})
        store = StateStore(backend)
        assert store.load_snapshot("https://list.test/a") is None
        assert store.load_snapshot().source is None

    def test_clear_snapshot(self) -> None:
        store = StateStore()
        store.save_snapshot(Snapshot(items=[], fingerprint="0", captured_at="t"))
        store.clear_snapshot()
        assert store.load_snapshot() is None


class TestBoundedHistoryProperty:
    """
    Property-based tests for bounded histories and the failed log.

    **Feature: url-monitor, Property 8: Histories keep only the newest entries**
    """

    @given(
        limit=st.integers(min_value=1, max_value=10),
        count=st.integers(min_value=0, max_value=30),
    )
    @settings(max_examples=100, deadline=None)
    def test_check_history_is_capped(self, limit: int, count: int) -> None:
        """
        Property 8: Check history cap.

        *For any* number of appended entries, the history SHALL hold the
        newest ``min(count, limit)`` entries in insertion order.
        """
        store = StateStore(history_limit=limit)
        for i in range(count):
            store.append_check_history({"n": i})
        history = store.check_history()
        assert [entry["n"] for entry in history] == list(range(count))[-limit:]
        assert len(history) == min(count, limit)

    @given(count=st.integers(min_value=0, max_value=25))
    @settings(max_examples=50, deadline=None)
    def test_sync_history_is_capped_at_ten(self, count: int) -> None:
        """*For any* number of syncs, at most ten entries SHALL be kept."""
        store = StateStore()
        for i in range(count):
            store.append_sync_history({"n": i})
        history = store.sync_history()
        assert len(history) == min(count, 10)
        if count:
            assert history[-1]["n"] == count - 1

    @given(
        limit=st.integers(min_value=1, max_value=5),
        count=st.integers(min_value=0, max_value=15),
    )
    @settings(max_examples=100, deadline=None)
    def test_failed_log_evicts_oldest(self, limit: int, count: int) -> None:
        """
        Property 8b: FIFO failed log.

        *For any* number of archived deliveries, the failed log SHALL keep
        the newest ``limit`` entries.
        """
        store = StateStore(failed_delivery_limit=limit)
        for i in range(count):
            store.archive_failed_delivery(make_attempt(f"batch-{i}"))
        kept = [attempt.attempt_id for attempt in store.failed_deliveries()]
        assert kept == [f"batch-{i}" for i in range(count)][-limit:]


class TestDeliveryQueueProperty:
    """
    Property-based tests for the pending delivery queue.

    **Feature: url-monitor, Property 9: Pending deliveries are keyed by batch id**
    """

    @given(batch=batch_strategy())
    @settings(max_examples=100, deadline=None)
    def test_pending_round_trip(self, batch: CheckBatch) -> None:
        """
        Property 9: Pending round trip.

        *For any* batch, a queued attempt SHALL be read back with the same
        results and summary.
        """
        attempt = DeliveryAttempt(
            batch=batch,
            endpoint="https://hooks.test/cb",
            attempts_made=1,
            next_attempt_at="t1",
            created_at="t0",
            last_error="HTTP 500",
        )
        store = StateStore()
        store.add_pending_delivery(attempt)

        (loaded,) = store.pending_deliveries()
        assert loaded.attempt_id == batch.batch_id
        assert loaded.batch.results == batch.results
        assert loaded.batch.summary == batch.summary
        assert loaded.last_error == "HTTP 500"

    def test_add_replaces_same_batch(self) -> None:
        store = StateStore()
        store.add_pending_delivery(make_attempt("a", 0))
        store.add_pending_delivery(make_attempt("a", 2))
        pending = store.pending_deliveries()
        assert len(pending) == 1
        assert pending[0].attempts_made == 2

    def test_update_and_remove(self) -> None:
        store = StateStore()
        store.add_pending_delivery(make_attempt("a"))
        store.add_pending_delivery(make_attempt("b"))

        store.update_pending_delivery(make_attempt("b", 3))
        assert [p.attempts_made for p in store.pending_deliveries()] == [0, 3]

        store.remove_pending_delivery("a")
        assert [p.attempt_id for p in store.pending_deliveries()] == ["b"]

    def test_update_unknown_inserts(self) -> None:
        store = StateStore()
        store.update_pending_delivery(make_attempt("new", 1))
        assert [p.attempt_id for p in store.pending_deliveries()] == ["new"]

    def test_remove_failed_delivery(self) -> None:
        store = StateStore()
        store.archive_failed_delivery(make_attempt("a"))
        store.archive_failed_delivery(make_attempt("b"))
        store.remove_failed_delivery("a")
        assert [f.attempt_id for f in store.failed_deliveries()] == ["b"]


class TestStateStoreMisc:
    """Jobs, device id, statistics and backend failures."""

    def test_job_flags(self) -> None:
        store = StateStore()
        assert not store.job_enabled("sync")
        store.set_job_enabled("sync", True, 60.0)
        store.set_job_enabled("check", False)
        assert store.job_enabled("sync")
        assert store.job_interval("sync") == 60.0
        assert store.enabled_jobs() == ["sync"]

    def test_device_id_is_stable_across_instances(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "state.json"
            first = StateStore(JsonFileStore(path, "secret")).device_id()
            second = StateStore(JsonFileStore(path, "secret")).device_id()
            assert first == second

    def test_reset_stats(self) -> None:
        store = StateStore()
        stats = SyncStats()
        stats.record_failure("t")
        store.save_sync_stats(stats)
        store.reset_stats()
        assert store.load_sync_stats() == SyncStats()

    def test_backend_failures_surface_as_store_error(self) -> None:
        class BrokenBackend:
            def get(self, key):
                raise OSError("disk gone")

            def set(self, key, value):
                raise OSError("disk gone")

            def delete(self, key):
                raise OSError("disk gone")

            def keys(self):
                return []

        store = StateStore(BrokenBackend())
        with pytest.raises(StoreError) as exc_info:
            store.check_history()
        assert exc_info.value.code == "read_failed"
        with pytest.raises(StoreError):
            store.save_config({})
