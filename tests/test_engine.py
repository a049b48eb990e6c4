import sqlite3
import threading
from datetime import timedelta

import pytest

from conftest import NOW, Clock, FakeResolver, failing
from dns_query import ResolutionError
from models import RecordType, Watch
from monitor.collect import collect_value
from monitor.engine import PollCoordinator, run_due_cycle


def test_first_successful_check_records_initial_value(store, watch, clock):
    coordinator = PollCoordinator(store, FakeResolver("1.2.3.4"), clock=clock)

    change = coordinator.check(watch)

    assert change is not None
    assert change.from_value is None
    assert change.to_value == "1.2.3.4"
    assert change.detected_at == NOW
    loaded = store.get_watch(watch.id)
    assert loaded.last_value == "1.2.3.4"
    assert loaded.last_checked_at == NOW
    assert loaded.next_check_at == NOW + timedelta(seconds=300)
    assert len(store.changes_for(watch.id)) == 1


def test_changed_value_records_from_and_to(store, watch, clock):
    coordinator = PollCoordinator(store, FakeResolver("192.168.1.1", "192.168.1.2"), clock=clock)
    coordinator.check(watch)
    clock.advance(minutes=5)

    change = coordinator.check(store.get_watch(watch.id))

    assert (change.from_value, change.to_value) == ("192.168.1.1", "192.168.1.2")
    assert store.get_watch(watch.id).last_value == "192.168.1.2"
    assert [c.to_value for c in store.changes_for(watch.id)] == ["192.168.1.2", "192.168.1.1"]


def test_unchanged_value_still_reschedules(store, watch, clock):
    coordinator = PollCoordinator(store, FakeResolver("1.2.3.4"), clock=clock)
    coordinator.check(watch)
    clock.advance(minutes=7)

    assert coordinator.check(store.get_watch(watch.id)) is None

    loaded = store.get_watch(watch.id)
    assert len(store.changes_for(watch.id)) == 1
    assert loaded.last_checked_at == clock.now
    assert loaded.next_check_at == clock.now + timedelta(seconds=300)


def test_failed_resolution_reschedules_without_change(store, watch, clock):
    coordinator = PollCoordinator(store, FakeResolver("1.2.3.4", failing("Timeout")), clock=clock)
    coordinator.check(watch)
    clock.advance(minutes=5)

    assert coordinator.check(store.get_watch(watch.id)) is None

    loaded = store.get_watch(watch.id)
    assert loaded.last_value == "1.2.3.4"
    assert loaded.last_checked_at == clock.now
    assert loaded.next_check_at == clock.now + timedelta(seconds=300)
    assert len(store.changes_for(watch.id)) == 1


def test_persistently_failing_watch_keeps_advancing(store, watch, clock):
    coordinator = PollCoordinator(store, FakeResolver(failing()), clock=clock)
    for _ in range(3):
        coordinator.check(store.get_watch(watch.id))
        assert store.get_watch(watch.id).next_check_at == clock.now + timedelta(seconds=300)
        clock.advance(minutes=5)
    assert store.changes_for(watch.id) == []
    assert store.get_watch(watch.id).last_value is None


def test_interval_comes_from_the_watch(store, clock):
    w = store.add_watch(Watch(domain="example.org", record_type="A", interval=timedelta(minutes=10), next_check_at=NOW))
    PollCoordinator(store, FakeResolver("1.1.1.1"), clock=clock).check(w)
    assert store.get_watch(w.id).next_check_at == NOW + timedelta(seconds=600)


def test_resolver_receives_watch_tuple(store, clock):
    w = store.add_watch(Watch(domain="example.com", record_type="mx", record_name="mail", next_check_at=NOW))
    resolver = FakeResolver("10 mail.example.com")
    PollCoordinator(store, resolver, clock=clock).check(w)
    assert resolver.calls == [("example.com", "MX", "mail")]
    assert store.get_watch(w.id).last_value == "10 mail.example.com"


def test_soa_watch_never_gets_a_value(store, clock):
    from dns_query import DnsResolver

    w = store.add_watch(Watch(domain="example.com", record_type=RecordType.SOA, next_check_at=NOW))
    coordinator = PollCoordinator(store, DnsResolver(query=lambda q, t: []), clock=clock)
    assert coordinator.check(w) is None
    loaded = store.get_watch(w.id)
    assert loaded.last_value is None
    assert loaded.next_check_at == NOW + timedelta(seconds=300)


def test_comparison_uses_stored_value_not_callers_copy(store, watch, clock):
    coordinator = PollCoordinator(store, FakeResolver("1.2.3.4"), clock=clock)
    stale = store.get_watch(watch.id)
    coordinator.check(watch)

    assert coordinator.check(stale) is None
    assert len(store.changes_for(watch.id)) == 1


def test_concurrent_checks_of_same_watch_record_one_change(store, watch):
    both_resolved = threading.Barrier(2)
    commit_order = []

    class SlowResolver:
        def resolve(self, domain, record_type, record_name):
            both_resolved.wait(timeout=5)
            return "1.2.3.4"

    class RecordingStore:
        def __init__(self, inner):
            self.inner = inner

        def with_watch_lock(self, watch_id, fn):
            def recording_fn(w, tx):
                updated = fn(w, tx)
                commit_order.append(updated.last_checked_at)
                return updated

            return self.inner.with_watch_lock(watch_id, recording_fn)

    recording = RecordingStore(store)
    resolver = SlowResolver()
    coordinators = [
        PollCoordinator(recording, resolver, clock=Clock(NOW)),
        PollCoordinator(recording, resolver, clock=Clock(NOW + timedelta(minutes=1))),
    ]
    results = []
    threads = [threading.Thread(target=lambda c=c: results.append(c.check(watch))) for c in coordinators]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1
    assert len(store.changes_for(watch.id)) == 1
    assert sorted(commit_order) == [NOW, NOW + timedelta(minutes=1)]
    loaded = store.get_watch(watch.id)
    assert loaded.last_checked_at == commit_order[-1]
    assert loaded.next_check_at == commit_order[-1] + timedelta(seconds=300)


def test_resolution_happens_outside_the_watch_lock(store, watch, clock):
    class LockCheckingResolver:
        def resolve(self, domain, record_type, record_name):
            done = threading.Event()

            def touch():
                store.with_watch_lock(watch.id, lambda w, tx: w)
                done.set()

            t = threading.Thread(target=touch)
            t.start()
            t.join(timeout=5)
            assert done.is_set()
            return "1.2.3.4"

    assert PollCoordinator(store, LockCheckingResolver(), clock=clock).check(watch) is not None


def test_storage_failure_propagates_and_watch_stays_due(watch, clock, store):
    class BrokenCommit:
        def __init__(self, inner):
            self.inner = inner

        def with_watch_lock(self, watch_id, fn):
            def failing_fn(w, tx):
                fn(w, tx)
                raise sqlite3.OperationalError("disk I/O error")

            return self.inner.with_watch_lock(watch_id, failing_fn)

    coordinator = PollCoordinator(BrokenCommit(store), FakeResolver("1.2.3.4"), clock=clock)
    with pytest.raises(sqlite3.OperationalError):
        coordinator.check(watch)
    assert [w.id for w in store.due_for_check(NOW)] == [watch.id]
    assert store.changes_for(watch.id) == []


def test_notifier_called_after_commit(store, watch, clock):
    seen = []

    def notify(w, change):
        seen.append((w.last_value, len(store.changes_for(w.id)), change.to_value))

    PollCoordinator(store, FakeResolver("1.2.3.4"), clock=clock, notify=notify).check(watch)
    assert seen == [("1.2.3.4", 1, "1.2.3.4")]


def test_notifier_failure_does_not_break_cycle(store, watch, clock):
    def notify(w, change):
        raise RuntimeError("webhook down")

    change = PollCoordinator(store, FakeResolver("1.2.3.4"), clock=clock, notify=notify).check(watch)
    assert change is not None
    assert store.get_watch(watch.id).last_value == "1.2.3.4"


def test_collect_value_maps_errors(watch):
    collected = collect_value(FakeResolver(ResolutionError("NXDOMAIN")), watch)
    assert not collected.ok
    assert collected.error == "NXDOMAIN"
    assert collect_value(FakeResolver("x"), watch).value == "x"


def test_run_due_cycle_checks_only_due_watches(store, clock):
    due = [
        store.add_watch(Watch(domain=f"d{i}.example.com", record_type="A", next_check_at=NOW - timedelta(seconds=i)))
        for i in range(4)
    ]
    later = store.add_watch(Watch(domain="later.example.com", record_type="A", next_check_at=NOW + timedelta(hours=1)))
    resolver = FakeResolver("10.0.0.1")
    coordinator = PollCoordinator(store, resolver, clock=clock)

    stats = run_due_cycle(store=store, coordinator=coordinator, max_workers=3)

    assert (stats.due, stats.checked, stats.changed, stats.failed) == (4, 4, 4, 0)
    assert sorted(d for d, _t, _n in resolver.calls) == sorted(w.domain for w in due)
    assert store.get_watch(later.id).last_value is None
    assert store.due_for_check(NOW) == []


def test_run_due_cycle_isolates_failures(store, clock):
    good = store.add_watch(Watch(domain="good.example.com", record_type="A", next_check_at=NOW))
    bad = store.add_watch(Watch(domain="bad.example.com", record_type="A", next_check_at=NOW))

    class Exploding:
        def resolve(self, domain, record_type, record_name):
            if domain.startswith("bad"):
                raise KeyError("unexpected")
            return "10.0.0.1"

    stats = run_due_cycle(store=store, coordinator=PollCoordinator(store, Exploding(), clock=clock), now=NOW)

    assert (stats.checked, stats.failed) == (1, 1)
    assert store.get_watch(good.id).last_value == "10.0.0.1"
    assert store.get_watch(bad.id).next_check_at == NOW


def test_run_due_cycle_with_nothing_due(store, clock):
    stats = run_due_cycle(store=store, coordinator=PollCoordinator(store, FakeResolver("x"), clock=clock))
    assert stats.due == 0 and stats.changes == []


def test_run_due_cycle_handles_watch_created_with_naive_time(store, clock):
    w = store.add_watch(Watch(domain="example.com", record_type="A", next_check_at=NOW.replace(tzinfo=None)))

    stats = run_due_cycle(store=store, coordinator=PollCoordinator(store, FakeResolver("1.2.3.4"), clock=clock))

    assert (stats.due, stats.checked, stats.changed, stats.failed) == (1, 1, 1, 0)
    assert store.get_watch(w.id).next_check_at == NOW + timedelta(seconds=300)
