import asyncio
import sqlite3

from core.milestones.engine import Notify
from core.milestones.errors import StoreReadFailure, StoreWriteFailure
from core.milestones.models import Snapshot
from core.milestones.tracker import CycleReport, MilestoneTracker


def test_first_cycle_tracks_silently(tracker, source, store, notifier):
    source.set(("Scrapyard Austin", 85), ("Scrapyard Boston", 8))

    report = asyncio.run(tracker.run_cycle())

    assert report.started == 2
    assert report.notified == 0
    assert notifier.sent == []
    assert store.get("Scrapyard Austin").last_milestone_notified == 80
    assert store.get("Scrapyard Boston").last_milestone_notified == 0


def test_crossing_notifies_exact_count(tracker, source, store, notifier, clock):
    source.set(("Scrapyard Austin", 58))
    asyncio.run(tracker.run_cycle())

    clock.advance(minutes=1)
    source.set(("Scrapyard Austin", 61))
    report = asyncio.run(tracker.run_cycle())

    assert report.notified == 1
    assert notifier.sent == [("Scrapyard Austin", 61)]
    record = store.get("Scrapyard Austin")
    assert record.last_milestone_notified == 60
    assert record.last_known_count == 61
    assert record.last_notified_at == clock.now


def test_count_change_without_crossing_updates_only(tracker, source, store, notifier):
    source.set(("Scrapyard Austin", 45))
    asyncio.run(tracker.run_cycle())

    source.set(("Scrapyard Austin", 52))
    report = asyncio.run(tracker.run_cycle())

    assert report.updated == 1
    assert notifier.sent == []
    record = store.get("Scrapyard Austin")
    assert record.last_known_count == 52
    assert record.last_milestone_notified == 40
    assert record.last_notified_at is None


def test_identical_cycles_are_idempotent(tracker, source, store, notifier, clock):
    source.set(("Scrapyard Austin", 45))
    asyncio.run(tracker.run_cycle())
    source.set(("Scrapyard Austin", 61))
    asyncio.run(tracker.run_cycle())
    before = store.get("Scrapyard Austin")

    clock.advance(minutes=5)
    report = asyncio.run(tracker.run_cycle())

    assert report.ignored == 1
    assert report.notified == 0
    assert report.updated == 0
    assert notifier.sent == [("Scrapyard Austin", 61)]
    assert store.get("Scrapyard Austin") == before


def test_tiny_events_never_notify(tracker, source, notifier):
    source.set(("Scrapyard Tiny", 8))
    asyncio.run(tracker.run_cycle())
    source.set(("Scrapyard Tiny", 9))
    report = asyncio.run(tracker.run_cycle())

    assert report.updated == 1
    assert notifier.sent == []


def test_source_unavailable_aborts_cycle(tracker, source, notifier):
    source.error = "warehouse down"

    report = asyncio.run(tracker.run_cycle())

    assert report.aborted
    assert report.seen == 0
    assert notifier.sent == []


def test_failed_delivery_still_advances_milestone(tracker, source, store, notifier):
    source.set(("Scrapyard Austin", 45))
    asyncio.run(tracker.run_cycle())

    notifier.succeed = False
    source.set(("Scrapyard Austin", 61))
    report = asyncio.run(tracker.run_cycle())

    assert report.notify_failures == 1
    assert store.get("Scrapyard Austin").last_milestone_notified == 60

    notifier.succeed = True
    report = asyncio.run(tracker.run_cycle())
    assert report.ignored == 1
    assert len(notifier.sent) == 1


def test_raising_notifier_does_not_break_cycle(source, store, clock):
    class ExplodingNotifier:
        async def send(self, display_name, count):
            raise RuntimeError("socket closed")

    tracker = MilestoneTracker(source, store, ExplodingNotifier(), clock=clock)
    source.set(("Scrapyard Austin", 45), ("Scrapyard Boston", 12))
    asyncio.run(tracker.run_cycle())

    source.set(("Scrapyard Austin", 61), ("Scrapyard Boston", 13))
    report = asyncio.run(tracker.run_cycle())

    assert report.notify_failures == 1
    assert report.updated == 1
    assert store.get("Scrapyard Austin").last_milestone_notified == 60


class FlakyStore:
    """Wraps a real store and fails reads or writes for chosen events."""

    def __init__(self, inner, *, fail_reads=(), fail_writes=()):
        self.inner = inner
        self.fail_reads = set(fail_reads)
        self.fail_writes = set(fail_writes)

    def get(self, event_id):
        if event_id in self.fail_reads:
            raise StoreReadFailure(event_id, "disk I/O error")
        return self.inner.get(event_id)

    def insert(self, event_id, *args, **kwargs):
        if event_id in self.fail_writes:
            raise StoreWriteFailure(event_id, "database is locked")
        return self.inner.insert(event_id, *args, **kwargs)

    def update(self, event_id, **fields):
        if event_id in self.fail_writes:
            raise StoreWriteFailure(event_id, "database is locked")
        return self.inner.update(event_id, **fields)


def test_read_failure_skips_only_that_event(source, store, notifier, clock):
    flaky = FlakyStore(store, fail_reads={"Scrapyard Austin"})
    tracker = MilestoneTracker(source, flaky, notifier, clock=clock)
    source.set(("Scrapyard Austin", 45), ("Scrapyard Boston", 12))

    report = asyncio.run(tracker.run_cycle())

    assert report.errors == 1
    assert report.started == 1
    assert store.get("Scrapyard Austin") is None
    assert store.get("Scrapyard Boston") is not None


def test_write_failure_on_notify_suppresses_send(source, store, notifier, clock):
    store.insert("Scrapyard Austin", "Scrapyard Austin", 45, 40)
    flaky = FlakyStore(store, fail_writes={"Scrapyard Austin"})
    tracker = MilestoneTracker(source, flaky, notifier, clock=clock)
    source.set(("Scrapyard Austin", 61))

    report = asyncio.run(tracker.run_cycle())

    assert report.errors == 1
    assert report.notified == 0
    assert notifier.sent == []
    assert store.get("Scrapyard Austin").last_milestone_notified == 40


def test_duplicate_identities_processed_once(tracker, source, store):
    source.rows = [
        Snapshot(event_id="Scrapyard Austin", display_name="Scrapyard Austin", total_count=30),
        Snapshot(event_id="Scrapyard Austin", display_name="Scrapyard Austin", total_count=90),
    ]

    report = asyncio.run(tracker.run_cycle())

    assert report.started == 1
    assert report.skipped == 1
    assert store.get("Scrapyard Austin").last_known_count == 30


def test_zero_count_rows_are_dropped(tracker, source, store):
    source.set(("Scrapyard Empty", 0), ("Scrapyard Austin", 11))

    report = asyncio.run(tracker.run_cycle())

    assert report.skipped == 1
    assert store.get("Scrapyard Empty") is None


def test_concurrent_processing_matches_sequential(source, store, notifier, clock):
    tracker = MilestoneTracker(source, store, notifier, concurrency=4, clock=clock)
    names = [f"Scrapyard {i}" for i in range(12)]
    source.set(*[(name, 45) for name in names])
    asyncio.run(tracker.run_cycle())

    source.set(*[(name, 61) for name in names])
    report = asyncio.run(tracker.run_cycle())

    assert report.notified == 12
    assert sorted(notifier.sent) == sorted((name, 61) for name in names)


def test_process_returns_decision(tracker, store):
    store.insert("Scrapyard Austin", "Scrapyard Austin", 95, 80)
    report = CycleReport(started_at=tracker._clock())

    decision = asyncio.run(
        tracker.process(
            Snapshot(event_id="Scrapyard Austin", display_name="Scrapyard Austin", total_count=100),
            report,
        )
    )

    assert isinstance(decision, Notify)
    assert report.notifications[0]["count"] == 100


def test_corrupt_record_skips_only_that_event(tmp_path, source, store, notifier, clock):
    path = tmp_path / "milestones.db"
    store.insert("Scrapyard Austin", "Scrapyard Austin", 45, 40)
    store.insert("Scrapyard Boston", "Scrapyard Boston", 11, 10)
    with sqlite3.connect(path) as conn:
        conn.execute(
            "UPDATE event_tracking SET last_updated_at = 'not-a-date' WHERE event_id = ?",
            ("Scrapyard Austin",),
        )

    source.set(("Scrapyard Austin", 61), ("Scrapyard Boston", 13))
    tracker = MilestoneTracker(source, store, notifier, clock=clock)

    report = asyncio.run(tracker.run_cycle())

    assert report.errors == 1
    assert report.updated == 1
    assert notifier.sent == []
    assert store.get("Scrapyard Boston").last_known_count == 13


def test_unexpected_read_error_is_contained(source, store, notifier, clock):
    class BrokenStore(FlakyStore):
        def get(self, event_id):
            if event_id == "Scrapyard Austin":
                raise KeyError("last_known_count")
            return self.inner.get(event_id)

    tracker = MilestoneTracker(source, BrokenStore(store), notifier, concurrency=2, clock=clock)
    source.set(("Scrapyard Austin", 45), ("Scrapyard Boston", 12))

    report = asyncio.run(tracker.run_cycle())

    assert report.errors == 1
    assert report.started == 1
    assert store.get("Scrapyard Boston") is not None


def test_same_event_processed_concurrently_mutates_once(tracker, store):
    snapshot = Snapshot(event_id="Scrapyard Austin", display_name="Scrapyard Austin", total_count=45)
    report = CycleReport(started_at=tracker._clock())

    async def scenario():
        return await asyncio.gather(
            tracker.process(snapshot, report),
            tracker.process(snapshot, report),
        )

    decisions = asyncio.run(scenario())

    assert sorted(d.kind for d in decisions) == ["ignore", "start_tracking"]
    assert report.started == 1
    assert report.ignored == 1
    assert report.skipped == 0
    assert report.errors == 0
    assert store.get("Scrapyard Austin").last_known_count == 45


def test_same_event_notify_is_sent_once_under_contention(source, store, clock):
    class SlowNotifier:
        def __init__(self):
            self.sent = []

        async def send(self, display_name, count):
            await asyncio.sleep(0)
            self.sent.append((display_name, count))
            return True

    notifier = SlowNotifier()
    tracker = MilestoneTracker(source, store, notifier, concurrency=2, clock=clock)
    store.insert("Scrapyard Austin", "Scrapyard Austin", 45, 40)
    snapshot = Snapshot(event_id="Scrapyard Austin", display_name="Scrapyard Austin", total_count=61)
    report = CycleReport(started_at=clock())

    async def scenario():
        await asyncio.gather(
            tracker.process(snapshot, report),
            tracker.process(snapshot, report),
        )

    asyncio.run(scenario())

    assert notifier.sent == [("Scrapyard Austin", 61)]
    assert report.notified == 1
    assert report.ignored == 1


def test_blank_names_are_dropped(tracker, source, store, notifier):
    source.rows = [
        Snapshot(event_id="austin", display_name="   ", total_count=61, source_key="austin"),
        Snapshot(event_id="Scrapyard Boston", display_name="Scrapyard Boston", total_count=12),
    ]

    report = asyncio.run(tracker.run_cycle())

    assert report.skipped == 1
    assert report.started == 1
    assert store.get("austin") is None
