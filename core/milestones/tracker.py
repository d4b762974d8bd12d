from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from core.milestones.engine import Decision, Ignore, Notify, StartTracking, UpdateOnly, decide
from core.milestones.errors import (
    EventAlreadyTracked,
    SourceUnavailable,
    StoreReadFailure,
    StoreWriteFailure,
)
from core.milestones.models import Snapshot, TrackedEvent
from shared.logging.logger import get_logger

log = get_logger("core.milestones.tracker")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotSource(Protocol):
    async def fetch_all(self) -> List[Snapshot]: ...


class EventStore(Protocol):
    def get(self, event_id: str) -> Optional[TrackedEvent]: ...

    def insert(
        self,
        event_id: str,
        display_name: str,
        count: int,
        milestone: int,
        *,
        source_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrackedEvent: ...

    def update(self, event_id: str, **fields: Any) -> Optional[TrackedEvent]: ...


class Notifier(Protocol):
    async def send(self, display_name: str, count: int) -> bool: ...


@dataclass
class CycleReport:
    """Per-cycle counters. Observational only."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    aborted: bool = False
    seen: int = 0
    started: int = 0
    notified: int = 0
    updated: int = 0
    ignored: int = 0
    skipped: int = 0
    errors: int = 0
    notify_failures: int = 0
    notifications: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class MilestoneTracker:
    """
    Runs one fetch/decide/apply pass over every event.

    Notification policy is at-most-once: the new milestone is persisted
    before the announcement goes out, and a failed delivery is not retried.
    """

    def __init__(
        self,
        source: SnapshotSource,
        store: EventStore,
        notifier: Notifier,
        *,
        concurrency: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._source = source
        self._store = store
        self._notifier = notifier
        self._concurrency = max(1, int(concurrency))
        self._clock = clock or _utcnow

        # event_id -> lock; at most one in-flight mutation per event
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------

    def _lock_for(self, event_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            # asyncio locks belong to one event loop
            self._locks = {}
            self._locks_loop = loop

        lock = self._locks.get(event_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[event_id] = lock
        return lock

    @staticmethod
    def _filter(snapshots: List[Snapshot], report: CycleReport) -> List[Snapshot]:
        accepted: List[Snapshot] = []
        seen_ids: Dict[str, Snapshot] = {}

        for snapshot in snapshots:
            if (
                not snapshot.event_id
                or not (snapshot.display_name or "").strip()
                or snapshot.total_count <= 0
            ):
                log.debug(f"Skipping snapshot without id, name or signups: {snapshot}")
                report.skipped += 1
                continue

            first = seen_ids.get(snapshot.event_id)
            if first is not None:
                log.warning(
                    f"[{snapshot.event_id}] Duplicate event identity in one snapshot "
                    f"('{first.display_name}'={first.total_count}, "
                    f"'{snapshot.display_name}'={snapshot.total_count}); "
                    "keeping the first row"
                )
                report.skipped += 1
                continue

            seen_ids[snapshot.event_id] = snapshot
            accepted.append(snapshot)

        return accepted

    # ------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        report = CycleReport(started_at=self._clock())
        log.info(f"Checking milestones at {report.started_at.isoformat()}")

        try:
            snapshots = await self._source.fetch_all()
        except SourceUnavailable as e:
            log.error(f"Snapshot source unavailable; cycle skipped: {e}")
            report.aborted = True
            report.finished_at = self._clock()
            return report

        snapshots = self._filter(list(snapshots or []), report)
        if not snapshots:
            log.info("No events found for milestone checking")
            report.finished_at = self._clock()
            return report

        log.info(f"Processing {len(snapshots)} events for milestone checks")

        if self._concurrency == 1:
            for snapshot in snapshots:
                await self.process(snapshot, report)
        else:
            semaphore = asyncio.Semaphore(self._concurrency)

            async def _bounded(snapshot: Snapshot) -> None:
                async with semaphore:
                    await self.process(snapshot, report)

            await asyncio.gather(*(_bounded(s) for s in snapshots))

        report.finished_at = self._clock()
        log.info(
            f"Milestone cycle complete: seen={report.seen} started={report.started} "
            f"notified={report.notified} updated={report.updated} "
            f"ignored={report.ignored} skipped={report.skipped} "
            f"errors={report.errors} notify_failures={report.notify_failures}"
        )
        return report

    # ------------------------------------------------------------

    async def process(self, snapshot: Snapshot, report: CycleReport) -> Optional[Decision]:
        """
        Decide and apply for a single event. Failures are contained here so
        the rest of the cycle keeps going.
        """
        report.seen += 1
        event_id = snapshot.event_id

        async with self._lock_for(event_id):
            try:
                record = self._store.get(event_id)
            except StoreReadFailure as e:
                log.error(f"Skipping {snapshot.display_name}: {e}")
                report.errors += 1
                return None
            except Exception:
                log.exception(f"[{event_id}] Unexpected error while reading the stored record")
                report.errors += 1
                return None

            try:
                decision = decide(snapshot, record)
            except Exception:
                log.exception(f"[{event_id}] Unexpected error while deciding")
                report.errors += 1
                return None

            try:
                await self._apply(decision, report)
            except EventAlreadyTracked:
                log.warning(f"[{event_id}] Already tracked by a concurrent writer; skipped")
                report.skipped += 1
            except StoreWriteFailure as e:
                log.error(f"Error updating milestone for {snapshot.display_name}: {e}")
                report.errors += 1
            except Exception:
                log.exception(f"[{event_id}] Unexpected error while applying {decision.kind}")
                report.errors += 1

            return decision

    async def _apply(self, decision: Decision, report: CycleReport) -> None:
        snapshot = decision.snapshot
        now = self._clock()

        if isinstance(decision, Ignore):
            report.ignored += 1
            return

        if isinstance(decision, StartTracking):
            self._store.insert(
                snapshot.event_id,
                snapshot.display_name,
                snapshot.total_count,
                decision.milestone,
                source_key=snapshot.source_key,
                now=now,
            )
            report.started += 1
            log.info(
                f"Started tracking {snapshot.display_name} with {snapshot.total_count} "
                f"signups (milestone: {decision.milestone}, key: {snapshot.source_key})"
            )
            return

        if isinstance(decision, UpdateOnly):
            self._store.update(snapshot.event_id, **decision.changes(now))
            report.updated += 1
            log.debug(
                f"Updated {snapshot.display_name}: "
                f"{decision.previous_count} -> {snapshot.total_count} signups"
            )
            return

        if isinstance(decision, Notify):
            self._store.update(snapshot.event_id, **decision.changes(now))
            report.notified += 1
            report.notifications.append(
                {
                    "event_id": snapshot.event_id,
                    "display_name": snapshot.display_name,
                    "count": decision.count,
                    "milestone": decision.milestone,
                }
            )
            log.info(
                f"Milestone for {snapshot.display_name}: {decision.count} signups "
                f"(crossed milestone: {decision.milestone}, "
                f"previous: {decision.previous_milestone})"
            )

            try:
                delivered = await self._notifier.send(snapshot.display_name, decision.count)
            except Exception:
                log.exception(f"[{snapshot.event_id}] Notifier raised")
                delivered = False

            if not delivered:
                report.notify_failures += 1
                log.warning(
                    f"Notification for {snapshot.display_name} was not delivered; "
                    f"milestone {decision.milestone} stays recorded"
                )
            return

        raise TypeError(f"Unhandled decision type: {type(decision).__name__}")
