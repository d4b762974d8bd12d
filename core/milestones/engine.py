"""
Milestone decision engine.

Pure logic:
- No I/O
- No async
- No store or notifier awareness

decide() maps one snapshot plus the stored record (or None) onto exactly one
decision. Applying the decision is the tracker's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Union

from core.milestones.models import Snapshot, TrackedEvent
from core.milestones.thresholds import milestone_for, passes_dampening


@dataclass(frozen=True)
class Ignore:
    snapshot: Snapshot

    kind: ClassVar[str] = "ignore"


@dataclass(frozen=True)
class StartTracking:
    """First sighting. Always silent, whatever the count."""

    snapshot: Snapshot
    milestone: int

    kind: ClassVar[str] = "start_tracking"


@dataclass(frozen=True)
class Notify:
    snapshot: Snapshot
    milestone: int
    previous_milestone: int

    kind: ClassVar[str] = "notify"

    @property
    def count(self) -> int:
        # The exact count is announced, never the rounded milestone.
        return self.snapshot.total_count

    def changes(self, now: datetime) -> Dict[str, Any]:
        return {
            "display_name": self.snapshot.display_name,
            "source_key": self.snapshot.source_key,
            "last_known_count": self.snapshot.total_count,
            "last_milestone_notified": self.milestone,
            "last_notified_at": now,
            "last_updated_at": now,
        }


@dataclass(frozen=True)
class UpdateOnly:
    snapshot: Snapshot
    previous_count: int

    kind: ClassVar[str] = "update_only"

    def changes(self, now: datetime) -> Dict[str, Any]:
        return {
            "display_name": self.snapshot.display_name,
            "source_key": self.snapshot.source_key,
            "last_known_count": self.snapshot.total_count,
            "last_updated_at": now,
        }


Decision = Union[Ignore, StartTracking, Notify, UpdateOnly]


def decide(snapshot: Snapshot, record: Optional[TrackedEvent]) -> Decision:
    count = snapshot.total_count
    milestone = milestone_for(count)

    if record is None:
        return StartTracking(snapshot=snapshot, milestone=milestone)

    previous_milestone = record.last_milestone_notified

    if passes_dampening(previous_milestone, milestone, count):
        return Notify(
            snapshot=snapshot,
            milestone=milestone,
            previous_milestone=previous_milestone,
        )

    if count != record.last_known_count:
        return UpdateOnly(snapshot=snapshot, previous_count=record.last_known_count)

    return Ignore(snapshot=snapshot)
