"""
Milestone detection package.

thresholds and engine are pure; tracker is the only module that touches the
store and the notifier.
"""

from .engine import Decision, Ignore, Notify, StartTracking, UpdateOnly, decide
from .models import Snapshot, TrackedEvent, derive_event_id
from .thresholds import milestone_for, passes_dampening
from .tracker import CycleReport, MilestoneTracker

__all__ = [
    "CycleReport",
    "Decision",
    "Ignore",
    "MilestoneTracker",
    "Notify",
    "Snapshot",
    "StartTracking",
    "TrackedEvent",
    "UpdateOnly",
    "decide",
    "derive_event_id",
    "milestone_for",
    "passes_dampening",
]
