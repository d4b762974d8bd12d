"""
Error kinds raised across the milestone runtime.

Only SourceUnavailable is cycle-fatal. Everything else is recovered per event
by the tracker and logged.
"""

from __future__ import annotations


class MilestoneError(Exception):
    """Base class for all milestone runtime errors."""


class ConfigError(MilestoneError):
    """Required configuration is missing or unusable."""


class SourceUnavailable(MilestoneError):
    """The snapshot source could not be queried; the cycle is abandoned."""


class StoreError(MilestoneError):
    def __init__(self, event_id: str, message: str):
        super().__init__(f"[{event_id}] {message}")
        self.event_id = event_id


class StoreReadFailure(StoreError):
    pass


class StoreWriteFailure(StoreError):
    pass


class EventAlreadyTracked(StoreWriteFailure):
    """insert() was called for an event_id that already has a record."""

    def __init__(self, event_id: str):
        super().__init__(event_id, "event is already tracked")


class NotifyFailure(MilestoneError):
    pass
