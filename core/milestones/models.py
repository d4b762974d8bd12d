from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

IDENTITY_FIELDS = ("name", "source_key")

_WHITESPACE = re.compile(r"\s+")


def derive_event_id(
    display_name: str,
    source_key: Optional[str] = None,
    *,
    identity_field: str = "name",
) -> str:
    """
    Derive the stable identity for an event.

    With identity_field="name" the display name is the key (whitespace
    normalized, case preserved). With identity_field="source_key" the source
    system's own key is used, falling back to the name when a row has none.
    Name-keyed identity breaks on renames and on two events sharing a name.
    """
    if identity_field not in IDENTITY_FIELDS:
        raise ValueError(f"Unknown identity field: {identity_field}")

    if identity_field == "source_key" and source_key and source_key.strip():
        return source_key.strip()

    return _WHITESPACE.sub(" ", display_name or "").strip()


@dataclass(frozen=True)
class Snapshot:
    event_id: str
    display_name: str
    total_count: int
    source_key: Optional[str] = None


@dataclass
class TrackedEvent:
    event_id: str
    display_name: str
    last_known_count: int
    last_milestone_notified: int
    last_updated_at: datetime
    last_notified_at: Optional[datetime] = None
    source_key: Optional[str] = None
