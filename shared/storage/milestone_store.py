from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

from core.milestones.errors import (
    EventAlreadyTracked,
    StoreReadFailure,
    StoreWriteFailure,
)
from core.milestones.models import TrackedEvent
from shared.logging.logger import get_logger

log = get_logger("shared.storage.milestone_store")

UPDATABLE_FIELDS = (
    "display_name",
    "source_key",
    "last_known_count",
    "last_milestone_notified",
    "last_notified_at",
    "last_updated_at",
)

_TIMESTAMP_FIELDS = ("last_notified_at", "last_updated_at")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class MilestoneStore:
    """
    SQLite-backed milestone store.

    Tables:
      - event_tracking (one row per event, never deleted)
    """

    def __init__(self, db_path: Path | str = "data/milestones.db"):
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    # ------------------------------------------------------------------
    # INTERNALS
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS event_tracking (
                    event_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    source_key TEXT,
                    last_known_count INTEGER NOT NULL,
                    last_milestone_notified INTEGER NOT NULL,
                    last_notified_at TEXT,
                    last_updated_at TEXT NOT NULL
                )
                """
            )
        log.info(f"Milestone store initialized at {self._path}")

    def _row_to_record(self, row: Mapping[str, Any]) -> TrackedEvent:
        try:
            return self._decode(row)
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise StoreReadFailure(row["event_id"], f"corrupt record: {e}") from e

    @staticmethod
    def _decode(row: Mapping[str, Any]) -> TrackedEvent:
        return TrackedEvent(
            event_id=row["event_id"],
            display_name=row["display_name"],
            source_key=row["source_key"],
            last_known_count=row["last_known_count"],
            last_milestone_notified=row["last_milestone_notified"],
            last_notified_at=_from_db_time(row["last_notified_at"]),
            last_updated_at=_from_db_time(row["last_updated_at"]),
        )

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self._lock, self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def get(self, event_id: str) -> Optional[TrackedEvent]:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM event_tracking WHERE event_id = ?",
                    (event_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreReadFailure(event_id, f"read failed: {e}") from e

        if not row:
            return None
        return self._row_to_record(row)

    def all(self) -> List[TrackedEvent]:
        try:
            with self._lock, self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM event_tracking ORDER BY event_id ASC"
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreReadFailure("*", f"read failed: {e}") from e
        return [self._row_to_record(r) for r in rows]

    def insert(
        self,
        event_id: str,
        display_name: str,
        count: int,
        milestone: int,
        *,
        source_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrackedEvent:
        """
        Create the record for a first sighting. Create-only: an existing
        event_id raises EventAlreadyTracked and leaves the row untouched.
        """
        now = now or _utcnow()
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO event_tracking (
                        event_id, display_name, source_key,
                        last_known_count, last_milestone_notified,
                        last_notified_at, last_updated_at
                    ) VALUES (?, ?, ?, ?, ?, NULL, ?)
                    """,
                    (
                        event_id,
                        display_name,
                        source_key,
                        int(count),
                        int(milestone),
                        _to_db_time(now),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise EventAlreadyTracked(event_id) from e
        except sqlite3.Error as e:
            raise StoreWriteFailure(event_id, f"insert failed: {e}") from e

        return TrackedEvent(
            event_id=event_id,
            display_name=display_name,
            source_key=source_key,
            last_known_count=int(count),
            last_milestone_notified=int(milestone),
            last_notified_at=None,
            last_updated_at=_from_db_time(_to_db_time(now)),
        )

    def update(self, event_id: str, **fields: Any) -> Optional[TrackedEvent]:
        """
        Partial update. last_updated_at defaults to now. The notified milestone
        never moves backwards; such an update is rejected.
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown event_tracking fields: {sorted(unknown)}")

        fields.setdefault("last_updated_at", _utcnow())
        values = {
            name: (_to_db_time(value) if name in _TIMESTAMP_FIELDS else value)
            for name, value in fields.items()
        }

        columns = ", ".join(f"{name} = ?" for name in values)
        params = list(values.values()) + [event_id]

        try:
            with self._lock, self._connect() as conn:
                if "last_milestone_notified" in values:
                    row = conn.execute(
                        "SELECT last_milestone_notified FROM event_tracking WHERE event_id = ?",
                        (event_id,),
                    ).fetchone()
                    if row and values["last_milestone_notified"] < row[0]:
                        raise StoreWriteFailure(
                            event_id,
                            "refusing to lower last_milestone_notified "
                            f"({row[0]} -> {values['last_milestone_notified']})",
                        )

                cursor = conn.execute(
                    f"UPDATE event_tracking SET {columns} WHERE event_id = ?",
                    params,
                )
                if cursor.rowcount == 0:
                    raise StoreWriteFailure(event_id, "update matched no tracked event")

                row = conn.execute(
                    "SELECT * FROM event_tracking WHERE event_id = ?",
                    (event_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreWriteFailure(event_id, f"update failed: {e}") from e

        if not row:
            return None
        return self._row_to_record(row)
