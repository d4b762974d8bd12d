from __future__ import annotations

import asyncio
from typing import Any, List, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from core.milestones.errors import SourceUnavailable
from core.milestones.models import Snapshot, derive_event_id
from services.warehouse.queries import ALL_EVENT_TOTALS_QUERY
from shared.logging.logger import get_logger

log = get_logger("warehouse.source")


def create_warehouse_engine(url: str) -> Engine:
    """
    Build the engine for the registration warehouse.

    SQLite (used for local runs and tests) gets a NullPool; everything else
    keeps the default pool with pre-ping so stale connections are replaced.
    """
    if url.startswith("sqlite"):
        return create_engine(url, poolclass=NullPool)
    return create_engine(url, pool_pre_ping=True)


class WarehouseSnapshotSource:
    """
    Snapshot source backed by the registration warehouse.

    Responsibilities:
    - Run the totals query once per cycle
    - Convert rows into Snapshots with a stable event_id
    - Surface connectivity problems as SourceUnavailable
    """

    def __init__(
        self,
        engine: Engine,
        *,
        query: str = ALL_EVENT_TOTALS_QUERY,
        identity_field: str = "name",
    ):
        self._engine = engine
        self._query = text(query)
        self._identity_field = identity_field

    # ------------------------------------------------------------------ #

    def ping(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise SourceUnavailable(f"Warehouse ping failed: {e}") from e
        return True

    def dispose(self) -> None:
        self._engine.dispose()

    # ------------------------------------------------------------------ #

    def _fetch_rows(self) -> List[Mapping[str, Any]]:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(self._query)
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            raise SourceUnavailable(f"Warehouse query failed: {e}") from e

    def _to_snapshot(self, row: Mapping[str, Any]) -> Optional[Snapshot]:
        name = row.get("event_name")
        if not name or not str(name).strip():
            log.debug("Skipping warehouse row with empty event name")
            return None

        count = int(row.get("total_sign_ups") or 0)
        if count <= 0:
            log.debug(f"Skipping {name} with 0 signups")
            return None

        slug = row.get("event_slug")
        slug = str(slug) if slug is not None else None

        return Snapshot(
            event_id=derive_event_id(
                str(name), slug, identity_field=self._identity_field
            ),
            display_name=str(name),
            total_count=count,
            source_key=slug,
        )

    async def fetch_all(self) -> List[Snapshot]:
        loop = asyncio.get_running_loop()
        rows = await loop.run_in_executor(None, self._fetch_rows)

        snapshots: List[Snapshot] = []
        for row in rows:
            snapshot = self._to_snapshot(row)
            if snapshot:
                snapshots.append(snapshot)

        log.info(f"Fetched data for {len(snapshots)} events")
        for snapshot in snapshots[:3]:
            log.debug(
                f"- {snapshot.display_name} (key: {snapshot.source_key}) - "
                f"{snapshot.total_count} signups"
            )

        return snapshots
