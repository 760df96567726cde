"""Incremental sync state derived from the synced rows themselves.

There is no cursor table. The last sync time of an entity is the newest
last_sync_at among its rows, so the window always reflects what is actually
stored. Records skipped for a missing reference are tracked in sync_skips so
they are re-fetched on the next pass and demoted to failures once they have
been skipped too often. A full pass cut short by the record cap leaves a
resume point so the next run picks up where it stopped.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.engine import Engine

from fivetran_connector_sdk import Logging as log

from classy_sync.models import utcnow
from classy_sync.schema import ENTITY_TABLES, sync_resume_points, sync_skips


# SQLite caps bound parameters per statement
STAMP_CHUNK_SIZE = 500


def _entity_table(entity_type: str):
    try:
        return ENTITY_TABLES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}")


class SyncStateTracker:
    def __init__(self, engine: Engine):
        self.engine = engine

    def get_last_sync_time(self, organization_id: int, entity_type: str) -> Optional[datetime]:
        """Newest last_sync_at for the organization's rows, or None if there are none."""
        table = _entity_table(entity_type)
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.max(table.c.last_sync_at)).where(
                    table.c.organization_id == organization_id
                )
            ).scalar()

    def record_sync_completion(
        self,
        ids: Iterable[str],
        organization_id: int,
        entity_type: str,
        synced_at: Optional[datetime] = None,
    ) -> int:
        """Stamp last_sync_at on exactly the given rows and clear their skip entries.

        Args:
            ids: Source ids written successfully in this run.
            organization_id: Internal organization id.
            entity_type: One of the synced entity types.
            synced_at: Stamp to apply. Defaults to now.

        Returns:
            Number of rows stamped.
        """
        table = _entity_table(entity_type)
        ids = sorted(set(ids))
        if not ids:
            return 0
        synced_at = synced_at or utcnow()

        stamped = 0
        with self.engine.begin() as conn:
            for start in range(0, len(ids), STAMP_CHUNK_SIZE):
                chunk = ids[start : start + STAMP_CHUNK_SIZE]
                result = conn.execute(
                    table.update()
                    .where(and_(table.c.organization_id == organization_id, table.c.id.in_(chunk)))
                    .values(last_sync_at=synced_at)
                )
                stamped += result.rowcount or 0
                conn.execute(
                    delete(sync_skips).where(
                        and_(
                            sync_skips.c.organization_id == organization_id,
                            sync_skips.c.entity_type == entity_type,
                            sync_skips.c.record_id.in_(chunk),
                        )
                    )
                )
        return stamped

    def record_skip(
        self,
        organization_id: int,
        entity_type: str,
        record_id: str,
        reason: str,
        source_timestamp: Optional[datetime] = None,
    ) -> int:
        """Count one more skip for a record. Returns the updated skip count."""
        now = utcnow()
        key = and_(
            sync_skips.c.organization_id == organization_id,
            sync_skips.c.entity_type == entity_type,
            sync_skips.c.record_id == record_id,
        )
        with self.engine.begin() as conn:
            existing = conn.execute(select(sync_skips.c.skip_count).where(key)).first()
            if existing is None:
                conn.execute(
                    sync_skips.insert().values(
                        organization_id=organization_id,
                        entity_type=entity_type,
                        record_id=record_id,
                        reason=reason,
                        skip_count=1,
                        source_timestamp=source_timestamp,
                        first_skipped_at=now,
                        last_skipped_at=now,
                    )
                )
                return 1

            skip_count = existing.skip_count + 1
            values = {"skip_count": skip_count, "reason": reason, "last_skipped_at": now}
            if source_timestamp is not None:
                values["source_timestamp"] = source_timestamp
            conn.execute(sync_skips.update().where(key).values(**values))
            return skip_count

    def skip_count(self, organization_id: int, entity_type: str, record_id: str) -> int:
        with self.engine.connect() as conn:
            value = conn.execute(
                select(sync_skips.c.skip_count).where(
                    and_(
                        sync_skips.c.organization_id == organization_id,
                        sync_skips.c.entity_type == entity_type,
                        sync_skips.c.record_id == record_id,
                    )
                )
            ).scalar()
        return value or 0

    def clear_skip(self, organization_id: int, entity_type: str, record_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                delete(sync_skips).where(
                    and_(
                        sync_skips.c.organization_id == organization_id,
                        sync_skips.c.entity_type == entity_type,
                        sync_skips.c.record_id == record_id,
                    )
                )
            )

    def pending_skips(self, organization_id: int, entity_type: Optional[str] = None) -> List[dict]:
        query = select(sync_skips).where(sync_skips.c.organization_id == organization_id)
        if entity_type:
            query = query.where(sync_skips.c.entity_type == entity_type)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query.order_by(sync_skips.c.record_id)).mappings()]

    def oldest_pending_skip(self, organization_id: int, entity_type: str) -> Optional[datetime]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.min(sync_skips.c.source_timestamp)).where(
                    and_(
                        sync_skips.c.organization_id == organization_id,
                        sync_skips.c.entity_type == entity_type,
                    )
                )
            ).scalar()

    def save_resume_point(
        self,
        organization_id: int,
        entity_type: str,
        next_page: int,
        started_at: datetime,
    ) -> None:
        """Remember where an unfinished full pass continues."""
        key = and_(
            sync_resume_points.c.organization_id == organization_id,
            sync_resume_points.c.entity_type == entity_type,
        )
        values = {"next_page": next_page, "started_at": started_at, "updated_at": utcnow()}
        with self.engine.begin() as conn:
            existing = conn.execute(select(sync_resume_points.c.next_page).where(key)).first()
            if existing is None:
                conn.execute(
                    sync_resume_points.insert().values(
                        organization_id=organization_id, entity_type=entity_type, **values
                    )
                )
            else:
                conn.execute(sync_resume_points.update().where(key).values(**values))

    def resume_point(self, organization_id: int, entity_type: str) -> Optional[dict]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(sync_resume_points).where(
                    and_(
                        sync_resume_points.c.organization_id == organization_id,
                        sync_resume_points.c.entity_type == entity_type,
                    )
                )
            ).mappings().first()
        return dict(row) if row else None

    def clear_resume_point(self, organization_id: int, entity_type: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                delete(sync_resume_points).where(
                    and_(
                        sync_resume_points.c.organization_id == organization_id,
                        sync_resume_points.c.entity_type == entity_type,
                    )
                )
            )

    def incremental_window_start(self, organization_id: int, entity_type: str) -> Optional[datetime]:
        """Start of the next incremental window.

        Normally the last sync time. Pulled back to just before the oldest
        pending skip so skipped records fall inside the window again.
        """
        last_sync = self.get_last_sync_time(organization_id, entity_type)
        if last_sync is None:
            return None

        oldest_skip = self.oldest_pending_skip(organization_id, entity_type)
        if oldest_skip is not None and oldest_skip <= last_sync:
            window_start = oldest_skip - timedelta(seconds=1)
            log.fine(
                f"[org {organization_id}][{entity_type}] Window moved back to {window_start} "
                f"for pending skipped records"
            )
            return window_start
        return last_sync
