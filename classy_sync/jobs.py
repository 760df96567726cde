"""Sync job history: one row per organization, entity type and run."""

from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.engine import Engine

from fivetran_connector_sdk import Logging as log

from classy_sync.models import utcnow
from classy_sync.schema import sync_jobs


JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

# error_message column is free text; keep it readable
MAX_ERROR_MESSAGE_LENGTH = 2000


class SyncJobRecorder:
    """Creates and finalizes job rows. A finalized job is never modified again."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def start(self, organization_id: int, entity_type: str, job_type: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                sync_jobs.insert().values(
                    organization_id=organization_id,
                    job_type=job_type,
                    entity_type=entity_type,
                    status=JOB_RUNNING,
                    started_at=utcnow(),
                    records_processed=0,
                    records_succeeded=0,
                    records_skipped=0,
                    records_failed=0,
                )
            )
            return result.inserted_primary_key[0]

    def finalize(
        self,
        job_id: int,
        status: str,
        result=None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Close a running job with its outcome.

        Args:
            job_id: Job row id from start().
            status: completed or failed.
            result: SyncResult with the run's counts, if any were gathered.
            error_message: Error summary for failed runs.

        Returns:
            False if the job was already finalized and nothing changed.
        """
        if status not in (JOB_COMPLETED, JOB_FAILED):
            raise ValueError(f"Jobs can only be finalized as completed or failed, not {status}")

        values = {"status": status, "completed_at": utcnow()}
        if result is not None:
            values.update(
                records_processed=result.total_processed,
                records_succeeded=result.successful,
                records_skipped=result.skipped,
                records_failed=result.failed,
            )
        if error_message:
            values["error_message"] = error_message[:MAX_ERROR_MESSAGE_LENGTH]

        with self.engine.begin() as conn:
            updated = conn.execute(
                sync_jobs.update()
                .where(and_(sync_jobs.c.id == job_id, sync_jobs.c.status == JOB_RUNNING))
                .values(**values)
            ).rowcount

        if not updated:
            log.warning(f"Sync job {job_id} is already finalized; leaving it unchanged")
            return False
        return True

    def get(self, job_id: int) -> Optional[dict]:
        with self.engine.connect() as conn:
            row = conn.execute(select(sync_jobs).where(sync_jobs.c.id == job_id)).mappings().first()
        return dict(row) if row else None

    def list_jobs(
        self,
        organization_id: int,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        """Job history for an organization, newest first."""
        query = select(sync_jobs).where(sync_jobs.c.organization_id == organization_id)
        if entity_type:
            query = query.where(sync_jobs.c.entity_type == entity_type)
        if status:
            query = query.where(sync_jobs.c.status == status)
        query = query.order_by(sync_jobs.c.started_at.desc(), sync_jobs.c.id.desc()).limit(limit)

        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]
