"""Entity repositories: map Classy records to rows and upsert them.

Every upsert reports one of three outcomes:

- written: the row was inserted or updated (or was already newer locally)
- skipped: a referenced row does not exist locally yet (soft reference)
- failed: anything else went wrong with this one record

Foreign keys are checked softly. A transaction whose supporter has not been
synced yet is skipped, not failed, and is picked up again by a later pass.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.schema import Table

from fivetran_connector_sdk import Logging as log

from classy_sync.models import (
    format_campaign,
    format_recurring_plan,
    format_supporter,
    format_transaction,
)
from classy_sync.schema import campaigns, recurring_plans, supporters, transactions


MISSING_REFERENCE = "missing_reference"
DANGLING_REFERENCE = "dangling_reference"
STALE_UPDATE = "stale_update"

# SQLite caps bound parameters per statement
ID_CHUNK_SIZE = 500


@dataclass
class UpsertResult:
    record_id: Optional[str]
    written: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def failed(self) -> bool:
        return not self.written and not self.skipped


def _chunks(items: List[str], size: int = ID_CHUNK_SIZE) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class EntityRepository:
    """Shared upsert contract for one synced entity table."""

    entity_type: str = ""
    table: Table = None
    # Row column -> table the referenced id must exist in
    references: Dict[str, Table] = {}
    formatter: Callable[[dict], dict] = None

    def __init__(self, engine: Engine):
        self.engine = engine

    def map_record(self, record: dict) -> dict:
        return type(self).formatter(record)

    def _key(self, record_id: str, organization_id: int):
        return and_(self.table.c.id == record_id, self.table.c.organization_id == organization_id)

    def _missing_reference(self, conn: Connection, row: dict, organization_id: int) -> Optional[str]:
        for column, ref_table in self.references.items():
            ref_id = row.get(column)
            if not ref_id:
                continue
            found = conn.execute(
                select(ref_table.c.id).where(
                    and_(ref_table.c.id == ref_id, ref_table.c.organization_id == organization_id)
                )
            ).first()
            if found is None:
                return f"{column}={ref_id}"
        return None

    def upsert(self, record: dict, organization_id: int) -> UpsertResult:
        """Insert or update one source record for an organization."""
        row = self.map_record(record)
        record_id = row.get("id")
        if not record_id:
            return UpsertResult(record_id=None, reason="missing_id")

        try:
            with self.engine.begin() as conn:
                missing = self._missing_reference(conn, row, organization_id)
                if missing:
                    return UpsertResult(
                        record_id=record_id,
                        skipped=True,
                        reason=MISSING_REFERENCE,
                        detail=missing,
                    )

                existing = conn.execute(
                    select(self.table.c.updated_at).where(self._key(record_id, organization_id))
                ).first()

                if existing is None:
                    conn.execute(self.table.insert().values(organization_id=organization_id, **row))
                    return UpsertResult(record_id=record_id, written=True)

                incoming_updated = row.get("updated_at")
                stored_updated = existing.updated_at
                if incoming_updated and stored_updated and incoming_updated < stored_updated:
                    # Out-of-order page; the local row is already newer
                    return UpsertResult(record_id=record_id, written=True, reason=STALE_UPDATE)

                values = {key: value for key, value in row.items() if key != "id"}
                # A missing source timestamp never erases a stored one
                for column in ("updated_at", "created_at"):
                    if values.get(column) is None:
                        values.pop(column, None)

                conn.execute(
                    self.table.update().where(self._key(record_id, organization_id)).values(**values)
                )
                return UpsertResult(record_id=record_id, written=True)

        except SQLAlchemyError as e:
            return UpsertResult(record_id=record_id, reason="database_error", detail=str(e)[:500])

    def get(self, organization_id: int, record_id: str) -> Optional[dict]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.table).where(self._key(record_id, organization_id))
            ).mappings().first()
        return dict(row) if row else None

    def count(self, organization_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(self.table).where(
                    self.table.c.organization_id == organization_id
                )
            ).scalar_one()

    def health_check(self, organization_id: int) -> dict:
        """Report status, last sync time and row count for one organization."""
        try:
            with self.engine.connect() as conn:
                stats = conn.execute(
                    select(func.count(), func.max(self.table.c.last_sync_at)).where(
                        self.table.c.organization_id == organization_id
                    )
                ).first()
        except SQLAlchemyError as e:
            log.warning(f"[{self.entity_type}] Health check failed: {e}")
            return {
                "component": self.entity_type,
                "status": "error",
                "last_sync_time": None,
                "record_count": None,
                "error": str(e)[:500],
            }

        record_count, last_sync = stats[0], stats[1]
        return {
            "component": self.entity_type,
            "status": "healthy" if last_sync is not None else "degraded",
            "last_sync_time": last_sync,
            "record_count": record_count,
        }


class CampaignRepository(EntityRepository):
    entity_type = "campaigns"
    table = campaigns
    formatter = format_campaign


class SupporterRepository(EntityRepository):
    entity_type = "supporters"
    table = supporters
    formatter = format_supporter

    def recalculate_lifetime_stats(self, organization_id: int, supporter_ids: Iterable[str]) -> int:
        """Recompute lifetime donation totals from successful transactions.

        Source timestamps are left untouched. Returns the number of supporters updated.
        """
        ids = sorted({supporter_id for supporter_id in supporter_ids if supporter_id})
        updated = 0
        with self.engine.begin() as conn:
            for chunk in _chunks(ids):
                totals = {
                    row.supporter_id: row
                    for row in conn.execute(
                        select(
                            transactions.c.supporter_id,
                            func.sum(transactions.c.total_gross_amount).label("total_amount"),
                            func.count().label("donation_count"),
                            func.min(transactions.c.purchased_at).label("first_date"),
                            func.max(transactions.c.purchased_at).label("last_date"),
                        )
                        .where(
                            and_(
                                transactions.c.organization_id == organization_id,
                                transactions.c.status == "success",
                                transactions.c.supporter_id.in_(chunk),
                            )
                        )
                        .group_by(transactions.c.supporter_id)
                    )
                }
                for supporter_id in chunk:
                    stats = totals.get(supporter_id)
                    result = conn.execute(
                        supporters.update()
                        .where(self._key(supporter_id, organization_id))
                        .values(
                            lifetime_donation_amount=stats.total_amount if stats else 0,
                            lifetime_donation_count=stats.donation_count if stats else 0,
                            first_donation_date=stats.first_date if stats else None,
                            last_donation_date=stats.last_date if stats else None,
                        )
                    )
                    updated += result.rowcount or 0
        return updated

    def email_opted_in(
        self,
        organization_id: int,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        supporter_ids: Iterable[str] = (),
    ) -> List[dict]:
        """Supporters with an email address and email consent.

        With ``since``, only rows synced at or after it plus the given
        ``supporter_ids``; without it, all of them.
        """
        query = select(supporters).where(
            and_(
                supporters.c.organization_id == organization_id,
                supporters.c.email_opt_in.is_(True),
                supporters.c.email_address.isnot(None),
            )
        )
        if since is None:
            queries = [query]
        else:
            queries = [query.where(supporters.c.last_sync_at >= since)]
            queries.extend(
                query.where(supporters.c.id.in_(chunk))
                for chunk in _chunks(sorted({s for s in supporter_ids if s}))
            )

        found = {}
        with self.engine.connect() as conn:
            for selected in queries:
                for row in conn.execute(selected).mappings():
                    found[row["id"]] = dict(row)
        members = [found[supporter_id] for supporter_id in sorted(found)]
        return members[:limit] if limit else members


class RecurringPlanRepository(EntityRepository):
    entity_type = "recurring_plans"
    table = recurring_plans
    formatter = format_recurring_plan
    references = {
        "supporter_id": supporters,
        "campaign_id": campaigns,
    }


class TransactionRepository(EntityRepository):
    entity_type = "transactions"
    table = transactions
    formatter = format_transaction
    references = {
        "supporter_id": supporters,
        "campaign_id": campaigns,
        "recurring_plan_id": recurring_plans,
    }

    def supporter_ids_for(self, organization_id: int, transaction_ids: Iterable[str]) -> List[str]:
        """Distinct supporters referenced by the given transactions."""
        ids = sorted(set(transaction_ids))
        found = set()
        with self.engine.connect() as conn:
            for chunk in _chunks(ids):
                found.update(
                    conn.execute(
                        select(transactions.c.supporter_id)
                        .where(
                            and_(
                                transactions.c.organization_id == organization_id,
                                transactions.c.id.in_(chunk),
                                transactions.c.supporter_id.isnot(None),
                            )
                        )
                        .distinct()
                    ).scalars()
                )
        return sorted(found)


REPOSITORY_CLASSES = {
    repo.entity_type: repo
    for repo in (CampaignRepository, SupporterRepository, RecurringPlanRepository, TransactionRepository)
}


def build_repositories(engine: Engine) -> Dict[str, EntityRepository]:
    return {entity_type: cls(engine) for entity_type, cls in REPOSITORY_CLASSES.items()}
