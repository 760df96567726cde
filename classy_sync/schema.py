"""Relational tables of the local store.

Synced entity tables use the platform's id together with the owning
organization's internal id as primary key, so repeated upserts of the same
record are idempotent and tenants never share rows.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    TypeDecorator,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from classy_sync.models import CENT


metadata = MetaData()


class Money(TypeDecorator):
    """Two-place Decimal amount; never float.

    NUMERIC(14, 2) where the database has a native decimal type. SQLite has
    none and would store NUMERIC as REAL, so there amounts are integer cents.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(14, 2, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
        if dialect.name == "sqlite":
            return int(amount * 100)
        return amount

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return (Decimal(int(value)) / 100).quantize(CENT)
        return Decimal(str(value)).quantize(CENT)


def _entity_columns():
    """Columns shared by every synced entity table."""
    return [
        Column("id", String(64), primary_key=True),
        Column(
            "organization_id",
            Integer,
            ForeignKey("organizations.id"),
            primary_key=True,
        ),
        # Source platform timestamps, stored verbatim
        Column("created_at", DateTime),
        Column("updated_at", DateTime),
        # When this engine last wrote the row
        Column("last_sync_at", DateTime),
    ]


organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("classy_id", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("status", String(16), nullable=False, default="active"),
    Column("encrypted_credentials", Text),
    Column("last_sync_at", DateTime),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

campaigns = Table(
    "campaigns",
    metadata,
    *_entity_columns(),
    Column("name", String(255)),
    Column("status", String(32)),
    Column("goal", Money),
    Column("total_raised", Money),
    Column("donor_count", Integer),
    Column("campaign_type", String(64)),
    Column("start_date", DateTime),
    Column("end_date", DateTime),
)

supporters = Table(
    "supporters",
    metadata,
    *_entity_columns(),
    Column("email_address", String(255)),
    Column("first_name", String(128)),
    Column("last_name", String(128)),
    Column("phone", String(64)),
    Column("address_line1", String(255)),
    Column("address_line2", String(255)),
    Column("city", String(128)),
    Column("state", String(64)),
    Column("postal_code", String(32)),
    Column("country", String(64)),
    Column("email_opt_in", Boolean),
    Column("sms_opt_in", Boolean),
    Column("last_email_consent_date", DateTime),
    Column("last_sms_consent_date", DateTime),
    Column("last_emailed_at", DateTime),
    # Derived from transactions, never from the supporter payload
    Column("lifetime_donation_amount", Money),
    Column("lifetime_donation_count", Integer),
    Column("first_donation_date", DateTime),
    Column("last_donation_date", DateTime),
)

recurring_plans = Table(
    "recurring_plans",
    metadata,
    *_entity_columns(),
    Column("supporter_id", String(64)),
    Column("campaign_id", String(64)),
    Column("status", String(16)),
    Column("amount", Money),
    Column("currency", String(8)),
    Column("frequency", String(32)),
    Column("next_payment_date", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    *_entity_columns(),
    Column("supporter_id", String(64)),
    Column("campaign_id", String(64)),
    Column("recurring_plan_id", String(64)),
    Column("status", String(16)),
    Column("total_gross_amount", Money),
    Column("donation_gross_amount", Money),
    Column("fees_amount", Money),
    Column("donation_net_amount", Money),
    Column("currency", String(8)),
    Column("raw_total_gross_amount", Money),
    Column("raw_currency_code", String(8)),
    Column("charged_total_gross_amount", Money),
    Column("charged_currency_code", String(8)),
    Column("billing_city", String(128)),
    Column("billing_state", String(64)),
    Column("billing_country", String(64)),
    Column("billing_postal_code", String(32)),
    Column("fundraising_page_id", String(64)),
    Column("fundraising_team_id", String(64)),
    Column("purchased_at", DateTime),
)

sync_jobs = Table(
    "sync_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id"), nullable=False),
    Column("job_type", String(16), nullable=False),
    Column("entity_type", String(32), nullable=False),
    Column("status", String(16), nullable=False),
    Column("started_at", DateTime, nullable=False),
    Column("completed_at", DateTime),
    Column("records_processed", Integer, nullable=False, default=0),
    Column("records_succeeded", Integer, nullable=False, default=0),
    Column("records_skipped", Integer, nullable=False, default=0),
    Column("records_failed", Integer, nullable=False, default=0),
    Column("error_message", Text),
)

# Records skipped for a missing reference, awaiting a later pass.
sync_skips = Table(
    "sync_skips",
    metadata,
    Column("organization_id", Integer, ForeignKey("organizations.id"), primary_key=True),
    Column("entity_type", String(32), primary_key=True),
    Column("record_id", String(64), primary_key=True),
    Column("reason", String(64), nullable=False),
    Column("skip_count", Integer, nullable=False, default=0),
    Column("source_timestamp", DateTime),
    Column("first_skipped_at", DateTime, nullable=False),
    Column("last_skipped_at", DateTime, nullable=False),
)

# Full passes stopped at the record cap; the next run continues from next_page.
sync_resume_points = Table(
    "sync_resume_points",
    metadata,
    Column("organization_id", Integer, ForeignKey("organizations.id"), primary_key=True),
    Column("entity_type", String(32), primary_key=True),
    Column("next_page", Integer, nullable=False),
    # Start of the first run of the pass; rows of every run in it get this stamp
    Column("started_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

Index("ix_sync_jobs_org_entity", sync_jobs.c.organization_id, sync_jobs.c.entity_type)
for _table in (campaigns, supporters, recurring_plans, transactions):
    Index(f"ix_{_table.name}_org_last_sync", _table.c.organization_id, _table.c.last_sync_at)

ENTITY_TABLES: Dict[str, Table] = {
    "campaigns": campaigns,
    "supporters": supporters,
    "recurring_plans": recurring_plans,
    "transactions": transactions,
}


def create_store(database_url: str, create_tables: bool = True) -> Engine:
    """Build the engine for the local store, creating missing tables."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(database_url, pool_pre_ping=True)
    if create_tables:
        metadata.create_all(engine)
    return engine
