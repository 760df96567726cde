from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select

from classy_sync.repository import (
    MISSING_REFERENCE,
    STALE_UPDATE,
    CampaignRepository,
    RecurringPlanRepository,
    SupporterRepository,
    TransactionRepository,
    build_repositories,
)
from classy_sync.schema import supporters
from classy_sync.sync_state import SyncStateTracker

from helpers import make_supporter, make_transaction


def test_upsert_is_idempotent(engine, organization):
    """Applying the same record twice leaves one identical row."""
    repo = SupporterRepository(engine)
    record = make_supporter(1)

    first = repo.upsert(record, organization["id"])
    row_after_first = repo.get(organization["id"], "s1")
    second = repo.upsert(record, organization["id"])

    assert first.written and second.written
    assert repo.count(organization["id"]) == 1
    assert repo.get(organization["id"], "s1") == row_after_first


def test_amounts_are_stored_as_exact_decimals(engine, organization):
    repo = TransactionRepository(engine)
    SupporterRepository(engine).upsert(make_supporter(1), organization["id"])

    for _ in range(3):
        repo.upsert(make_transaction(1, "s1", total_gross_amount=10.1), organization["id"])

    row = repo.get(organization["id"], "t1")
    assert row["total_gross_amount"] == Decimal("10.10")
    assert isinstance(row["total_gross_amount"], Decimal)


def test_source_updated_at_is_preserved(engine, organization):
    repo = SupporterRepository(engine)
    repo.upsert(make_supporter(1, updated_at="2025-02-03T04:05:06+0000"), organization["id"])
    SyncStateTracker(engine).record_sync_completion(["s1"], organization["id"], "supporters")

    row = repo.get(organization["id"], "s1")
    assert row["updated_at"] == datetime(2025, 2, 3, 4, 5, 6)
    assert row["last_sync_at"] != row["updated_at"]


def test_missing_updated_at_does_not_block_or_erase(engine, organization):
    """A null source timestamp still writes the row but keeps the stored timestamp."""
    repo = SupporterRepository(engine)
    repo.upsert(make_supporter(1, updated_at="2025-02-03T00:00:00+0000"), organization["id"])

    result = repo.upsert(make_supporter(1, updated_at=None, first_name="Renamed"), organization["id"])

    row = repo.get(organization["id"], "s1")
    assert result.written
    assert row["first_name"] == "Renamed"
    assert row["updated_at"] == datetime(2025, 2, 3)


def test_older_source_version_does_not_overwrite(engine, organization):
    repo = SupporterRepository(engine)
    repo.upsert(make_supporter(1, updated_at="2025-02-03T00:00:00+0000", first_name="New"), organization["id"])

    result = repo.upsert(
        make_supporter(1, updated_at="2025-01-01T00:00:00+0000", first_name="Old"), organization["id"]
    )

    assert result.written
    assert result.reason == STALE_UPDATE
    assert repo.get(organization["id"], "s1")["first_name"] == "New"


def test_missing_reference_is_skipped_not_failed(engine, organization):
    repo = TransactionRepository(engine)

    result = repo.upsert(make_transaction(1, "s404"), organization["id"])

    assert result.skipped
    assert not result.failed
    assert result.reason == MISSING_REFERENCE
    assert result.detail == "supporter_id=s404"
    assert repo.count(organization["id"]) == 0


def test_reference_must_belong_to_same_organization(engine, make_organization):
    first = make_organization(classy_id="1")
    second = make_organization(classy_id="2")
    SupporterRepository(engine).upsert(make_supporter(1), first["id"])

    result = TransactionRepository(engine).upsert(make_transaction(1, "s1"), second["id"])

    assert result.skipped


def test_recurring_plan_references_are_checked(engine, organization):
    CampaignRepository(engine).upsert({"id": "c1", "name": "Spring"}, organization["id"])
    repo = RecurringPlanRepository(engine)

    missing = repo.upsert({"id": "r1", "campaign_id": "c1", "supporter_id": "s1"}, organization["id"])
    SupporterRepository(engine).upsert(make_supporter(1), organization["id"])
    written = repo.upsert({"id": "r1", "campaign_id": "c1", "supporter_id": "s1"}, organization["id"])

    assert missing.skipped and missing.detail == "supporter_id=s1"
    assert written.written


def test_same_source_id_is_separate_per_organization(engine, make_organization):
    first = make_organization(classy_id="1")
    second = make_organization(classy_id="2")
    repo = SupporterRepository(engine)

    repo.upsert(make_supporter(1, first_name="A"), first["id"])
    repo.upsert(make_supporter(1, first_name="B"), second["id"])

    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(supporters)).scalar() == 2
    assert repo.get(first["id"], "s1")["first_name"] == "A"
    assert repo.get(second["id"], "s1")["first_name"] == "B"


def test_record_without_id_fails(engine, organization):
    result = CampaignRepository(engine).upsert({"name": "No id"}, organization["id"])
    assert result.failed
    assert result.reason == "missing_id"


def test_health_check_reports_degraded_until_synced(engine, organization):
    repo = CampaignRepository(engine)
    assert repo.health_check(organization["id"])["status"] == "degraded"

    repo.upsert({"id": "c1", "name": "Spring"}, organization["id"])
    SyncStateTracker(engine).record_sync_completion(["c1"], organization["id"], "campaigns")

    health = repo.health_check(organization["id"])
    assert health["status"] == "healthy"
    assert health["record_count"] == 1
    assert health["last_sync_time"] is not None


def test_lifetime_stats_sum_successful_transactions(engine, organization):
    repos = build_repositories(engine)
    org_id = organization["id"]
    repos["supporters"].upsert(make_supporter(1), org_id)
    repos["supporters"].upsert(make_supporter(2), org_id)
    repos["transactions"].upsert(
        make_transaction(1, "s1", purchased_at="2025-01-01T00:00:00+0000", total_gross_amount="10.10"), org_id
    )
    repos["transactions"].upsert(
        make_transaction(2, "s1", purchased_at="2025-03-01T00:00:00+0000", total_gross_amount="20.20"), org_id
    )
    repos["transactions"].upsert(make_transaction(3, "s1", status="refunded", total_gross_amount="99"), org_id)

    supporter_ids = repos["transactions"].supporter_ids_for(org_id, ["t1", "t2", "t3"])
    repos["supporters"].recalculate_lifetime_stats(org_id, supporter_ids + ["s2"])

    donor = repos["supporters"].get(org_id, "s1")
    assert supporter_ids == ["s1"]
    assert donor["lifetime_donation_amount"] == Decimal("30.30")
    assert donor["lifetime_donation_count"] == 2
    assert donor["first_donation_date"] == datetime(2025, 1, 1)
    assert donor["last_donation_date"] == datetime(2025, 3, 1)
    assert donor["updated_at"] == datetime(2025, 1, 1)
    assert repos["supporters"].get(org_id, "s2")["lifetime_donation_count"] == 0


def test_email_opted_in_filters_consent(engine, organization):
    repo = SupporterRepository(engine)
    repo.upsert(make_supporter(1), organization["id"])
    repo.upsert(make_supporter(2, opt_in=False), organization["id"])
    repo.upsert(make_supporter(3, email_address=None), organization["id"])

    assert [row["id"] for row in repo.email_opted_in(organization["id"])] == ["s1"]


def test_amounts_are_exact_cents_in_sqlite(engine, organization):
    """SQLite has no decimal type; amounts round-trip and sum without float drift."""
    repos = build_repositories(engine)
    org_id = organization["id"]
    repos["supporters"].upsert(make_supporter(1), org_id)
    for index in range(3):
        repos["transactions"].upsert(make_transaction(index, "s1", total_gross_amount="0.10"), org_id)

    repos["supporters"].recalculate_lifetime_stats(org_id, ["s1"])

    with engine.connect() as conn:
        stored = conn.exec_driver_sql("SELECT total_gross_amount FROM transactions WHERE id = 't0'").scalar()
    total = repos["supporters"].get(org_id, "s1")["lifetime_donation_amount"]
    assert stored == 10
    assert isinstance(total, Decimal)
    assert total == Decimal("0.30")
    assert repos["transactions"].get(org_id, "t0")["total_gross_amount"] == Decimal("0.10")


def test_email_opted_in_since_includes_restated_supporters(engine, organization):
    repo = SupporterRepository(engine)
    tracker = SyncStateTracker(engine)
    org_id = organization["id"]
    for index in (1, 2, 3):
        repo.upsert(make_supporter(index), org_id)
    tracker.record_sync_completion(["s1", "s2"], org_id, "supporters", synced_at=datetime(2025, 1, 1))
    tracker.record_sync_completion(["s3"], org_id, "supporters", synced_at=datetime(2025, 6, 1))

    since = datetime(2025, 5, 1)
    assert [row["id"] for row in repo.email_opted_in(org_id, since=since)] == ["s3"]
    assert [row["id"] for row in repo.email_opted_in(org_id, since=since, supporter_ids=["s1", "s3"])] == ["s1", "s3"]
