from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from unittest import mock

import pytest
from sqlalchemy import select

from classy_sync.credentials import CredentialCipher, StoreCredentialSource, generate_key
from classy_sync.errors import ApiRequestError, AuthenticationError, OrganizationError
from classy_sync.jobs import SyncJobRecorder
from classy_sync.models import utcnow
from classy_sync.orchestrator import ENTITY_ORDER, SyncOrchestrator
from classy_sync.plugins import Plugin
from classy_sync.schema import organizations, sync_jobs

from helpers import FakeClassyApi, iso, make_supporter, make_transaction


def sample_api():
    return FakeClassyApi(
        {
            "campaigns": [{"id": "c1", "name": "Spring Appeal", "updated_at": "2025-01-01T00:00:00+0000"}],
            "supporters": [make_supporter(1), make_supporter(2)],
            "recurring_plans": [
                {"id": "r1", "supporter_id": "s1", "campaign_id": "c1", "amount": "15.00", "status": "active"}
            ],
            "transactions": [
                make_transaction(1, "s1", recurring_plan_id="r1", campaign_id="c1"),
                make_transaction(2, "s1", total_gross_amount="4.50"),
            ],
        },
        profile={"name": "Helping Hands International"},
    )


def make_orchestrator(engine, config, cipher, api, plugins=()):
    return SyncOrchestrator(
        engine,
        config,
        StoreCredentialSource(cipher),
        plugins=plugins,
        client_factory=mock.Mock(return_value=api),
    )


def load_organization(engine, organization_id):
    with engine.connect() as conn:
        return dict(
            conn.execute(select(organizations).where(organizations.c.id == organization_id)).mappings().first()
        )


def test_entities_sync_in_dependency_order(engine, config, cipher, organization):
    api = sample_api()
    result = make_orchestrator(engine, config, cipher, api).sync_organization(organization)

    assert result.success
    fetched = [entity for entity, _, _ in api.calls]
    assert fetched == ["campaigns", "supporters", "recurring_plans", "transactions"]
    assert list(result.entities) == list(ENTITY_ORDER)
    assert result.totals()["skipped"] == 0
    assert api.closed


def test_first_sync_is_full_then_incremental(engine, config, cipher, organization):
    api = sample_api()
    orchestrator = make_orchestrator(engine, config, cipher, api)

    first = orchestrator.sync_organization(organization)
    synced = load_organization(engine, organization["id"])
    second = orchestrator.sync_organization(synced)

    assert first.mode == "full"
    assert synced["last_sync_at"] is not None
    assert second.mode == "incremental"
    assert all(r.mode == "incremental" for name, r in second.entities.items() if name != "organizations")


def test_credentials_are_resolved_once_per_run(engine, config, cipher, organization):
    source = StoreCredentialSource(cipher)
    source.resolve = mock.Mock(wraps=source.resolve)
    factory = mock.Mock(return_value=sample_api())
    orchestrator = SyncOrchestrator(engine, config, source, client_factory=factory)

    orchestrator.sync_organization(organization)

    source.resolve.assert_called_once()
    credentials = factory.call_args.args[0]
    assert credentials.client_id == "client-1001"


def test_jobs_recorded_per_entity(engine, config, cipher, organization):
    make_orchestrator(engine, config, cipher, sample_api()).sync_organization(organization)

    jobs = SyncJobRecorder(engine).list_jobs(organization["id"])
    assert sorted(job["entity_type"] for job in jobs) == sorted(ENTITY_ORDER)
    assert {job["status"] for job in jobs} == {"completed"}
    assert all(job["completed_at"] is not None for job in jobs)
    transactions_job = next(job for job in jobs if job["entity_type"] == "transactions")
    assert transactions_job["records_processed"] == 2
    assert transactions_job["records_succeeded"] == 2
    assert transactions_job["job_type"] == "full"


def test_profile_refresh_updates_name(engine, config, cipher, organization):
    make_orchestrator(engine, config, cipher, sample_api()).sync_organization(organization)
    assert load_organization(engine, organization["id"])["name"] == "Helping Hands International"


def test_lifetime_stats_follow_transactions(engine, config, cipher, organization):
    orchestrator = make_orchestrator(engine, config, cipher, sample_api())
    orchestrator.sync_organization(organization)

    donor = orchestrator.repositories["supporters"].get(organization["id"], "s1")
    assert donor["lifetime_donation_amount"] == Decimal("30.00")
    assert donor["lifetime_donation_count"] == 2


def test_transport_failure_stops_run_and_keeps_marker(engine, config, cipher, organization):
    """Earlier entities stay committed; the organization marker does not move."""
    api = sample_api()
    api.fail_on("recurring_plans", 1, ApiRequestError("HTTP 503 after retries", status_code=503))
    orchestrator = make_orchestrator(engine, config, cipher, api)

    result = orchestrator.sync_organization(organization)

    assert not result.success
    assert result.failed_entity == "recurring_plans"
    assert "HTTP 503" in result.error
    assert orchestrator.repositories["supporters"].count(organization["id"]) == 2
    assert orchestrator.repositories["transactions"].count(organization["id"]) == 0
    assert load_organization(engine, organization["id"])["last_sync_at"] is None

    failed = SyncJobRecorder(engine).list_jobs(organization["id"], status="failed")
    assert [job["entity_type"] for job in failed] == ["recurring_plans"]
    assert "HTTP 503" in failed[0]["error_message"]


def test_authentication_failure_aborts_run(engine, config, cipher, organization):
    api = sample_api()
    api.fail_on("campaigns", 1, AuthenticationError("Credentials rejected"))

    result = make_orchestrator(engine, config, cipher, api).sync_organization(organization)

    assert result.status == "failed"
    assert result.failed_entity == "campaigns"
    assert [call[0] for call in api.calls] == ["campaigns"]


def test_undecryptable_credentials_fail_without_fetching(engine, config, organization):
    api = sample_api()
    wrong_cipher = CredentialCipher(generate_key())

    result = make_orchestrator(engine, config, wrong_cipher, api).sync_organization(organization)

    assert result.status == "failed"
    assert api.calls == []
    jobs = SyncJobRecorder(engine).list_jobs(organization["id"])
    assert [(job["entity_type"], job["status"]) for job in jobs] == [("organizations", "failed")]


def test_inactive_organization_is_refused(engine, config, cipher, make_organization):
    inactive = make_organization(classy_id="2002", status="inactive")
    with pytest.raises(OrganizationError):
        make_orchestrator(engine, config, cipher, sample_api()).sync_organization(inactive)


def test_dry_run_records_nothing(engine, config, cipher, organization):
    orchestrator = make_orchestrator(engine, config, cipher, sample_api())

    result = orchestrator.sync_organization(organization, dry_run=True)

    assert result.success
    assert result.totals()["processed"] == 7
    with engine.connect() as conn:
        assert conn.execute(select(sync_jobs)).first() is None
    assert orchestrator.repositories["supporters"].count(organization["id"]) == 0
    assert load_organization(engine, organization["id"])["last_sync_at"] is None


class ExplodingPlugin(Plugin):
    name = "exploding"

    def process(self, organization, repositories, since=None, supporter_ids=()):
        raise RuntimeError("downstream unavailable")


class CountingPlugin(Plugin):
    name = "counting"

    def process(self, organization, repositories, since=None, supporter_ids=()):
        return {"processed": repositories["supporters"].count(organization["id"]), "since": since}


def test_plugins_run_after_success_and_cannot_fail_sync(engine, config, cipher, organization):
    plugins = [ExplodingPlugin(config), CountingPlugin(config)]

    result = make_orchestrator(engine, config, cipher, sample_api(), plugins).sync_organization(organization)

    assert result.success
    assert "downstream unavailable" in result.plugins["exploding"]["error"]
    assert result.plugins["counting"] == {"processed": 2, "since": None}


def test_plugins_skipped_when_sync_fails(engine, config, cipher, organization):
    plugin = CountingPlugin(config)
    plugin.process = mock.Mock()
    api = sample_api()
    api.fail_on("supporters", 1, ApiRequestError("boom"))

    make_orchestrator(engine, config, cipher, api, [plugin]).sync_organization(organization)

    plugin.process.assert_not_called()


def test_record_cap_keeps_organization_unsynced_until_pass_completes(engine, config, cipher, organization):
    api = FakeClassyApi({"supporters": [make_supporter(i) for i in range(230)]})
    orchestrator = make_orchestrator(engine, replace(config, max_records_per_sync=150), cipher, api)

    first = orchestrator.sync_organization(organization)
    after_first = load_organization(engine, organization["id"])
    second = orchestrator.sync_organization(after_first)
    third = orchestrator.sync_organization(load_organization(engine, organization["id"]))

    assert first.status == "incomplete"
    assert first.failed_entity == "supporters"
    assert after_first["last_sync_at"] is None
    assert second.success
    assert second.mode == "full"
    assert third.mode == "incremental"
    assert orchestrator.repositories["supporters"].count(organization["id"]) == 230

    supporter_jobs = SyncJobRecorder(engine).list_jobs(organization["id"], entity_type="supporters")
    oldest = supporter_jobs[-1]
    assert oldest["status"] == "completed"
    assert oldest["error_message"] == "Truncated at 200 records; resumes at page 3"
    assert [job["error_message"] for job in supporter_jobs[:-1]] == [None, None]


def test_incremental_plugins_get_supporters_with_new_transactions(engine, config, cipher, organization):
    api = sample_api()
    plugin = CountingPlugin(config)
    orchestrator = make_orchestrator(engine, config, cipher, api, [plugin])
    orchestrator.sync_organization(organization)

    api.records["supporters"] = []
    api.records["transactions"] = [make_transaction(3, "s2", purchased_at=iso(utcnow() + timedelta(days=1)))]
    plugin.process = mock.Mock(return_value={})
    result = orchestrator.sync_organization(load_organization(engine, organization["id"]))

    assert result.mode == "incremental"
    assert plugin.process.call_args.kwargs["supporter_ids"] == ["s2"]
    assert plugin.process.call_args.kwargs["since"] is not None
