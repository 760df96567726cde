"""Runs one organization's sync across all entity types in dependency order."""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.engine import Engine

from fivetran_connector_sdk import Logging as log

from classy_sync.api import ClassyApiClient
from classy_sync.config import SyncConfig
from classy_sync.credentials import ClassyCredentials, CredentialSource
from classy_sync.errors import ClassySyncError, OrganizationError, SyncCancelled
from classy_sync.jobs import JOB_COMPLETED, JOB_FAILED, SyncJobRecorder
from classy_sync.models import utcnow
from classy_sync.repository import build_repositories
from classy_sync.schema import organizations
from classy_sync.sync import (
    MODE_AUTO,
    MODE_FULL,
    MODE_INCREMENTAL,
    SYNC_MODES,
    StreamingSyncEngine,
    SyncResult,
)
from classy_sync.sync_state import SyncStateTracker


# Referenced entities first, so fewer records are skipped for missing references
ENTITY_ORDER = ("organizations", "campaigns", "supporters", "recurring_plans", "transactions")

RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"
# Every step ran but a full pass stopped at the record cap
RUN_INCOMPLETE = "incomplete"


@dataclass
class OrganizationSyncResult:
    organization_id: int
    mode: str
    status: str = RUN_COMPLETED
    dry_run: bool = False
    entities: Dict[str, SyncResult] = field(default_factory=dict)
    error: Optional[str] = None
    failed_entity: Optional[str] = None
    plugins: Dict[str, dict] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == RUN_COMPLETED

    def totals(self) -> dict:
        return {
            "processed": sum(r.total_processed for r in self.entities.values()),
            "succeeded": sum(r.successful for r in self.entities.values()),
            "skipped": sum(r.skipped for r in self.entities.values()),
            "failed": sum(r.failed for r in self.entities.values()),
        }


class SyncOrchestrator:
    """Sync every entity of one organization with run-scoped credentials.

    Args:
        engine: SQLAlchemy engine of the local store.
        config: Process configuration.
        credential_source: Resolves credentials for each organization run.
        plugins: Initialized plugins to run after a successful sync.
        client_factory: Builds the API client for a run's credentials.
        sleep: Delay function handed to the streaming engine.
    """

    def __init__(
        self,
        engine: Engine,
        config: SyncConfig,
        credential_source: CredentialSource,
        plugins: Iterable = (),
        client_factory: Optional[Callable[[ClassyCredentials], ClassyApiClient]] = None,
        sleep=time.sleep,
    ):
        self.engine = engine
        self.config = config
        self.credential_source = credential_source
        self.plugins = list(plugins)
        self.client_factory = client_factory or self._build_client
        self.sleep = sleep
        self.repositories = build_repositories(engine)
        self.tracker = SyncStateTracker(engine)
        self.jobs = SyncJobRecorder(engine)

    def _build_client(self, credentials: ClassyCredentials) -> ClassyApiClient:
        return ClassyApiClient(
            credentials,
            base_url=self.config.base_url,
            page_size=self.config.page_size,
            max_retries=self.config.max_retries,
        )

    def sync_organization(
        self,
        organization: Mapping,
        mode: str = MODE_AUTO,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> OrganizationSyncResult:
        """Sync one organization.

        In auto mode an organization that has never completed a sync gets a
        full pass on every entity; otherwise each entity syncs incrementally
        from its own last sync time. The first fatal error stops the run;
        entities already synced stay committed. The organization's last sync
        marker moves only when every step succeeded and no full pass stopped
        at the record cap.
        """
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        if organization.get("status") != "active":
            raise OrganizationError(f"Organization {organization['id']} is not active")

        organization_id = organization["id"]
        context = f"[org {organization_id}]"
        if mode == MODE_AUTO:
            mode = MODE_FULL if organization.get("last_sync_at") is None else MODE_INCREMENTAL

        run_started = utcnow()
        result = OrganizationSyncResult(organization_id=organization_id, mode=mode, dry_run=dry_run)
        log.info(
            f"{context} Starting {mode} sync of {organization.get('name')}"
            f"{' (dry run)' if dry_run else ''}"
        )

        # Decrypted once for this run only
        try:
            credentials = self.credential_source.resolve(organization)
        except ClassySyncError as e:
            log.severe(f"{context} Could not resolve credentials", e)
            self._record_failure(organization_id, ENTITY_ORDER[0], mode, dry_run, None, str(e))
            return self._fail(result, ENTITY_ORDER[0], str(e))

        client = self.client_factory(credentials)
        restated_supporters = []
        engine = StreamingSyncEngine(
            client, self.repositories, self.tracker, self.config, sleep=self.sleep
        )
        try:
            for entity_type in ENTITY_ORDER:
                engine.last_result = None
                job_id = None
                entity_result = None
                try:
                    if not dry_run:
                        job_id = self.jobs.start(organization_id, entity_type, mode)
                    if cancel_event is not None and cancel_event.is_set():
                        raise SyncCancelled(f"{context} Sync cancelled before {entity_type}")
                    if entity_type == "organizations":
                        entity_result = self._refresh_profile(organization, client, mode, dry_run)
                    else:
                        entity_result = engine.sync_entity(
                            organization, entity_type, mode, cancel_event=cancel_event, dry_run=dry_run
                        )
                        if entity_type == "transactions" and not dry_run:
                            restated_supporters = self._refresh_lifetime_stats(organization_id, entity_result)
                except SyncCancelled as e:
                    entity_result = entity_result or engine.last_result
                    log.warning(str(e))
                    self._finalize(job_id, JOB_FAILED, entity_result, f"Cancelled: {e}")
                    result.status = RUN_CANCELLED
                    result.error = str(e)
                    result.failed_entity = entity_type
                    break
                except Exception as e:
                    entity_result = entity_result or engine.last_result
                    log.severe(f"{context}[{entity_type}] Sync failed", e)
                    self._finalize(job_id, JOB_FAILED, entity_result, f"{type(e).__name__}: {e}")
                    self._fail(result, entity_type, f"{type(e).__name__}: {e}")
                    break

                result.entities[entity_type] = entity_result
                if entity_result.truncated:
                    message = (
                        f"Truncated at {entity_result.total_processed} records; "
                        f"resumes at page {entity_result.next_page}"
                    )
                    log.warning(f"{context}[{entity_type}] {message}")
                    self._finalize(job_id, JOB_COMPLETED, entity_result, message)
                    if result.status == RUN_COMPLETED:
                        result.status = RUN_INCOMPLETE
                        result.error = message
                        result.failed_entity = entity_type
                    continue
                self._finalize(job_id, JOB_COMPLETED, entity_result)
        finally:
            client.close()

        if not result.success:
            log.warning(f"{context} Sync {result.status} at {result.failed_entity}: {result.error}")
            return result

        if not dry_run:
            self._mark_synced(organization_id, run_started)
            if mode == MODE_FULL:
                result.plugins = self._run_plugins(organization)
            else:
                result.plugins = self._run_plugins(
                    organization, since=run_started, supporter_ids=restated_supporters
                )

        log.info(f"{context} Sync complete: {result.totals()}")
        return result

    def _fail(self, result: OrganizationSyncResult, entity_type: str, error: str) -> OrganizationSyncResult:
        result.status = RUN_FAILED
        result.failed_entity = entity_type
        result.error = error
        return result

    def _finalize(self, job_id, status, entity_result, error_message=None) -> None:
        if job_id is not None:
            self.jobs.finalize(job_id, status, entity_result, error_message)

    def _record_failure(self, organization_id, entity_type, mode, dry_run, entity_result, error) -> None:
        if dry_run:
            return
        job_id = self.jobs.start(organization_id, entity_type, mode)
        self.jobs.finalize(job_id, JOB_FAILED, entity_result, error)

    def _refresh_profile(self, organization: Mapping, client: ClassyApiClient, mode: str, dry_run: bool) -> SyncResult:
        """Fetch the organization's own record and keep the local name current."""
        profile = client.fetch_organization(organization["classy_id"])
        result = SyncResult(
            entity_type="organizations",
            mode=mode,
            total_processed=1,
            successful=1,
            pages_fetched=1,
            dry_run=dry_run,
        )
        name = profile.get("name")
        if dry_run or not name or name == organization.get("name"):
            return result

        with self.engine.begin() as conn:
            conn.execute(
                organizations.update()
                .where(organizations.c.id == organization["id"])
                .values(name=name, updated_at=utcnow())
            )
        log.info(f"[org {organization['id']}] Organization name updated to {name}")
        return result

    def _refresh_lifetime_stats(self, organization_id: int, transactions_result: SyncResult) -> List[str]:
        """Recompute lifetime stats for supporters with written transactions; returns their ids."""
        if not transactions_result.written_ids:
            return []
        supporter_ids = self.repositories["transactions"].supporter_ids_for(
            organization_id, transactions_result.written_ids
        )
        updated = self.repositories["supporters"].recalculate_lifetime_stats(organization_id, supporter_ids)
        log.info(f"[org {organization_id}][supporters] Recalculated lifetime stats for {updated} supporter(s)")
        return supporter_ids

    def _mark_synced(self, organization_id: int, synced_at) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                organizations.update()
                .where(organizations.c.id == organization_id)
                .values(last_sync_at=synced_at, updated_at=utcnow())
            )

    def _run_plugins(self, organization: Mapping, since=None, supporter_ids=()) -> Dict[str, dict]:
        outcomes = {}
        for plugin in self.plugins:
            try:
                outcomes[plugin.name] = plugin.process(
                    organization, self.repositories, since=since, supporter_ids=supporter_ids
                )
            except Exception as e:
                log.warning(f"[org {organization['id']}] Plugin {plugin.name} failed: {e}")
                outcomes[plugin.name] = {"plugin": plugin.name, "error": str(e)}
        return outcomes
