"""Organization management: tenants, their credentials and their sync runs."""

import threading
from typing import Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from fivetran_connector_sdk import Logging as log

from classy_sync.config import SyncConfig
from classy_sync.credentials import (
    REQUIRED_SECRETS,
    ClassyCredentials,
    CredentialCipher,
    CredentialSource,
    EnvironmentCredentialSource,
    StoreCredentialSource,
)
from classy_sync.errors import (
    EncryptionError,
    OrganizationError,
    OrganizationNotFoundError,
)
from classy_sync.health import organization_health
from classy_sync.jobs import SyncJobRecorder
from classy_sync.models import utcnow
from classy_sync.orchestrator import RUN_FAILED, OrganizationSyncResult, SyncOrchestrator
from classy_sync.schema import organizations
from classy_sync.sync import MODE_AUTO, SYNC_MODES


ORGANIZATION_STATUSES = ("active", "inactive")

# Everything except the credential ciphertext
PUBLIC_COLUMNS = [column for column in organizations.c if column.name != "encrypted_credentials"]


def build_credential_source(config: SyncConfig, cipher: CredentialCipher) -> CredentialSource:
    """Environment credentials when configured, otherwise each organization's stored ones."""
    if config.env_client_id and config.env_client_secret:
        log.info("Using Classy credentials from the environment for every organization")
        return EnvironmentCredentialSource(config)
    return StoreCredentialSource(cipher)


class OrganizationManager:
    """Create, inspect and sync organizations.

    Building the manager requires ENCRYPTION_KEY; a missing key fails here,
    at startup, rather than on the first sync.
    """

    def __init__(
        self,
        engine: Engine,
        config: SyncConfig,
        cipher: Optional[CredentialCipher] = None,
        orchestrator: Optional[SyncOrchestrator] = None,
        plugins=(),
    ):
        self.engine = engine
        self.config = config
        self.cipher = cipher or CredentialCipher.from_config(config)
        self.plugins = list(plugins)
        self.orchestrator = orchestrator or SyncOrchestrator(
            engine,
            config,
            build_credential_source(config, self.cipher),
            plugins=self.plugins,
        )
        self.jobs = SyncJobRecorder(engine)

    def _encrypt_credentials(self, credentials: Mapping[str, str]) -> str:
        missing = [name for name in REQUIRED_SECRETS if not credentials.get(name)]
        if missing:
            raise OrganizationError(f"Credentials are missing: {', '.join(missing)}")
        return self.cipher.encrypt_secrets(credentials)

    def _load(self, organization_id: int) -> dict:
        """Full row including the credential ciphertext. Internal use only."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(organizations).where(organizations.c.id == organization_id)
            ).mappings().first()
        if row is None:
            raise OrganizationNotFoundError(f"Organization {organization_id} not found")
        return dict(row)

    def create_organization(
        self,
        classy_id: str,
        name: str,
        credentials: Mapping[str, str],
        status: str = "active",
    ) -> dict:
        if not classy_id or not name:
            raise OrganizationError("classy_id and name are required")
        if status not in ORGANIZATION_STATUSES:
            raise OrganizationError(f"Invalid status: {status}")
        classy_id = str(classy_id)
        if self.get_by_classy_id(classy_id) is not None:
            raise OrganizationError(f"Organization with Classy id {classy_id} already exists")

        now = utcnow()
        try:
            with self.engine.begin() as conn:
                organization_id = conn.execute(
                    organizations.insert().values(
                        classy_id=classy_id,
                        name=name,
                        status=status,
                        encrypted_credentials=self._encrypt_credentials(credentials),
                        created_at=now,
                        updated_at=now,
                    )
                ).inserted_primary_key[0]
        except IntegrityError as e:
            raise OrganizationError(f"Organization with Classy id {classy_id} already exists") from e

        log.info(f"[org {organization_id}] Created organization {name} (Classy id {classy_id})")
        return self.get_organization(organization_id)

    def get_organization(self, organization_id: int) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(*PUBLIC_COLUMNS).where(organizations.c.id == organization_id)
            ).mappings().first()
        if row is None:
            raise OrganizationNotFoundError(f"Organization {organization_id} not found")
        return dict(row)

    def get_by_classy_id(self, classy_id: str) -> Optional[dict]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(*PUBLIC_COLUMNS).where(organizations.c.classy_id == str(classy_id))
            ).mappings().first()
        return dict(row) if row else None

    def list_organizations(self, status: Optional[str] = None) -> List[dict]:
        query = select(*PUBLIC_COLUMNS).order_by(organizations.c.id)
        if status:
            query = query.where(organizations.c.status == status)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def _update(self, organization_id: int, **values) -> None:
        values["updated_at"] = utcnow()
        with self.engine.begin() as conn:
            updated = conn.execute(
                organizations.update().where(organizations.c.id == organization_id).values(**values)
            ).rowcount
        if not updated:
            raise OrganizationNotFoundError(f"Organization {organization_id} not found")

    def update_credentials(self, organization_id: int, credentials: Mapping[str, str]) -> None:
        self._update(organization_id, encrypted_credentials=self._encrypt_credentials(credentials))
        log.info(f"[org {organization_id}] Credentials updated")

    def update_status(self, organization_id: int, status: str) -> None:
        if status not in ORGANIZATION_STATUSES:
            raise OrganizationError(
                f"Invalid status: {status}. Must be one of {', '.join(ORGANIZATION_STATUSES)}"
            )
        self._update(organization_id, status=status)
        log.info(f"[org {organization_id}] Status set to {status}")

    def deactivate(self, organization_id: int) -> None:
        """Soft delete. Synced data and job history are kept."""
        self.update_status(organization_id, "inactive")

    def get_credentials(self, organization_id: int) -> ClassyCredentials:
        organization = self._load(organization_id)
        return StoreCredentialSource(self.cipher).resolve(organization)

    def test_credentials(self, organization_id: int) -> bool:
        """True if the stored credentials decrypt and are complete."""
        try:
            self.get_credentials(organization_id)
        except EncryptionError as e:
            log.warning(f"[org {organization_id}] Stored credentials are unusable: {e}")
            return False
        return True

    def sync_organization(
        self,
        organization_id: int,
        mode: str = MODE_AUTO,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> OrganizationSyncResult:
        return self.orchestrator.sync_organization(
            self._load(organization_id), mode, cancel_event=cancel_event, dry_run=dry_run
        )

    def sync_all_active(self, mode: str = MODE_AUTO, dry_run: bool = False) -> Dict[int, OrganizationSyncResult]:
        """Sync every active organization in turn; one failure never stops the rest."""
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        outcomes = {}
        active = self.list_organizations(status="active")
        log.info(f"Syncing {len(active)} active organization(s)")

        for organization in active:
            organization_id = organization["id"]
            try:
                outcomes[organization_id] = self.sync_organization(organization_id, mode, dry_run=dry_run)
            except Exception as e:
                log.severe(f"[org {organization_id}] Sync failed", e)
                outcomes[organization_id] = OrganizationSyncResult(
                    organization_id=organization_id,
                    mode=mode,
                    status=RUN_FAILED,
                    dry_run=dry_run,
                    error=f"{type(e).__name__}: {e}",
                )

        failed = [org_id for org_id, outcome in outcomes.items() if not outcome.success]
        log.info(f"Synced {len(outcomes) - len(failed)} organization(s), {len(failed)} failed")
        return outcomes

    def list_jobs(
        self,
        organization_id: int,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        return self.jobs.list_jobs(organization_id, entity_type=entity_type, status=status, limit=limit)

    def health(self, organization_id: int) -> dict:
        self.get_organization(organization_id)
        return organization_health(
            organization_id,
            self.orchestrator.repositories,
            tracker=self.orchestrator.tracker,
            plugins=self.plugins,
        )

    def shutdown(self) -> None:
        for plugin in self.plugins:
            plugin.shutdown()
