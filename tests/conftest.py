"""Shared fixtures: an in-memory store, a cipher and per-test organizations."""

from unittest import mock

import pytest

from classy_sync.config import SyncConfig, configure_logging
from classy_sync.credentials import CredentialCipher, generate_key
from classy_sync.models import utcnow
from classy_sync.schema import create_store, organizations


configure_logging("WARNING")


@pytest.fixture
def encryption_key():
    return generate_key()


@pytest.fixture
def config(encryption_key):
    return SyncConfig(
        database_url="sqlite://",
        encryption_key=encryption_key,
        inter_page_delay=0,
        max_retries=1,
    )


@pytest.fixture
def cipher(encryption_key):
    return CredentialCipher(encryption_key)


@pytest.fixture
def engine():
    engine = create_store("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def make_organization(engine, cipher):
    def _make(classy_id="1001", name="Helping Hands", status="active", last_sync_at=None, credentials=None):
        now = utcnow()
        secrets = credentials or {"client_id": f"client-{classy_id}", "client_secret": "s3cret"}
        with engine.begin() as conn:
            organization_id = conn.execute(
                organizations.insert().values(
                    classy_id=classy_id,
                    name=name,
                    status=status,
                    encrypted_credentials=cipher.encrypt_secrets(secrets),
                    last_sync_at=last_sync_at,
                    created_at=now,
                    updated_at=now,
                )
            ).inserted_primary_key[0]
            row = conn.execute(
                organizations.select().where(organizations.c.id == organization_id)
            ).mappings().first()
        return dict(row)

    return _make


@pytest.fixture
def organization(make_organization):
    return make_organization()


@pytest.fixture
def no_sleep():
    with mock.patch("classy_sync.api.time.sleep") as sleep:
        yield sleep
