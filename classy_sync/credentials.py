"""Per-organization API credentials, encrypted at rest.

The stored blob is a JSON object of named secrets where every value is an
independent Fernet token:

    {"client_id": "gAAAA...", "client_secret": "gAAAA..."}

Decryption needs the process-wide ENCRYPTION_KEY. A missing or malformed key
is a startup error, raised when the cipher is built rather than on first use.
"""

import json
from dataclasses import dataclass, field
from typing import Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from classy_sync.config import SyncConfig
from classy_sync.errors import ConfigurationError, EncryptionError


REQUIRED_SECRETS = ("client_id", "client_secret")


def generate_key() -> str:
    return Fernet.generate_key().decode()


class CredentialCipher:
    """Encrypts and decrypts individual secret values."""

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}")

    @classmethod
    def from_config(cls, config: SyncConfig) -> "CredentialCipher":
        return cls(config.require_encryption_key())

    def encrypt_value(self, value: str) -> str:
        return self._fernet.encrypt(str(value).encode()).decode()

    def decrypt_value(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except (InvalidToken, AttributeError) as e:
            raise EncryptionError(
                "Credential decryption failed. The encryption key may have changed."
            ) from e

    def encrypt_secrets(self, secrets: Mapping[str, str]) -> str:
        """Encrypt each secret separately and serialize the result as JSON."""
        return json.dumps(
            {name: self.encrypt_value(value) for name, value in secrets.items() if value is not None},
            sort_keys=True,
        )

    def decrypt_secrets(self, blob: str) -> dict:
        try:
            encrypted = json.loads(blob)
        except (TypeError, ValueError) as e:
            raise EncryptionError("Credential blob is not a JSON object") from e
        if not isinstance(encrypted, dict):
            raise EncryptionError("Credential blob is not a JSON object")
        return {name: self.decrypt_value(token) for name, token in encrypted.items()}


@dataclass(frozen=True)
class ClassyCredentials:
    """Decrypted credentials for one organization run. Never logged."""

    client_id: str
    client_secret: str = field(repr=False)
    source: str = "store"

    @classmethod
    def from_secrets(cls, secrets: Mapping[str, str], source: str = "store") -> "ClassyCredentials":
        missing = [name for name in REQUIRED_SECRETS if not secrets.get(name)]
        if missing:
            raise EncryptionError(f"Credentials are missing: {', '.join(missing)}")
        return cls(
            client_id=secrets["client_id"],
            client_secret=secrets["client_secret"],
            source=source,
        )


class CredentialSource:
    """Resolves the credentials to use for one organization run."""

    name = "abstract"

    def resolve(self, organization: Mapping) -> ClassyCredentials:
        raise NotImplementedError


class EnvironmentCredentialSource(CredentialSource):
    """Credentials captured from the environment at startup (single-tenant setups)."""

    name = "environment"

    def __init__(self, config: SyncConfig):
        if not config.env_client_id or not config.env_client_secret:
            raise ConfigurationError(
                "CLASSY_CLIENT_ID and CLASSY_CLIENT_SECRET are required for environment credentials"
            )
        self._credentials = ClassyCredentials(
            client_id=config.env_client_id,
            client_secret=config.env_client_secret,
            source=self.name,
        )

    def resolve(self, organization: Mapping) -> ClassyCredentials:
        return self._credentials


class StoreCredentialSource(CredentialSource):
    """Credentials decrypted from the organization's stored blob."""

    name = "store"

    def __init__(self, cipher: CredentialCipher):
        self._cipher = cipher

    def resolve(self, organization: Mapping) -> ClassyCredentials:
        blob: Optional[str] = organization.get("encrypted_credentials")
        if not blob:
            raise EncryptionError(
                f"No credentials stored for organization {organization.get('id')}"
            )
        return ClassyCredentials.from_secrets(
            self._cipher.decrypt_secrets(blob), source=self.name
        )
