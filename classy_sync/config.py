"""Configuration for the sync engine.

Configuration is read once, at process start, into an immutable SyncConfig
that is passed down to every component.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from fivetran_connector_sdk import Logging as log

from classy_sync.errors import ConfigurationError


DEFAULT_DATABASE_URL = "sqlite:///classy_sync.db"
DEFAULT_BASE_URL = "https://api.classy.org"

CONFIG_KEYS = (
    "DATABASE_URL",
    "CLASSY_API_BASE_URL",
    "ENCRYPTION_KEY",
    "PAGE_SIZE",
    "MAX_RETRIES",
    "INTER_PAGE_DELAY_SECONDS",
    "PROGRESS_EVERY_PAGES",
    "MAX_RECORDS_PER_SYNC",
    "MAX_REFERENCE_SKIPS",
    "MAX_LOGGED_RECORD_ERRORS",
    "LOG_LEVEL",
    "CLASSY_CLIENT_ID",
    "CLASSY_CLIENT_SECRET",
    "MAILCHIMP_API_KEY",
    "MAILCHIMP_LIST_ID",
    "PLUGINS",
)


def configure_logging(level: str = "INFO") -> None:
    """Set the SDK logger threshold (FINE, INFO, WARNING or SEVERE)."""
    try:
        log.LOG_LEVEL = log.Level[level.upper()]
    except KeyError:
        raise ConfigurationError(f"Unknown LOG_LEVEL: {level}")


def _int(configuration: Mapping, key: str, default: int) -> int:
    try:
        return int(configuration.get(key, default) or default)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer")


def _float(configuration: Mapping, key: str, default: float) -> float:
    value = configuration.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number")


@dataclass(frozen=True)
class SyncConfig:
    """Centralized configuration for sync behavior."""

    database_url: str = DEFAULT_DATABASE_URL
    base_url: str = DEFAULT_BASE_URL
    encryption_key: Optional[str] = field(default=None, repr=False)
    page_size: int = 100
    max_retries: int = 5
    inter_page_delay: float = 0.1
    progress_every_pages: int = 10
    max_records_per_sync: int = 100000
    max_reference_skips: int = 5
    max_logged_record_errors: int = 5
    log_level: str = "INFO"
    env_client_id: Optional[str] = None
    env_client_secret: Optional[str] = field(default=None, repr=False)
    mailchimp_api_key: Optional[str] = field(default=None, repr=False)
    mailchimp_list_id: Optional[str] = None
    plugins: Tuple[str, ...] = ()

    @classmethod
    def from_configuration(cls, configuration: Mapping) -> "SyncConfig":
        plugins = tuple(
            name.strip()
            for name in (configuration.get("PLUGINS") or "").split(",")
            if name.strip()
        )
        return cls(
            database_url=configuration.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
            base_url=(configuration.get("CLASSY_API_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            encryption_key=configuration.get("ENCRYPTION_KEY") or None,
            page_size=_int(configuration, "PAGE_SIZE", 100),
            max_retries=_int(configuration, "MAX_RETRIES", 5),
            inter_page_delay=_float(configuration, "INTER_PAGE_DELAY_SECONDS", 0.1),
            progress_every_pages=_int(configuration, "PROGRESS_EVERY_PAGES", 10),
            max_records_per_sync=_int(configuration, "MAX_RECORDS_PER_SYNC", 100000),
            max_reference_skips=_int(configuration, "MAX_REFERENCE_SKIPS", 5),
            max_logged_record_errors=_int(configuration, "MAX_LOGGED_RECORD_ERRORS", 5),
            log_level=configuration.get("LOG_LEVEL") or "INFO",
            env_client_id=configuration.get("CLASSY_CLIENT_ID") or None,
            env_client_secret=configuration.get("CLASSY_CLIENT_SECRET") or None,
            mailchimp_api_key=configuration.get("MAILCHIMP_API_KEY") or None,
            mailchimp_list_id=configuration.get("MAILCHIMP_LIST_ID") or None,
            plugins=plugins,
        )

    @classmethod
    def from_environment(cls) -> "SyncConfig":
        """Snapshot the process environment. Call once at startup."""
        return cls.from_configuration(
            {key: os.environ[key] for key in CONFIG_KEYS if key in os.environ}
        )

    def require_encryption_key(self) -> str:
        if not self.encryption_key:
            raise ConfigurationError(
                "ENCRYPTION_KEY is required to read organization credentials"
            )
        return self.encryption_key
