"""Post-sync plugins.

Plugins are registered statically in PLUGIN_REGISTRY and enabled by name
through the PLUGINS configuration key. The orchestrator calls process() after
an organization sync succeeds; a plugin error is reported but never fails
the sync itself.
"""

import hashlib
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

import requests as rq

from fivetran_connector_sdk import Logging as log

from classy_sync.api import request_with_retry
from classy_sync.config import SyncConfig
from classy_sync.errors import ApiRequestError, ConfigurationError
from classy_sync.repository import EntityRepository


class Plugin:
    """Interface every plugin implements."""

    name = "plugin"

    def __init__(self, config: SyncConfig):
        self.config = config

    def initialize(self) -> None:
        pass

    def process(
        self,
        organization: Mapping,
        repositories: Dict[str, EntityRepository],
        since: Optional[datetime] = None,
        supporter_ids: Iterable[str] = (),
    ) -> dict:
        """Push the organization's data after a successful sync.

        ``since`` limits the run to rows synced at or after it; ``supporter_ids``
        adds supporters whose derived stats changed in the same run.
        """
        raise NotImplementedError

    def health_check(self) -> dict:
        return {"component": self.name, "status": "healthy"}

    def shutdown(self) -> None:
        pass


# Lifetime amount tiers, highest first
DONOR_VALUE_TIERS = (
    (Decimal("10000"), "Transformational"),
    (Decimal("5000"), "Principal Donor"),
    (Decimal("1000"), "Major Donor"),
    (Decimal("100"), "Regular Donor"),
    (Decimal("25"), "Small Donor"),
    (Decimal("0.01"), "First-Time"),
)

DONATION_COUNT_TIERS = (
    (26, "Champion Donor"),
    (11, "Loyal Donor"),
    (4, "Frequent Donor"),
    (2, "Repeat Donor"),
    (1, "One-Time Donor"),
)

MAX_LOGGED_MEMBER_ERRORS = 5


def member_hash(email: str) -> str:
    """MailChimp subscriber hash: md5 of the lowercased address."""
    return hashlib.md5(email.strip().lower().encode()).hexdigest()


def donor_segments(supporter: Mapping) -> List[str]:
    amount = supporter.get("lifetime_donation_amount") or Decimal("0")
    count = supporter.get("lifetime_donation_count") or 0

    segments = []
    for threshold, label in DONOR_VALUE_TIERS:
        if amount >= threshold:
            segments.append(label)
            break
    for threshold, label in DONATION_COUNT_TIERS:
        if count >= threshold:
            segments.append(label)
            break
    if amount >= Decimal("1000"):
        segments.append("$1K+ Lifetime")
    if amount >= Decimal("5000"):
        segments.append("$5K+ Lifetime")
    return segments


class MailchimpPlugin(Plugin):
    """Keep a MailChimp audience in step with email-opted-in supporters."""

    name = "mailchimp"
    tag_prefix = "Classy-"

    def __init__(self, config: SyncConfig, session: Optional[rq.Session] = None):
        super().__init__(config)
        self.session = session
        self.base_url = None

    def initialize(self) -> None:
        api_key = self.config.mailchimp_api_key
        if not api_key or not self.config.mailchimp_list_id:
            raise ConfigurationError("MAILCHIMP_API_KEY and MAILCHIMP_LIST_ID are required")
        # Keys look like <key>-<datacenter>
        _, _, datacenter = api_key.rpartition("-")
        if not datacenter or datacenter == api_key:
            raise ConfigurationError("MAILCHIMP_API_KEY must end with the datacenter, e.g. -us6")

        self.base_url = f"https://{datacenter}.api.mailchimp.com/3.0"
        if self.session is None:
            self.session = rq.Session()
        self.session.auth = ("classy-sync", api_key)
        log.info(f"MailChimp plugin ready for list {self.config.mailchimp_list_id}")

    def to_member(self, supporter: Mapping) -> dict:
        amount = supporter.get("lifetime_donation_amount") or Decimal("0")
        return {
            "email_address": supporter["email_address"],
            "status_if_new": "subscribed",
            "merge_fields": {
                "FNAME": supporter.get("first_name") or "",
                "LNAME": supporter.get("last_name") or "",
                "TOTALAMT": float(amount),
                "DONCNT": supporter.get("lifetime_donation_count") or 0,
            },
            "tags": [f"{self.tag_prefix}{segment}" for segment in donor_segments(supporter)],
        }

    def upsert_member(self, supporter: Mapping) -> rq.Response:
        list_id = self.config.mailchimp_list_id
        return request_with_retry(
            self.session,
            "PUT",
            f"{self.base_url}/lists/{list_id}/members/{member_hash(supporter['email_address'])}",
            json=self.to_member(supporter),
            context=f"mailchimp member {supporter['id']}",
            max_retries=self.config.max_retries,
        )

    def process(
        self,
        organization: Mapping,
        repositories: Dict[str, EntityRepository],
        since: Optional[datetime] = None,
        supporter_ids: Iterable[str] = (),
    ) -> dict:
        """Upsert opted-in supporters into the audience.

        Only supporters synced at or after ``since``, plus those in
        ``supporter_ids``, are pushed when ``since`` is given.
        Authentication errors from MailChimp stop the run; other member
        errors are counted.
        """
        context = f"[org {organization['id']}][mailchimp]"
        members = repositories["supporters"].email_opted_in(
            organization["id"], since=since, supporter_ids=supporter_ids
        )
        stats = {"plugin": self.name, "processed": 0, "errors": 0}

        for supporter in members:
            try:
                response = self.upsert_member(supporter)
            except ApiRequestError as e:
                response = None
                error = str(e)
            else:
                error = None if response.status_code < 400 else f"HTTP {response.status_code}"

            if response is not None and response.status_code in (401, 403):
                raise ApiRequestError(
                    f"MailChimp rejected the API key: HTTP {response.status_code}",
                    status_code=response.status_code,
                )

            if error is None:
                stats["processed"] += 1
                continue

            stats["errors"] += 1
            if stats["errors"] <= MAX_LOGGED_MEMBER_ERRORS:
                log.warning(f"{context} Failed to upsert supporter {supporter['id']}: {error}")

        log.info(f"{context} Pushed {stats['processed']} member(s), {stats['errors']} error(s)")
        return stats

    def health_check(self) -> dict:
        if self.base_url is None:
            return {"component": self.name, "status": "error", "error": "not initialized"}
        try:
            response = request_with_retry(
                self.session, "GET", f"{self.base_url}/ping", context="mailchimp ping", max_retries=1
            )
        except ApiRequestError as e:
            return {"component": self.name, "status": "error", "error": str(e)}
        if response.status_code != 200:
            return {"component": self.name, "status": "error", "error": f"HTTP {response.status_code}"}
        return {"component": self.name, "status": "healthy"}

    def shutdown(self) -> None:
        if self.session is not None:
            self.session.close()


PLUGIN_REGISTRY = {
    MailchimpPlugin.name: MailchimpPlugin,
}


def load_plugins(config: SyncConfig) -> List[Plugin]:
    """Build and initialize the plugins named in the PLUGINS configuration key."""
    plugins = []
    for name in config.plugins:
        plugin_cls = PLUGIN_REGISTRY.get(name)
        if plugin_cls is None:
            raise ConfigurationError(
                f"Unknown plugin: {name}. Available: {', '.join(sorted(PLUGIN_REGISTRY))}"
            )
        plugin = plugin_cls(config)
        plugin.initialize()
        plugins.append(plugin)
    return plugins
