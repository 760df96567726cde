"""Classy API client with OAuth2 client-credentials auth, retry and rate limit handling."""

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import requests as rq
from requests.exceptions import RequestException

from fivetran_connector_sdk import Logging as log

from classy_sync.credentials import ClassyCredentials
from classy_sync.errors import ApiRequestError, AuthenticationError


DEFAULT_BASE_URL = "https://api.classy.org"
API_VERSION_PATH = "/2.0"
PAGE_SIZE = 100  # Max allowed by Classy API
REQUEST_TIMEOUT_SECONDS = 60

# Retry configuration
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 2
MAX_BACKOFF_SECONDS = 60
BACKOFF_MULTIPLIER = 2
JITTER_RANGE = 0.5  # Add random jitter up to 50% of backoff

# Rate limit configuration
RATE_LIMIT_THRESHOLD = 10  # Proactively pause when remaining requests drop below this

# Refresh the access token this long before the platform says it expires
TOKEN_SAFETY_MARGIN_SECONDS = 60

ENTITY_ENDPOINTS = {
    "campaigns": "campaigns",
    "supporters": "supporters",
    "recurring_plans": "recurring-donation-plans",
    "transactions": "transactions",
}

# Field the change-since filter applies to; updated_at unless listed
FILTER_FIELDS = {"transactions": "purchased_at"}

# Classy rejects fractional seconds and the "Z" suffix
FILTER_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def filter_field(entity_type: str) -> str:
    return FILTER_FIELDS.get(entity_type, "updated_at")


def format_filter_timestamp(value: datetime) -> str:
    """Format a timestamp as YYYY-MM-DDTHH:mm:ss+HHMM. Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.replace(microsecond=0).strftime(FILTER_TIMESTAMP_FORMAT)


def build_date_filter(field_name: str, operator: str, value: datetime) -> str:
    """Build a server-side filter expression such as updated_at>2025-04-20T00:00:00+0000.

    The value is deliberately left unencoded; requests percent-encodes query
    parameters exactly once.
    """
    return f"{field_name}{operator}{format_filter_timestamp(value)}"


def _parse_rate_limit_headers(
    response: rq.Response,
) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """Parse rate limit headers from response.

    Returns:
        Tuple of (limit, remaining, reset_timestamp)
        Any value may be None if header is missing
    """
    headers = response.headers

    limit = headers.get("X-RateLimit-Limit")
    remaining = headers.get("X-RateLimit-Remaining")
    reset_ts = headers.get("X-RateLimit-Reset")

    def _to_int(value):
        try:
            return int(value) if value else None
        except (TypeError, ValueError):
            return None

    return _to_int(limit), _to_int(remaining), _to_int(reset_ts)


def _get_rate_limit_backoff(reset_timestamp: Optional[int]) -> float:
    """Seconds to wait until the rate limit resets, clamped to [1, MAX_BACKOFF_SECONDS]."""
    if reset_timestamp is None:
        return INITIAL_BACKOFF_SECONDS

    wait_time = reset_timestamp - time.time() + 1
    return max(1, min(wait_time, MAX_BACKOFF_SECONDS))


def _check_rate_limit(response: rq.Response, context: str = "") -> None:
    """Proactively sleep when the remaining request budget is running low."""
    limit, remaining, reset_ts = _parse_rate_limit_headers(response)

    if remaining is not None and remaining < RATE_LIMIT_THRESHOLD:
        wait_time = _get_rate_limit_backoff(reset_ts)
        log.warning(
            f"Rate limit running low for {context}. "
            f"Remaining: {remaining}/{limit}. "
            f"Proactively sleeping for {wait_time:.1f}s until reset..."
        )
        time.sleep(wait_time)


def _is_retryable_error(status_code: int) -> bool:
    """429 (rate limit) and 500/502/503/504 are worth another attempt."""
    return status_code in (429, 500, 502, 503, 504)


def _calculate_backoff(attempt: int, response: Optional[rq.Response] = None) -> float:
    """Calculate backoff time with exponential increase and jitter.

    A 429 response carrying Retry-After or a rate limit reset timestamp is
    honored instead of the exponential schedule.
    """
    if response is not None and response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return min(float(retry_after), MAX_BACKOFF_SECONDS)
        _, _, reset_ts = _parse_rate_limit_headers(response)
        if reset_ts is not None:
            return _get_rate_limit_backoff(reset_ts)

    # Exponential backoff: 2, 4, 8, 16, 32, ...
    backoff = min(INITIAL_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER**attempt), MAX_BACKOFF_SECONDS)

    # Add jitter to prevent thundering herd
    return backoff + random.uniform(0, JITTER_RANGE * backoff)


def request_with_retry(
    session: rq.Session,
    method: str,
    url: str,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
    json: Optional[dict] = None,
    context: str = "",
    max_retries: int = MAX_RETRIES,
) -> rq.Response:
    """Make an HTTP request with exponential backoff retry logic and rate limit handling.

    Retryable statuses and connection errors are retried up to max_retries
    times. Any other response, successful or not, is returned to the caller.

    Raises:
        ApiRequestError: If all retries are exhausted
    """
    for attempt in range(max_retries + 1):  # +1 for initial attempt
        try:
            response = session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except RequestException as e:
            if attempt < max_retries:
                backoff = _calculate_backoff(attempt)
                log.warning(
                    f"Connection error for {context}. "
                    f"Attempt {attempt + 1}/{max_retries + 1}. "
                    f"Retrying in {backoff:.1f}s... Error: {e}"
                )
                time.sleep(backoff)
                continue
            log.severe(f"Max retries ({max_retries}) exhausted for {context}", e)
            raise ApiRequestError(f"{method} {context} failed: {e}") from e

        if _is_retryable_error(response.status_code):
            limit, remaining, _ = _parse_rate_limit_headers(response)
            rate_info = (
                f"Rate limit: {remaining}/{limit}"
                if remaining is not None
                else "Rate limit: unknown"
            )
            if attempt < max_retries:
                backoff = _calculate_backoff(attempt, response)
                log.warning(
                    f"Retryable error {response.status_code} for {context}. "
                    f"{rate_info}. "
                    f"Attempt {attempt + 1}/{max_retries + 1}. "
                    f"Retrying in {backoff:.1f}s..."
                )
                time.sleep(backoff)
                continue
            log.severe(
                f"Max retries ({max_retries}) exhausted for {context}. "
                f"Last status: {response.status_code}. {rate_info}"
            )
            raise ApiRequestError(
                f"{method} {context} failed after {max_retries + 1} attempts: "
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        _check_rate_limit(response, context)
        return response

    raise RuntimeError(f"Unexpected retry loop exit for {context}")


class ClassyAuth:
    """Caches an OAuth2 client-credentials token for one set of credentials."""

    def __init__(
        self,
        credentials: ClassyCredentials,
        session: rq.Session,
        base_url: str = DEFAULT_BASE_URL,
        max_retries: int = MAX_RETRIES,
        clock: Callable[[], float] = time.time,
    ):
        self._credentials = credentials
        self._session = session
        self._base_url = base_url
        self._max_retries = max_retries
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @property
    def is_token_valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    def authenticate(self) -> str:
        """Return a usable access token, requesting a new one only when needed."""
        if self.is_token_valid:
            return self._token

        try:
            response = request_with_retry(
                self._session,
                "POST",
                f"{self._base_url}/oauth2/auth",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                },
                context="oauth2 token",
                max_retries=self._max_retries,
            )
        except ApiRequestError as e:
            raise AuthenticationError(f"Authentication failed: {e}") from e

        if response.status_code != 200:
            raise AuthenticationError(
                f"Authentication failed: HTTP {response.status_code}"
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise AuthenticationError("Authentication failed: no access_token in response")

        expires_in = float(payload.get("expires_in") or 3600)
        self._token = token
        self._expires_at = self._clock() + expires_in - TOKEN_SAFETY_MARGIN_SECONDS
        log.info(f"Obtained Classy access token, expires in {int(expires_in)}s")
        return token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    def get_auth_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.authenticate()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }


@dataclass
class Page:
    """One page of one entity collection."""

    records: List[dict] = field(default_factory=list)
    page: int = 1
    total_pages: int = 1

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


class ClassyApiClient:
    """Organization-scoped page fetcher bound to one organization's credentials."""

    def __init__(
        self,
        credentials: ClassyCredentials,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = PAGE_SIZE,
        max_retries: int = MAX_RETRIES,
        session: Optional[rq.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_size = min(page_size, PAGE_SIZE)
        self.max_retries = max_retries
        self.session = session or rq.Session()
        self.auth = ClassyAuth(credentials, self.session, self.base_url, max_retries)

    def authenticate(self) -> str:
        return self.auth.authenticate()

    def _get(self, path: str, params: Optional[dict], context: str) -> dict:
        url = f"{self.base_url}{API_VERSION_PATH}{path}"
        response = request_with_retry(
            self.session,
            "GET",
            url,
            headers=self.auth.get_auth_headers(),
            params=params,
            context=context,
            max_retries=self.max_retries,
        )

        if response.status_code == 401:
            # Token revoked or expired early; one refresh, then give up
            log.warning(f"Authentication error for {context}, refreshing token")
            self.auth.invalidate()
            response = request_with_retry(
                self.session,
                "GET",
                url,
                headers=self.auth.get_auth_headers(),
                params=params,
                context=context,
                max_retries=self.max_retries,
            )
            if response.status_code == 401:
                raise AuthenticationError(f"Credentials rejected for {context}")

        if response.status_code == 403:
            raise AuthenticationError(f"Access denied for {context}")

        if response.status_code >= 400:
            raise ApiRequestError(
                f"GET {context} failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        return response.json()

    def fetch_page(
        self,
        organization_external_id: str,
        entity_type: str,
        page_number: int,
        change_since: Optional[datetime] = None,
    ) -> Page:
        """Fetch one page of an organization's entity collection.

        Args:
            organization_external_id: Classy organization id (required)
            entity_type: campaigns, supporters, recurring_plans or transactions
            page_number: 1-indexed page number
            change_since: Only return records whose filter field is after this

        Returns:
            Page with records and the platform's total page count
        """
        if not organization_external_id:
            raise ValueError("Classy requests must be scoped to an organization")
        if entity_type not in ENTITY_ENDPOINTS:
            raise ValueError(f"Unknown entity type: {entity_type}")

        field_name = filter_field(entity_type)
        params = {
            "per_page": self.page_size,
            "page": page_number,
            "sort": f"{field_name}:desc",
        }
        if change_since is not None:
            params["filter"] = build_date_filter(field_name, ">", change_since)

        context = f"org {organization_external_id} {entity_type} page={page_number}"
        payload = self._get(
            f"/organizations/{organization_external_id}/{ENTITY_ENDPOINTS[entity_type]}",
            params,
            context,
        )

        records = payload.get("data") or []
        total_pages = int(payload.get("last_page") or 1)
        current_page = int(payload.get("current_page") or page_number)
        return Page(records=records, page=current_page, total_pages=total_pages)

    def fetch_organization(self, organization_external_id: str) -> dict:
        if not organization_external_id:
            raise ValueError("Classy requests must be scoped to an organization")
        return self._get(
            f"/organizations/{organization_external_id}",
            None,
            f"org {organization_external_id} profile",
        )

    def close(self) -> None:
        self.session.close()
