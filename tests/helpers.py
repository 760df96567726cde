"""Test doubles and record builders shared by the test modules."""

from classy_sync.api import Page, filter_field
from classy_sync.models import parse_datetime


class FakeClassyApi:
    """Serves canned records page by page, like the Classy collection endpoints.

    Records are filtered by the entity's filter field when change_since is
    given, matching the server-side filter the real client sends.
    """

    def __init__(self, records=None, page_size=100, profile=None):
        self.records = {entity: list(items) for entity, items in (records or {}).items()}
        self.page_size = page_size
        self.profile = profile or {}
        self.calls = []
        self.failures = {}
        self.closed = False

    def fail_on(self, entity_type, page_number, error):
        self.failures[(entity_type, page_number)] = error

    def fetch_page(self, organization_external_id, entity_type, page_number, change_since=None):
        assert organization_external_id, "requests must be organization scoped"
        self.calls.append((entity_type, page_number, change_since))
        error = self.failures.get((entity_type, page_number))
        if error is not None:
            raise error

        records = self.records.get(entity_type, [])
        if change_since is not None:
            field_name = filter_field(entity_type)
            records = [
                r for r in records
                if parse_datetime(r.get(field_name)) is not None
                and parse_datetime(r.get(field_name)) > change_since
            ]

        total_pages = max(1, -(-len(records) // self.page_size))
        start = (page_number - 1) * self.page_size
        return Page(
            records=records[start : start + self.page_size],
            page=page_number,
            total_pages=total_pages,
        )

    def fetch_organization(self, organization_external_id):
        return dict(self.profile, id=organization_external_id)

    def close(self):
        self.closed = True

    def pages_fetched(self, entity_type):
        return [call for call in self.calls if call[0] == entity_type]


def iso(value):
    return value.strftime("%Y-%m-%dT%H:%M:%S+0000")


def make_supporter(index, updated_at="2025-01-01T00:00:00+0000", **extra):
    record = {
        "id": f"s{index}",
        "email_address": f"donor{index}@example.org",
        "first_name": "Donor",
        "last_name": str(index),
        "opt_in": True,
        "created_at": "2024-06-01T00:00:00+0000",
        "updated_at": updated_at,
    }
    record.update(extra)
    return record


def make_transaction(index, supporter_id, purchased_at="2025-01-02T00:00:00+0000", **extra):
    record = {
        "id": f"t{index}",
        "supporter_id": supporter_id,
        "status": "success",
        "total_gross_amount": "25.50",
        "currency": "USD",
        "purchased_at": purchased_at,
        "created_at": purchased_at,
        "updated_at": purchased_at,
    }
    record.update(extra)
    return record

