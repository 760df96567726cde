"""Data models and transformations from Classy API records to table rows.

The Classy API has renamed several fields across versions. Every mapper below
accepts both spellings so that drift is absorbed here and nowhere else.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from dateutil import parser as date_parser


CENT = Decimal("0.01")

TRANSACTION_STATUSES = {
    "success": "success",
    "successful": "success",
    "completed": "success",
    "processed": "success",
    "paid": "success",
    "pending": "pending",
    "processing": "pending",
    "failed": "failed",
    "error": "failed",
    "cancelled": "failed",
    "canceled": "failed",
    "disputed": "failed",
    "declined": "failed",
    "refunded": "refunded",
    "reversed": "refunded",
}

RECURRING_PLAN_STATUSES = {
    "active": "active",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "inactive": "cancelled",
    "paused": "paused",
    "draft": "paused",
    "failing": "paused",
    "suspended": "paused",
    "completed": "completed",
    "ended": "completed",
}


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_datetime(value) -> Optional[datetime]:
    """Parse a Classy timestamp (e.g. 2020-01-09T18:13:11+0000) to naive UTC."""
    if value is None or value == "" or value == "null":
        return None
    if isinstance(value, datetime):
        return to_utc_naive(value)
    try:
        if isinstance(value, str):
            return to_utc_naive(date_parser.parse(value))
        return None
    except (ValueError, TypeError, OverflowError):
        return None


def safe_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert an amount to a two-place Decimal, handling currency formatting."""
    if value is None or value == "" or value == "null":
        return default
    try:
        if isinstance(value, bool):
            return default
        if isinstance(value, (int, Decimal)):
            amount = Decimal(value)
        elif isinstance(value, float):
            # repr() keeps the shortest round-tripping form, e.g. 10.1 not 10.0999...
            amount = Decimal(repr(value))
        elif isinstance(value, str):
            cleaned = value.replace("$", "").replace(",", "").replace(" ", "").strip()
            if cleaned == "":
                return default
            amount = Decimal(cleaned)
        else:
            return default
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return default


def safe_str(val) -> Optional[str]:
    """Convert value to string, return None for null values."""
    return str(val) if val is not None and val != "" else None


def safe_int(val) -> Optional[int]:
    try:
        return int(val) if val is not None and val != "" else None
    except (TypeError, ValueError):
        return None


def safe_bool(val) -> Optional[bool]:
    if val is None or val == "":
        return None
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "y")
    return bool(val)


def reference_id(raw: dict, field: str) -> Optional[str]:
    """Read a foreign id given flat (supporter_id) or nested (supporter.id)."""
    value = raw.get(f"{field}_id")
    if value is None:
        nested = raw.get(field)
        if isinstance(nested, dict):
            value = nested.get("id")
    return safe_str(value)


def map_transaction_status(status) -> str:
    return TRANSACTION_STATUSES.get(str(status or "").lower(), "pending")


def map_recurring_plan_status(status) -> str:
    return RECURRING_PLAN_STATUSES.get(str(status or "").lower(), "active")


def format_campaign(raw: dict) -> dict:
    return {
        "id": safe_str(raw.get("id")),
        "name": raw.get("name"),
        "status": raw.get("status"),
        "goal": safe_decimal(raw.get("goal")),
        "total_raised": safe_decimal(raw.get("total_raised")),
        "donor_count": safe_int(raw.get("donor_count")),
        "campaign_type": raw.get("type") or raw.get("campaign_type"),
        "start_date": parse_datetime(raw.get("started_at") or raw.get("start_date")),
        "end_date": parse_datetime(raw.get("ended_at") or raw.get("end_date")),
        "created_at": parse_datetime(raw.get("created_at")),
        "updated_at": parse_datetime(raw.get("updated_at")),
    }


def format_supporter(raw: dict) -> dict:
    """Transform a supporter record.

    Lifetime donation statistics are not part of the supporter payload; they
    are recomputed from transactions after each transactions sync.
    """
    return {
        "id": safe_str(raw.get("id")),
        "email_address": raw.get("email_address") or raw.get("email"),
        "first_name": raw.get("first_name"),
        "last_name": raw.get("last_name"),
        "phone": raw.get("phone"),
        "address_line1": raw.get("address1") or raw.get("address_line1"),
        "address_line2": raw.get("address2") or raw.get("address_line2"),
        "city": raw.get("city"),
        "state": raw.get("state"),
        "postal_code": raw.get("postal_code"),
        "country": raw.get("country"),
        "email_opt_in": safe_bool(raw.get("opt_in", raw.get("email_opt_in"))),
        "sms_opt_in": safe_bool(raw.get("sms_opt_in")),
        "last_email_consent_date": parse_datetime(raw.get("last_email_consent_decision_date")),
        "last_sms_consent_date": parse_datetime(raw.get("last_sms_consent_decision_date")),
        "last_emailed_at": parse_datetime(raw.get("last_emailed_at")),
        "created_at": parse_datetime(raw.get("created_at")),
        "updated_at": parse_datetime(raw.get("updated_at")),
    }


def format_recurring_plan(raw: dict) -> dict:
    amount = raw.get("donation_amount")
    if amount is None:
        amount = raw.get("amount")
    return {
        "id": safe_str(raw.get("id")),
        "supporter_id": reference_id(raw, "supporter"),
        "campaign_id": reference_id(raw, "campaign"),
        "status": map_recurring_plan_status(raw.get("status")),
        "amount": safe_decimal(amount, Decimal("0.00")),
        "currency": raw.get("currency_code") or raw.get("currency") or "USD",
        "frequency": raw.get("frequency") or "monthly",
        "next_payment_date": parse_datetime(
            raw.get("next_processing_date") or raw.get("next_payment_date")
        ),
        "created_at": parse_datetime(raw.get("created_at")),
        "updated_at": parse_datetime(raw.get("updated_at")),
    }


def format_transaction(raw: dict) -> dict:
    zero = Decimal("0.00")
    return {
        "id": safe_str(raw.get("id")),
        "supporter_id": reference_id(raw, "supporter"),
        "campaign_id": reference_id(raw, "campaign"),
        "recurring_plan_id": reference_id(raw, "recurring_plan")
        or reference_id(raw, "recurring_donation_plan"),
        "status": map_transaction_status(raw.get("status")),
        # Core amounts
        "total_gross_amount": safe_decimal(raw.get("total_gross_amount"), zero),
        "donation_gross_amount": safe_decimal(raw.get("donation_gross_amount"), zero),
        "fees_amount": safe_decimal(raw.get("fees_amount"), zero),
        "donation_net_amount": safe_decimal(raw.get("donation_net_amount"), zero),
        "currency": raw.get("currency") or raw.get("currency_code") or "USD",
        # Multi-currency
        "raw_total_gross_amount": safe_decimal(raw.get("raw_total_gross_amount")),
        "raw_currency_code": raw.get("raw_currency_code"),
        "charged_total_gross_amount": safe_decimal(raw.get("charged_total_gross_amount")),
        "charged_currency_code": raw.get("charged_currency_code"),
        # Billing
        "billing_city": raw.get("billing_city"),
        "billing_state": raw.get("billing_state"),
        "billing_country": raw.get("billing_country"),
        "billing_postal_code": raw.get("billing_postal_code"),
        "fundraising_page_id": safe_str(raw.get("fundraising_page_id")),
        "fundraising_team_id": safe_str(raw.get("fundraising_team_id")),
        "purchased_at": parse_datetime(raw.get("purchased_at")),
        "created_at": parse_datetime(raw.get("created_at")),
        "updated_at": parse_datetime(raw.get("updated_at")),
    }
