import hashlib
from dataclasses import replace
from decimal import Decimal
from unittest import mock

import pytest
import requests as rq

from classy_sync.errors import ApiRequestError, ConfigurationError
from classy_sync.plugins import (
    PLUGIN_REGISTRY,
    MailchimpPlugin,
    donor_segments,
    load_plugins,
    member_hash,
)
from classy_sync.repository import build_repositories

from helpers import make_supporter


def mailchimp_config(config):
    return replace(config, mailchimp_api_key="abc123-us6", mailchimp_list_id="list9", plugins=("mailchimp",))


def ok_response(status_code=200):
    response = mock.Mock(spec=rq.Response)
    response.status_code = status_code
    response.headers = {}
    return response


def test_member_hash_is_md5_of_lowercase_email():
    assert member_hash("Donor@Example.org ") == hashlib.md5(b"donor@example.org").hexdigest()
    assert member_hash("Donor@Example.org") == member_hash("donor@example.org")


def test_donor_segments_from_lifetime_stats():
    assert donor_segments({"lifetime_donation_amount": Decimal("1500.00"), "lifetime_donation_count": 12}) == [
        "Major Donor",
        "Loyal Donor",
        "$1K+ Lifetime",
    ]
    assert donor_segments({"lifetime_donation_amount": None, "lifetime_donation_count": None}) == []


def test_registry_and_loading(config):
    assert PLUGIN_REGISTRY["mailchimp"] is MailchimpPlugin
    with pytest.raises(ConfigurationError):
        load_plugins(replace(config, plugins=("segment",)))

    plugins = load_plugins(mailchimp_config(config))

    assert [plugin.name for plugin in plugins] == ["mailchimp"]
    assert plugins[0].base_url == "https://us6.api.mailchimp.com/3.0"


def test_mailchimp_key_needs_datacenter(config):
    plugin = MailchimpPlugin(replace(config, mailchimp_api_key="abc123", mailchimp_list_id="list9"))
    with pytest.raises(ConfigurationError):
        plugin.initialize()


def test_process_upserts_opted_in_supporters(engine, config, organization):
    repositories = build_repositories(engine)
    repositories["supporters"].upsert(make_supporter(1, email_address="One@Example.org"), organization["id"])
    repositories["supporters"].upsert(make_supporter(2, opt_in=False), organization["id"])
    session = mock.Mock(spec=rq.Session)
    session.request.return_value = ok_response()
    plugin = MailchimpPlugin(mailchimp_config(config), session=session)
    plugin.initialize()

    stats = plugin.process(organization, repositories)

    assert stats["processed"] == 1
    assert stats["errors"] == 0
    call = session.request.call_args
    assert call.kwargs["method"] == "PUT"
    assert call.kwargs["url"] == (
        f"https://us6.api.mailchimp.com/3.0/lists/list9/members/{member_hash('one@example.org')}"
    )
    body = call.kwargs["json"]
    assert body["email_address"] == "One@Example.org"
    assert body["status_if_new"] == "subscribed"
    assert body["merge_fields"]["FNAME"] == "Donor"


def test_member_errors_are_counted(engine, config, organization):
    repositories = build_repositories(engine)
    repositories["supporters"].upsert(make_supporter(1), organization["id"])
    session = mock.Mock(spec=rq.Session)
    session.request.return_value = ok_response(400)
    plugin = MailchimpPlugin(mailchimp_config(config), session=session)
    plugin.initialize()

    stats = plugin.process(organization, repositories)

    assert stats == {"plugin": "mailchimp", "processed": 0, "errors": 1}


def test_rejected_api_key_stops_processing(engine, config, organization):
    repositories = build_repositories(engine)
    repositories["supporters"].upsert(make_supporter(1), organization["id"])
    repositories["supporters"].upsert(make_supporter(2), organization["id"])
    session = mock.Mock(spec=rq.Session)
    session.request.return_value = ok_response(401)
    plugin = MailchimpPlugin(mailchimp_config(config), session=session)
    plugin.initialize()

    with pytest.raises(ApiRequestError):
        plugin.process(organization, repositories)
    assert session.request.call_count == 1


def test_health_check(config):
    session = mock.Mock(spec=rq.Session)
    session.request.return_value = ok_response()
    plugin = MailchimpPlugin(mailchimp_config(config), session=session)

    assert plugin.health_check()["status"] == "error"
    plugin.initialize()
    assert plugin.health_check()["status"] == "healthy"
