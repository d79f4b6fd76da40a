"""
The produced surface: every entry point returns an Outcome.
"""

import sqlite3

from dealseal.errors import ErrorKind
from dealseal.models import RequestContext
from dealseal.rate_limit import RateLimitPolicy
from dealseal.service import DealService, build_service

EVIL = "https://evil.example"


def test_malformed_ids_are_validation_errors(service, creator):
    out = service.void_deal(creator, "42")
    assert not out.ok
    assert out.error_kind == ErrorKind.VALIDATION
    assert out.field == "deal_id"
    assert out.to_dict() == {
        "ok": False,
        "error": {"kind": "validation", "message": "Invalid deal ID", "field": "deal_id"},
    }
    assert service.get_deal_by_public_id("a b").field == "public_id"


def test_get_deal_by_public_id(service, make_deal):
    deal, _ = make_deal()
    out = service.get_deal_by_public_id(deal["public_id"])
    assert out.ok
    assert out.value["id"] == deal["id"]
    assert "recipient_email" not in out.value
    assert out.value["recipient_name"] == "Bob"
    assert service.get_deal_by_public_id("zzzzzzzzzz").error_kind == ErrorKind.NOT_FOUND


def test_foreign_origin_touches_nothing(service, store, make_deal, notifier):
    evil = RequestContext(user_id="creator-1", origin=EVIL)
    out = service.create_deal(evil, title="Loan", terms=[], recipient_name="Bob")
    assert out.error_kind == ErrorKind.AUTHORIZATION
    assert out.message == "Invalid request origin"
    assert store.get_db_stats()["deals_count"] == 0

    deal, token = make_deal("verified")
    assert service.void_deal(evil, deal["id"]).error_kind == ErrorKind.AUTHORIZATION
    assert service.confirm_deal(RequestContext(origin=EVIL), deal["id"], token, "Bob").error_kind \
        == ErrorKind.AUTHORIZATION
    assert service.send_verification_code(RequestContext(origin=EVIL), deal["id"], "email",
                                          "bob@example.com").error_kind == ErrorKind.AUTHORIZATION
    assert notifier.codes == []
    assert service.deals.get(deal["id"]).status.value == "pending"


def test_allowed_origin(service, store):
    ctx = RequestContext(user_id="creator-1", origin="https://app.dealseal.test")
    assert service.create_deal(ctx, title="Loan", terms=[], recipient_name="Bob").ok


def test_create_rate_limited(store, settings, notifier, clock, creator):
    limits = dict(settings.rate_limits, deal_create=(2, 3600))
    svc = DealService(store, settings, notifier, RateLimitPolicy(limits), clock)
    for _ in range(2):
        assert svc.create_deal(creator, title="Loan", terms=[], recipient_name="Bob").ok
    out = svc.create_deal(creator, title="Loan", terms=[], recipient_name="Bob")
    assert out.error_kind == ErrorKind.RATE_LIMITED
    assert store.get_db_stats()["deals_count"] == 2


def test_code_issuance_rate_limited_per_channel(service, notifier, make_deal, recipient):
    deal, _ = make_deal("strong")
    limit, _ = service.settings.rate_limits["otp"]
    for _ in range(limit):
        assert service.send_verification_code(recipient, deal["id"], "email", "bob@example.com").ok
    out = service.send_verification_code(recipient, deal["id"], "email", "bob@example.com")
    assert out.error_kind == ErrorKind.RATE_LIMITED
    assert len(notifier.codes) == limit
    # the phone channel has its own budget
    assert service.send_verification_code(recipient, deal["id"], "phone", "+14155550123").ok


def test_confirm_rate_limited(store, settings, notifier, clock, creator, recipient):
    limits = dict(settings.rate_limits, confirm=(1, 60))
    svc = DealService(store, settings, notifier, RateLimitPolicy(limits), clock)
    deal = svc.create_deal(creator, title="Loan", terms=[], recipient_name="Bob").value
    assert svc.confirm_deal(recipient, deal["deal"]["id"], "0" * 64, "Bob").error_kind \
        == ErrorKind.AUTHORIZATION
    out = svc.confirm_deal(recipient, deal["deal"]["id"], deal["access_token"], "Bob")
    assert out.error_kind == ErrorKind.RATE_LIMITED
    assert svc.deals.get(deal["deal"]["id"]).status.value == "pending"


class TestViewPolicy:

    def test_pending_open_to_link_holders(self, service, make_deal, stranger):
        deal, _ = make_deal()
        assert service.view_deal(stranger, deal["public_id"]).ok

    def test_confirmed_needs_party_or_token(self, service, make_deal, creator, recipient, stranger):
        deal, token = make_deal()
        service.confirm_deal(recipient, deal["id"], token, "Bob")
        assert service.view_deal(stranger, deal["public_id"]).error_kind == ErrorKind.AUTHORIZATION
        assert service.view_deal(stranger, deal["public_id"], "0" * 64).error_kind == ErrorKind.AUTHORIZATION
        assert service.view_deal(recipient, deal["public_id"], token).ok
        assert service.view_deal(creator, deal["public_id"]).ok

    def test_voided_parties_only(self, service, make_deal, creator, stranger):
        deal, token = make_deal()
        service.void_deal(creator, deal["id"])
        assert service.view_deal(stranger, deal["public_id"], token).error_kind == ErrorKind.AUTHORIZATION
        out = service.view_deal(creator, deal["public_id"])
        assert out.ok
        assert out.value["deal"]["status"] == "voided"


class TestAuditTrail:

    def test_parties_and_token_holders(self, service, make_deal, creator, recipient, stranger):
        deal, token = make_deal(recipient_id="bob-1")
        assert service.get_audit_trail(creator, deal["id"]).ok
        assert service.get_audit_trail(RequestContext(user_id="bob-1"), deal["id"]).ok
        out = service.get_audit_trail(recipient, deal["id"], token)
        assert out.ok
        assert out.value[0]["event_type"] == "deal_created"
        assert "entry_hash" in out.value[0]

    def test_strangers_rejected(self, service, make_deal, stranger):
        deal, _ = make_deal()
        assert service.get_audit_trail(stranger, deal["id"]).error_kind == ErrorKind.AUTHORIZATION
        assert service.get_audit_trail(stranger, deal["id"], "0" * 64).error_kind == ErrorKind.AUTHORIZATION


def test_store_failure_is_collaborator_error(service, monkeypatch):
    def broken(public_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(service.store, "get_deal_by_public_id", broken)
    out = service.get_deal_by_public_id("Ab3dE5gH9k")
    assert out.error_kind == ErrorKind.COLLABORATOR
    assert out.message == "Server error"


def test_build_service_initialises_store(settings, notifier, tmp_path):
    settings.db_path = str(tmp_path / "nested" / "deals.db")
    svc = build_service(settings, notifier)
    try:
        assert svc.store.get_db_stats()["deals_count"] == 0
        assert svc.notifier is notifier
    finally:
        svc.store.close_connection()
