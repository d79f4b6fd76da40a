import pytest

from dealseal.config import Settings
from dealseal.errors import DealValidationError, InvalidOrigin
from dealseal.models import RequestContext, TermType, TrustLevel, VerificationType
from dealseal.security import (
    MAX_TERMS,
    extract_client_ip,
    sanitize_for_logging,
    validate_access_token,
    validate_code,
    validate_deal_id,
    validate_email,
    validate_new_deal,
    validate_origin,
    validate_phone,
    validate_public_id,
    validate_target,
    validate_terms,
)

ORIGIN = "https://app.dealseal.test"


def test_deal_id_must_be_uuid():
    assert validate_deal_id("0B7C1F5E-8A2D-4C3B-9E1F-2A3B4C5D6E7F") == "0b7c1f5e-8a2d-4c3b-9e1f-2a3b4c5d6e7f"
    with pytest.raises(DealValidationError) as e:
        validate_deal_id("not-a-uuid")
    assert e.value.field == "deal_id"
    with pytest.raises(DealValidationError):
        validate_deal_id(None)


def test_public_id_and_token_formats():
    assert validate_public_id("Ab3dE5gH9k") == "Ab3dE5gH9k"
    with pytest.raises(DealValidationError):
        validate_public_id("abc")
    with pytest.raises(DealValidationError):
        validate_public_id("has space!")
    assert validate_access_token("a" * 64) == "a" * 64
    with pytest.raises(DealValidationError):
        validate_access_token("A" * 64)
    with pytest.raises(DealValidationError):
        validate_access_token("a" * 63)


def test_email_is_normalised():
    assert validate_email("  Bob@Example.COM ") == "bob@example.com"
    with pytest.raises(DealValidationError):
        validate_email("bob@example")
    with pytest.raises(DealValidationError):
        validate_email("bob example.com")


def test_phone_must_be_e164():
    assert validate_phone("+14155550123") == "+14155550123"
    for bad in ("4155550123", "+0123456", "+1 415 555 0123", ""):
        with pytest.raises(DealValidationError):
            validate_phone(bad)


def test_target_follows_channel():
    assert validate_target(VerificationType.EMAIL, "BOB@example.com") == "bob@example.com"
    assert validate_target(VerificationType.PHONE, "+14155550123") == "+14155550123"
    with pytest.raises(DealValidationError) as e:
        validate_target(VerificationType.PHONE, "bob@example.com")
    assert e.value.field == "target"


def test_code_is_exactly_six_digits():
    assert validate_code("012345") == "012345"
    for bad in ("12345", "1234567", "abcdef", 123456):
        with pytest.raises(DealValidationError):
            validate_code(bad)


def test_terms_keep_order_and_types():
    terms = validate_terms([
        {"label": " Price ", "value": "10", "type": "number"},
        {"label": "Notes", "value": "as is"},
    ])
    assert [t.label for t in terms] == ["Price", "Notes"]
    assert terms[0].type == TermType.NUMBER
    assert terms[1].type == TermType.TEXT


def test_terms_limits():
    with pytest.raises(DealValidationError) as e:
        validate_terms([{"label": f"t{i}", "value": "v"} for i in range(MAX_TERMS + 1)])
    assert e.value.field == "terms"
    with pytest.raises(DealValidationError) as e:
        validate_terms([{"label": "Amount", "value": "1", "type": "bitcoin"}])
    assert e.value.field == "terms[0].type"
    with pytest.raises(DealValidationError) as e:
        validate_terms([{"label": "Amount", "value": "x" * 501}])
    assert e.value.field == "terms[0].value"
    with pytest.raises(DealValidationError) as e:
        validate_terms([{"label": "   ", "value": "1"}])
    assert e.value.field == "terms[0].label"


def test_new_deal_normalises():
    fields = validate_new_deal(
        title="  Guitar sale ",
        recipient_name=" Bob ",
        terms=[{"label": "Amount", "value": "$100"}],
        trust_level="verified",
        recipient_email="BOB@example.com",
    )
    assert fields["title"] == "Guitar sale"
    assert fields["recipient_name"] == "Bob"
    assert fields["recipient_email"] == "bob@example.com"
    assert fields["trust_level"] == TrustLevel.VERIFIED
    assert fields["description"] == ""


@pytest.mark.parametrize("kwargs,field", [
    ({"title": "   "}, "title"),
    ({"title": "x" * 201}, "title"),
    ({"recipient_name": ""}, "recipient_name"),
    ({"recipient_name": "n" * 101}, "recipient_name"),
    ({"description": "d" * 1001}, "description"),
    ({"trust_level": "paranoid"}, "trust_level"),
    ({"recipient_email": "nope"}, "recipient_email"),
])
def test_new_deal_rejects(kwargs, field):
    args = dict(title="Deal", recipient_name="Bob", terms=[], trust_level="basic")
    args.update(kwargs)
    with pytest.raises(DealValidationError) as e:
        validate_new_deal(**args)
    assert e.value.field == field


class TestOrigin:

    def setup_method(self):
        self.settings = Settings(env="prod", allowed_origins=[ORIGIN])

    def test_missing_origin_allowed(self):
        validate_origin(RequestContext(), self.settings)

    def test_allowed_origin(self):
        validate_origin(RequestContext(origin=ORIGIN), self.settings)

    def test_foreign_origin_rejected(self):
        with pytest.raises(InvalidOrigin):
            validate_origin(RequestContext(origin="https://evil.example"), self.settings)

    def test_referer_used_when_origin_missing(self):
        validate_origin(RequestContext(referer=ORIGIN + "/d/public/Ab3dE5gH9k"), self.settings)
        with pytest.raises(InvalidOrigin):
            validate_origin(RequestContext(referer="https://evil.example/page"), self.settings)

    def test_localhost_only_in_dev(self):
        ctx = RequestContext(origin="http://localhost:3000")
        with pytest.raises(InvalidOrigin):
            validate_origin(ctx, self.settings)
        validate_origin(ctx, Settings(env="dev", allowed_origins=[ORIGIN]))


def test_client_ip_extraction():
    assert extract_client_ip({"x-forwarded-for": "203.0.113.7, 10.0.0.1"}) == "203.0.113.7"
    assert extract_client_ip({"x-real-ip": " 203.0.113.8 "}) == "203.0.113.8"
    assert extract_client_ip({}) == "unknown"


def test_sanitize_for_logging_masks_secrets():
    out = sanitize_for_logging({
        "token": "a" * 64,
        "code": "123456",
        "nested": {"signature": "Bob Smith"},
        "title": "Guitar sale",
    })
    assert out["token"] == "aaaa...aaaa"
    assert out["code"] == "[REDACTED]"
    assert out["nested"]["signature"] == "Bob ...mith"
    assert out["title"] == "Guitar sale"
