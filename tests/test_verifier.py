"""
Independent re-verification: store-backed, exported bundle, and CLI.
"""

import copy
import json

import pytest

from dealseal.cli import main
from dealseal.events import EventType
from dealseal.models import VerificationRecord, VerificationType
from dealseal.verifier import BUNDLE_VERSION, verify_bundle, verify_deal_record


@pytest.fixture
def sealed(service, make_deal, recipient):
    deal, token = make_deal(terms=[
        {"label": "Amount", "value": "$100", "type": "currency"},
        {"label": "Pickup", "value": "Saturday", "type": "text"},
    ])
    out = service.confirm_deal(recipient, deal["id"], token, "Bob Smith")
    assert out.ok, out
    return out.value


def tamper_terms(store, deal_id, terms):
    store._get_connection().execute(
        "UPDATE deals SET terms_json=? WHERE id=?", (json.dumps(terms), deal_id))


def test_verify_match(service, stranger, sealed):
    out = service.verify_deal(stranger, sealed["public_id"])
    assert out.ok
    assert out.value["valid"] is True
    assert out.value["result"] == "match"
    assert out.value["recomputed_seal"] == sealed["deal_seal"]

    entry = service.audit.entries(sealed["id"])[-1]
    assert entry.event_type == EventType.DEAL_VERIFIED
    assert entry.metadata.result == "match"
    assert entry.actor_id == "stranger-9"


def test_tampered_terms_diverge(service, store, stranger, sealed):
    tamper_terms(store, sealed["id"], [
        {"label": "Amount", "value": "$1000", "type": "currency"},
        {"label": "Pickup", "value": "Saturday", "type": "text"},
    ])
    out = service.verify_deal(stranger, sealed["public_id"])
    # a mismatch is a result, not an error
    assert out.ok
    assert out.value["valid"] is False
    assert out.value["result"] == "mismatch"
    assert out.value["recomputed_seal"] != sealed["deal_seal"]
    assert service.audit.entries(sealed["id"])[-1].metadata.result == "mismatch"


def test_reordered_terms_diverge(service, store, stranger, sealed):
    tamper_terms(store, sealed["id"], [
        {"label": "Pickup", "value": "Saturday", "type": "text"},
        {"label": "Amount", "value": "$100", "type": "currency"},
    ])
    assert service.verify_deal(stranger, sealed["public_id"]).value["valid"] is False


def test_added_verification_diverges(service, store, sealed):
    deal = service.deals.get(sealed["id"])
    extra = VerificationRecord(deal.id, VerificationType.EMAIL, "bob@example.com", deal.confirmed_at)
    assert verify_deal_record(deal, []).valid
    assert not verify_deal_record(deal, [extra]).valid


def test_only_confirmed_deals(service, make_deal, stranger):
    deal, _ = make_deal()
    assert service.verify_deal(stranger, deal["public_id"]).error_kind.value == "state"
    assert service.verify_deal(stranger, "zzzzzzzzzz").error_kind.value == "not_found"
    assert not verify_deal_record(service.deals.get(deal["id"]), []).valid


class TestBundle:

    def test_export_and_verify(self, service, sealed):
        out = service.export_seal_bundle(sealed["public_id"])
        assert out.ok
        bundle = out.value
        assert bundle["bundle_version"] == BUNDLE_VERSION
        assert bundle["deal_seal"] == sealed["deal_seal"]
        assert bundle["seal_inputs"]["timestamp"] == sealed["confirmed_at"]
        assert [e["event_type"] for e in bundle["audit_log"]][-1] == "deal_confirmed"

        report = verify_bundle(json.loads(json.dumps(bundle)))
        assert report["valid"]
        assert report["seal"]["result"] == "match"
        assert report["audit_chain"]["entries_checked"] == len(bundle["audit_log"])

    def test_tampered_inputs(self, service, sealed):
        bundle = service.export_seal_bundle(sealed["public_id"]).value
        bad = copy.deepcopy(bundle)
        bad["seal_inputs"]["terms"] = bad["seal_inputs"]["terms"].replace("$100", "$1000")
        report = verify_bundle(bad)
        assert not report["valid"]
        assert report["seal"]["result"] == "mismatch"

    def test_tampered_audit_log(self, service, sealed):
        bundle = service.export_seal_bundle(sealed["public_id"]).value
        bad = copy.deepcopy(bundle)
        bad["audit_log"][0]["metadata"]["recipient_name"] = "Mallory"
        report = verify_bundle(bad)
        assert report["seal"]["valid"]
        assert not report["audit_chain"]["valid"]
        assert report["audit_chain"]["broken_at"] == 0
        assert not report["valid"]

    def test_malformed_bundle(self):
        report = verify_bundle({"deal_seal": "00"})
        assert not report["valid"]
        assert "Malformed" in report["seal"]["reason"]
        assert not verify_bundle(["not", "a", "bundle"])["valid"]

    @pytest.mark.parametrize("corrupt", [
        lambda log: log[1].update(event_type="deal_hacked"),
        lambda log: log[1].pop("created_at"),
        lambda log: log[1].update(metadata=["not", "a", "dict"]),
        lambda log: log.__setitem__(1, "garbage"),
    ])
    def test_malformed_audit_entry_is_a_broken_chain(self, service, sealed, corrupt):
        bundle = copy.deepcopy(service.export_seal_bundle(sealed["public_id"]).value)
        corrupt(bundle["audit_log"])
        report = verify_bundle(bundle)
        assert report["seal"]["valid"]
        assert not report["audit_chain"]["valid"]
        assert report["audit_chain"]["broken_at"] == 1
        assert "Malformed" in report["audit_chain"]["reason"]
        assert not report["valid"]

    def test_audit_log_not_a_list(self, service, sealed):
        bundle = service.export_seal_bundle(sealed["public_id"]).value
        bundle["audit_log"] = {"oops": True}
        assert not verify_bundle(bundle)["audit_chain"]["valid"]


class TestCli:

    def test_export_verify_and_hash(self, settings, sealed, tmp_path, capsys):
        path = tmp_path / "bundle.json"
        assert main(["export", "--db", settings.db_path, "-p", sealed["public_id"], "-o", str(path)]) == 0

        assert main(["verify", "-b", str(path)]) == 0
        assert "✓ seal matches" in capsys.readouterr().out

        assert main(["hash", "-f", str(path)]) == 0
        assert sealed["deal_seal"] in capsys.readouterr().out

    def test_verify_fails_on_tampering(self, service, sealed, tmp_path, capsys):
        bundle = service.export_seal_bundle(sealed["public_id"]).value
        bundle["seal_inputs"]["signature_url"] = "sig:sha256:" + "0" * 64
        path = tmp_path / "bundle.json"
        path.write_text(json.dumps(bundle), encoding="utf-8")
        assert main(["verify", "-b", str(path)]) == 1
        assert "✗ seal INVALID" in capsys.readouterr().out

    def test_verify_reports_malformed_audit_entry(self, service, sealed, tmp_path, capsys):
        bundle = service.export_seal_bundle(sealed["public_id"]).value
        bundle["audit_log"][0]["event_type"] = "deal_hacked"
        path = tmp_path / "bundle.json"
        path.write_text(json.dumps(bundle), encoding="utf-8")
        assert main(["verify", "-b", str(path)]) == 1
        out = capsys.readouterr().out
        assert "✓ seal matches" in out
        assert "✗ audit chain broken at entry 0" in out

    def test_export_unknown_deal(self, settings, store, tmp_path, capsys):
        assert main(["export", "--db", settings.db_path, "-p", "zzzzzzzzzz"]) == 1
        assert "Deal not found" in capsys.readouterr().err
