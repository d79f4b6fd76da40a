"""
Seal computation: determinism, canonical form and sensitivity.
"""

import hashlib
import json
import unittest
from datetime import datetime, timezone

from dealseal.hashing import canonical_terms, canonical_verifications, chain_entry_hash, compute_seal
from dealseal.models import Term, TermType, VerificationRecord, VerificationType
from dealseal.util import canonicalize, sha256_hex

DEAL_ID = "0b7c1f5e-8a2d-4c3b-9e1f-2a3b4c5d6e7f"
SIG = "sig:sha256:" + "ab" * 32
TS = "2025-01-15T12:00:00Z"
TERMS = [
    {"label": "Amount", "value": "$100", "type": "currency"},
    {"label": "Due", "value": "2025-02-01", "type": "date"},
]


class TestCanonicalization(unittest.TestCase):

    def test_sorted_keys_no_whitespace(self):
        self.assertEqual(canonicalize({"b": 1, "a": [2, 1]}), b'{"a":[2,1],"b":1}')

    def test_unicode_not_escaped(self):
        self.assertEqual(canonicalize({"v": "€5"}), '{"v":"€5"}'.encode('utf-8'))

    def test_canonical_terms_format(self):
        self.assertEqual(
            canonical_terms([Term("Amount", "$100")]),
            '[{"label":"Amount","type":"text","value":"$100"}]',
        )

    def test_canonical_terms_keep_insertion_order(self):
        s = canonical_terms([Term("Zeta", "1"), Term("Alpha", "2")])
        self.assertLess(s.index("Zeta"), s.index("Alpha"))

    def test_canonical_terms_accepts_dicts_and_terms(self):
        as_terms = [Term("Amount", "$100", TermType.CURRENCY), Term("Due", "2025-02-01", TermType.DATE)]
        self.assertEqual(canonical_terms(TERMS), canonical_terms(as_terms))

    def test_verifications_reduced_and_sorted(self):
        out = canonical_verifications([
            {"type": "phone", "verified_value": "+14155550123"},
            {"type": "email", "verified_value": "bob@example.com"},
        ])
        self.assertEqual(out, [
            {"type": "email", "verified_value": "bob@example.com"},
            {"type": "phone", "verified_value": "+14155550123"},
        ])


class TestComputeSeal(unittest.TestCase):

    def test_deterministic(self):
        a = compute_seal(DEAL_ID, TERMS, SIG, TS)
        b = compute_seal(DEAL_ID, TERMS, SIG, TS)
        self.assertEqual(a, b)
        self.assertEqual(len(a), 64)
        self.assertEqual(a, a.lower())

    def test_matches_independent_digest(self):
        payload = {
            "deal_id": DEAL_ID,
            "terms": canonical_terms(TERMS),
            "signature_url": SIG,
            "timestamp": TS,
            "verifications": [{"type": "email", "verified_value": "bob@example.com"}],
        }
        expected = hashlib.sha256(
            json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        ).hexdigest()
        got = compute_seal(DEAL_ID, TERMS, SIG, TS, [{"type": "email", "verified_value": "bob@example.com"}])
        self.assertEqual(got, expected)

    def test_any_term_value_changes_seal(self):
        base = compute_seal(DEAL_ID, TERMS, SIG, TS)
        changed = [dict(TERMS[0], value="$1000"), TERMS[1]]
        self.assertNotEqual(base, compute_seal(DEAL_ID, changed, SIG, TS))

    def test_term_order_changes_seal(self):
        self.assertNotEqual(
            compute_seal(DEAL_ID, TERMS, SIG, TS),
            compute_seal(DEAL_ID, list(reversed(TERMS)), SIG, TS),
        )

    def test_each_input_is_bound(self):
        base = compute_seal(DEAL_ID, TERMS, SIG, TS)
        self.assertNotEqual(base, compute_seal("1" + DEAL_ID[1:], TERMS, SIG, TS))
        self.assertNotEqual(base, compute_seal(DEAL_ID, TERMS, "sig:sha256:" + "cd" * 32, TS))
        self.assertNotEqual(base, compute_seal(DEAL_ID, TERMS, SIG, "2025-01-15T12:00:01Z"))
        self.assertNotEqual(
            base,
            compute_seal(DEAL_ID, TERMS, SIG, TS, [{"type": "email", "verified_value": "bob@example.com"}]),
        )

    def test_terms_string_or_list(self):
        self.assertEqual(
            compute_seal(DEAL_ID, TERMS, SIG, TS),
            compute_seal(DEAL_ID, canonical_terms(TERMS), SIG, TS),
        )

    def test_datetime_or_string_timestamp(self):
        dt = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        self.assertEqual(compute_seal(DEAL_ID, TERMS, SIG, dt), compute_seal(DEAL_ID, TERMS, SIG, TS))

    def test_missing_signature_hashes_as_empty(self):
        self.assertEqual(compute_seal(DEAL_ID, TERMS, None, TS), compute_seal(DEAL_ID, TERMS, "", TS))

    def test_verification_order_and_metadata_do_not_matter(self):
        email = VerificationRecord(DEAL_ID, VerificationType.EMAIL, "bob@example.com",
                                   datetime(2025, 1, 15, 11, 0, 0, tzinfo=timezone.utc),
                                   {"verified_via": "otp"})
        phone = VerificationRecord(DEAL_ID, VerificationType.PHONE, "+14155550123",
                                   datetime(2025, 1, 15, 11, 5, 0, tzinfo=timezone.utc))
        email_later = VerificationRecord(DEAL_ID, VerificationType.EMAIL, "bob@example.com",
                                         datetime(2025, 1, 15, 11, 59, 0, tzinfo=timezone.utc),
                                         {"verified_via": "account"})
        self.assertEqual(
            compute_seal(DEAL_ID, TERMS, SIG, TS, [email, phone]),
            compute_seal(DEAL_ID, TERMS, SIG, TS, [phone, email_later]),
        )


class TestChainHash(unittest.TestCase):

    def test_genesis_has_no_prefix(self):
        payload_hash = sha256_hex(b"x")
        self.assertEqual(chain_entry_hash(None, payload_hash), sha256_hex(payload_hash))

    def test_links_previous(self):
        payload_hash = sha256_hex(b"x")
        prev = sha256_hex(b"prev")
        self.assertEqual(chain_entry_hash(prev, payload_hash), sha256_hex(prev + payload_hash))
        self.assertNotEqual(chain_entry_hash(prev, payload_hash), chain_entry_hash(None, payload_hash))


if __name__ == "__main__":
    unittest.main()
