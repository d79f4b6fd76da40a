"""
Deal seal computation.

The seal is SHA-256 (lowercase hex) over the canonical JSON of:

    {
      "deal_id": <internal deal id>,
      "terms": <canonical terms string>,
      "signature_url": <signature reference, "" if absent>,
      "timestamp": <YYYY-MM-DDTHH:MM:SSZ>,
      "verifications": [{"type": ..., "verified_value": ...}, ...]
    }

Terms keep the deal's insertion order and are never resorted.
Verifications are reduced to type and value only and sorted by type
name, so timestamps and proof metadata never affect the seal.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence, Union

from .models import Term, VerificationRecord
from .util import canonicalize, canonicalize_str, sha256_hex, to_timestamp


def canonical_terms(terms: Sequence[Union[Term, Dict[str, Any]]]) -> str:
    """Fixed-format string for an ordered term list."""
    out = []
    for t in terms:
        d = t.to_dict() if isinstance(t, Term) else t
        out.append({"label": d["label"], "type": d.get("type", "text"), "value": d["value"]})
    return canonicalize_str(out)


def canonical_verifications(
    verifications: Iterable[Union[VerificationRecord, Dict[str, Any]]]
) -> List[Dict[str, str]]:
    """Reduce verification records to [{type, verified_value}] sorted by type."""
    out = []
    for v in verifications:
        if isinstance(v, VerificationRecord):
            out.append({"type": v.verification_type.value, "verified_value": v.verified_value})
        else:
            out.append({"type": v["type"], "verified_value": v["verified_value"]})
    return sorted(out, key=lambda v: v["type"])


def seal_payload(
    deal_id: str,
    terms: str,
    signature_url: str,
    timestamp: Union[str, datetime],
    verifications: Iterable[Union[VerificationRecord, Dict[str, Any]]],
) -> Dict[str, Any]:
    """The object whose canonical bytes are hashed."""
    if isinstance(timestamp, datetime):
        timestamp = to_timestamp(timestamp)
    return {
        "deal_id": deal_id,
        "terms": terms,
        "signature_url": signature_url or "",
        "timestamp": timestamp,
        "verifications": canonical_verifications(verifications),
    }


def compute_seal(
    deal_id: str,
    terms: Union[str, Sequence[Union[Term, Dict[str, Any]]]],
    signature_url: str,
    timestamp: Union[str, datetime],
    verifications: Iterable[Union[VerificationRecord, Dict[str, Any]]] = (),
) -> str:
    """
    Compute the deal seal.

    Pure and deterministic: identical inputs always give the identical
    64-character hex digest.

    Args:
        deal_id: Internal deal identifier
        terms: Canonical terms string, or the ordered term list
        signature_url: Signature reference stored on the deal
        timestamp: Confirmation time (datetime or second-precision ISO string)
        verifications: Verification records (or {type, verified_value} dicts)

    Returns:
        Lowercase hex SHA-256 digest
    """
    if not isinstance(terms, str):
        terms = canonical_terms(terms)
    return sha256_hex(canonicalize(seal_payload(deal_id, terms, signature_url, timestamp, verifications)))


def chain_entry_hash(prev_entry_hash: str, payload_hash: str) -> str:
    """
    Compute hash chain entry.

    entry_hash = SHA-256(prev_entry_hash + payload_hash)
    """
    return sha256_hex((prev_entry_hash or "") + payload_hash)
