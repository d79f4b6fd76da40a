"""
Independent seal verification.

Lets anyone recompute a confirmed deal's seal from its stored terms,
signature reference, verifications and confirmation time, and compare
it to the stored value. A mismatch is a normal result (valid=False),
not an exception.

The seal bundle produced by export_bundle carries everything needed to
repeat the check offline (see `dealseal verify`).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .audit import AuditLog, ChainVerification, verify_audit_chain
from .db import Store
from .errors import DealNotAvailable, DealNotFound
from .events import ActorType, DealVerified, EventType, metadata_from_dict
from .hashing import canonical_terms, compute_seal, seal_payload
from .logging_config import security_log
from .models import AuditLogEntry, Deal, DealStatus, VerificationRecord
from .util import constant_time_compare, parse_timestamp, to_timestamp

logger = logging.getLogger(__name__)

BUNDLE_VERSION = "1"


@dataclass
class SealVerification:
    """Result of recomputing a deal seal."""
    valid: bool
    deal_id: Optional[str] = None
    stored_seal: Optional[str] = None
    recomputed_seal: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def match(cls, deal_id: str, seal: str) -> 'SealVerification':
        return cls(valid=True, deal_id=deal_id, stored_seal=seal, recomputed_seal=seal)

    @classmethod
    def mismatch(cls, deal_id: Optional[str], stored: Optional[str], recomputed: Optional[str],
                 reason: str = "Recomputed seal does not match stored seal") -> 'SealVerification':
        return cls(valid=False, deal_id=deal_id, stored_seal=stored,
                   recomputed_seal=recomputed, reason=reason)

    @property
    def result(self) -> str:
        return "match" if self.valid else "mismatch"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "result": self.result,
            "deal_id": self.deal_id,
            "stored_seal": self.stored_seal,
            "recomputed_seal": self.recomputed_seal,
            "reason": self.reason,
        }


def recompute_seal(deal: Deal, verifications: List[VerificationRecord]) -> str:
    return compute_seal(deal.id, deal.terms, deal.signature_url, deal.confirmed_at, verifications)


def verify_deal_record(deal: Deal, verifications: List[VerificationRecord]) -> SealVerification:
    """Compare a confirmed deal's stored seal against a fresh recomputation."""
    if deal.status != DealStatus.CONFIRMED or not deal.deal_seal or deal.confirmed_at is None:
        return SealVerification.mismatch(deal.id, deal.deal_seal, None, reason="Deal is not sealed")
    recomputed = recompute_seal(deal, verifications)
    if constant_time_compare(recomputed, deal.deal_seal):
        return SealVerification.match(deal.id, deal.deal_seal)
    return SealVerification.mismatch(deal.id, deal.deal_seal, recomputed)


def verify_bundle(bundle: Dict[str, Any]) -> Dict[str, Any]:
    """
    Offline check of an exported seal bundle.

    Returns a report with the seal result and, when the bundle carries
    an audit log, the result of re-walking its hash chain.
    """
    if not isinstance(bundle, dict):
        seal = SealVerification.mismatch(None, None, None, reason="Malformed bundle: not an object")
        return {"seal": seal.to_dict(), "valid": False}
    try:
        inputs = bundle["seal_inputs"]
        stored = bundle["deal_seal"]
        recomputed = compute_seal(
            inputs["deal_id"],
            inputs["terms"],
            inputs["signature_url"],
            inputs["timestamp"],
            inputs["verifications"],
        )
    except (KeyError, TypeError, ValueError) as e:
        seal = SealVerification.mismatch(None, None, None, reason=f"Malformed bundle: {e}")
    else:
        if isinstance(stored, str) and constant_time_compare(recomputed, stored):
            seal = SealVerification.match(inputs["deal_id"], stored)
        else:
            seal = SealVerification.mismatch(inputs["deal_id"], stored, recomputed)

    report: Dict[str, Any] = {"seal": seal.to_dict()}
    entries = bundle.get("audit_log")
    if entries is not None:
        chain = _verify_exported_chain(entries)
        report["audit_chain"] = {
            "valid": chain.valid,
            "entries_checked": chain.entries_checked,
            "broken_at": chain.broken_at,
            "reason": chain.reason,
        }
    report["valid"] = seal.valid and report.get("audit_chain", {}).get("valid", True)
    return report


def _verify_exported_chain(entries: Any) -> ChainVerification:
    """A malformed entry breaks the chain at that entry."""
    if not isinstance(entries, list):
        return ChainVerification(False, 0, broken_at=0, reason="Malformed audit log: not a list")
    parsed = []
    for i, d in enumerate(entries):
        try:
            parsed.append(_entry_from_dict(d))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return ChainVerification(False, i, broken_at=i, reason=f"Malformed audit entry: {e!r}")
    return verify_audit_chain(parsed)


def _entry_from_dict(d: Dict[str, Any]) -> AuditLogEntry:
    event_type = EventType(d["event_type"])
    return AuditLogEntry(
        id=d["id"],
        deal_id=d["deal_id"],
        event_type=event_type,
        actor_type=ActorType(d["actor_type"]),
        actor_id=d.get("actor_id"),
        metadata=metadata_from_dict(event_type, d.get("metadata") or {}),
        created_at=parse_timestamp(d["created_at"]),
        prev_entry_hash=d.get("prev_entry_hash"),
        entry_hash=d.get("entry_hash"),
    )


class DealVerifier:
    """Store-backed verification that records its own audit entry."""

    def __init__(self, store: Store, audit: AuditLog):
        self.store = store
        self.audit = audit

    def _sealed_deal(self, public_id: str) -> Deal:
        deal = self.store.get_deal_by_public_id(public_id)
        if deal is None:
            raise DealNotFound(public_id)
        if deal.status != DealStatus.CONFIRMED:
            raise DealNotAvailable(f"deal is {deal.status.value}")
        return deal

    def verify(self, public_id: str, actor_id: Optional[str] = None) -> SealVerification:
        """
        Recompute and compare. Appends deal_verified either way.

        Raises:
            DealNotFound: Unknown public id
            DealNotAvailable: Deal is not confirmed
        """
        deal = self._sealed_deal(public_id)
        result = verify_deal_record(deal, self.store.list_verifications(deal.id))
        if not result.valid:
            security_log.seal_mismatch(deal.id, result.stored_seal, result.recomputed_seal or "")
        self.audit.append(
            deal.id, EventType.DEAL_VERIFIED, ActorType.SYSTEM, actor_id,
            DealVerified(result=result.result, recomputed_seal=result.recomputed_seal),
        )
        return result

    def export_bundle(self, public_id: str) -> Dict[str, Any]:
        """Everything a third party needs to recompute the seal and check the audit chain."""
        deal = self._sealed_deal(public_id)
        verifications = self.store.list_verifications(deal.id)
        entries = sorted(self.audit.entries(deal.id), key=lambda e: e.seq)
        return {
            "bundle_version": BUNDLE_VERSION,
            "deal": {
                "id": deal.id,
                "public_id": deal.public_id,
                "title": deal.title,
                "recipient_name": deal.recipient_name,
                "trust_level": deal.trust_level.value,
                "status": deal.status.value,
                "terms": [t.to_dict() for t in deal.terms],
                "confirmed_at": to_timestamp(deal.confirmed_at),
            },
            "seal_inputs": seal_payload(
                deal.id,
                canonical_terms(deal.terms),
                deal.signature_url,
                deal.confirmed_at,
                verifications,
            ),
            "deal_seal": deal.deal_seal,
            "audit_log": [e.to_dict() for e in entries],
        }
