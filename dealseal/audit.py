"""
Append-only audit log.

Every lifecycle transition and every security-relevant check appends
exactly one entry. There is no update or delete path; the store also
rejects both with triggers.

Each deal's entries form a hash chain:

    payload_hash = SHA-256(CJE(entry payload))
    entry_hash   = SHA-256(prev_entry_hash + payload_hash)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .db import Store
from .events import ActorType, AuditMetadata, EventType, check_metadata
from .hashing import chain_entry_hash
from .models import AuditLogEntry
from .util import canonicalize, generate_id, sha256_hex, utcnow

logger = logging.getLogger(__name__)


def entry_payload_hash(entry: AuditLogEntry) -> str:
    return sha256_hex(canonicalize(entry.payload()))


@dataclass
class ChainVerification:
    valid: bool
    entries_checked: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None


def verify_audit_chain(entries: List[AuditLogEntry]) -> ChainVerification:
    """
    Re-walk a deal's chain. Entries must be in append (seq) order.
    """
    prev = None
    for i, entry in enumerate(entries):
        if entry.prev_entry_hash != prev:
            return ChainVerification(False, i, broken_at=i, reason="prev_entry_hash does not link")
        expected = chain_entry_hash(prev, entry_payload_hash(entry))
        if entry.entry_hash != expected:
            return ChainVerification(False, i, broken_at=i, reason="entry_hash mismatch")
        prev = entry.entry_hash
    return ChainVerification(True, len(entries))


class AuditLog:
    """Append-only sink over the audit_log table."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def append(
        self,
        deal_id: str,
        event_type: EventType,
        actor_type: ActorType,
        actor_id: Optional[str],
        metadata: AuditMetadata,
    ) -> AuditLogEntry:
        """
        Append one entry and link it into the deal's chain.

        Runs inside the caller's transaction when there is one, so an
        entry written as part of a transition commits or rolls back with it.

        Raises:
            ValueError: If metadata is not the variant for event_type
        """
        check_metadata(event_type, metadata)
        entry = AuditLogEntry(
            id=generate_id(16),
            deal_id=deal_id,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            metadata=metadata,
            created_at=self.clock(),
        )
        with self.store.transaction():
            entry.prev_entry_hash = self.store.latest_audit_hash(deal_id)
            entry.entry_hash = chain_entry_hash(entry.prev_entry_hash, entry_payload_hash(entry))
            entry.seq = self.store.insert_audit_entry(entry)
        logger.debug(f"audit {event_type.value} deal={deal_id} seq={entry.seq}")
        return entry

    def entries(self, deal_id: str) -> List[AuditLogEntry]:
        """All entries for a deal, ordered by creation time."""
        return self.store.list_audit_entries(deal_id)

    def count(self, deal_id: str, event_type: EventType) -> int:
        return self.store.count_audit_events(deal_id, event_type)

    def verify_chain(self, deal_id: str) -> ChainVerification:
        entries = sorted(self.entries(deal_id), key=lambda e: e.seq)
        return verify_audit_chain(entries)
