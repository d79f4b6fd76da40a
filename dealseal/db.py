"""
Database module for DealSeal.

Provides SQLite-based storage for deals, access tokens, verification
records, one-time codes, signatures and the audit log.

Every multi-row write runs inside an IMMEDIATE transaction so that
concurrent writers are serialized by SQLite's reserved lock, and every
state transition is a conditional UPDATE whose rowcount is checked.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .events import ActorType, EventType, metadata_from_dict, metadata_to_dict
from .models import (
    AccessToken,
    AuditLogEntry,
    ByEmailOnly,
    Deal,
    DealStatus,
    LinkedAccount,
    OneTimeCode,
    Term,
    TrustLevel,
    VerificationRecord,
    VerificationType,
)
from .util import canonicalize_str, parse_timestamp, to_timestamp

logger = logging.getLogger(__name__)

TABLES = [
    "deals",
    "access_tokens",
    "deal_verifications",
    "verification_codes",
    "signatures",
    "audit_log",
]


def _ts(dt):
    return to_timestamp(dt) if dt else None


def _dt(s):
    return parse_timestamp(s) if s else None


class Store:
    """
    Durable store backed by a single SQLite file.

    Connections are thread-local and reused within a thread. Transactions
    nest: an inner ``transaction()`` joins the outer one.
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._local = threading.local()

    # ============================================================
    # Connections and transactions
    # ============================================================

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        if getattr(self._local, 'conn', None) is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self._local.depth = 0
        return self._local.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Takes the write lock up front, commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.depth = 0

    def close_connection(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None
            self._local.depth = 0

    # ============================================================
    # Schema
    # ============================================================

    def init_db(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        conn = self._get_connection()
        conn.executescript("""
        CREATE TABLE IF NOT EXISTS deals (
            id TEXT PRIMARY KEY,
            public_id TEXT NOT NULL UNIQUE,
            creator_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            recipient_kind TEXT NOT NULL,
            recipient_name TEXT NOT NULL,
            recipient_id TEXT,
            recipient_email TEXT,
            terms_json TEXT NOT NULL,
            trust_level TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            viewed_at TEXT,
            confirmed_at TEXT,
            voided_at TEXT,
            last_nudged_at TEXT,
            signature_url TEXT,
            deal_seal TEXT,
            CHECK ((deal_seal IS NULL) = (signature_url IS NULL)),
            CHECK ((status = 'confirmed') = (confirmed_at IS NOT NULL)),
            CHECK ((status = 'voided') = (voided_at IS NOT NULL))
        );
        CREATE INDEX IF NOT EXISTS idx_deals_creator ON deals(creator_id);

        CREATE TABLE IF NOT EXISTS access_tokens (
            deal_id TEXT NOT NULL REFERENCES deals(id),
            token TEXT NOT NULL UNIQUE,
            expires_at TEXT NOT NULL,
            used_at TEXT,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_access_tokens_deal ON access_tokens(deal_id);

        CREATE TABLE IF NOT EXISTS deal_verifications (
            deal_id TEXT NOT NULL REFERENCES deals(id),
            verification_type TEXT NOT NULL,
            verified_value TEXT NOT NULL,
            verified_at TEXT NOT NULL,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            PRIMARY KEY (deal_id, verification_type)
        );

        CREATE TABLE IF NOT EXISTS verification_codes (
            deal_id TEXT NOT NULL REFERENCES deals(id),
            verification_type TEXT NOT NULL,
            target TEXT NOT NULL,
            code_hash TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            consumed_at TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (deal_id, verification_type)
        );

        CREATE TABLE IF NOT EXISTS signatures (
            deal_id TEXT NOT NULL REFERENCES deals(id),
            reference TEXT NOT NULL,
            content_type TEXT NOT NULL,
            data BLOB NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (deal_id, reference)
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            deal_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            actor_type TEXT NOT NULL,
            actor_id TEXT,
            metadata_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            prev_entry_hash TEXT,
            entry_hash TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_audit_log_deal ON audit_log(deal_id, seq);
        CREATE INDEX IF NOT EXISTS idx_audit_log_event ON audit_log(deal_id, event_type);

        CREATE TRIGGER IF NOT EXISTS audit_log_no_update
        BEFORE UPDATE ON audit_log
        BEGIN
            SELECT RAISE(ABORT, 'audit_log is append-only');
        END;
        CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
        BEFORE DELETE ON audit_log
        BEGIN
            SELECT RAISE(ABORT, 'audit_log is append-only');
        END;
        """)

    # ============================================================
    # Deals
    # ============================================================

    def insert_deal(self, deal: Deal) -> None:
        recipient_kind = "linked" if isinstance(deal.recipient, LinkedAccount) else "email_only"
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO deals(id, public_id, creator_id, title, description, "
                "recipient_kind, recipient_name, recipient_id, recipient_email, terms_json, "
                "trust_level, status, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    deal.id, deal.public_id, deal.creator_id, deal.title, deal.description,
                    recipient_kind, deal.recipient_name, deal.recipient_id, deal.recipient_email,
                    canonicalize_str([t.to_dict() for t in deal.terms]),
                    deal.trust_level.value, deal.status.value, _ts(deal.created_at),
                )
            )

    def get_deal(self, deal_id: str) -> Optional[Deal]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM deals WHERE id=?", (deal_id,)).fetchone()
        return _row_to_deal(row) if row else None

    def get_deal_by_public_id(self, public_id: str) -> Optional[Deal]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM deals WHERE public_id=?", (public_id,)).fetchone()
        return _row_to_deal(row) if row else None

    def public_id_exists(self, public_id: str) -> bool:
        conn = self._get_connection()
        return conn.execute("SELECT 1 FROM deals WHERE public_id=?", (public_id,)).fetchone() is not None

    def transition_deal(self, deal_id: str, from_status: DealStatus, to_status: DealStatus,
                        **fields: Any) -> bool:
        """
        Move a deal between states only if it is currently in from_status.
        Returns True if exactly one row changed.
        """
        assignments = ["status=?"]
        params: List[Any] = [to_status.value]
        for name, value in fields.items():
            assignments.append(f"{name}=?")
            params.append(_ts(value) if isinstance(value, datetime) else value)
        params.extend([deal_id, from_status.value])
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE deals SET {', '.join(assignments)} WHERE id=? AND status=?",
                params
            )
            return cur.rowcount == 1

    def mark_viewed(self, deal_id: str, viewed_at) -> bool:
        """Set viewed_at once. Returns True on the first call only."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE deals SET viewed_at=? WHERE id=? AND viewed_at IS NULL",
                (_ts(viewed_at), deal_id)
            )
            return cur.rowcount == 1

    def mark_nudged(self, deal_id: str, nudged_at) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE deals SET last_nudged_at=? WHERE id=? AND status='pending'",
                (_ts(nudged_at), deal_id)
            )
            return cur.rowcount == 1

    # ============================================================
    # Access tokens
    # ============================================================

    def insert_token(self, token: AccessToken) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO access_tokens(deal_id, token, expires_at, used_at, created_at) "
                "VALUES(?,?,?,?,?)",
                (token.deal_id, token.token, _ts(token.expires_at), _ts(token.used_at),
                 _ts(token.created_at))
            )

    def get_token(self, deal_id: str, token: str) -> Optional[AccessToken]:
        """Look up a token scoped to its deal; a token for another deal is never returned."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM access_tokens WHERE deal_id=? AND token=?",
            (deal_id, token)
        ).fetchone()
        return _row_to_token(row) if row else None

    def get_latest_token(self, deal_id: str) -> Optional[AccessToken]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM access_tokens WHERE deal_id=? ORDER BY rowid DESC LIMIT 1",
            (deal_id,)
        ).fetchone()
        return _row_to_token(row) if row else None

    def consume_token(self, deal_id: str, token: str, used_at) -> bool:
        """
        Mark a token as used. Returns True if successful, False if already used or not found.
        """
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE access_tokens SET used_at=? WHERE deal_id=? AND token=? AND used_at IS NULL",
                (_ts(used_at), deal_id, token)
            )
            return cur.rowcount == 1

    # ============================================================
    # Verification records
    # ============================================================

    def upsert_verification(self, record: VerificationRecord) -> None:
        """At most one record per (deal, type); a newer proof replaces the older one."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO deal_verifications(deal_id, verification_type, verified_value, "
                "verified_at, metadata_json) VALUES(?,?,?,?,?) "
                "ON CONFLICT(deal_id, verification_type) DO UPDATE SET "
                "verified_value=excluded.verified_value, verified_at=excluded.verified_at, "
                "metadata_json=excluded.metadata_json",
                (record.deal_id, record.verification_type.value, record.verified_value,
                 _ts(record.verified_at), canonicalize_str(record.metadata))
            )

    def list_verifications(self, deal_id: str) -> List[VerificationRecord]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM deal_verifications WHERE deal_id=? ORDER BY verification_type",
            (deal_id,)
        ).fetchall()
        return [_row_to_verification(r) for r in rows]

    # ============================================================
    # One-time codes
    # ============================================================

    def replace_code(self, code: OneTimeCode) -> None:
        """Store a fresh code, discarding any previous code for the same (deal, type)."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO verification_codes(deal_id, verification_type, target, code_hash, "
                "expires_at, attempts, consumed_at, created_at) VALUES(?,?,?,?,?,0,NULL,?) "
                "ON CONFLICT(deal_id, verification_type) DO UPDATE SET "
                "target=excluded.target, code_hash=excluded.code_hash, "
                "expires_at=excluded.expires_at, attempts=0, consumed_at=NULL, "
                "created_at=excluded.created_at",
                (code.deal_id, code.verification_type.value, code.target, code.code_hash,
                 _ts(code.expires_at), _ts(code.created_at))
            )

    def get_code(self, deal_id: str, verification_type: VerificationType) -> Optional[OneTimeCode]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM verification_codes WHERE deal_id=? AND verification_type=?",
            (deal_id, verification_type.value)
        ).fetchone()
        return _row_to_code(row) if row else None

    def consume_code(self, deal_id: str, verification_type: VerificationType, code_hash: str,
                     consumed_at) -> bool:
        """Consume the code only if it is still live and matches. Returns True once."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE verification_codes SET consumed_at=? WHERE deal_id=? "
                "AND verification_type=? AND code_hash=? AND consumed_at IS NULL",
                (_ts(consumed_at), deal_id, verification_type.value, code_hash)
            )
            return cur.rowcount == 1

    def record_failed_attempt(self, deal_id: str, verification_type: VerificationType) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE verification_codes SET attempts=attempts+1 "
                "WHERE deal_id=? AND verification_type=?",
                (deal_id, verification_type.value)
            )

    # ============================================================
    # Signatures
    # ============================================================

    def store_signature(self, reference: str, deal_id: str, content_type: str, data: bytes,
                        created_at) -> None:
        """One row per (deal, reference); identical bytes on two deals are two rows."""
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO signatures(deal_id, reference, content_type, data, created_at) "
                "VALUES(?,?,?,?,?)",
                (deal_id, reference, content_type, sqlite3.Binary(data), _ts(created_at))
            )

    def get_signature(self, deal_id: str, reference: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT reference, deal_id, content_type, data, created_at FROM signatures "
            "WHERE deal_id=? AND reference=?",
            (deal_id, reference)
        ).fetchone()
        if not row:
            return None
        out = dict(row)
        out["data"] = bytes(out["data"])
        return out

    # ============================================================
    # Audit log
    # ============================================================

    def latest_audit_hash(self, deal_id: str) -> Optional[str]:
        """Get the hash of the most recent entry for a deal, for chain linking."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT entry_hash FROM audit_log WHERE deal_id=? ORDER BY seq DESC LIMIT 1",
            (deal_id,)
        ).fetchone()
        return row['entry_hash'] if row else None

    def insert_audit_entry(self, entry: AuditLogEntry) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO audit_log(id, deal_id, event_type, actor_type, actor_id, "
                "metadata_json, created_at, prev_entry_hash, entry_hash) VALUES(?,?,?,?,?,?,?,?,?)",
                (entry.id, entry.deal_id, entry.event_type.value, entry.actor_type.value,
                 entry.actor_id, canonicalize_str(metadata_to_dict(entry.metadata)),
                 _ts(entry.created_at), entry.prev_entry_hash, entry.entry_hash)
            )
            return cur.lastrowid

    def list_audit_entries(self, deal_id: str) -> List[AuditLogEntry]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM audit_log WHERE deal_id=? ORDER BY created_at ASC, seq ASC",
            (deal_id,)
        ).fetchall()
        return [_row_to_audit(r) for r in rows]

    def count_audit_events(self, deal_id: str, event_type: EventType) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM audit_log WHERE deal_id=? AND event_type=?",
            (deal_id, event_type.value)
        ).fetchone()
        return row['cnt']

    # ============================================================
    # Metrics and Health
    # ============================================================

    def get_db_stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        conn = self._get_connection()
        stats = {}
        for table in TABLES:
            cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()['cnt']
        return stats


# ============================================================
# Row mapping
# ============================================================

def _row_to_deal(row: sqlite3.Row) -> Deal:
    if row['recipient_kind'] == "linked":
        recipient = LinkedAccount(
            user_id=row['recipient_id'],
            name=row['recipient_name'],
            email=row['recipient_email'],
        )
    else:
        recipient = ByEmailOnly(name=row['recipient_name'], email=row['recipient_email'])
    return Deal(
        id=row['id'],
        public_id=row['public_id'],
        creator_id=row['creator_id'],
        title=row['title'],
        description=row['description'],
        recipient=recipient,
        terms=[Term.from_dict(t) for t in json.loads(row['terms_json'])],
        trust_level=TrustLevel(row['trust_level']),
        status=DealStatus(row['status']),
        created_at=_dt(row['created_at']),
        viewed_at=_dt(row['viewed_at']),
        confirmed_at=_dt(row['confirmed_at']),
        voided_at=_dt(row['voided_at']),
        last_nudged_at=_dt(row['last_nudged_at']),
        signature_url=row['signature_url'],
        deal_seal=row['deal_seal'],
    )


def _row_to_token(row: sqlite3.Row) -> AccessToken:
    return AccessToken(
        deal_id=row['deal_id'],
        token=row['token'],
        expires_at=_dt(row['expires_at']),
        used_at=_dt(row['used_at']),
        created_at=_dt(row['created_at']),
    )


def _row_to_verification(row: sqlite3.Row) -> VerificationRecord:
    return VerificationRecord(
        deal_id=row['deal_id'],
        verification_type=VerificationType(row['verification_type']),
        verified_value=row['verified_value'],
        verified_at=_dt(row['verified_at']),
        metadata=json.loads(row['metadata_json']),
    )


def _row_to_code(row: sqlite3.Row) -> OneTimeCode:
    return OneTimeCode(
        deal_id=row['deal_id'],
        verification_type=VerificationType(row['verification_type']),
        target=row['target'],
        code_hash=row['code_hash'],
        expires_at=_dt(row['expires_at']),
        attempts=row['attempts'],
        consumed_at=_dt(row['consumed_at']),
        created_at=_dt(row['created_at']),
    )


def _row_to_audit(row: sqlite3.Row) -> AuditLogEntry:
    event_type = EventType(row['event_type'])
    return AuditLogEntry(
        id=row['id'],
        deal_id=row['deal_id'],
        event_type=event_type,
        actor_type=ActorType(row['actor_type']),
        actor_id=row['actor_id'],
        metadata=metadata_from_dict(event_type, json.loads(row['metadata_json'])),
        created_at=_dt(row['created_at']),
        seq=row['seq'],
        prev_entry_hash=row['prev_entry_hash'],
        entry_hash=row['entry_hash'],
    )
