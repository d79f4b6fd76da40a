"""
Core data model for DealSeal.

Deal, AccessToken, VerificationRecord, OneTimeCode and AuditLogEntry are
the durable records; RequestContext is the explicit per-call context
(current user, client address, headers) handed to every entry point.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .events import ActorType, AuditMetadata, EventType, metadata_to_dict
from .util import to_timestamp


class TrustLevel(str, Enum):
    BASIC = "basic"
    VERIFIED = "verified"
    STRONG = "strong"
    MAXIMUM = "maximum"


class DealStatus(str, Enum):
    PENDING = "pending"
    SEALING = "sealing"
    CONFIRMED = "confirmed"
    VOIDED = "voided"

    @property
    def is_terminal(self) -> bool:
        return self in (DealStatus.CONFIRMED, DealStatus.VOIDED)


class TermType(str, Enum):
    TEXT = "text"
    CURRENCY = "currency"
    DATE = "date"
    NUMBER = "number"


class VerificationType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class TokenState(str, Enum):
    UNUSED = "unused"
    USED = "used"


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return to_timestamp(dt) if dt else None


@dataclass
class Term:
    label: str
    value: str
    type: TermType = TermType.TEXT

    def to_dict(self) -> Dict[str, str]:
        return {"label": self.label, "value": self.value, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Term':
        return cls(
            label=data["label"],
            value=data["value"],
            type=TermType(data.get("type", "text")),
        )


# ============================================================
# Recipient (sum type, fixed at creation)
# ============================================================

@dataclass(frozen=True)
class ByEmailOnly:
    """Recipient known only by name and (optionally) an email address."""
    name: str
    email: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class LinkedAccount:
    """Recipient that already holds an account."""
    user_id: str
    name: str
    email: Optional[str] = None


Recipient = Union[ByEmailOnly, LinkedAccount]


@dataclass
class Deal:
    id: str
    public_id: str
    creator_id: str
    title: str
    recipient: Recipient
    terms: List[Term]
    trust_level: TrustLevel
    status: DealStatus
    created_at: datetime
    description: str = ""
    viewed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    last_nudged_at: Optional[datetime] = None
    signature_url: Optional[str] = None
    deal_seal: Optional[str] = None

    @property
    def recipient_name(self) -> str:
        return self.recipient.name

    @property
    def recipient_id(self) -> Optional[str]:
        return self.recipient.user_id

    @property
    def recipient_email(self) -> Optional[str]:
        return self.recipient.email

    def is_party(self, user_id: Optional[str]) -> bool:
        """Creator or linked recipient."""
        if not user_id:
            return False
        return user_id == self.creator_id or user_id == self.recipient_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "public_id": self.public_id,
            "creator_id": self.creator_id,
            "title": self.title,
            "description": self.description,
            "recipient_name": self.recipient_name,
            "recipient_id": self.recipient_id,
            "recipient_email": self.recipient_email,
            "terms": [t.to_dict() for t in self.terms],
            "trust_level": self.trust_level.value,
            "status": self.status.value,
            "created_at": _ts(self.created_at),
            "viewed_at": _ts(self.viewed_at),
            "confirmed_at": _ts(self.confirmed_at),
            "voided_at": _ts(self.voided_at),
            "last_nudged_at": _ts(self.last_nudged_at),
            "signature_url": self.signature_url,
            "deal_seal": self.deal_seal,
        }

    def public_dict(self) -> Dict[str, Any]:
        """to_dict without the recipient's contact details, for lookups by link."""
        d = self.to_dict()
        del d["recipient_email"]
        return d


@dataclass
class AccessToken:
    deal_id: str
    token: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def state(self) -> TokenState:
        return TokenState.USED if self.used_at else TokenState.UNUSED

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class VerificationRecord:
    deal_id: str
    verification_type: VerificationType
    verified_value: str
    verified_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verification_type": self.verification_type.value,
            "verified_value": self.verified_value,
            "verified_at": _ts(self.verified_at),
            "metadata": self.metadata,
        }


@dataclass
class OneTimeCode:
    deal_id: str
    verification_type: VerificationType
    target: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    consumed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    id: str
    deal_id: str
    event_type: EventType
    actor_type: ActorType
    actor_id: Optional[str]
    metadata: AuditMetadata
    created_at: datetime
    seq: Optional[int] = None
    prev_entry_hash: Optional[str] = None
    entry_hash: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        """The part of an entry covered by the audit hash chain."""
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "event_type": self.event_type.value,
            "actor_type": self.actor_type.value,
            "actor_id": self.actor_id,
            "metadata": metadata_to_dict(self.metadata),
            "created_at": to_timestamp(self.created_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.payload()
        d["prev_entry_hash"] = self.prev_entry_hash
        d["entry_hash"] = self.entry_hash
        return d


@dataclass
class RequestContext:
    """
    Everything the protocol needs to know about the caller.

    user_id/user_email come from the authentication layer (external);
    account_phone is a phone number the account has already verified.
    """
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    account_phone: Optional[str] = None
    ip: str = "unknown"
    user_agent: str = "unknown"
    origin: Optional[str] = None
    referer: Optional[str] = None
    request_id: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def client_id(self) -> str:
        """Rate-limit key: the account when known, else the address."""
        if self.user_id:
            return f"user:{self.user_id}"
        return f"ip:{self.ip}"
