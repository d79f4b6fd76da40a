"""
Audit event vocabulary.

The event-type enumeration is closed. Each event type carries exactly
one metadata shape; METADATA_TYPES is the tag -> variant table used both
when appending and when reading entries back from the store.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union


class EventType(str, Enum):
    DEAL_CREATED = "deal_created"
    DEAL_VIEWED = "deal_viewed"
    DEAL_SIGNED = "deal_signed"
    DEAL_CONFIRMED = "deal_confirmed"
    DEAL_VOIDED = "deal_voided"
    EMAIL_OTP_SENT = "email_otp_sent"
    EMAIL_VERIFIED = "email_verified"
    PHONE_OTP_SENT = "phone_otp_sent"
    PHONE_VERIFIED = "phone_verified"
    TOKEN_VALIDATED = "token_validated"
    DEAL_VERIFIED = "deal_verified"


class ActorType(str, Enum):
    CREATOR = "creator"
    RECIPIENT = "recipient"
    SYSTEM = "system"


# ============================================================
# Metadata variants
# ============================================================

@dataclass
class DealCreated:
    recipient_name: str
    terms_count: int
    trust_level: str
    has_email: bool
    has_description: bool = False


@dataclass
class DealViewed:
    view_number: int
    is_first_view: bool
    is_logged_in: bool


@dataclass
class DealSigned:
    signature_kind: str  # typed | image


@dataclass
class DealConfirmed:
    deal_seal: str
    verification_types: List[str] = field(default_factory=list)
    has_email: bool = False


@dataclass
class DealVoided:
    previous_status: str


@dataclass
class CodeSent:
    """Shared by email_otp_sent and phone_otp_sent."""
    target: str
    delivered: bool


@dataclass
class ChannelVerified:
    """Shared by email_verified and phone_verified."""
    target: str
    method: str  # otp | account


@dataclass
class TokenValidated:
    result: str      # valid | invalid
    token_type: str  # access | used_access
    purpose: str     # signing | viewing


@dataclass
class DealVerified:
    result: str  # match | mismatch
    recomputed_seal: Optional[str] = None


AuditMetadata = Union[
    DealCreated, DealViewed, DealSigned, DealConfirmed, DealVoided,
    CodeSent, ChannelVerified, TokenValidated, DealVerified,
]

METADATA_TYPES: Dict[EventType, Type] = {
    EventType.DEAL_CREATED: DealCreated,
    EventType.DEAL_VIEWED: DealViewed,
    EventType.DEAL_SIGNED: DealSigned,
    EventType.DEAL_CONFIRMED: DealConfirmed,
    EventType.DEAL_VOIDED: DealVoided,
    EventType.EMAIL_OTP_SENT: CodeSent,
    EventType.PHONE_OTP_SENT: CodeSent,
    EventType.EMAIL_VERIFIED: ChannelVerified,
    EventType.PHONE_VERIFIED: ChannelVerified,
    EventType.TOKEN_VALIDATED: TokenValidated,
    EventType.DEAL_VERIFIED: DealVerified,
}


def check_metadata(event_type: EventType, metadata: Any) -> None:
    """Raise ValueError unless metadata is the variant for event_type."""
    expected = METADATA_TYPES[EventType(event_type)]
    if not isinstance(metadata, expected):
        raise ValueError(
            f"{event_type.value} requires {expected.__name__} metadata, "
            f"got {type(metadata).__name__}"
        )


def metadata_to_dict(metadata: AuditMetadata) -> Dict[str, Any]:
    return asdict(metadata)


def metadata_from_dict(event_type: EventType, data: Dict[str, Any]) -> AuditMetadata:
    """Rebuild the metadata variant for a stored entry, ignoring unknown keys."""
    cls = METADATA_TYPES[EventType(event_type)]
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})
