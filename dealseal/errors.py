"""
Error taxonomy and structured results.

Components raise DealError subclasses. The public service layer turns
them into Outcome values so nothing raises across that boundary.
Authorization and state errors keep a fixed public message; the
specific reason is logged, never returned.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    STATE = "state"
    RATE_LIMITED = "rate_limited"
    COLLABORATOR = "collaborator"


class DealError(Exception):
    kind: ErrorKind = ErrorKind.COLLABORATOR
    public_message: str = "Server error"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.public_message
        super().__init__(self.reason)

    @property
    def message(self) -> str:
        return self.public_message


class DealValidationError(DealError):
    """Malformed input. Raised before any store access."""
    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, message: str):
        self.field = field
        self._message = message
        super().__init__(f"{field}: {message}")

    @property
    def message(self) -> str:
        return self._message


class NotAuthorized(DealError):
    kind = ErrorKind.AUTHORIZATION
    public_message = "Not authorized"


class DealNotFound(DealError):
    kind = ErrorKind.NOT_FOUND
    public_message = "Deal not found"


class DealNotAvailable(DealError):
    """The deal is not in a state that allows the operation."""
    kind = ErrorKind.STATE
    public_message = "Deal not available"


class CannotSign(DealError):
    """Trust policy requirements are not met yet."""
    kind = ErrorKind.STATE
    public_message = "Required verifications are incomplete; cannot sign yet"


class RateLimited(DealError):
    kind = ErrorKind.RATE_LIMITED
    public_message = "Too many requests. Please try again later."


class InvalidOrigin(DealError):
    kind = ErrorKind.AUTHORIZATION
    public_message = "Invalid request origin"


class CollaboratorError(DealError):
    """Store or delivery failure; safe to retry."""
    kind = ErrorKind.COLLABORATOR
    public_message = "Server error"


class NotificationError(CollaboratorError):
    public_message = "Notification could not be delivered"


@dataclass
class Outcome:
    """Structured result returned by every public entry point."""
    ok: bool
    value: Any = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    field: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> 'Outcome':
        return cls(ok=True, value=value)

    @classmethod
    def rejected(cls, error: DealError) -> 'Outcome':
        return cls(
            ok=False,
            error_kind=error.kind,
            message=error.message,
            field=getattr(error, "field", None),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "value": self.value}
        out = {
            "ok": False,
            "error": {"kind": self.error_kind.value, "message": self.message},
        }
        if self.field:
            out["error"]["field"] = self.field
        return out
