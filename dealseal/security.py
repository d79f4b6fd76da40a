"""
Security module for DealSeal.

Provides input validation, Origin (CSRF) checking, and helpers for
rate-limit keys and log sanitisation.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

from .config import Settings
from .errors import DealValidationError, InvalidOrigin
from .logging_config import security_log
from .models import RequestContext, Term, TermType, TrustLevel, VerificationType

logger = logging.getLogger(__name__)


# ============================================================
# Limits
# ============================================================

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_RECIPIENT_NAME_LENGTH = 100
MAX_TERMS = 20
MAX_TERM_LABEL_LENGTH = 100
MAX_TERM_VALUE_LENGTH = 500

# Regex patterns for validation
UUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)
PUBLIC_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{5,20}$')
ACCESS_TOKEN_PATTERN = re.compile(r'^[a-f0-9]{64}$')
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_PATTERN = re.compile(r'^\+[1-9]\d{1,14}$')


# ============================================================
# Input Validation
# ============================================================

def validate_string_length(
    value: Any,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """
    Validate string length.

    Args:
        value: The string to validate
        field_name: Name of the field (for error messages)
        min_length: Minimum allowed length
        max_length: Maximum allowed length

    Returns:
        The validated string

    Raises:
        DealValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise DealValidationError(field_name, "must be a string")

    if len(value) < min_length:
        if min_length == 1:
            raise DealValidationError(field_name, "is required")
        raise DealValidationError(field_name, f"must be at least {min_length} characters")

    if len(value) > max_length:
        raise DealValidationError(field_name, f"must be {max_length} characters or less")

    return value


def validate_deal_id(value: Any) -> str:
    if not isinstance(value, str) or not UUID_PATTERN.match(value):
        raise DealValidationError("deal_id", "Invalid deal ID")
    return value.lower()


def validate_public_id(value: Any) -> str:
    if not isinstance(value, str) or not PUBLIC_ID_PATTERN.match(value):
        raise DealValidationError("public_id", "Invalid public ID")
    return value


def validate_access_token(value: Any) -> str:
    if not isinstance(value, str) or not ACCESS_TOKEN_PATTERN.match(value):
        raise DealValidationError("token", "Invalid access token")
    return value


def validate_email(value: Any, field_name: str = "email") -> str:
    """Validate and normalise (trim, lower-case) an email address."""
    if not isinstance(value, str):
        raise DealValidationError(field_name, "Invalid email address")
    email = value.strip().lower()
    if len(email) > 254 or not EMAIL_PATTERN.match(email):
        raise DealValidationError(field_name, "Invalid email address")
    return email


def validate_phone(value: Any, field_name: str = "phone") -> str:
    """E.164 only."""
    if not isinstance(value, str) or not PHONE_PATTERN.match(value.strip()):
        raise DealValidationError(
            field_name,
            "Invalid phone number. Please use international format (e.g., +1234567890)"
        )
    return value.strip()


def validate_target(verification_type: VerificationType, value: Any) -> str:
    if verification_type == VerificationType.EMAIL:
        return validate_email(value, "target")
    return validate_phone(value, "target")


def validate_code(value: Any, length: int = 6) -> str:
    if not isinstance(value, str) or len(value) != length or not value.isdigit():
        raise DealValidationError("code", "Invalid verification code")
    return value


def validate_trust_level(value: Any) -> TrustLevel:
    try:
        return TrustLevel(value)
    except ValueError:
        raise DealValidationError("trust_level", "must be one of basic, verified, strong, maximum")


def validate_verification_type(value: Any) -> VerificationType:
    try:
        return VerificationType(value)
    except ValueError:
        raise DealValidationError("type", "must be email or phone")


def validate_terms(terms: Sequence[Any]) -> List[Term]:
    """
    Validate the ordered term list. Order is preserved exactly.

    Accepts Term instances or dicts with label/value/type.
    """
    if not isinstance(terms, (list, tuple)):
        raise DealValidationError("terms", "must be a list")
    if len(terms) > MAX_TERMS:
        raise DealValidationError("terms", f"Maximum {MAX_TERMS} terms allowed")

    result = []
    for i, raw in enumerate(terms):
        if isinstance(raw, Term):
            raw = raw.to_dict()
        if not isinstance(raw, dict):
            raise DealValidationError(f"terms[{i}]", "must be an object")
        label = validate_string_length(raw.get("label"), f"terms[{i}].label",
                                       max_length=MAX_TERM_LABEL_LENGTH).strip()
        if not label:
            raise DealValidationError(f"terms[{i}].label", "Term label is required")
        value = validate_string_length(raw.get("value"), f"terms[{i}].value",
                                       max_length=MAX_TERM_VALUE_LENGTH)
        try:
            term_type = TermType(raw.get("type", "text"))
        except ValueError:
            raise DealValidationError(f"terms[{i}].type", "must be one of text, number, date, currency")
        result.append(Term(label=label, value=value, type=term_type))
    return result


def validate_new_deal(
    title: Any,
    recipient_name: Any,
    terms: Sequence[Any],
    trust_level: Any = TrustLevel.BASIC,
    recipient_email: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Validate everything createDeal receives; returns normalised values."""
    title = validate_string_length(title, "title", max_length=MAX_TITLE_LENGTH).strip()
    if not title:
        raise DealValidationError("title", "Deal title is required")
    name = validate_string_length(recipient_name, "recipient_name",
                                  max_length=MAX_RECIPIENT_NAME_LENGTH).strip()
    if not name:
        raise DealValidationError("recipient_name", "Recipient name is required")
    description = description or ""
    validate_string_length(description, "description", min_length=0,
                           max_length=MAX_DESCRIPTION_LENGTH)
    email = validate_email(recipient_email, "recipient_email") if recipient_email else None
    return {
        "title": title,
        "recipient_name": name,
        "recipient_email": email,
        "description": description,
        "terms": validate_terms(terms),
        "trust_level": validate_trust_level(trust_level),
    }


# ============================================================
# Origin / CSRF
# ============================================================

def _request_origin(ctx: RequestContext) -> Optional[str]:
    if ctx.origin:
        return ctx.origin
    if ctx.referer:
        parsed = urlparse(ctx.referer)
        if parsed.scheme and parsed.netloc:
            return f"{parsed.scheme}://{parsed.netloc}"
    return None


def validate_origin(ctx: RequestContext, settings: Settings) -> None:
    """
    Check the Origin (or Referer) header against the allow-list.

    Requests without either header are allowed and logged, since
    browsers may omit Origin on same-origin requests.

    Raises:
        InvalidOrigin: If the origin is present and not allowed
    """
    origin = _request_origin(ctx)

    if origin is None:
        logger.warning("Request without Origin header - allowing but logging")
        return

    if settings.env == "dev" and origin.startswith("http://localhost"):
        return

    if origin in settings.allowed_origins:
        return

    security_log.origin_rejected(origin)
    raise InvalidOrigin(f"origin {origin} not allowed")


# ============================================================
# Rate Limiting Helpers
# ============================================================

def extract_client_ip(headers: Dict[str, str]) -> str:
    """
    First hop of X-Forwarded-For, then X-Real-IP, else "unknown".
    """
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = headers.get("x-real-ip", "")
    if real_ip:
        return real_ip.strip()

    return "unknown"


# ============================================================
# Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: Iterable[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: Field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["token", "code", "code_hash", "signature", "otp_secret", "password"]
    sensitive_fields = list(sensitive_fields)

    result = {}
    for key, value in data.items():
        if key in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
