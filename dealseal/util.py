"""
Utility functions for DealSeal.

Provides canonical JSON serialization, hashing, identifier generation,
and UTC timestamp helpers.
"""

import json
import hashlib
import hmac
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Union

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
PUBLIC_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted object keys
    - Arrays keep their order
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as lowercase hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def hmac_sha256_hex(key: Union[bytes, str], data: Union[bytes, str]) -> str:
    """Keyed SHA-256 digest as hex."""
    if isinstance(key, str):
        key = key.encode('utf-8')
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hmac.new(key, data, hashlib.sha256).hexdigest()


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


# ============================================================
# Time
# ============================================================

def utcnow() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_timestamp(dt: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with second precision."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(s: str) -> datetime:
    """Parse a timestamp produced by to_timestamp."""
    return datetime.strptime(s, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def add_days(dt: datetime, days: int) -> datetime:
    return dt + timedelta(days=days)


def add_minutes(dt: datetime, minutes: int) -> datetime:
    return dt + timedelta(minutes=minutes)


# ============================================================
# Identifiers
# ============================================================

def generate_deal_id() -> str:
    """Internal deal identifier (uuid4)."""
    return str(uuid.uuid4())


def generate_public_id(length: int = 10) -> str:
    """Short URL-safe identifier used in share links."""
    return ''.join(secrets.choice(PUBLIC_ID_ALPHABET) for _ in range(length))


def generate_access_token() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def generate_numeric_code(length: int = 6) -> str:
    """Uniform random numeric code, leading zeros preserved."""
    return str(secrets.randbelow(10 ** length)).zfill(length)


def generate_id(length: int = 16) -> str:
    """Generate a cryptographically secure random ID."""
    return secrets.token_hex(length)


# ============================================================
# Masking
# ============================================================

def mask_phone(phone: str) -> str:
    """Keep the country prefix and the last two digits."""
    if len(phone) <= 6:
        return '*' * len(phone)
    return phone[:4] + "****" + phone[-2:]
