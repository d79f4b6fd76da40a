"""
Signature capture.

A signature is either typed text or a PNG/JPEG image sent as a base64
data URL. The reference ("sig:sha256:<hex>") is what the deal records
and what the seal binds; the stored bytes are kept per deal under it.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any

from .errors import DealValidationError
from .util import sha256_hex

MAX_TYPED_LENGTH = 200
MAX_IMAGE_BYTES = 1024 * 1024

DATA_URL_PATTERN = re.compile(r'^data:(image/(?:png|jpeg));base64,(.+)$', re.DOTALL)

PNG_MAGIC = b'\x89PNG\r\n\x1a\n'
JPEG_MAGIC = b'\xff\xd8\xff'

REFERENCE_PREFIX = "sig:sha256:"


@dataclass
class Signature:
    kind: str  # typed | image
    content_type: str
    data: bytes

    @property
    def reference(self) -> str:
        return signature_reference(self.data)


def signature_reference(data: bytes) -> str:
    return REFERENCE_PREFIX + sha256_hex(data)


def parse_signature(value: Any) -> Signature:
    """
    Validate a submitted signature.

    Raises:
        DealValidationError: Empty, oversized or malformed signature
    """
    if not isinstance(value, str) or not value.strip():
        raise DealValidationError("signature", "Signature is required")

    m = DATA_URL_PATTERN.match(value)
    if m is None:
        if value.startswith("data:"):
            raise DealValidationError("signature", "Signature image must be PNG or JPEG")
        text = value.strip()
        if len(text) > MAX_TYPED_LENGTH:
            raise DealValidationError("signature", f"must be {MAX_TYPED_LENGTH} characters or less")
        return Signature(kind="typed", content_type="text/plain; charset=utf-8",
                         data=text.encode('utf-8'))

    content_type, payload = m.group(1), m.group(2)
    # base64 inflates by 4/3; reject before decoding anything huge
    if len(payload) > (MAX_IMAGE_BYTES * 4) // 3 + 4:
        raise DealValidationError("signature", "Signature image is too large")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise DealValidationError("signature", "Signature image is not valid base64")
    if not data:
        raise DealValidationError("signature", "Signature is required")
    if len(data) > MAX_IMAGE_BYTES:
        raise DealValidationError("signature", "Signature image is too large")

    magic = PNG_MAGIC if content_type == "image/png" else JPEG_MAGIC
    if not data.startswith(magic):
        raise DealValidationError("signature", "Signature image does not match its declared type")

    return Signature(kind="image", content_type=content_type, data=data)
