"""
One-time code service.

Codes are uniform random digits. Only a keyed hash of the code is
stored; the raw code goes to the notifier and nowhere else. At most one
code per (deal, channel) is live; issuing again replaces it. A code is
consumed by its first successful verify, dies after too many failed
attempts, and expires at use time.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from .audit import AuditLog
from .config import Settings
from .db import Store
from .errors import DealNotAvailable, DealNotFound, DealValidationError, NotificationError
from .events import ActorType, ChannelVerified, CodeSent, EventType
from .logging_config import security_log
from .models import DealStatus, OneTimeCode, VerificationRecord, VerificationType
from .notifications import Notifier
from .trust import requirements_for
from .util import (
    add_minutes,
    constant_time_compare,
    generate_numeric_code,
    hmac_sha256_hex,
    mask_phone,
    utcnow,
)

logger = logging.getLogger(__name__)

# Compared against when no code exists so both paths do the same work.
_ABSENT_HASH = "0" * 64

SENT_EVENTS = {
    VerificationType.EMAIL: EventType.EMAIL_OTP_SENT,
    VerificationType.PHONE: EventType.PHONE_OTP_SENT,
}

VERIFIED_EVENTS = {
    VerificationType.EMAIL: EventType.EMAIL_VERIFIED,
    VerificationType.PHONE: EventType.PHONE_VERIFIED,
}


def hash_code(secret: str, deal_id: str, verification_type: VerificationType,
              target: str, code: str) -> str:
    """Keyed one-way hash binding the code to its deal, channel and target."""
    return hmac_sha256_hex(secret, f"{deal_id}:{verification_type.value}:{target}:{code}")


def display_target(verification_type: VerificationType, target: str) -> str:
    if verification_type == VerificationType.PHONE:
        return mask_phone(target)
    return target


class OneTimeCodes:

    def __init__(self, store: Store, audit: AuditLog, settings: Settings, notifier: Notifier,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.settings = settings
        self.notifier = notifier
        self.clock = clock

    def _hash(self, deal_id: str, verification_type: VerificationType, target: str, code: str) -> str:
        return hash_code(self.settings.otp_secret, deal_id, verification_type, target, code)

    def issue(self, deal_id: str, verification_type: VerificationType, target: str) -> bool:
        """
        Generate, store and dispatch a code. The code is never returned.

        Target must already be normalised. Returns whether the notifier
        accepted the message; a delivery failure leaves the code in place.

        Raises:
            DealNotFound: Unknown deal
            DealNotAvailable: Deal is not pending
            DealValidationError: The deal's trust level does not use this channel
        """
        now = self.clock()
        code = generate_numeric_code(self.settings.otp_length)

        with self.store.transaction():
            deal = self.store.get_deal(deal_id)
            if deal is None:
                raise DealNotFound(deal_id)
            if deal.status != DealStatus.PENDING:
                raise DealNotAvailable(f"code requested for {deal.status.value} deal")
            if not requirements_for(deal.trust_level).requires(verification_type):
                raise DealValidationError(
                    "type",
                    f"This deal does not require {verification_type.value} verification"
                )
            self.store.replace_code(OneTimeCode(
                deal_id=deal_id,
                verification_type=verification_type,
                target=target,
                code_hash=self._hash(deal_id, verification_type, target, code),
                expires_at=add_minutes(now, self.settings.otp_ttl_minutes),
                created_at=now,
            ))

        delivered = True
        try:
            self.notifier.send_code(target, verification_type, code)
        except NotificationError as e:
            delivered = False
            security_log.notification_failed(deal_id, verification_type.value, str(e))

        self.audit.append(
            deal_id,
            SENT_EVENTS[verification_type],
            ActorType.SYSTEM,
            None,
            CodeSent(target=display_target(verification_type, target), delivered=delivered),
        )
        security_log.code_issued(deal_id, verification_type.value, delivered)
        return delivered

    def verify(self, deal_id: str, verification_type: VerificationType, target: str,
               code: str, actor_id: Optional[str] = None) -> bool:
        """
        Check a code and, on match, consume it and upsert the deal's
        verification record.

        Returns False for a wrong, expired, consumed, exhausted or unknown
        code without saying which.
        """
        now = self.clock()
        supplied = self._hash(deal_id, verification_type, target, code)
        ok = False

        with self.store.transaction():
            deal = self.store.get_deal(deal_id)
            row = self.store.get_code(deal_id, verification_type) if deal else None
            matches = constant_time_compare(supplied, row.code_hash if row else _ABSENT_HASH)
            live = (
                row is not None
                and deal.status == DealStatus.PENDING
                and row.consumed_at is None
                and now < row.expires_at
                and row.attempts < self.settings.otp_max_attempts
            )
            if matches and live and self.store.consume_code(deal_id, verification_type, supplied, now):
                self.store.upsert_verification(VerificationRecord(
                    deal_id=deal_id,
                    verification_type=verification_type,
                    verified_value=target,
                    verified_at=now,
                    metadata={"verified_via": "otp"},
                ))
                self.audit.append(
                    deal_id,
                    VERIFIED_EVENTS[verification_type],
                    ActorType.RECIPIENT,
                    actor_id,
                    ChannelVerified(target=display_target(verification_type, target), method="otp"),
                )
                ok = True
            elif row is not None and row.consumed_at is None:
                self.store.record_failed_attempt(deal_id, verification_type)

        if not ok:
            security_log.code_rejected(deal_id, verification_type.value)
        return ok
