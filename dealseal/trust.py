"""
Trust policy: which identity proofs gate signing.

    trust_level   email   phone
    basic         no      no
    verified      yes     no
    strong        yes     yes
    maximum       yes     yes
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List

from .audit import AuditLog
from .config import Settings
from .db import Store
from .events import ActorType, ChannelVerified, EventType
from .models import Deal, DealStatus, RequestContext, TrustLevel, VerificationRecord, VerificationType
from .util import mask_phone, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Requirements:
    email_required: bool
    phone_required: bool

    def required_types(self) -> List[VerificationType]:
        out = []
        if self.email_required:
            out.append(VerificationType.EMAIL)
        if self.phone_required:
            out.append(VerificationType.PHONE)
        return out

    def requires(self, verification_type: VerificationType) -> bool:
        return verification_type in self.required_types()


POLICY: Dict[TrustLevel, Requirements] = {
    TrustLevel.BASIC: Requirements(email_required=False, phone_required=False),
    TrustLevel.VERIFIED: Requirements(email_required=True, phone_required=False),
    TrustLevel.STRONG: Requirements(email_required=True, phone_required=True),
    TrustLevel.MAXIMUM: Requirements(email_required=True, phone_required=True),
}


def requirements_for(trust_level: TrustLevel) -> Requirements:
    return POLICY[TrustLevel(trust_level)]


def missing_verifications(trust_level: TrustLevel,
                          records: Iterable[VerificationRecord]) -> List[VerificationType]:
    have = {r.verification_type for r in records}
    return [t for t in requirements_for(trust_level).required_types() if t not in have]


def can_sign_with(trust_level: TrustLevel, records: Iterable[VerificationRecord]) -> bool:
    return not missing_verifications(trust_level, records)


class TrustPolicy:
    """Evaluates the policy against a deal's stored verification records."""

    def __init__(self, store: Store, audit: AuditLog, settings: Settings,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def can_sign(self, deal_id: str) -> bool:
        deal = self.store.get_deal(deal_id)
        if deal is None:
            return False
        return can_sign_with(deal.trust_level, self.store.list_verifications(deal_id))

    def status(self, deal: Deal) -> Dict[str, object]:
        """Required and satisfied proofs for a deal."""
        records = self.store.list_verifications(deal.id)
        req = requirements_for(deal.trust_level)
        have = {r.verification_type for r in records}
        return {
            "trust_level": deal.trust_level.value,
            "email_required": req.email_required,
            "email_verified": VerificationType.EMAIL in have,
            "phone_required": req.phone_required,
            "phone_verified": VerificationType.PHONE in have,
            "can_sign": can_sign_with(deal.trust_level, records),
        }

    def apply_account_verification(self, deal: Deal, ctx: RequestContext) -> List[VerificationType]:
        """
        Trusted-identity shortcut.

        An authenticated account whose email equals the deal's recipient
        email counts as a verified email; a phone the account has already
        verified counts as a verified phone. Only channels the trust level
        requires are recorded, and each one is written as a normal
        VerificationRecord so the seal sees it.

        Returns the channels that were recorded.
        """
        if not self.settings.trust_account_email:
            return []
        if deal.status != DealStatus.PENDING:
            return []
        if not (ctx.user_email and deal.recipient_email):
            return []
        email = ctx.user_email.strip().lower()
        if email != deal.recipient_email.lower():
            return []

        req = requirements_for(deal.trust_level)
        candidates = []
        if req.email_required:
            candidates.append((VerificationType.EMAIL, email))
        if req.phone_required and ctx.account_phone:
            candidates.append((VerificationType.PHONE, ctx.account_phone))

        applied = []
        now = self.clock()
        with self.store.transaction():
            current = self.store.get_deal(deal.id)
            if current is None or current.status != DealStatus.PENDING:
                return []
            for verification_type, value in candidates:
                self.store.upsert_verification(VerificationRecord(
                    deal_id=deal.id,
                    verification_type=verification_type,
                    verified_value=value,
                    verified_at=now,
                    metadata={"verified_via": "account"},
                ))
                event = (EventType.EMAIL_VERIFIED if verification_type == VerificationType.EMAIL
                         else EventType.PHONE_VERIFIED)
                self.audit.append(deal.id, event, ActorType.RECIPIENT, ctx.user_id,
                                  ChannelVerified(target=_display_target(verification_type, value),
                                                  method="account"))
                applied.append(verification_type)
        if applied:
            logger.info(f"account verification applied to deal {deal.id}: "
                        f"{[t.value for t in applied]}")
        return applied


def _display_target(verification_type: VerificationType, value: str) -> str:
    if verification_type == VerificationType.PHONE:
        return mask_phone(value)
    return value

