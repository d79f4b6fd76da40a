"""
DealSeal service: the surface the rest of the product calls.

Every entry point takes an explicit RequestContext and returns an
Outcome; nothing raises across this boundary. Mutating entry points
check the request origin and the relevant rate-limit bucket before
touching any state, and validate input before any store access.
"""

import functools
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .audit import AuditLog
from .config import Settings
from .db import Store
from .deals import DealStateMachine
from .errors import CollaboratorError, DealError, DealValidationError, NotAuthorized, Outcome
from .models import Deal, DealStatus, RequestContext
from .notifications import Notifier, get_notifier
from .otp import OneTimeCodes
from .rate_limit import RateLimitPolicy
from .sealing import SealingEngine
from .security import (
    sanitize_for_logging,
    validate_access_token,
    validate_code,
    validate_deal_id,
    validate_email,
    validate_new_deal,
    validate_origin,
    validate_public_id,
    validate_target,
    validate_verification_type,
)
from .signatures import parse_signature
from .tokens import AccessTokens
from .trust import TrustPolicy
from .util import utcnow
from .verifier import DealVerifier

logger = logging.getLogger(__name__)


def returns_outcome(fn: Callable) -> Callable:
    """Turn DealError and store failures into a rejected Outcome."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> Outcome:
        try:
            return Outcome.success(fn(*args, **kwargs))
        except DealError as e:
            logger.info(f"{fn.__name__} rejected: {e.kind.value}: {e.reason}")
            return Outcome.rejected(e)
        except sqlite3.Error as e:
            logger.exception(f"{fn.__name__} store failure")
            return Outcome.rejected(CollaboratorError(str(e)))

    return wrapper


class DealService:
    """Wires the protocol components over one store."""

    def __init__(
        self,
        store: Store,
        settings: Settings,
        notifier: Notifier,
        rate_limits: Optional[RateLimitPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.rate_limits = rate_limits or RateLimitPolicy.from_settings(settings)
        self.clock = clock

        self.audit = AuditLog(store, clock)
        self.tokens = AccessTokens(store, self.audit, settings, clock)
        self.trust = TrustPolicy(store, self.audit, settings, clock)
        self.codes = OneTimeCodes(store, self.audit, settings, notifier, clock)
        self.deals = DealStateMachine(store, self.audit, self.tokens, settings, notifier, clock)
        self.sealing = SealingEngine(store, self.audit, self.tokens, clock)
        self.verifier = DealVerifier(store, self.audit)

    # ============================================================
    # Deal lifecycle
    # ============================================================

    @returns_outcome
    def create_deal(
        self,
        ctx: RequestContext,
        title: str,
        terms: Sequence[Any],
        recipient_name: str,
        trust_level: str = "basic",
        recipient_email: Optional[str] = None,
        description: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        validate_origin(ctx, self.settings)
        self.rate_limits.enforce("deal_create", ctx.client_id)
        fields = validate_new_deal(
            title=title,
            recipient_name=recipient_name,
            terms=terms,
            trust_level=trust_level,
            recipient_email=recipient_email,
            description=description,
        )
        deal, token = self.deals.create(ctx, recipient_id=recipient_id, **fields)
        return {
            "deal": deal.to_dict(),
            "access_token": token.token,
            "share_url": self.settings.share_url(deal.public_id),
        }

    @returns_outcome
    def get_deal_by_public_id(self, public_id: str) -> Dict[str, Any]:
        """
        Unauthenticated lookup by share link. Records no view and leaves
        out the recipient's email; view_deal is the gated path.
        """
        return self.deals.get_by_public_id(validate_public_id(public_id)).public_dict()

    @returns_outcome
    def view_deal(self, ctx: RequestContext, public_id: str, token: Optional[str] = None) -> Dict[str, Any]:
        """
        Open a deal by its share link and record the view.

        A pending deal is open to anyone holding the link. A confirmed
        deal needs a party or a token valid for viewing; a voided deal
        is visible to its parties only.
        """
        deal = self.deals.get_by_public_id(validate_public_id(public_id))
        if not self._may_view(ctx, deal, token):
            raise NotAuthorized("viewer is not a party and holds no viewing token")
        deal = self.deals.view(deal, ctx)
        return {"deal": deal.to_dict(), "verification": self.trust.status(deal)}

    @returns_outcome
    def void_deal(self, ctx: RequestContext, deal_id: str) -> Dict[str, Any]:
        validate_origin(ctx, self.settings)
        return self.deals.void(validate_deal_id(deal_id), ctx.user_id).to_dict()

    @returns_outcome
    def nudge_deal(self, ctx: RequestContext, deal_id: str, creator_name: Optional[str] = None) -> Dict[str, Any]:
        validate_origin(ctx, self.settings)
        self.rate_limits.enforce("email", ctx.client_id)
        return self.deals.nudge(validate_deal_id(deal_id), ctx.user_id, creator_name).to_dict()

    @returns_outcome
    def confirm_deal(
        self,
        ctx: RequestContext,
        deal_id: str,
        token: str,
        signature: str,
        verification_proofs: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        """
        Seal the deal.

        verification_proofs is an optional list of {type, target, code}
        checked through the one-time-code service just before sealing.
        """
        validate_origin(ctx, self.settings)
        self.rate_limits.enforce("confirm", ctx.client_id)
        deal_id = validate_deal_id(deal_id)
        token = validate_access_token(token)
        parsed = parse_signature(signature)
        if verification_proofs is not None and not isinstance(verification_proofs, list):
            raise DealValidationError("verification_proofs", "must be a list")
        proofs = [self._parse_proof(p) for p in (verification_proofs or [])]

        for verification_type, target, code in proofs:
            self.codes.verify(deal_id, verification_type, target, code, ctx.user_id)

        return self.sealing.confirm(deal_id, token, parsed, ctx).to_dict()

    @returns_outcome
    def log_signing_event(self, ctx: RequestContext, public_id: str, token: str,
                          signature_kind: str = "typed") -> Dict[str, Any]:
        deal = self.deals.get_by_public_id(validate_public_id(public_id))
        self.sealing.log_signing_event(deal, validate_access_token(token),
                                       "image" if signature_kind == "image" else "typed", ctx)
        return {"logged": True}

    @returns_outcome
    def send_deal_receipt(self, ctx: RequestContext, public_id: str, email: str,
                          token: Optional[str] = None) -> Dict[str, Any]:
        """
        Email a sealed deal's receipt. Open to whoever may view the sealed
        deal: a party, or the holder of its (used) access token.
        """
        validate_origin(ctx, self.settings)
        self.rate_limits.enforce("email", ctx.client_id)
        to = validate_email(email)
        deal = self.deals.get_by_public_id(validate_public_id(public_id))
        if not self._may_view(ctx, deal, token):
            raise NotAuthorized("receipt requester may not view this deal")
        self.deals.send_receipt(deal, to)
        return {"sent": True}

    # ============================================================
    # Verification (identity)
    # ============================================================

    @returns_outcome
    def send_verification_code(self, ctx: RequestContext, deal_id: str, verification_type: str,
                               target: str) -> Dict[str, Any]:
        validate_origin(ctx, self.settings)
        vtype = validate_verification_type(verification_type)
        self.rate_limits.enforce("otp", f"{vtype.value}:{ctx.client_id}")
        deal_id = validate_deal_id(deal_id)
        target = validate_target(vtype, target)
        delivered = self.codes.issue(deal_id, vtype, target)
        return {"sent": True, "delivered": delivered}

    @returns_outcome
    def verify_code(self, ctx: RequestContext, deal_id: str, verification_type: str, target: str,
                    code: str) -> bool:
        validate_origin(ctx, self.settings)
        self.rate_limits.enforce("general", ctx.client_id)
        vtype = validate_verification_type(verification_type)
        deal_id = validate_deal_id(deal_id)
        target = validate_target(vtype, target)
        code = validate_code(code, self.settings.otp_length)
        return self.codes.verify(deal_id, vtype, target, code, ctx.user_id)

    @returns_outcome
    def apply_account_verification(self, ctx: RequestContext, deal_id: str) -> Dict[str, Any]:
        deal = self.deals.get(validate_deal_id(deal_id))
        applied = self.trust.apply_account_verification(deal, ctx)
        status = self.trust.status(deal)
        status["applied"] = [t.value for t in applied]
        return status

    @returns_outcome
    def get_verification_status(self, deal_id: str) -> Dict[str, Any]:
        return self.trust.status(self.deals.get(validate_deal_id(deal_id)))

    # ============================================================
    # Tokens and audit
    # ============================================================

    @returns_outcome
    def get_token_status(self, ctx: RequestContext, deal_id: str) -> Dict[str, Any]:
        deal = self.deals.get(validate_deal_id(deal_id))
        if ctx.user_id != deal.creator_id:
            raise NotAuthorized("token status is creator-only")
        return self.tokens.token_status(deal.id)

    @returns_outcome
    def get_audit_trail(self, ctx: RequestContext, deal_id: str, token: Optional[str] = None) -> List[Dict[str, Any]]:
        deal = self.deals.get(validate_deal_id(deal_id))
        if not deal.is_party(ctx.user_id):
            if not token or not self.tokens.validate_for_viewing(
                    deal.id, validate_access_token(token), deal.public_id):
                raise NotAuthorized("audit trail requires a party or a viewing token")
        return [e.to_dict() for e in self.audit.entries(deal.id)]

    # ============================================================
    # Independent verification
    # ============================================================

    @returns_outcome
    def verify_deal(self, ctx: RequestContext, public_id: str) -> Dict[str, Any]:
        return self.verifier.verify(validate_public_id(public_id), ctx.user_id).to_dict()

    @returns_outcome
    def export_seal_bundle(self, public_id: str) -> Dict[str, Any]:
        return self.verifier.export_bundle(validate_public_id(public_id))

    # ============================================================
    # Helpers
    # ============================================================

    def _may_view(self, ctx: RequestContext, deal: Deal, token: Optional[str]) -> bool:
        if deal.is_party(ctx.user_id):
            return True
        if deal.status == DealStatus.PENDING:
            return True
        if deal.status == DealStatus.CONFIRMED and token:
            return self.tokens.validate_for_viewing(deal.id, validate_access_token(token), deal.public_id)
        return False

    def _parse_proof(self, proof: Dict[str, str]):
        if not isinstance(proof, dict):
            raise DealValidationError("verification_proofs", "each proof must be an object")
        vtype = validate_verification_type(proof.get("type"))
        target = validate_target(vtype, proof.get("target"))
        code = validate_code(proof.get("code"), self.settings.otp_length)
        logger.debug(f"verification proof {sanitize_for_logging(proof)}")
        return vtype, target, code


def build_service(settings: Settings, notifier: Optional[Notifier] = None,
                  store: Optional[Store] = None) -> DealService:
    """Create the store (initialising its schema) and the service around it."""
    store = store or Store(settings.db_path)
    store.init_db()
    return DealService(store, settings, notifier or get_notifier(settings))
