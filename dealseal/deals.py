"""
Deal state machine.

    pending --confirm--> confirmed   (sealing engine)
    pending --void-----> voided

Both targets are terminal. Every transition is a conditional write on
the current status inside one immediate transaction, together with the
audit entry that records it.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .audit import AuditLog
from .config import Settings
from .db import Store
from .errors import CollaboratorError, DealNotAvailable, DealNotFound, DealValidationError, NotAuthorized
from .events import ActorType, DealCreated, DealViewed, DealVoided, EventType
from .logging_config import security_log
from .models import (
    AccessToken,
    ByEmailOnly,
    Deal,
    DealStatus,
    LinkedAccount,
    RequestContext,
    Term,
    TrustLevel,
)
from .notifications import Notifier, invitation_email_text, receipt_email_text
from .tokens import AccessTokens
from .util import generate_deal_id, generate_public_id, utcnow

logger = logging.getLogger(__name__)

PUBLIC_ID_ATTEMPTS = 5


class DealStateMachine:

    def __init__(self, store: Store, audit: AuditLog, tokens: AccessTokens, settings: Settings,
                 notifier: Notifier, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.tokens = tokens
        self.settings = settings
        self.notifier = notifier
        self.clock = clock

    # ============================================================
    # Reads
    # ============================================================

    def get(self, deal_id: str) -> Deal:
        deal = self.store.get_deal(deal_id)
        if deal is None:
            raise DealNotFound(deal_id)
        return deal

    def get_by_public_id(self, public_id: str) -> Deal:
        deal = self.store.get_deal_by_public_id(public_id)
        if deal is None:
            raise DealNotFound(public_id)
        return deal

    # ============================================================
    # Transitions
    # ============================================================

    def create(
        self,
        ctx: RequestContext,
        title: str,
        terms: List[Term],
        recipient_name: str,
        trust_level: TrustLevel = TrustLevel.BASIC,
        recipient_email: Optional[str] = None,
        description: str = "",
        recipient_id: Optional[str] = None,
    ) -> Tuple[Deal, AccessToken]:
        """
        Create a pending deal with its access token and deal_created entry.

        Inputs must already be validated. The recipient is resolved here
        once: a known account id links it, otherwise it is email-only.

        Raises:
            NotAuthorized: No authenticated creator
        """
        if not ctx.user_id:
            raise NotAuthorized("create requires an authenticated creator")

        if recipient_id:
            recipient = LinkedAccount(user_id=recipient_id, name=recipient_name, email=recipient_email)
        else:
            recipient = ByEmailOnly(name=recipient_name, email=recipient_email)

        now = self.clock()
        with self.store.transaction():
            deal = Deal(
                id=generate_deal_id(),
                public_id=self._new_public_id(),
                creator_id=ctx.user_id,
                title=title,
                description=description or "",
                recipient=recipient,
                terms=list(terms),
                trust_level=trust_level,
                status=DealStatus.PENDING,
                created_at=now,
            )
            self.store.insert_deal(deal)
            token = self.tokens.issue(deal.id)
            self.audit.append(
                deal.id,
                EventType.DEAL_CREATED,
                ActorType.CREATOR,
                ctx.user_id,
                DealCreated(
                    recipient_name=recipient_name,
                    terms_count=len(deal.terms),
                    trust_level=trust_level.value,
                    has_email=recipient_email is not None,
                    has_description=bool(deal.description),
                ),
            )

        security_log.deal_created(deal.id, trust_level.value, ctx.user_id)
        return deal, token

    def void(self, deal_id: str, acting_user_id: Optional[str]) -> Deal:
        """
        Void a pending deal. Creator only; final.

        Raises:
            DealNotFound, NotAuthorized, DealNotAvailable
        """
        now = self.clock()
        with self.store.transaction():
            deal = self.get(deal_id)
            if not acting_user_id or acting_user_id != deal.creator_id:
                security_log.security_event("void_not_creator", deal_id=deal_id, user_id=acting_user_id)
                raise NotAuthorized("only the creator may void")
            if deal.status.is_terminal:
                raise DealNotAvailable(f"cannot void a {deal.status.value} deal")
            if not self.store.transition_deal(deal_id, DealStatus.PENDING, DealStatus.VOIDED, voided_at=now):
                raise DealNotAvailable("deal left pending before void")
            self.audit.append(
                deal_id,
                EventType.DEAL_VOIDED,
                ActorType.CREATOR,
                acting_user_id,
                DealVoided(previous_status=deal.status.value),
            )
        logger.info(f"Deal {deal_id} voided")
        return self.get(deal_id)

    def view(self, deal: Deal, ctx: RequestContext) -> Deal:
        """
        Record a view. The first view by anyone but the creator sets
        viewed_at; every view appends deal_viewed with a counter taken
        from the log itself.
        """
        is_creator = bool(ctx.user_id) and ctx.user_id == deal.creator_id
        with self.store.transaction():
            view_number = self.audit.count(deal.id, EventType.DEAL_VIEWED) + 1
            first = False
            if not is_creator:
                first = self.store.mark_viewed(deal.id, self.clock())
            self.audit.append(
                deal.id,
                EventType.DEAL_VIEWED,
                ActorType.CREATOR if is_creator else ActorType.RECIPIENT,
                ctx.user_id,
                DealViewed(view_number=view_number, is_first_view=first,
                           is_logged_in=ctx.is_authenticated),
            )
        return self.get(deal.id)

    def nudge(self, deal_id: str, acting_user_id: Optional[str], creator_name: Optional[str] = None) -> Deal:
        """
        Re-send the invitation email for a pending deal.

        Raises:
            NotAuthorized: Caller is not the creator
            DealNotAvailable: Deal is not pending
            DealValidationError: Deal has no recipient email
            CollaboratorError: The email could not be sent
        """
        deal = self.get(deal_id)
        if not acting_user_id or acting_user_id != deal.creator_id:
            raise NotAuthorized("only the creator may nudge")
        if deal.status != DealStatus.PENDING:
            raise DealNotAvailable(f"cannot nudge a {deal.status.value} deal")
        if not deal.recipient_email:
            raise DealValidationError("recipient_email", "This deal has no recipient email")

        self.notifier.send_email(
            deal.recipient_email,
            f"Reminder: {deal.title} is waiting for your signature",
            invitation_email_text(creator_name or "Someone", deal.title,
                                  self.settings.share_url(deal.public_id)),
        )
        if not self.store.mark_nudged(deal_id, self.clock()):
            raise DealNotAvailable("deal left pending during nudge")
        return self.get(deal_id)

    def send_receipt(self, deal: Deal, to: str) -> None:
        """
        Email the receipt of a sealed deal: terms, seal and link.

        Raises:
            DealNotAvailable: Deal is not confirmed
            CollaboratorError: The email could not be sent
        """
        if deal.status != DealStatus.CONFIRMED:
            raise DealNotAvailable(f"no receipt for a {deal.status.value} deal")
        self.notifier.send_email(
            to,
            f"Sealed: {deal.title}",
            receipt_email_text(deal, self.settings.share_url(deal.public_id)),
        )
        logger.info(f"Receipt for deal {deal.id} sent")

    def _new_public_id(self) -> str:
        for _ in range(PUBLIC_ID_ATTEMPTS):
            candidate = generate_public_id()
            if not self.store.public_id_exists(candidate):
                return candidate
        raise CollaboratorError("could not allocate a unique public id")
