"""
Sealing engine: atomic confirmation of a deal.

Inside one immediate transaction:

1. token predicates (exists for this deal, unexpired, unused)
2. status guard (pending)
3. trust policy (required verifications present)
4. store the signature, compute the seal at the confirmation time
5. conditional status write pending -> confirmed
6. consume the token
7. token_validated + deal_confirmed audit entries

Any failure rolls back the whole unit. Concurrent confirms are
serialized by the store's write lock; the loser sees a used token.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from .audit import AuditLog
from .db import Store
from .errors import CannotSign, DealError, DealNotAvailable, DealNotFound, NotAuthorized
from .events import ActorType, DealConfirmed, DealSigned, EventType, TokenValidated
from .hashing import compute_seal
from .logging_config import security_log
from .models import Deal, DealStatus, RequestContext
from .signatures import Signature
from .tokens import AccessTokens
from .trust import missing_verifications
from .util import utcnow

logger = logging.getLogger(__name__)


class SealingEngine:

    def __init__(self, store: Store, audit: AuditLog, tokens: AccessTokens,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.tokens = tokens
        self.clock = clock

    def confirm(self, deal_id: str, token: str, signature: Signature,
                ctx: Optional[RequestContext] = None) -> Deal:
        """
        Confirm and seal a deal.

        Raises:
            DealNotFound: Unknown deal
            NotAuthorized: Token missing, expired, used, or for another deal
            DealNotAvailable: Deal is not pending
            CannotSign: Required verifications are missing
        """
        actor_id = ctx.user_id if ctx else None
        now = self.clock()
        deal_exists = False

        try:
            with self.store.transaction():
                deal = self.store.get_deal(deal_id)
                if deal is None:
                    raise DealNotFound(deal_id)
                deal_exists = True

                self.tokens.check(deal_id, token)

                if deal.status != DealStatus.PENDING:
                    raise DealNotAvailable(f"deal is {deal.status.value}")

                records = self.store.list_verifications(deal_id)
                missing = missing_verifications(deal.trust_level, records)
                if missing:
                    raise CannotSign(f"missing {', '.join(t.value for t in missing)} verification")

                reference = signature.reference
                self.store.store_signature(reference, deal_id, signature.content_type, signature.data, now)
                seal = compute_seal(deal.id, deal.terms, reference, now, records)

                if not self.store.transition_deal(
                    deal_id, DealStatus.PENDING, DealStatus.CONFIRMED,
                    confirmed_at=now, signature_url=reference, deal_seal=seal,
                ):
                    raise DealNotAvailable("deal left pending during confirm")
                if not self.store.consume_token(deal_id, token, now):
                    raise NotAuthorized("token consumed concurrently")

                self.audit.append(
                    deal_id, EventType.TOKEN_VALIDATED, ActorType.RECIPIENT, actor_id,
                    TokenValidated(result="valid", token_type="access", purpose="signing"),
                )
                self.audit.append(
                    deal_id, EventType.DEAL_CONFIRMED, ActorType.RECIPIENT, actor_id,
                    DealConfirmed(
                        deal_seal=seal,
                        verification_types=sorted(r.verification_type.value for r in records),
                        has_email=deal.recipient_email is not None,
                    ),
                )
        except NotAuthorized as e:
            security_log.confirmation_rejected(deal_id, e.reason)
            if deal_exists:
                # the rejection itself is evidence; written after the rollback
                self.audit.append(
                    deal_id, EventType.TOKEN_VALIDATED, ActorType.RECIPIENT, actor_id,
                    TokenValidated(result="invalid", token_type="access", purpose="signing"),
                )
            raise
        except DealError as e:
            security_log.confirmation_rejected(deal_id, e.reason)
            raise

        security_log.deal_confirmed(deal_id, seal)
        return self.store.get_deal(deal_id)

    def log_signing_event(self, deal: Deal, token: str, signature_kind: str,
                          ctx: Optional[RequestContext] = None) -> None:
        """
        Record that the recipient has drawn or typed a signature, before
        confirming. Requires a token that could sign right now.

        Raises:
            NotAuthorized, DealNotAvailable
        """
        self.tokens.check(deal.id, token)
        if deal.status != DealStatus.PENDING:
            raise DealNotAvailable(f"deal is {deal.status.value}")
        self.audit.append(
            deal.id, EventType.DEAL_SIGNED, ActorType.RECIPIENT, ctx.user_id if ctx else None,
            DealSigned(signature_kind=signature_kind),
        )
