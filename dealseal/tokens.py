"""
Access token protocol.

One token per deal, issued at creation with a fixed lifetime. A token
authorizes signing while it is unexpired, unused and the deal is
pending; once consumed by a successful confirmation it only grants
re-viewing of the sealed deal. Every lookup is scoped to the
(deal_id, token) pair.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .audit import AuditLog
from .config import Settings
from .db import Store
from .errors import NotAuthorized
from .events import ActorType, EventType, TokenValidated
from .logging_config import security_log
from .models import AccessToken, Deal, DealStatus, TokenState
from .util import add_days, generate_access_token, to_timestamp, utcnow

logger = logging.getLogger(__name__)

PURPOSE_SIGNING = "signing"
PURPOSE_VIEWING = "viewing"


def token_failure(token: Optional[AccessToken], now: datetime) -> Optional[str]:
    """
    Reason the token cannot authorize a signature, or None if it can.
    The reason is for the security log only.
    """
    if token is None:
        return "token not found for deal"
    if token.is_expired(now):
        return "token expired"
    if token.state == TokenState.USED:
        return "token already used"
    return None


class AccessTokens:

    def __init__(self, store: Store, audit: AuditLog, settings: Settings,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def issue(self, deal_id: str) -> AccessToken:
        """Create the deal's token. Called once, inside the create transaction."""
        now = self.clock()
        token = AccessToken(
            deal_id=deal_id,
            token=generate_access_token(),
            expires_at=add_days(now, self.settings.access_token_ttl_days),
            created_at=now,
        )
        self.store.insert_token(token)
        return token

    def check(self, deal_id: str, token: str, purpose: str = PURPOSE_SIGNING) -> AccessToken:
        """
        Token predicates only (exists for this deal, unexpired, unused).

        Raises:
            NotAuthorized: If any predicate fails
        """
        record = self.store.get_token(deal_id, token)
        reason = token_failure(record, self.clock())
        if reason:
            security_log.token_rejected(deal_id, reason, purpose)
            raise NotAuthorized(reason)
        return record

    def validate_for_signing(self, deal_id: str, token: str) -> bool:
        deal = self.store.get_deal(deal_id)
        if deal is None:
            return False
        ok = self._valid_for_signing(deal, token)
        self._record(deal.id, ok, "access", PURPOSE_SIGNING)
        return ok

    def validate_for_viewing(self, deal_id: str, token: str, public_id: str) -> bool:
        """
        True if the token could sign right now, or if it was consumed
        and the deal (resolved by public_id) is confirmed.
        """
        deal = self.store.get_deal_by_public_id(public_id)
        if deal is None or deal.id != deal_id:
            security_log.token_rejected(deal_id, "deal/public id mismatch", PURPOSE_VIEWING)
            return False

        if self._valid_for_signing(deal, token):
            self._record(deal.id, True, "access", PURPOSE_VIEWING)
            return True

        record = self.store.get_token(deal.id, token)
        ok = record is not None and record.used_at is not None and deal.status == DealStatus.CONFIRMED
        if not ok:
            security_log.token_rejected(deal.id, "not valid for viewing", PURPOSE_VIEWING)
        self._record(deal.id, ok, "used_access", PURPOSE_VIEWING)
        return ok

    def token_status(self, deal_id: str) -> Dict[str, Any]:
        """valid | expired | used | not_found, for the deal's creator."""
        record = self.store.get_latest_token(deal_id)
        if record is None:
            return {"status": "not_found", "expires_at": None}
        if record.state == TokenState.USED:
            status = "used"
        elif record.is_expired(self.clock()):
            status = "expired"
        else:
            status = "valid"
        return {"status": status, "expires_at": to_timestamp(record.expires_at)}

    def _valid_for_signing(self, deal: Deal, token: str) -> bool:
        record = self.store.get_token(deal.id, token)
        if token_failure(record, self.clock()):
            return False
        return deal.status == DealStatus.PENDING

    def _record(self, deal_id: str, ok: bool, token_type: str, purpose: str) -> None:
        self.audit.append(
            deal_id,
            EventType.TOKEN_VALIDATED,
            ActorType.RECIPIENT,
            None,
            TokenValidated(result="valid" if ok else "invalid", token_type=token_type, purpose=purpose),
        )
