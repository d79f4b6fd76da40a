"""
DealSeal: Deal Agreement Lifecycle & Trust Protocol

Version: 1.0.0

A creator drafts an agreement (a Deal with ordered terms) and shares a
link with a recipient. The recipient proves identity to the level the
Deal's trust level demands, signs, and the Deal is sealed: a SHA-256
digest binding its terms, signature, identity verifications and
confirmation time, which anyone can recompute later.

    pending --confirm--> confirmed
    pending --void-----> voided

Usage:
    from dealseal import DealService, RequestContext, Settings, build_service

    service = build_service(Settings(db_path="deals.db"))
    creator = RequestContext(user_id="user-1", user_email="ann@example.com")

    out = service.create_deal(
        creator,
        title="Guitar sale",
        terms=[{"label": "Amount", "value": "$100", "type": "currency"}],
        recipient_name="Bob",
        recipient_email="bob@example.com",
    )
    deal, token = out.value["deal"], out.value["access_token"]

    # the recipient, holding the link token
    out = service.confirm_deal(RequestContext(), deal["id"], token, "Bob Smith")
    if out.ok:
        seal = out.value["deal_seal"]

    # anyone, later
    service.verify_deal(RequestContext(), deal["public_id"]).value["result"]  # "match"
"""

__version__ = "1.0.0"

from .config import Settings, load_settings
from .errors import (
    CannotSign,
    DealError,
    DealNotAvailable,
    DealNotFound,
    DealValidationError,
    ErrorKind,
    NotAuthorized,
    Outcome,
)
from .hashing import compute_seal
from .models import Deal, DealStatus, RequestContext, Term, TrustLevel, VerificationType
from .service import DealService, build_service
from .verifier import SealVerification, verify_bundle

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "load_settings",
    # Service
    "DealService",
    "build_service",
    "RequestContext",
    # Model
    "Deal",
    "DealStatus",
    "Term",
    "TrustLevel",
    "VerificationType",
    # Results and errors
    "Outcome",
    "ErrorKind",
    "DealError",
    "DealValidationError",
    "NotAuthorized",
    "DealNotFound",
    "DealNotAvailable",
    "CannotSign",
    # Sealing
    "compute_seal",
    "SealVerification",
    "verify_bundle",
]
