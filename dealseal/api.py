"""
HTTP binding for DealSeal.

Authentication is upstream: the gateway forwards the signed-in user as
X-User-Id / X-User-Email (and X-User-Phone for an account-verified
phone). Every response body is an Outcome; the status code follows the
error kind.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import is_debug, load_settings, validate_settings
from .errors import ErrorKind, Outcome
from .logging_config import configure_logging, set_request_id
from .models import RequestContext
from .schemas import (
    ConfirmRequest,
    CreateDealRequest,
    NudgeRequest,
    ReceiptRequest,
    SendCodeRequest,
    SigningEventRequest,
    VerifyCodeRequest,
    proofs_as_dicts,
)
from .security import extract_client_ip
from .service import DealService, build_service

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STATE: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.COLLABORATOR: 503,
}


def request_context(request: Request) -> RequestContext:
    h = request.headers
    return RequestContext(
        user_id=h.get("x-user-id") or None,
        user_email=h.get("x-user-email") or None,
        account_phone=h.get("x-user-phone") or None,
        ip=extract_client_ip(h),
        user_agent=h.get("user-agent", "unknown"),
        origin=h.get("origin") or None,
        referer=h.get("referer") or None,
        request_id=getattr(request.state, "request_id", ""),
    )


def respond(outcome: Outcome, success_status: int = 200) -> JSONResponse:
    status = success_status if outcome.ok else STATUS_BY_KIND[outcome.error_kind]
    return JSONResponse(status_code=status, content=outcome.to_dict())


def create_app(service: Optional[DealService] = None) -> FastAPI:
    """
    Build the application. Without a service one is built from the
    environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            settings = load_settings()
            level = "DEBUG" if is_debug() else settings.log_level
            configure_logging(level, settings.log_json, settings.log_file)
            failed = [name for name, ok in validate_settings(settings).items() if not ok]
            if failed:
                logger.warning(f"configuration checks failed: {failed}")
            app.state.service = build_service(settings)
        yield

    app = FastAPI(title="DealSeal", lifespan=lifespan)
    app.state.service = service

    def svc(request: Request) -> DealService:
        return request.app.state.service

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request.state.request_id = set_request_id(request.headers.get("x-request-id") or None)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response

    @app.get("/health")
    def health(request: Request):
        s = svc(request)
        return {
            "status": "ok",
            "checks": validate_settings(s.settings),
            "db": s.store.get_db_stats(),
        }

    # ------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------

    @app.post("/deals")
    def create_deal(req: CreateDealRequest, request: Request):
        out = svc(request).create_deal(
            request_context(request),
            title=req.title,
            terms=[t.model_dump() for t in req.terms],
            recipient_name=req.recipient_name,
            trust_level=req.trust_level,
            recipient_email=req.recipient_email,
            description=req.description,
            recipient_id=req.recipient_id,
        )
        return respond(out, 201)

    @app.get("/deals/public/{public_id}")
    def get_deal(public_id: str, request: Request):
        return respond(svc(request).get_deal_by_public_id(public_id))

    @app.get("/d/public/{public_id}")
    def view_deal(public_id: str, request: Request, token: Optional[str] = None):
        return respond(svc(request).view_deal(request_context(request), public_id, token))

    @app.post("/deals/public/{public_id}/signing-event")
    def signing_event(public_id: str, req: SigningEventRequest, request: Request):
        return respond(svc(request).log_signing_event(
            request_context(request), public_id, req.token, req.signature_kind))

    @app.post("/deals/public/{public_id}/receipt")
    def send_receipt(public_id: str, req: ReceiptRequest, request: Request):
        return respond(svc(request).send_deal_receipt(
            request_context(request), public_id, req.email, req.token))

    @app.post("/deals/{deal_id}/void")
    def void_deal(deal_id: str, request: Request):
        return respond(svc(request).void_deal(request_context(request), deal_id))

    @app.post("/deals/{deal_id}/nudge")
    def nudge_deal(deal_id: str, req: NudgeRequest, request: Request):
        return respond(svc(request).nudge_deal(request_context(request), deal_id, req.creator_name))

    @app.post("/deals/{deal_id}/confirm")
    def confirm_deal(deal_id: str, req: ConfirmRequest, request: Request):
        return respond(svc(request).confirm_deal(
            request_context(request), deal_id, req.token, req.signature,
            proofs_as_dicts(req.verification_proofs)))

    # ------------------------------------------------------------
    # Identity verification
    # ------------------------------------------------------------

    @app.post("/deals/{deal_id}/codes")
    def send_code(deal_id: str, req: SendCodeRequest, request: Request):
        return respond(svc(request).send_verification_code(
            request_context(request), deal_id, req.type, req.target))

    @app.post("/deals/{deal_id}/codes/verify")
    def verify_code(deal_id: str, req: VerifyCodeRequest, request: Request):
        return respond(svc(request).verify_code(
            request_context(request), deal_id, req.type, req.target, req.code))

    @app.post("/deals/{deal_id}/account-verification")
    def account_verification(deal_id: str, request: Request):
        return respond(svc(request).apply_account_verification(request_context(request), deal_id))

    @app.get("/deals/{deal_id}/verification")
    def verification_status(deal_id: str, request: Request):
        return respond(svc(request).get_verification_status(deal_id))

    # ------------------------------------------------------------
    # Tokens, audit, verification
    # ------------------------------------------------------------

    @app.get("/deals/{deal_id}/token")
    def token_status(deal_id: str, request: Request):
        return respond(svc(request).get_token_status(request_context(request), deal_id))

    @app.get("/deals/{deal_id}/audit")
    def audit_trail(deal_id: str, request: Request, token: Optional[str] = None):
        return respond(svc(request).get_audit_trail(request_context(request), deal_id, token))

    @app.post("/verify/{public_id}")
    def verify_deal(public_id: str, request: Request):
        return respond(svc(request).verify_deal(request_context(request), public_id))

    @app.get("/verify/{public_id}/bundle")
    def seal_bundle(public_id: str, request: Request):
        return respond(svc(request).export_seal_bundle(public_id))

    return app


app = create_app()
