"""
Notification dispatch for DealSeal.

Delivers one-time codes and invitation emails. From the protocol's
point of view delivery is fire-and-forget: callers catch
NotificationError and log it; it never reverses a committed write.
"""

import logging
from typing import Optional

import requests

from .config import Settings
from .errors import NotificationError
from .models import Deal, VerificationType
from .util import to_timestamp

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
HTTP_TIMEOUT_SECONDS = 10


class Notifier:
    def send_code(self, target: str, channel: VerificationType, code: str) -> None:
        raise NotImplementedError

    def send_email(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Development backend: writes codes and emails to the log instead of sending them."""

    def send_code(self, target: str, channel: VerificationType, code: str) -> None:
        logger.info(f"[DEV MODE] {channel.value} code for {target}: {code}")

    def send_email(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        logger.info(f"[DEV MODE] email to {to}: {subject}")


class HttpNotifier(Notifier):
    """
    Sends email through the Resend HTTP API and SMS through Twilio's
    Messages API.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def send_code(self, target: str, channel: VerificationType, code: str) -> None:
        if channel == VerificationType.EMAIL:
            self.send_email(
                target,
                f"Your DealSeal verification code: {code}",
                code_email_text(code, self.settings.otp_ttl_minutes),
            )
        else:
            self.send_sms(target, f"Your DealSeal verification code is {code}. "
                                  f"It expires in {self.settings.otp_ttl_minutes} minutes.")

    def send_email(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        if not self.settings.resend_api_key:
            raise NotificationError("email service not configured")
        body = {
            "from": self.settings.resend_from_email,
            "to": [to],
            "subject": subject,
            "text": text,
        }
        if html:
            body["html"] = html
        self._post(
            RESEND_API_URL,
            json=body,
            headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
        )

    def send_sms(self, to: str, body: str) -> None:
        s = self.settings
        if not (s.twilio_account_sid and s.twilio_auth_token and s.twilio_phone_number):
            raise NotificationError("sms service not configured")
        self._post(
            TWILIO_API_URL.format(sid=s.twilio_account_sid),
            data={"To": to, "From": s.twilio_phone_number, "Body": body},
            auth=(s.twilio_account_sid, s.twilio_auth_token),
        )

    def _post(self, url: str, **kwargs) -> None:
        try:
            r = self.session.post(url, timeout=HTTP_TIMEOUT_SECONDS, **kwargs)
            r.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(str(e)) from e


def code_email_text(code: str, ttl_minutes: int) -> str:
    return (
        f"Your verification code is: {code}\n\n"
        f"This code expires in {ttl_minutes} minutes.\n\n"
        "If you didn't request this code, you can safely ignore this email."
    )


def invitation_email_text(creator_name: str, title: str, share_url: str) -> str:
    return (
        f"{creator_name} has sent you an agreement to review and seal: {title}\n\n"
        f"Review and sign: {share_url}\n"
    )


def receipt_email_text(deal: Deal, share_url: str) -> str:
    lines = [
        "Your agreement has been sealed.",
        "",
        f"Title: {deal.title}",
        f"Deal ID: {deal.public_id}",
        f"Sealed at: {to_timestamp(deal.confirmed_at)}",
    ]
    if deal.terms:
        lines += ["", "TERMS"] + [f"{t.label}: {t.value}" for t in deal.terms]
    lines += ["", "SEAL (SHA-256)", deal.deal_seal or "", "", f"View: {share_url}"]
    return "\n".join(lines) + "\n"


def get_notifier(settings: Settings) -> Notifier:
    backend = settings.notify_backend
    if backend == "http":
        return HttpNotifier(settings)
    return LogNotifier()
