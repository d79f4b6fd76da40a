import pytest
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient

from dealseal.api import create_app
from dealseal.config import Settings
from dealseal.db import Store
from dealseal.errors import NotificationError
from dealseal.models import RequestContext
from dealseal.notifications import Notifier
from dealseal.rate_limit import RateLimitPolicy
from dealseal.service import DealService

APP_ORIGIN = "https://app.dealseal.test"
RECIPIENT_EMAIL = "bob@example.com"
RECIPIENT_PHONE = "+14155550123"


class Clock:
    """Controllable UTC clock, second precision."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(Notifier):
    """Keeps every code and email instead of sending it."""

    def __init__(self):
        self.codes = []
        self.emails = []
        self.fail = False

    def send_code(self, target, channel, code):
        if self.fail:
            raise NotificationError("delivery backend down")
        self.codes.append((target, channel, code))

    def send_email(self, to, subject, text, html=None):
        if self.fail:
            raise NotificationError("delivery backend down")
        self.emails.append({"to": to, "subject": subject, "text": text})

    @property
    def last_code(self):
        return self.codes[-1][2]


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        env="dev",
        db_path=str(tmp_path / "dealseal.db"),
        app_url=APP_ORIGIN,
        allowed_origins=[APP_ORIGIN],
    )


@pytest.fixture
def store(settings):
    s = Store(settings.db_path)
    s.init_db()
    yield s
    s.close_connection()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, settings, notifier, clock):
    return DealService(store, settings, notifier, RateLimitPolicy.from_settings(settings), clock)


@pytest.fixture
def creator():
    return RequestContext(user_id="creator-1", user_email="ann@example.com", ip="10.0.0.1")


@pytest.fixture
def recipient():
    return RequestContext(ip="10.0.0.2")


@pytest.fixture
def stranger():
    return RequestContext(user_id="stranger-9", user_email="eve@example.com", ip="10.0.0.9")


@pytest.fixture
def make_deal(service, creator):
    """Create a deal through the service; returns (deal dict, access token)."""

    def _make(trust_level="basic", recipient_email=RECIPIENT_EMAIL, **kwargs):
        kwargs.setdefault("title", "Guitar sale")
        kwargs.setdefault("terms", [{"label": "Amount", "value": "$100", "type": "currency"}])
        kwargs.setdefault("recipient_name", "Bob")
        out = service.create_deal(creator, trust_level=trust_level,
                                  recipient_email=recipient_email, **kwargs)
        assert out.ok, out
        return out.value["deal"], out.value["access_token"]

    return _make


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c
