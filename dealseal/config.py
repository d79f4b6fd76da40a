"""
Configuration module for DealSeal.

Centralizes all configuration with environment variable support
and validation.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("DEALSEAL_ENV", "dev")  # dev|stage|prod

DEV_OTP_SECRET = "dealseal-dev-otp-secret"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_limit(name: str, default: str) -> Tuple[int, int]:
    """Parse "<requests>/<window_seconds>"."""
    raw = os.getenv(name, default)
    count, _, window = raw.partition("/")
    return int(count), int(window or 60)


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    """Resolved runtime settings."""
    env: str = "dev"
    db_path: str = "data/dealseal.db"
    app_url: str = "http://localhost:3000"
    allowed_origins: List[str] = field(default_factory=list)

    # Lifetimes
    access_token_ttl_days: int = 7
    otp_ttl_minutes: int = 10
    otp_length: int = 6
    otp_max_attempts: int = 5
    otp_secret: str = DEV_OTP_SECRET

    trust_account_email: bool = True

    # (requests, window_seconds) per bucket
    rate_limits: Dict[str, Tuple[int, int]] = field(default_factory=lambda: {
        "deal_create": (20, 3600),
        "otp": (5, 3600),
        "confirm": (100, 60),
        "email": (5, 3600),
        "general": (100, 60),
    })

    # Notifications
    notify_backend: str = "log"
    resend_api_key: Optional[str] = None
    resend_from_email: str = "DealSeal <onboarding@resend.dev>"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    log_file: Optional[str] = None

    def share_url(self, public_id: str) -> str:
        return f"{self.app_url.rstrip('/')}/d/public/{public_id}"


def load_settings() -> Settings:
    """Read settings from the environment."""
    app_url = os.getenv("APP_URL", "http://localhost:3000")
    return Settings(
        env=os.getenv("DEALSEAL_ENV", ENV),
        db_path=os.getenv("DEALSEAL_DB_PATH", "data/dealseal.db"),
        app_url=app_url,
        allowed_origins=_env_list("ALLOWED_ORIGINS", app_url),
        access_token_ttl_days=int(os.getenv("ACCESS_TOKEN_TTL_DAYS", "7")),
        otp_ttl_minutes=int(os.getenv("OTP_TTL_MINUTES", "10")),
        otp_length=int(os.getenv("OTP_LENGTH", "6")),
        otp_max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", "5")),
        otp_secret=os.getenv("OTP_SECRET", DEV_OTP_SECRET),
        trust_account_email=_env_bool("TRUST_ACCOUNT_EMAIL", "true"),
        rate_limits={
            "deal_create": _env_limit("RATE_LIMIT_DEAL_CREATE", "20/3600"),
            "otp": _env_limit("RATE_LIMIT_OTP", "5/3600"),
            "confirm": _env_limit("RATE_LIMIT_CONFIRM", "100/60"),
            "email": _env_limit("RATE_LIMIT_EMAIL", "5/3600"),
            "general": _env_limit("RATE_LIMIT_GENERAL", "100/60"),
        },
        notify_backend=os.getenv("NOTIFY_BACKEND", "log"),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        resend_from_email=os.getenv("RESEND_FROM_EMAIL", "DealSeal <onboarding@resend.dev>"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_env_bool("LOG_JSON", "true"),
        log_file=os.getenv("LOG_FILE") or None,
    )


# ============================================================
# Validation
# ============================================================

def validate_settings(settings: Settings) -> Dict[str, bool]:
    """
    Validate settings that matter at startup.
    Returns dict of check name -> passed.
    """
    db_dir = Path(settings.db_path).parent
    checks = {
        "db_dir_writable": os.access(db_dir if db_dir.exists() else Path("."), os.W_OK),
        "otp_secret": not (is_production(settings) and settings.otp_secret == DEV_OTP_SECRET),
        "allowed_origins": bool(settings.allowed_origins),
    }
    if settings.notify_backend == "http":
        checks["email_backend"] = bool(settings.resend_api_key)
        checks["sms_backend"] = bool(settings.twilio_account_sid and settings.twilio_auth_token)
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production(settings: Optional[Settings] = None) -> bool:
    """Check if running in production mode."""
    return (settings.env if settings else ENV) == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("DEALSEAL_DEBUG", "").lower() in ("1", "true", "yes")
