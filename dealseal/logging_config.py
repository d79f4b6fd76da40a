"""
Logging configuration for DealSeal.

Provides structured JSON logging for operational and security events.
The evidentiary record of a deal lives in the audit log table; this
module only covers what operators see.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class SecurityLogger:
    """
    Logger for security-relevant protocol events.

    Rejection reasons are only ever written here; callers of the
    protocol get a generic message.
    """

    def __init__(self, name: str = "dealseal.security"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event: str, **kwargs) -> None:
        extra = {
            "event": event,
            "request_id": get_request_id(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def deal_created(self, deal_id: str, trust_level: str, creator_id: str) -> None:
        self._log(
            logging.INFO,
            "DEAL_CREATED",
            deal_id=deal_id,
            trust_level=trust_level,
            creator_id=creator_id,
            message=f"Deal {deal_id} created"
        )

    def deal_confirmed(self, deal_id: str, deal_seal: str) -> None:
        self._log(
            logging.INFO,
            "DEAL_CONFIRMED",
            deal_id=deal_id,
            deal_seal=deal_seal,
            message=f"Deal {deal_id} sealed"
        )

    def confirmation_rejected(self, deal_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "CONFIRMATION_REJECTED",
            deal_id=deal_id,
            reason=reason,
            message=f"Confirmation rejected: {reason}"
        )

    def token_rejected(self, deal_id: str, reason: str, purpose: str) -> None:
        self._log(
            logging.WARNING,
            "TOKEN_REJECTED",
            deal_id=deal_id,
            reason=reason,
            purpose=purpose,
            message=f"Access token rejected for {purpose}: {reason}"
        )

    def code_issued(self, deal_id: str, channel: str, delivered: bool) -> None:
        self._log(
            logging.INFO,
            "CODE_ISSUED",
            deal_id=deal_id,
            channel=channel,
            delivered=delivered,
            message=f"{channel} code issued"
        )

    def code_rejected(self, deal_id: str, channel: str) -> None:
        self._log(
            logging.WARNING,
            "CODE_REJECTED",
            deal_id=deal_id,
            channel=channel,
            message=f"{channel} code rejected"
        )

    def rate_limit_exceeded(self, client_id: str, bucket: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            bucket=bucket,
            message=f"Rate limit exceeded for {client_id} on {bucket}"
        )

    def origin_rejected(self, origin: str) -> None:
        self._log(
            logging.WARNING,
            "ORIGIN_REJECTED",
            origin=origin,
            message=f"CSRF validation failed: origin {origin} not in allowed list"
        )

    def notification_failed(self, deal_id: str, channel: str, error: str) -> None:
        self._log(
            logging.ERROR,
            "NOTIFICATION_FAILED",
            deal_id=deal_id,
            channel=channel,
            error=error,
            message=f"{channel} notification failed"
        )

    def seal_mismatch(self, deal_id: str, stored: Optional[str], recomputed: str) -> None:
        self._log(
            logging.ERROR,
            "SEAL_MISMATCH",
            deal_id=deal_id,
            stored=stored,
            recomputed=recomputed,
            message=f"Recomputed seal does not match stored seal for {deal_id}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details: Any
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global security logger instance
security_log = SecurityLogger()
