"""
Logging configuration for the OneMolt registry.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional

from .security import sanitize_for_logging

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


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on the ``onemolt`` logger tree."""
    root = logging.getLogger("onemolt")
    if any(isinstance(h.formatter, StructuredFormatter) for h in root.handlers):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False


class AuditLogger:
    """
    Specialized logger for audit events.

    Provides methods for logging registration steps, identity binding,
    forum votes and security-relevant actions.
    """

    def __init__(self, name: str = "onemolt.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        if not self._logger.isEnabledFor(level):
            return
        extra = sanitize_for_logging({
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        })

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def registration_initiated(self, session_token: str, device_id: str) -> None:
        self._log(
            logging.INFO,
            "REGISTRATION_INITIATED",
            session_token=session_token,
            device_id=device_id,
            message=f"Registration session opened for device {device_id}"
        )

    def proof_verified(self, session_token: str, nullifier_hash: str, reused: bool) -> None:
        self._log(
            logging.INFO,
            "PROOF_VERIFIED",
            session_token=session_token,
            nullifier_hash=nullifier_hash,
            reused_stored_proof=reused,
            message="Stored proof reused" if reused else "Proof verified by oracle"
        )

    def proof_rejected(self, session_token: Optional[str], reason: str) -> None:
        self._log(
            logging.WARNING,
            "PROOF_REJECTED",
            session_token=session_token,
            reason=reason,
            message=f"Proof rejected: {reason}"
        )

    def identity_bound(
        self,
        device_id: str,
        nullifier_hash: str,
        verification_level: str,
        rotated: bool
    ) -> None:
        """Log a completed key-to-human binding."""
        self._log(
            logging.INFO,
            "IDENTITY_BOUND",
            device_id=device_id,
            nullifier_hash=nullifier_hash,
            verification_level=verification_level,
            rotated=rotated,
            message=f"Device {device_id} bound ({'re-verified' if rotated else 'new key'})"
        )

    def identity_superseded(self, device_ids: list, nullifier_hash: str) -> None:
        self._log(
            logging.INFO,
            "IDENTITY_SUPERSEDED",
            device_ids=device_ids,
            nullifier_hash=nullifier_hash,
            message=f"Deactivated {len(device_ids)} sibling molt(s)"
        )

    def vote_recorded(
        self,
        post_id: str,
        vote_class: str,
        direction: str,
        switched: bool
    ) -> None:
        self._log(
            logging.INFO,
            "VOTE_RECORDED",
            post_id=post_id,
            vote_class=vote_class,
            direction=direction,
            switched=switched,
            message=f"{vote_class} {direction}vote on {post_id}"
        )

    def counters_recomputed(self, post_id: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "COUNTERS_RECOMPUTED",
            post_id=post_id,
            reason=reason,
            message=f"Counters recomputed for {post_id}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
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

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


audit = AuditLogger()
