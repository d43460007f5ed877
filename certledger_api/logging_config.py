"""
Logging configuration for the CertLedger service.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
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


class AuditLogger:
    """
    Specialized logger for lifecycle events.

    Complements the hash-chained audit trail: the trail is the record of
    truth, these lines are for operators and log aggregation.
    """

    def __init__(self, name: str = "certledger.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

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

    def submission(self, cert_id: str, actor_id: str, content_hash: str) -> None:
        self._log(
            logging.INFO,
            "CERTIFICATE_SUBMITTED",
            cert_id=cert_id,
            actor_id=actor_id,
            content_hash=content_hash,
            message=f"Certificate {cert_id} submitted"
        )

    def step_decision(self, cert_id: str, step: str, decision: str, actor_id: str, status: str) -> None:
        level = logging.INFO if decision == "APPROVED" else logging.WARNING
        self._log(
            level,
            "STEP_DECISION",
            cert_id=cert_id,
            step=step,
            decision=decision,
            actor_id=actor_id,
            status=status,
            message=f"{step} {decision} for {cert_id}"
        )

    def anchoring(
        self,
        cert_id: str,
        outcome: str,
        tx_id: Optional[str] = None,
        error_code: Optional[str] = None,
        status_unknown: bool = False
    ) -> None:
        """Log an anchoring attempt. Failures are logged at ERROR."""
        level = logging.INFO if outcome == "SUCCESS" else logging.ERROR
        self._log(
            level,
            "ANCHORING",
            cert_id=cert_id,
            outcome=outcome,
            tx_id=tx_id,
            error_code=error_code,
            status_unknown=status_unknown,
            message=f"Anchoring {outcome} for {cert_id}"
        )

    def revocation_event(self, revocation_id: str, cert_id: str, event: str, actor_id: str, status: str) -> None:
        self._log(
            logging.WARNING if event in ("EXECUTED", "APPEAL_APPROVED") else logging.INFO,
            "REVOCATION_EVENT",
            revocation_id=revocation_id,
            cert_id=cert_id,
            revocation_event=event,
            actor_id=actor_id,
            status=status,
            message=f"Revocation {revocation_id} {event}"
        )

    def verification(self, lookup: str, found: bool, is_valid: bool, tamper_state: str) -> None:
        level = logging.WARNING if tamper_state == "TAMPERED" else logging.INFO
        self._log(
            level,
            "VERIFICATION",
            lookup=lookup,
            found=found,
            is_valid=is_valid,
            tamper_state=tamper_state,
            message=f"Verification of {lookup}: valid={is_valid}"
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

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
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


# Global audit logger instance
audit_log = AuditLogger()
