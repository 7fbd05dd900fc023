# ═══════════════════════════════════════════════════════════════
# HarborList Billing - Structured Logging
# JSON/console logging with billing context tracking
# ═══════════════════════════════════════════════════════════════

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ═══════════════════════════════════════════════════════════════
# Context Variables for Request Tracking
# ═══════════════════════════════════════════════════════════════

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
billing_account_id_var: ContextVar[Optional[str]] = ContextVar('billing_account_id', default=None)
failure_id_var: ContextVar[Optional[str]] = ContextVar('failure_id', default=None)
webhook_event_id_var: ContextVar[Optional[str]] = ContextVar('webhook_event_id', default=None)


def get_context() -> Dict[str, Optional[str]]:
    """Get current logging context."""
    return {
        'request_id': request_id_var.get(),
        'billing_account_id': billing_account_id_var.get(),
        'failure_id': failure_id_var.get(),
        'webhook_event_id': webhook_event_id_var.get(),
    }


@contextmanager
def logging_context(
    request_id: Optional[str] = None,
    billing_account_id: Optional[str] = None,
    failure_id: Optional[str] = None,
    webhook_event_id: Optional[str] = None
):
    """
    Context manager for setting logging context.

    Usage:
        with logging_context(failure_id=failure.id):
            logger.info("Retrying payment")  # Includes failure_id
    """
    tokens = []

    if request_id is not None:
        tokens.append(request_id_var.set(request_id))
    if billing_account_id is not None:
        tokens.append(billing_account_id_var.set(billing_account_id))
    if failure_id is not None:
        tokens.append(failure_id_var.set(failure_id))
    if webhook_event_id is not None:
        tokens.append(webhook_event_id_var.set(webhook_event_id))

    try:
        yield
    finally:
        for token in reversed(tokens):
            token.var.reset(token)


# ═══════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Produces one JSON object per line, including the billing context
    and any extra fields passed to the logger.
    """

    def __init__(self, include_traceback: bool = True):
        super().__init__()
        self.include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for key, value in get_context().items():
            if value is not None:
                log_entry[key] = value

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            exc_type, exc_value = record.exc_info[0], record.exc_info[1]
            log_entry['exception'] = {
                'type': exc_type.__name__ if exc_type else None,
                'message': str(exc_value) if exc_value else None,
            }
            if self.include_traceback:
                log_entry['exception']['traceback'] = traceback.format_exception(*record.exc_info)

        if record.stack_info:
            log_entry['stack_info'] = record.stack_info

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter for development."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')

        message = f"{color}[{timestamp}] [{record.levelname:8}] {record.name}: {record.getMessage()}{self.RESET}"

        context_parts = [f"{k}={v}" for k, v in get_context().items() if v]
        if context_parts:
            message += f" | {' '.join(context_parts)}"

        if getattr(record, 'extra_fields', None):
            extras = ' '.join(f"{k}={v}" for k, v in record.extra_fields.items())
            message += f" | {extras}"

        if record.exc_info:
            message += f"\n{self.COLORS['ERROR']}{self.formatException(record.exc_info)}{self.RESET}"

        return message


# ═══════════════════════════════════════════════════════════════
# Custom Logger
# ═══════════════════════════════════════════════════════════════

class BillingLogger(logging.Logger):
    """
    Logger accepting structured fields as keyword arguments.

    Usage:
        logger.info("Retry scheduled", extra_fields={"attempt": 2})
    """

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra=None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs
    ) -> None:
        extra = dict(extra or {})

        extra_fields = dict(kwargs.pop('extra_fields', None) or {})
        extra_fields.update(kwargs)

        if extra_fields:
            extra['extra_fields'] = extra_fields

        super()._log(
            level, msg, args, exc_info=exc_info, extra=extra,
            stack_info=stack_info, stacklevel=stacklevel + 1
        )


logging.setLoggerClass(BillingLogger)

_configured = False


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_file: Optional[str] = None,
    force: bool = False
) -> None:
    """
    Configure the root logger for the application.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional file path; file output is always JSON
        force: Reconfigure even if logging was already set up
    """
    global _configured

    if _configured and not force:
        return

    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    _configure_library_loggers(level)

    _configured = True


def _configure_library_loggers(level: int) -> None:
    """Reduce noise from verbose libraries."""
    logging.getLogger('uvicorn').setLevel(max(level, logging.INFO))
    logging.getLogger('uvicorn.access').setLevel(max(level, logging.WARNING))
    logging.getLogger('asyncio').setLevel(max(level, logging.WARNING))
    logging.getLogger('asyncpg').setLevel(max(level, logging.WARNING))
    logging.getLogger('httpx').setLevel(max(level, logging.WARNING))
    logging.getLogger('stripe').setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> BillingLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name, e.g. "harbor_billing.retry"

    Returns:
        BillingLogger instance
    """
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════
# Audit Logging
# ═══════════════════════════════════════════════════════════════

class BillingAuditLogger:
    """
    Audit trail for billing-state changes.

    Every status transition, failure resolution, suspension and
    webhook outcome is written here with a fixed `audit_type` so the
    records can be filtered out of the general log stream.
    """

    def __init__(self, logger_name: str = 'harbor_billing.audit'):
        self.logger = get_logger(logger_name)

    def log_status_transition(
        self,
        billing_account_id: str,
        from_status: str,
        to_status: str,
        trigger: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a billing account status change."""
        self.logger.info(
            f"Billing account {billing_account_id}: {from_status} -> {to_status} ({trigger})",
            extra_fields={
                'audit_type': 'status_transition',
                'billing_account_id': billing_account_id,
                'from_status': from_status,
                'to_status': to_status,
                'trigger': trigger,
                **(details or {})
            }
        )

    def log_failure_resolution(
        self,
        failure_id: str,
        billing_account_id: str,
        method: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a payment failure being resolved."""
        self.logger.info(
            f"Payment failure {failure_id} resolved via {method}",
            extra_fields={
                'audit_type': 'failure_resolution',
                'failure_id': failure_id,
                'billing_account_id': billing_account_id,
                'resolution_method': method,
                **(details or {})
            }
        )

    def log_entitlements_stripped(
        self,
        user_id: str,
        billing_account_id: str,
        reason: str
    ) -> None:
        """Log removal of premium entitlements."""
        self.logger.warning(
            f"Premium entitlements removed for user {user_id}",
            extra_fields={
                'audit_type': 'entitlements_stripped',
                'user_id': user_id,
                'billing_account_id': billing_account_id,
                'reason': reason,
            }
        )

    def log_webhook_outcome(
        self,
        processor_type: str,
        event_id: str,
        event_type: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log the final outcome of a webhook delivery."""
        log_method = self.logger.error if outcome == 'failed' else self.logger.info
        log_method(
            f"Webhook {processor_type}/{event_id} ({event_type}): {outcome}",
            extra_fields={
                'audit_type': 'webhook',
                'processor_type': processor_type,
                'event_id': event_id,
                'event_type': event_type,
                'outcome': outcome,
                **(details or {})
            }
        )

    def log_security_event(
        self,
        event_type: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a rejected signature or bearer token."""
        self.logger.warning(
            f"Security event: {message}",
            extra_fields={
                'audit_type': 'security_event',
                'event_type': event_type,
                **(details or {})
            }
        )


audit_logger = BillingAuditLogger()
