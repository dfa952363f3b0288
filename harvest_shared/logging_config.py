"""
Logging configuration for the Harvest CLI.

Log output goes to stderr so command output on stdout stays machine
readable. Login and logout events are written through a dedicated audit
logger, optionally to their own JSON lines file. Every handler installed
here masks OAuth secrets (codes, tokens, client secrets) before a record
is emitted.
"""

import json
import logging
import logging.handlers
import os
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from harvest_shared.exceptions import HarvestAuthError

AUDIT_LOGGER_NAME = "harvest.audit"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUPS = 3


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Events recorded by the audit logger."""
    AUTHENTICATION = "authentication"
    LOGOUT = "logout"
    CONFIGURATION_CHANGE = "configuration_change"
    ERROR_EVENT = "error_event"


# Query/form parameters and headers whose values must never reach a log
_SECRET_PATTERN = re.compile(
    r"(?P<name>\b(?:code|state|refresh_token|access_token|client_secret)=)[^&\s'\"]+"
    r"|(?P<bearer>\bBearer\s+)[A-Za-z0-9._~+/=-]+",
    re.IGNORECASE
)

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime', 'error_info', 'audit_info',
}


def redact(text: str) -> str:
    """Mask OAuth secrets embedded in ``text``."""
    def _mask(match: re.Match) -> str:
        prefix = match.group('name') or match.group('bearer')
        return f"{prefix}***"
    return _SECRET_PATTERN.sub(_mask, text)


class RedactingFilter(logging.Filter):
    """Rewrites the record message with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _error_fields(error: HarvestAuthError) -> Dict[str, Any]:
    return {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'context': error.context,
        'recovery_actions': [action.value for action in error.recovery_actions],
        'user_message': error.user_message,
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'time': datetime.fromtimestamp(record.created).isoformat(timespec='milliseconds'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'source': f"{record.module}.{record.funcName}:{record.lineno}",
            'pid': os.getpid(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info),
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, HarvestAuthError):
            entry['error'] = _error_fields(error)

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            entry['audit'] = audit

        if self.include_extra_fields:
            extra = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
            if extra:
                entry['extra'] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """Human readable lines followed by structured error details, if any."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s %(levelname)-8s [%(name)s:%(lineno)d] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = getattr(record, 'error_info', None)
        if isinstance(error, HarvestAuthError):
            fields = _error_fields(error)
            lines.append(f"  Error Code: {fields['code']} ({fields['severity']})")
            if fields['context']:
                lines.append(f"  Context: {json.dumps(fields['context'], sort_keys=True, default=str)}")
            if fields['recovery_actions']:
                lines.append(f"  Try: {', '.join(fields['recovery_actions'])}")

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            lines.append(f"  Audit: {json.dumps(audit, sort_keys=True, default=str)}")

        return "\n".join(lines)


class AuditLogger:
    """
    Records who signed in or out, with which client and account.

    Events are INFO records on the ``harvest.audit`` logger carrying an
    ``audit_info`` dict; empty fields are left out.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        email: Optional[str] = None,
        client: Optional[str] = None,
        account_id: Optional[int] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        fields = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'email': email,
            'client': client,
            'account_id': account_id,
            'result': result,
            'context': additional_context or {},
        }
        self.logger.info(message, extra={'audit_info': {k: v for k, v in fields.items() if v is not None}})

    def log_authentication(
        self,
        email: str,
        client: str,
        method: str = "oauth",
        account_id: Optional[int] = None,
        success: bool = True,
        failure_reason: Optional[str] = None
    ):
        context = {'method': method}
        if failure_reason:
            context['failure_reason'] = failure_reason
        outcome = "success" if success else "failure"
        self.log_event(
            AuditEventType.AUTHENTICATION,
            f"Login {outcome} for {email or 'unknown user'} (client: {client})",
            email=email or None,
            client=client,
            account_id=account_id,
            result=outcome,
            additional_context=context
        )

    def log_logout(self, email: str, client: str):
        self.log_event(
            AuditEventType.LOGOUT,
            f"Credentials removed for {email} (client: {client})",
            email=email,
            client=client,
            result="success"
        )

    def log_error(self, error: HarvestAuthError, email: Optional[str] = None):
        fields = _error_fields(error)
        fields.pop('user_message')
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"Command failed: {error.message}",
            email=email,
            result="error",
            additional_context=fields
        )


def _rotating_handler(path: str, max_bytes: int, backups: int) -> logging.Handler:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        target, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )


def _formatter_for(log_format: LogFormat) -> logging.Formatter:
    if log_format == LogFormat.JSON:
        return StructuredFormatter()
    if log_format == LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(fmt='%(levelname)s %(name)s: %(message)s')


def setup_logging(
    log_level: LogLevel = LogLevel.WARNING,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUPS,
    enable_console: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Configure the root and audit loggers for one CLI invocation.

    Args:
        log_level: Threshold for the root logger
        log_format: Formatter used by the console and log file handlers
        log_file: Optional rotating log file
        max_file_size: Rotation size for log files
        backup_count: Rotated files kept
        enable_console: Log to stderr
        audit_file: Optional JSON lines file for audit events only

    Returns:
        The configured loggers by role
    """
    redactor = RedactingFilter()
    formatter = _formatter_for(log_format)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.getLevelName(log_level.value))

    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        handlers.append(_rotating_handler(log_file, max_file_size, backup_count))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        root.addHandler(handler)

    # aiohttp's access log would echo the callback URL, which carries the code
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)

    audit = logging.getLogger(AUDIT_LOGGER_NAME)
    for handler in list(audit.handlers):
        audit.removeHandler(handler)
    if audit_file:
        audit_handler = _rotating_handler(audit_file, max_file_size, backup_count)
        audit_handler.setFormatter(StructuredFormatter(include_extra_fields=False))
        audit_handler.addFilter(redactor)
        audit.addHandler(audit_handler)
        audit.setLevel(logging.INFO)

    return {
        'root': root,
        'auth': logging.getLogger('harvest_client.auth'),
        'audit': audit,
    }


def log_structured_error(
    logger: logging.Logger,
    error: HarvestAuthError,
    level: int = logging.ERROR
):
    """Emit ``error`` with its structured fields attached as ``error_info``."""
    logger.log(level, error.message, extra={'error_info': error})
