"""
Exception hierarchy for the Harvest CLI authentication subsystem.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that every failure in the login, refresh and
credential storage paths can be identified and reported consistently.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Harvest CLI."""

    # Authentication and authorization flow errors (1000-1199)
    AUTH_NOT_AUTHENTICATED = "AUTH_1001"
    AUTH_AUTHORIZATION_DENIED = "AUTH_1101"
    AUTH_STATE_MISMATCH = "AUTH_1102"
    AUTH_MISSING_CODE = "AUTH_1103"
    AUTH_FLOW_TIMEOUT = "AUTH_1104"
    AUTH_CALLBACK_LISTEN_FAILED = "AUTH_1105"

    # Token endpoint errors (2000-2099)
    EXCHANGE_FAILED = "EXCHANGE_2001"
    EXCHANGE_NO_REFRESH_TOKEN = "EXCHANGE_2002"

    # Account directory errors (3000-3099)
    DIRECTORY_REQUEST_FAILED = "DIRECTORY_3001"

    # Account selection errors (4000-4099)
    SELECTION_FAILED = "SELECTION_4001"

    # Validation errors (5000-5099)
    VALIDATION_INVALID_INPUT = "VALIDATION_5001"
    VALIDATION_MISSING_EMAIL = "VALIDATION_5002"
    VALIDATION_MISSING_REFRESH_TOKEN = "VALIDATION_5003"
    VALIDATION_MISSING_ACCOUNT_ID = "VALIDATION_5004"
    VALIDATION_MISSING_CLIENT_CREDENTIALS = "VALIDATION_5005"
    VALIDATION_INVALID_CLIENT_NAME = "VALIDATION_5006"
    VALIDATION_INVALID_TOKEN_KEY = "VALIDATION_5007"

    # Credential storage errors (6000-6099)
    STORAGE_OPERATION_FAILED = "STORAGE_6001"
    STORAGE_LOCKED = "STORAGE_6002"

    # System integration errors (7000-7099)
    SYSTEM_UNSUPPORTED_PLATFORM = "SYSTEM_7001"
    SYSTEM_BROWSER_LAUNCH_FAILED = "SYSTEM_7002"

    # Configuration errors (8000-8099)
    CONFIG_INVALID_VALUE = "CONFIG_8001"
    CONFIG_MISSING_CLIENT = "CONFIG_8002"
    CONFIG_INVALID_FORMAT = "CONFIG_8003"

    # Transport errors (9000-9099)
    NETWORK_REQUEST_FAILED = "NETWORK_9001"

    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9901"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    LOGIN = "login"
    FORCE_CONSENT = "force_consent"
    UNLOCK_STORE = "unlock_store"
    USE_FILE_BACKEND = "use_file_backend"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class HarvestAuthError(Exception):
    """
    Base exception class for all Harvest CLI authentication errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class NotAuthenticatedError(HarvestAuthError):
    """No usable stored credential exists for the requested identity."""

    def __init__(self, message: str = "not authenticated", **kwargs):
        kwargs.setdefault('user_message', f"{message}; run 'harvest auth login' first")
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_NOT_AUTHENTICATED,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN],
            **kwargs
        )


# Interactive authorization flow errors

class AuthorizationError(HarvestAuthError):
    """Failures of the interactive consent flow."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY])
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class AuthorizationDeniedError(AuthorizationError):
    """The authorization server reported an error, usually a user cancel."""

    def __init__(self, error: str, description: Optional[str] = None, **kwargs):
        message = f"authorization denied: {error}"
        if description:
            message += f" ({description})"
        context = kwargs.pop('context', {})
        context['oauth_error'] = error
        super().__init__(message, ErrorCode.AUTH_AUTHORIZATION_DENIED, context=context, **kwargs)


class StateMismatchError(AuthorizationError):
    """The callback's state parameter did not match the flow's state."""

    def __init__(self, message: str = "state mismatch", **kwargs):
        super().__init__(message, ErrorCode.AUTH_STATE_MISMATCH, **kwargs)


class MissingCodeError(AuthorizationError):
    """The callback carried no authorization code."""

    def __init__(self, message: str = "missing authorization code", **kwargs):
        super().__init__(message, ErrorCode.AUTH_MISSING_CODE, **kwargs)


class AuthorizationTimeoutError(AuthorizationError):
    """The overall flow deadline passed before a callback arrived."""

    def __init__(self, timeout: float, **kwargs):
        super().__init__(
            f"authorization canceled: no callback received within {timeout:g}s",
            ErrorCode.AUTH_FLOW_TIMEOUT,
            context={'timeout_seconds': timeout},
            **kwargs
        )


class CallbackListenError(AuthorizationError):
    """The local callback listener could not be bound."""

    def __init__(self, address: str, **kwargs):
        kwargs.setdefault(
            'user_message',
            f"could not listen on {address}; is another login already running? "
            "Use --manual to paste the redirect URL instead"
        )
        super().__init__(
            f"failed to listen on {address}",
            ErrorCode.AUTH_CALLBACK_LISTEN_FAILED,
            context={'address': address},
            **kwargs
        )


# Token endpoint and account directory errors

class ExchangeError(HarvestAuthError):
    """The token endpoint rejected a grant or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        oauth_error: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.EXCHANGE_FAILED,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if status_code is not None:
            context['status_code'] = status_code
        if oauth_error:
            context['oauth_error'] = oauth_error
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY, RecoveryAction.LOGIN])
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            context=context,
            **kwargs
        )
        self.status_code = status_code
        self.oauth_error = oauth_error


class NoRefreshTokenError(ExchangeError):
    """The token endpoint granted access but no refresh token."""

    def __init__(self, **kwargs):
        super().__init__(
            "no refresh token received; try again with --force-consent",
            error_code=ErrorCode.EXCHANGE_NO_REFRESH_TOKEN,
            recovery_actions=[RecoveryAction.FORCE_CONSENT],
            **kwargs
        )


class DirectoryError(HarvestAuthError):
    """The account directory or user lookup failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if status_code is not None:
            context['status_code'] = status_code
        super().__init__(
            message=message,
            error_code=ErrorCode.DIRECTORY_REQUEST_FAILED,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY],
            context=context,
            **kwargs
        )
        self.status_code = status_code


class SelectionError(HarvestAuthError):
    """No account could be selected."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.SELECTION_FAILED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


# Input validation errors

class ValidationError(HarvestAuthError):
    """Input validation related errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )
        self.field_name = field_name


class MissingEmailError(ValidationError):
    """A token record was written without an email."""

    def __init__(self, message: str = "missing email", **kwargs):
        super().__init__(message, field_name='email',
                         error_code=ErrorCode.VALIDATION_MISSING_EMAIL, **kwargs)


class MissingRefreshTokenError(ValidationError):
    """A token record was written without a refresh token."""

    def __init__(self, message: str = "missing refresh token", **kwargs):
        super().__init__(message, field_name='refresh_token',
                         error_code=ErrorCode.VALIDATION_MISSING_REFRESH_TOKEN, **kwargs)


class MissingAccountIDError(ValidationError):
    """A token record was written without a positive account id."""

    def __init__(self, message: str = "missing account ID", **kwargs):
        super().__init__(message, field_name='account_id',
                         error_code=ErrorCode.VALIDATION_MISSING_ACCOUNT_ID, **kwargs)


class MissingClientCredentialsError(ValidationError):
    """The OAuth client id or secret is absent."""

    def __init__(self, field_name: str, **kwargs):
        kwargs.setdefault(
            'user_message',
            f"missing OAuth {field_name.replace('_', ' ')}; run 'harvest auth setup' first"
        )
        super().__init__(f"missing {field_name}", field_name=field_name,
                         error_code=ErrorCode.VALIDATION_MISSING_CLIENT_CREDENTIALS, **kwargs)


class InvalidClientNameError(ValidationError):
    """A client name contains characters outside [a-z0-9._-]."""

    def __init__(self, name: str, **kwargs):
        super().__init__(
            f"invalid client name {name!r}: use letters, digits, '.', '_' or '-'",
            field_name='client',
            error_code=ErrorCode.VALIDATION_INVALID_CLIENT_NAME,
            **kwargs
        )


class InvalidTokenKeyError(ValidationError):
    """A credential store key does not follow the token key layout."""

    def __init__(self, key: str, **kwargs):
        super().__init__(f"invalid token key: {key!r}", field_name='key',
                         error_code=ErrorCode.VALIDATION_INVALID_TOKEN_KEY, **kwargs)


# Credential storage errors

class TokenStorageError(HarvestAuthError):
    """The secret backend failed to read or write."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_OPERATION_FAILED, **kwargs):
        kwargs.setdefault('recovery_actions', [RecoveryAction.RETRY, RecoveryAction.USE_FILE_BACKEND])
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


class StoreLockedError(TokenStorageError):
    """The native secret store is locked or did not answer in time."""

    def __init__(self, message: str = "secret store is locked", **kwargs):
        kwargs.setdefault(
            'user_message',
            f"{message}. Unlock your keychain or keyring and try again, "
            "or set keyring_backend = file in the [auth] config section"
        )
        super().__init__(
            message,
            error_code=ErrorCode.STORAGE_LOCKED,
            recovery_actions=[RecoveryAction.UNLOCK_STORE, RecoveryAction.USE_FILE_BACKEND],
            **kwargs
        )


# System integration and configuration errors

class SystemIntegrationError(HarvestAuthError):
    """System integration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION, RecoveryAction.IGNORE],
            **kwargs
        )


class UnsupportedPlatformError(SystemIntegrationError):
    """No browser launcher is known for this platform."""

    def __init__(self, platform: str, **kwargs):
        super().__init__(
            f"unsupported platform: {platform}",
            ErrorCode.SYSTEM_UNSUPPORTED_PLATFORM,
            context={'platform': platform},
            **kwargs
        )


class BrowserLaunchError(SystemIntegrationError):
    """The platform browser launcher could not be started."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCode.SYSTEM_BROWSER_LAUNCH_FAILED, **kwargs)


class ConfigurationError(HarvestAuthError):
    """Configuration related errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
        config_key: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


class NetworkError(HarvestAuthError):
    """Transport failures talking to Harvest endpoints."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.NETWORK_REQUEST_FAILED,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY],
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> HarvestAuthError:
    """
    Convert a generic exception to a structured HarvestAuthError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured HarvestAuthError
    """
    if isinstance(exception, HarvestAuthError):
        return exception

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return NetworkError(str(exception), context=context, cause=exception)
    if isinstance(exception, PermissionError):
        return TokenStorageError(str(exception), context=context, cause=exception)
    if isinstance(exception, ValueError):
        return ValidationError(str(exception), context=context, cause=exception)

    return HarvestAuthError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
