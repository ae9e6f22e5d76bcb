# clinic_guard/core/exceptions.py
"""
Core exceptions for ClinicGuard.

Every component converts raw infrastructure errors into this hierarchy at
its boundary, so the gateway only ever sees these types:

- store unavailable     -> RedisServiceError / SessionStoreError
- malformed input       -> ValidationError
- policy violation      -> SessionCreationDenied (carries the rate limit result)
- configuration error   -> ConfigurationError (fatal at startup)
"""

from typing import Optional, Dict, Any


class GuardBaseException(Exception):
    """
    Root of the ClinicGuard hierarchy.

    `message` is safe to show to an operator; `details` holds structured
    context for logs and is never returned to API clients.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({context})"


class ValidationError(GuardBaseException):
    """Request input rejected at an API boundary; rendered as 400"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.field = field
        self.value = value

        if field:
            self.details['field'] = field
        if value is not None:
            # Client supplied, so keep it short in logs
            self.details['value'] = str(value)[:100]


class ServiceError(GuardBaseException):
    """
    A backing component could not complete an operation.

    Args:
        message: What failed
        service_name: Component reporting the failure (Redis, SessionStore, ...)
        operation: Method or store command that failed
        details: Extra context for the log line
    """

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation

        if service_name:
            self.details.setdefault('service', service_name)
        if operation:
            self.details.setdefault('operation', operation)


class RedisServiceError(ServiceError):
    """Store unavailable, timed out or rejected a command"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="Redis", operation=operation, details=details)
        self.key = key

        if key:
            self.details['key'] = key


class SessionStoreError(ServiceError):
    """Session store failure surfaced by SessionManager"""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="SessionStore", operation=operation, details=details)
        self.session_id = session_id

        if session_id:
            self.details['session_id'] = session_id[:8]


class SecurityMonitorError(ServiceError):
    """Anomaly analysis failed; callers continue without it"""

    def __init__(
        self,
        message: str,
        analysis: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="SecurityMonitor", operation=analysis, details=details)


class SessionCreationDenied(GuardBaseException):
    """
    Session creation rejected by the session_creation rate limit.

    Carries the RateLimitResult so the HTTP layer can render the 429 contract.
    """

    def __init__(self, message: str, result: Any, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.result = result

        retry_after = getattr(result, "retry_after", None)
        if retry_after is not None:
            self.details['retry_after'] = retry_after


class ConfigurationError(GuardBaseException):
    """Invalid limit rules, unmapped severities or unknown limit types; fatal at startup"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


# Shorthand constructors used at component boundaries

def validation_error(message: str, field: str, value: Any = None) -> ValidationError:
    """400-level input error naming the offending field"""
    return ValidationError(message, field=field, value=value)


def config_error(message: str, component: str) -> ConfigurationError:
    return ConfigurationError(message, component=component)


def redis_error(message: str, key: Optional[str] = None, operation: Optional[str] = None) -> RedisServiceError:
    """Store failure tagged with the key and command"""
    return RedisServiceError(message, key=key, operation=operation)


def session_store_error(message: str, session_id: Optional[str] = None,
                        operation: Optional[str] = None) -> SessionStoreError:
    return SessionStoreError(message, session_id=session_id, operation=operation)
