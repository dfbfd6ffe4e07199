"""
StreamRelay - Error taxonomy.
Exception classes, error classification and the error reporting port.
"""

import logging
from typing import Any, Optional


class StreamRelayError(Exception):
    """Base class for all StreamRelay errors."""

    category = "operational"

    def __init__(self, message: str = "", details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class PlatformConnectionError(StreamRelayError):
    """Upstream connection failure."""

    TRANSIENT = "transient"
    FATAL_AUTH = "fatal-auth"
    FATAL_OTHER = "fatal-other"

    category = "connection"

    def __init__(self, message: str = "", kind: str = TRANSIENT, code: Any = None,
                 details: Optional[dict] = None):
        super().__init__(message, details)
        self.kind = kind
        self.code = code

    @classmethod
    def transient(cls, message: str, code: Any = None) -> "PlatformConnectionError":
        return cls(message, kind=cls.TRANSIENT, code=code)

    @classmethod
    def fatal_auth(cls, message: str, code: Any = None) -> "PlatformConnectionError":
        return cls(message, kind=cls.FATAL_AUTH, code=code)

    @classmethod
    def fatal(cls, message: str, code: Any = None) -> "PlatformConnectionError":
        return cls(message, kind=cls.FATAL_OTHER, code=code)

    @property
    def is_fatal(self) -> bool:
        return self.kind != self.TRANSIENT

    @property
    def is_auth(self) -> bool:
        return self.kind == self.FATAL_AUTH


class ParseError(StreamRelayError):
    """Malformed inbound frame."""
    category = "parse"


class ValidationError(StreamRelayError):
    """Payload is missing a required field; the event is dropped."""
    category = "validation"

    def __init__(self, message: str = "", reason: str = "", details: Optional[dict] = None):
        super().__init__(message, details)
        self.reason = reason or message


class CooldownBlock(StreamRelayError):
    """Event rejected by the cooldown gate."""
    category = "cooldown"

    def __init__(self, reason: str, details: Optional[dict] = None):
        super().__init__(reason, details)
        self.reason = reason


class DataLoggingError(StreamRelayError):
    """Raw data log could not be written."""
    category = "data-logging"


class OperationalError(StreamRelayError):
    """Unexpected failure inside the pipeline."""
    category = "operational"


# Upstream error codes and the policy they map to
TRANSIENT_CODES = {"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EPIPE", "502", "503", "504"}
API_CODES = {"400", "403", "429"}
AUTH_CODES = {"401"}


def _error_code(error: Any) -> str:
    """Pull a comparable code out of an exception or status value."""
    for attr in ("code", "status_code", "status", "errno"):
        value = getattr(error, attr, None)
        if value is not None:
            return str(value)
    response = getattr(error, "response", None)
    if response is not None and getattr(response, "status_code", None) is not None:
        return str(response.status_code)
    return ""


def classify_error(error: Any) -> str:
    """
    Classify an upstream error.

    Returns one of "auth", "transient", "api" or "fatal".
    """
    if isinstance(error, PlatformConnectionError):
        if error.is_auth:
            return "auth"
        if error.kind == PlatformConnectionError.FATAL_OTHER:
            return "fatal"

    code = _error_code(error)
    if code in AUTH_CODES:
        return "auth"
    if code in TRANSIENT_CODES:
        return "transient"
    if code in API_CODES:
        return "api"

    text = str(error)
    for marker in TRANSIENT_CODES:
        if marker in text:
            return "transient"
    # Unknown transport failures are retried
    return "transient"


class ErrorReporter:
    """Forwards processing failures to the logging port."""

    LEVELS = {
        "validation": logging.DEBUG,
        "cooldown": logging.DEBUG,
        "parse": logging.WARNING,
        "connection": logging.WARNING,
        "data-logging": logging.ERROR,
        "operational": logging.ERROR,
    }

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("streamrelay")
        self.counts = {}

    def report(self, category: str, event_type: str, error: BaseException,
               partial: Optional[dict] = None):
        """Record a failure for (category, event type) and log it at the category's level."""
        key = f"{category}:{event_type}"
        self.counts[key] = self.counts.get(key, 0) + 1
        level = self.LEVELS.get(category, logging.ERROR)
        keys = sorted(partial.keys()) if isinstance(partial, dict) else []
        self.log.log(level, f"[{category}] {event_type}: {error} (fields: {keys})")
