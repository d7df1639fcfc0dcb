"""
Custom Exception Hierarchy for wsprobe

Provides structured exceptions for better error handling and recovery.
All custom exceptions inherit from ProbeError base class.
"""
from typing import Optional


class ProbeError(Exception):
    """
    Base exception for all wsprobe errors.

    All custom exceptions should inherit from this class to allow
    catching all probe errors with a single except clause.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Input Validation Errors

class ValidationError(ProbeError):
    """
    Data validation failures.

    Raised synchronously, before any network attempt, when caller input
    does not meet requirements. Never retried.
    """
    pass


class InvalidURLError(ValidationError):
    """WebSocket URL is blank, uses another scheme, or has no host."""
    pass


# Network and Transport Errors

class TransportError(ProbeError):
    """
    Network transport failures.

    Base class for all WebSocket communication errors. Reflected in the
    connection state; the caller may retry by connecting again.
    """
    pass


class ConnectionFailedError(TransportError):
    """Handshake rejected, connection refused, or socket error."""
    pass


class ConnectionTimeoutError(TransportError):
    """Connection attempt did not complete within the timeout."""
    pass


class SendError(TransportError):
    """Failed to send a frame on the connection."""
    pass


class ConnectionStateError(ProbeError):
    """Invalid operation for current connection state."""
    def __init__(self, message: str, current_state: str, expected_state: Optional[str] = None):
        super().__init__(message, {"current_state": current_state, "expected_state": expected_state})
        self.current_state = current_state
        self.expected_state = expected_state


# Payload Errors

class PayloadError(ProbeError):
    """
    Payload source errors.

    Base class for payload set lookup and loading issues.
    """
    pass


class PayloadSetNotFoundError(PayloadError):
    """Requested payload set label does not exist."""
    pass
