"""
Error taxonomy shared by the ingress, the worker and the platform clients.

Every failure is mapped once to an ErrorKind:

- validation: bad signature, missing headers, malformed payload or job
- not_found:  nothing to act on (no tracked messages, no registration)
- transient:  rate limiting, timeouts, 5xx from a dependency
- permanent:  auth failures, permanently missing resources, unknown errors
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx
import pydantic


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class BridgeError(Exception):
    kind = ErrorKind.PERMANENT

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ValidationError(BridgeError):
    kind = ErrorKind.VALIDATION


class SignatureError(ValidationError):
    """
    Raised when a request signature or its timestamp does not verify.
    """


class NotFoundError(BridgeError):
    kind = ErrorKind.NOT_FOUND


class TransientDependencyError(BridgeError):
    kind = ErrorKind.TRANSIENT


class ReactionLockUnavailable(TransientDependencyError):
    """
    The per-message reaction lock could not be taken or was lost mid-sync.
    """


class PermanentDependencyError(BridgeError):
    kind = ErrorKind.PERMANENT


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, BridgeError):
        return exc.kind

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT

    if isinstance(exc, (pydantic.ValidationError, ValueError)):
        return ErrorKind.VALIDATION

    return ErrorKind.PERMANENT


_HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.PERMANENT: 500,
}


def http_status_for(exc: BaseException) -> int:
    if isinstance(exc, SignatureError):
        return 401
    return _HTTP_STATUS[classify(exc)]
