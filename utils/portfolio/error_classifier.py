"""
Provider error classification and retry policy.

Every failure coming out of an adapter is reduced to one ErrorKind using only
the status code and the provider error code. Services act on the kind: retry
TRANSIENT, surface RATE_LIMITED with its retry-after, ask the user to reconnect
on AUTH_EXPIRED, treat ALREADY_GONE as success on removals.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from . import constants
from .abstract_provider import ProviderError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_REGISTERED = "NOT_REGISTERED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"
    TRANSIENT = "TRANSIENT"
    ALREADY_GONE = "ALREADY_GONE"
    UNKNOWN = "UNKNOWN"


AUTH_EXPIRED_CODES = frozenset({
    'INVALID_CREDENTIALS', 'ACCESS_REVOKED', 'AUTHORIZATION_EXPIRED',
    'ITEM_LOGIN_REQUIRED', 'INVALID_ACCESS_TOKEN', '3003',
})
NOT_REGISTERED_CODES = frozenset({'NOT_REGISTERED', 'USER_NOT_REGISTERED', 'SNAPTRADE_NOT_REGISTERED'})
RATE_LIMIT_CODES = frozenset({'RATE_LIMIT', 'RATE_LIMIT_EXCEEDED'})
TRANSIENT_CODES = frozenset({
    'TIMEOUT', 'SNAPTRADE_TEMPORARY_ERROR', 'NETWORK_ERROR', 'INTERNAL_SERVER_ERROR',
})
ALREADY_GONE_CODES = frozenset({'1004', 'ITEM_NOT_FOUND', 'USER_NOT_FOUND'})
VALIDATION_CODES = frozenset({'SYMBOL_NOT_FOUND', 'UNSUPPORTED_OPERATION', 'INVALID_ORDER'})

TRANSIENT_STATUSES = frozenset({408, 500, 502, 503, 504})

USER_MESSAGES = {
    ErrorKind.VALIDATION: 'The request is invalid.',
    ErrorKind.NOT_REGISTERED: 'No provider registration found. Please connect an account first.',
    ErrorKind.AUTH_EXPIRED: 'Account authorization expired. Please reconnect your account.',
    ErrorKind.RATE_LIMITED: 'Too many requests to the provider. Please try again later.',
    ErrorKind.TRANSIENT: 'Service temporarily unavailable. Please try again in a moment.',
    ErrorKind.ALREADY_GONE: 'The resource no longer exists upstream.',
    ErrorKind.UNKNOWN: 'Unexpected provider error. Please try again.',
}


class ClassifiedError(Exception):
    """An error reduced to an ErrorKind, ready to be rendered to a caller."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None, retry_after: Optional[float] = None,
                 provider: Optional[str] = None, operation: Optional[str] = None,
                 violations: Optional[List[str]] = None, original_error: Optional[Exception] = None):
        self.kind = kind
        self.message = message or USER_MESSAGES[kind]
        self.retry_after = retry_after
        self.provider = provider
        self.operation = operation
        self.violations = violations
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Section error descriptor: {code, message, retry_after}."""
        data = {
            'code': self.kind.value,
            'message': self.message,
            'retry_after': self.retry_after,
        }
        if self.violations:
            data['violations'] = list(self.violations)
        return data


def classify_provider_error(error: Exception, removal: bool = False) -> ErrorKind:
    """
    Map an adapter failure to an ErrorKind.

    Args:
        error: The exception raised by an adapter call
        removal: True for revoke/delete calls, where 404 means already gone

    Returns:
        The ErrorKind
    """
    if isinstance(error, ClassifiedError):
        return error.kind

    if isinstance(error, (asyncio.TimeoutError, httpx.TransportError, ConnectionError)):
        return ErrorKind.TRANSIENT

    if not isinstance(error, ProviderError):
        return ErrorKind.UNKNOWN

    status = error.status_code
    code = str(error.error_code).upper() if error.error_code is not None else ''

    if removal and (status == 404 or code in ALREADY_GONE_CODES):
        return ErrorKind.ALREADY_GONE
    if status == 428 or code in NOT_REGISTERED_CODES:
        return ErrorKind.NOT_REGISTERED
    if status == 429 or code in RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403) or code in AUTH_EXPIRED_CODES:
        return ErrorKind.AUTH_EXPIRED
    if status in TRANSIENT_STATUSES or status == 404 or code in TRANSIENT_CODES:
        return ErrorKind.TRANSIENT
    if status in (400, 422) or code in VALIDATION_CODES:
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def to_classified(error: Exception, operation: str, removal: bool = False,
                  request_id: Optional[str] = None) -> ClassifiedError:
    """Wrap any exception in a ClassifiedError, logging UNKNOWN failures loudly."""
    if isinstance(error, ClassifiedError):
        return error

    kind = classify_provider_error(error, removal=removal)
    provider = getattr(error, 'provider', None)
    retry_after = None
    if kind == ErrorKind.RATE_LIMITED:
        retry_after = getattr(error, 'retry_after', None) or constants.DEFAULT_RETRY_AFTER_SECONDS

    if kind == ErrorKind.UNKNOWN:
        logger.error(
            f"❌ Unclassified provider error in {operation} (request_id={request_id}): {error}",
            exc_info=error,
        )
        message = USER_MESSAGES[kind]
    elif kind == ErrorKind.VALIDATION and isinstance(error, ProviderError):
        message = error.message
    else:
        logger.warning(f"⚠️ {operation} failed with {kind.value} (request_id={request_id}): {error}")
        message = USER_MESSAGES[kind]

    return ClassifiedError(kind, message, retry_after=retry_after, provider=provider,
                           operation=operation, original_error=error)


async def call_with_retry(
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    mutating: bool = False,
    idempotency_key: Optional[str] = None,
    removal: bool = False,
    max_retries: Optional[int] = None,
    **kwargs: Any,
) -> Any:
    """
    Call an adapter coroutine, retrying TRANSIENT failures with exponential backoff.

    Mutating calls are retried only when they carry an idempotency key, which is
    then forwarded to the adapter. Non-transient errors are raised untouched on
    the first attempt.

    Raises:
        The last exception from the adapter once retries are exhausted
    """
    if mutating:
        kwargs['idempotency_key'] = idempotency_key
    retries = constants.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
    if mutating and not idempotency_key:
        retries = 0

    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            kind = classify_provider_error(e, removal=removal)
            if kind != ErrorKind.TRANSIENT or attempt >= retries:
                raise
            delay = (2 ** attempt) * constants.PROVIDER_RETRY_BASE_DELAY_SECONDS
            attempt += 1
            logger.warning(
                f"🔄 {operation} transient failure, retry {attempt}/{retries} in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)
