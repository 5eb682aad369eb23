"""
Translation of service errors into HTTP responses.

Body shape: {"detail": {"code", "message", "request_id", "retry_after"?, "violations"?}}
"""

import logging
from typing import NoReturn, Optional

from fastapi import HTTPException

from utils.portfolio.error_classifier import ClassifiedError, ErrorKind

from services.account_aggregation_service import AccountNotFoundError
from services.connection_reconciliation_service import ReconciliationError
from services.trade_state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_REGISTERED: 428,
    ErrorKind.AUTH_EXPIRED: 403,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.ALREADY_GONE: 404,
    ErrorKind.UNKNOWN: 500,
}


def _detail(code: str, message: str, request_id: Optional[str], **extra) -> dict:
    detail = {'code': code, 'message': message, 'request_id': request_id}
    detail.update({key: value for key, value in extra.items() if value is not None})
    return detail


def http_exception_for(error: ClassifiedError, request_id: Optional[str]) -> HTTPException:
    headers = None
    if error.kind == ErrorKind.RATE_LIMITED and error.retry_after is not None:
        headers = {'Retry-After': str(int(error.retry_after))}
    return HTTPException(
        status_code=STATUS_BY_KIND[error.kind],
        detail=_detail(error.kind.value, error.message, request_id,
                       retry_after=error.retry_after, violations=error.violations),
        headers=headers,
    )


def raise_http_error(error: Exception, request_id: Optional[str], operation: str) -> NoReturn:
    """Re-raise any service exception as the matching HTTPException."""
    if isinstance(error, HTTPException):
        raise error
    if isinstance(error, ClassifiedError):
        raise http_exception_for(error, request_id) from error
    if isinstance(error, AccountNotFoundError):
        raise HTTPException(status_code=404, detail=_detail('NOT_FOUND', str(error), request_id)) from error
    if isinstance(error, InvalidTransitionError):
        raise HTTPException(status_code=409, detail=_detail('INVALID_TRANSITION', str(error), request_id)) from error
    if isinstance(error, ReconciliationError):
        raise HTTPException(status_code=500, detail=_detail('CLEANUP_FAILED', str(error), request_id)) from error

    logger.error(f"Error in {operation} (request_id={request_id}): {error}", exc_info=True)
    raise HTTPException(
        status_code=500,
        detail=_detail(ErrorKind.UNKNOWN.value, 'Internal server error', request_id),
    ) from error
