"""
Request correlation ids.

Every request gets an id (the caller's X-Request-ID when present), stored on
request.state and echoed in the X-Request-ID response header. Services receive
it explicitly for their log lines.
"""

import logging
import uuid

from fastapi import Request

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _new_request_id() -> str:
    return uuid.uuid4().hex


async def request_id_middleware(request: Request, call_next):
    """HTTP middleware assigning and echoing the request id."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or _new_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def get_request_id(request: Request) -> str:
    """Dependency returning the current request id, minting one when the middleware is absent."""
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        request_id = request.headers.get(REQUEST_ID_HEADER) or _new_request_id()
        request.state.request_id = request_id
    return request_id
