"""
Recovery Middleware
===================

Turns any exception that escapes a route handler into a 500 response, so one
misbehaving service plugin can never take the serving process down.
"""

import logging

from fastapi import Request
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)

RECOVERY_MESSAGE = "Oops. Something not good."


class RecoveryMiddleware(BaseHTTPMiddleware):
    """Catch, log with stack trace, and answer 500."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        try:
            return await call_next(request)
        except Exception as e:
            client = request.client.host if request.client else None
            logger.exception(
                f"Panic recovery -> {e} "
                f"(path={request.url.path}, ip={client}, method={request.method}, "
                f"ua={request.headers.get('user-agent')}, code=500)"
            )
            return PlainTextResponse(RECOVERY_MESSAGE, status_code=500)
