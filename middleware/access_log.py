import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log every non-2xx response except 404."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        response = await call_next(request)
        status_code = response.status_code
        if status_code < 200 or (status_code > 299 and status_code != 404):
            client = request.client.host if request.client else None
            logger.error(
                f"path={request.url.path} ip={client} method={request.method} "
                f"ua={request.headers.get('user-agent')} code={status_code}"
            )
        return response
