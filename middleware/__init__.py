"""
Middleware package for the hook router.

Cross-cutting request handling: recovery from uncaught handler errors and
logging of failed requests.
"""

from .recovery import RecoveryMiddleware
from .access_log import AccessLogMiddleware

__all__ = [
    "RecoveryMiddleware",
    "AccessLogMiddleware",
]
