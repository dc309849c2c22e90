"""
Test doubles shared by the unit and integration tests
"""

from plugins import ServicePlugin


class RecordingService(ServicePlugin):
    """
    Service plugin that records every webhook call.

    ``errors`` maps a chat id to the exception raised for that chat. Several
    services can share one ``calls`` list to check the order across services.
    """

    def __init__(self, service_name, errors=None, calls=None):
        self.service_name = service_name
        self.errors = errors or {}
        self.calls = calls if calls is not None else []

    async def webhook_handler(self, ctx, wctx):
        self.calls.append(ctx)
        error = self.errors.get(ctx.chat_id)
        if error is not None:
            raise error
