"""
Webhook Routes
==============

HTTP entry points for third-party webhook deliveries. The routes only adapt
the request to the dispatcher and translate its result into a response; all
resolution and fan-out rules live in dispatcher.py.

This router has catch-all paths and must be included after every other router.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from config import get_settings
from context import WebhookContext
from database import get_db
from dispatcher import CHAT_TOKEN_PREFIXES, USER_TOKEN_PREFIXES, DeliveryResult, route_delivery

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)

BROWSER_LINK_MESSAGE = (
    "Hi here! This link isn't working in a browser. "
    "Please follow the instructions in the chat"
)


def to_response(result: DeliveryResult) -> Response:
    if result.body:
        return PlainTextResponse(result.body, status_code=result.status_code)
    return Response(status_code=result.status_code)


async def _deliver(request: Request, db: Session, token: str, service: Optional[str]) -> Response:
    wctx = await WebhookContext.from_request(request)
    result = await route_delivery(db, token, service, wctx)
    if result.status_code != 200:
        logger.info(f"Delivery {wctx.request_id} for token {token!r} answered with {result.status_code}")
    return to_response(result)


@router.get("/service/{service}")
async def service_hook(request: Request, service: str, db: Session = Depends(get_db)):
    """Token-less delivery; the service works out the recipients from the payload."""
    return await _deliver(request, db, "", service)


@router.head("/{param}")
async def hook_probe(param: str):
    """Providers probe the URL before registering a webhook."""
    return Response(status_code=200)


@router.get("/{param}")
async def hook_opened_in_browser(param: str):
    settings = get_settings()
    if len(param) + 1 > settings.BROWSER_LINK_MIN_LENGTH and param.startswith(USER_TOKEN_PREFIXES + CHAT_TOKEN_PREFIXES):
        return PlainTextResponse(BROWSER_LINK_MESSAGE, status_code=404)
    return Response(status_code=404)


@router.post("/{param}")
async def hook(request: Request, param: str, db: Session = Depends(get_db)):
    """Delivery addressed by token."""
    return await _deliver(request, db, param, None)


@router.post("/{param}/{service}")
async def hook_with_service(request: Request, param: str, service: str, db: Session = Depends(get_db)):
    """Delivery addressed by token, with an explicit service hint."""
    return await _deliver(request, db, param, service)
