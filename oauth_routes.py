"""
OAuth Routes
============

Completes OAuth1/OAuth2 authorizations started from a Telegram conversation.

The bot layer creates a correlation record (store.create_correlation) and
sends the user a link. For OAuth1 services that link is /oauth1/{auth_id},
which fetches a request token and forwards the browser to the provider; for
OAuth2 services the link points at the provider directly with the
correlation id as ``state``. Both come back to /auth/{provider_id}, where the
credentials are exchanged, stored in the user's protected settings, and the
browser is sent back to the bot.
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import background
import oauth_client
import store
from context import Context, UserData
from database import SessionLocal, get_db
from errors import CredentialExchangeError, UnknownCorrelationError
from plugin_manager import plugin_manager
from plugins import ServicePlugin
from scoping import scope_user_to_services

router = APIRouter(tags=["oauth"])
logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates"))

TELEGRAM_DEEP_LINK = "https://telegram.me/{}"


def _load_correlation(db: Session, auth_id: str):
    try:
        return store.require_correlation(db, auth_id)
    except UnknownCorrelationError:
        logger.error(f"Unknown auth token: {auth_id}")
        raise HTTPException(status_code=403, detail="can't find user")


@router.get("/oauth1/{auth_id}")
async def oauth1_init(
    request: Request,
    auth_id: str,
    tz: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """
    Start an OAuth1 authorization.

    The rendered page first reports the browser's timezone back to this same
    URL with ``?tz=`` and then navigates to the provider.
    """
    record = _load_correlation(db, auth_id)

    service = plugin_manager.get_service(record.service)

    # Timezone report from the redirect page
    if tz:
        store.get_or_create_user(db, record.user_id)
        store.set_user_timezone(db, record.user_id, tz)
        return Response(status_code=200)

    if service is None:
        logger.error(f"OAuth init for unknown service {record.service} (oauthID={auth_id})")
        return PlainTextResponse("Error occurred", status_code=500)

    if service.default_oauth1 is None:
        return PlainTextResponse("Redirect is for OAuth1 only", status_code=501)

    base_url = (record.val or {}).get("base_url") or service.default_base_url
    if not base_url:
        logger.error(f"BaseURL empty (oauthID={auth_id})")
        return PlainTextResponse("Error occurred", status_code=500)

    provider = oauth_client.provider_for(db, service, base_url)
    if provider is None:
        logger.error(f"No OAuth provider for {service.service_name} at {base_url} (oauthID={auth_id})")
        return PlainTextResponse("Error occurred", status_code=500)

    callback = f"{oauth_client.callback_url(provider)}?state={auth_id}"
    try:
        request_token, authorize_url = await oauth_client.fetch_oauth1_request_token(
            provider, service.default_oauth1, callback
        )
    except CredentialExchangeError as e:
        logger.error(f"Error getting OAuth request URL (oauthID={auth_id}): {e}")
        return PlainTextResponse("Error getting OAuth request URL", status_code=503)

    try:
        store.set_correlation_request_token(db, record, request_token)
    except SQLAlchemyError as e:
        logger.error(f"oauth1_init: error updating correlation {auth_id}: {e}")

    return templates.TemplateResponse(
        request,
        "oauth_redirect.html",
        {"url": authorize_url}
    )


async def run_oauth_successful(service: ServicePlugin, ctx: Context) -> None:
    """Call the service's post-link hook with a store session of its own."""
    db = SessionLocal()
    try:
        job_ctx = ctx.derive()
        job_ctx.db = db
        await service.oauth_successful(job_ctx)
    finally:
        db.close()


async def complete_oauth(request: Request, provider_id: Optional[str], db: Session) -> Response:
    """
    Finish an OAuth1 or OAuth2 authorization.

    Args:
        request (Request): The provider's redirect back to us
        provider_id (Optional[str]): Internal id of the provider, if known
        db (Session): Store session of the request

    Returns:
        Response: Redirect to the bot's conversation on success
    """
    auth_id = request.query_params.get("u") or request.query_params.get("state") or ""

    record = _load_correlation(db, auth_id)

    service = plugin_manager.get_service(record.service)
    if service is None:
        logger.error(f"OAuth callback for unknown service {record.service} (oauthID={auth_id})")
        return PlainTextResponse("Error occurred", status_code=500)

    base_url = (record.val or {}).get("base_url") or ""
    provider = oauth_client.resolve_provider(db, provider_id, service, base_url)
    if provider is None or provider.service != service.service_name:
        logger.error(f"Can't get OauthProvider {provider_id!r} for {service.service_name} (oauthID={auth_id})")
        return PlainTextResponse("Error occurred", status_code=500)

    user = store.get_or_create_user(db, record.user_id)
    user_data = scope_user_to_services(UserData.from_model(user), [service.service_name])
    ctx = Context(
        db=db,
        service_name=service.service_name,
        correlation_id=auth_id,
        service_base_url=provider.base_url,
        user=user_data,
        chat=user_data.private_chat(),
    )

    request_token = (record.val or {}).get("request_token") or {}
    error_text = "Can't verify OAuth token"
    try:
        credentials = await oauth_client.receive_access_token(ctx, request, service, provider, request_token)
    except CredentialExchangeError as e:
        error_text = str(e) or error_text
        credentials = None

    if credentials is None or not credentials.access_token:
        logger.error(f"Can't verify OAuth token (oauthID={provider.id}, user={record.user_id}): {error_text}")
        return PlainTextResponse(error_text, status_code=403)

    values = {"oauth_token": credentials.access_token}
    if credentials.token_secret:
        values["oauth_token_secret"] = credentials.token_secret
    if credentials.refresh_token:
        values["oauth_refresh_token"] = credentials.refresh_token
    if credentials.expires_at is not None:
        values["oauth_expire_date"] = credentials.expires_at.isoformat()

    try:
        store.save_protected_settings(db, record.user_id, service.service_name, values)
    except SQLAlchemyError as e:
        logger.error(f"oAuthCallback: can't save protected settings for user {record.user_id}: {e}")
    ctx.user.protected[service.service_name] = {**ctx.protected_settings(), **values}

    if service.oauth_successful is not None:
        background.spawn(run_oauth_successful, service, ctx, name=f"{service.service_name}.oauth_successful")

    return RedirectResponse(TELEGRAM_DEEP_LINK.format(service.get_bot_username()), status_code=302)


@router.get("/auth")
async def oauth_callback_without_provider(
    request: Request,
    provider: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """OAuth callback where the provider id, if any, comes in the query string."""
    return await complete_oauth(request, provider, db)


@router.get("/auth/{provider_id}")
async def oauth_callback(
    request: Request,
    provider_id: str,
    db: Session = Depends(get_db)
):
    """OAuth callback for a known provider."""
    return await complete_oauth(request, provider_id, db)
