"""
Hook Resolution & Dispatch
==========================

Resolves the token of an inbound delivery to the hook it names and fans the
delivery out to every (service, chat) target of that hook.

Token addressing:
-----------------
- empty token or "service" with an explicit service name: auto-detect, the
  service's token_handler turns the payload into a store query
- "u...": hook owned by a user, the user's settings are scoped to the hook
- "c..." and the legacy "h...": hook owned by a chat
- anything else: 404

Failure policy:
---------------
Each handler call ends in one of three outcomes. HANDLED and FAILED let the
loop continue; FLOOD stops the fan-out and the delivery is answered with 429.
Unknown tokens are answered with an empty 200 after the payload is dumped to
disk, so senders can't probe which tokens exist and providers don't disable
the webhook.
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from context import ChatData, Context, HookData, UserData, WebhookContext
from errors import ErrorKind, ServiceError
from plugin_manager import plugin_manager
from plugins import ServicePlugin
from scoping import scope_user_to_hook, scope_user_to_services
import store

logger = logging.getLogger(__name__)

AUTO_DETECT_TOKEN = "service"
USER_TOKEN_PREFIXES = ("u",)
CHAT_TOKEN_PREFIXES = ("c", "h")  # "h" is the legacy spelling of "c"


class DispatchOutcome(str, Enum):
    HANDLED = "handled"
    FAILED = "failed"
    FLOOD = "flood"


@dataclass
class DispatchResult:
    """Outcome of one handler invocation."""
    outcome: DispatchOutcome
    error: Optional[BaseException] = None


@dataclass
class DeliveryResult:
    """What the HTTP layer should answer for a delivery."""
    status_code: int = 200
    body: Optional[str] = None
    handled: int = 0
    failed: int = 0


def classify_error(error: BaseException) -> DispatchOutcome:
    if isinstance(error, ServiceError) and error.kind == ErrorKind.FLOOD:
        return DispatchOutcome.FLOOD
    return DispatchOutcome.FAILED


async def invoke_webhook_handler(service: ServicePlugin, ctx: Context, wctx: WebhookContext) -> DispatchResult:
    """Call the service's webhook handler and turn the result into a tagged outcome."""
    try:
        await service.webhook_handler(ctx, wctx)
    except Exception as e:
        return DispatchResult(classify_error(e), e)
    return DispatchResult(DispatchOutcome.HANDLED)


def _record(result: DeliveryResult, dispatch: DispatchResult, token: str, ctx: Context) -> bool:
    """Update counters for one invocation. Returns True when the fan-out must stop."""
    if dispatch.outcome == DispatchOutcome.HANDLED:
        result.handled += 1
        return False

    result.failed += 1
    logger.error(
        f"WebhookHandler returned error for token {token} "
        f"(service={ctx.service_name}, chat={ctx.chat_id}, request={ctx.correlation_id}): {dispatch.error}"
    )
    if dispatch.outcome == DispatchOutcome.FLOOD:
        result.status_code = 429
        result.body = str(dispatch.error)
        return True
    return False


def hook_targets(hook: HookData, ctx: Context) -> List[int]:
    """Chats a hook delivers to: its own list, else the chat resolved from the token."""
    if hook.chats:
        return list(hook.chats)
    if ctx.chat_id != 0:
        return [ctx.chat_id]
    return []


async def dispatch_hook(hook: HookData, ctx: Context, wctx: WebhookContext) -> DeliveryResult:
    """
    Fan a delivery out to every (service, chat) target of one hook.

    Services and chats are processed strictly in stored order, services in the
    outer loop. Every target gets its own derived context.
    """
    result = DeliveryResult()

    for service_name in hook.services:
        service = plugin_manager.get_service(service_name)
        if service is None:
            logger.warning(f"Unknown service {service_name} in hook {hook.token}")
            continue

        targets = hook_targets(hook, ctx)
        if not targets:
            logger.warning(f"No target chats for token {hook.token} (service={service_name})")
            continue

        for chat_id in targets:
            if ctx.chat is not None and ctx.chat.id == chat_id:
                chat = ctx.chat
            else:
                chat = ChatData(id=chat_id)
            target_ctx = ctx.derive(chat=chat, service_name=service_name)
            dispatch = await invoke_webhook_handler(service, target_ctx, wctx)
            if _record(result, dispatch, hook.token, target_ctx):
                return result

    if result.handled == 0:
        logger.warning(f"Hook not handled: {hook.token}")
    return result


async def dispatch_query(
    service: ServicePlugin,
    ctx: Context,
    wctx: WebhookContext,
    query_chats: bool,
    query,
    token: str = "",
) -> DeliveryResult:
    """Invoke the service's webhook handler once per chat or user matching ``query``."""
    result = DeliveryResult()
    db = ctx.db

    if query_chats:
        try:
            chats = store.find_chats(db, query)
        except Exception as e:
            logger.error(f"FindChats error for token {token!r} (service={service.service_name}): {e}")
            chats = []
        targets = [ctx.derive(chat=ChatData.from_model(chat), user=None) for chat in chats]
    else:
        try:
            users = store.find_users(db, query)
        except Exception as e:
            logger.error(f"FindUsers error for token {token!r} (service={service.service_name}): {e}")
            users = []
        targets = []
        for user in users:
            user_data = scope_user_to_services(UserData.from_model(user), [service.service_name])
            targets.append(ctx.derive(user=user_data, chat=user_data.private_chat()))

    for target_ctx in targets:
        dispatch = await invoke_webhook_handler(service, target_ctx, wctx)
        if _record(result, dispatch, token, target_ctx):
            return result

    if result.handled == 0:
        logger.warning(f"Delivery for service {service.service_name} not handled (request={wctx.request_id})")
    return result


def dump_raw_delivery(token: str, wctx: WebhookContext) -> Optional[str]:
    """
    Save the payload of an unresolvable delivery for offline inspection.

    Returns:
        Optional[str]: Path of the dump, None if it couldn't be written
    """
    dump_dir = get_settings().RAW_DUMP_DIR
    filename = os.path.basename(f"{token}_{int(time.time())}_{wctx.request_id}.json")
    path = os.path.join(dump_dir, filename)
    try:
        os.makedirs(dump_dir, exist_ok=True)
        with open(path, "wb") as f:
            f.write(wctx.body)
    except OSError as e:
        logger.error(f"Can't dump raw delivery for token {token}: {e}")
        return None
    return path


async def _auto_detect(db: Session, service_name: str, wctx: WebhookContext, token: str) -> DeliveryResult:
    service = plugin_manager.get_service(service_name)
    if service is None:
        logger.warning(f"Delivery for unknown service {service_name}")
        return DeliveryResult()

    if service.token_handler is None:
        logger.error(f"TokenHandler missed for {service_name} service")
        return DeliveryResult()

    ctx = Context(db=db, service_name=service.service_name, correlation_id=wctx.request_id)
    try:
        query_chats, query = await service.token_handler(ctx, wctx)
    except Exception as e:
        logger.error(f"TokenHandler error for service {service_name}: {e}")
        return DeliveryResult()

    if query is None:
        return DeliveryResult()

    return await dispatch_query(service, ctx, wctx, query_chats, query, token=token)


async def route_delivery(
    db: Session,
    token: str,
    service_name: Optional[str],
    wctx: WebhookContext,
) -> DeliveryResult:
    """
    Resolve ``token`` and dispatch the delivery.

    Args:
        db (Session): Store session of the current request
        token (str): First path segment of the delivery URL, may be empty
        service_name (Optional[str]): Explicit service hint from the URL
        wctx (WebhookContext): The delivery

    Returns:
        DeliveryResult: Status code and optional body for the HTTP layer
    """
    if service_name and (token == AUTO_DETECT_TOKEN or token == ""):
        return await _auto_detect(db, service_name, wctx, token)

    if not token:
        return DeliveryResult(status_code=404)

    ctx = Context(db=db, service_name=service_name or "", correlation_id=wctx.request_id)

    if token.startswith(USER_TOKEN_PREFIXES):
        try:
            user = store.find_user_by_hook_token(db, token)
        except SQLAlchemyError as e:
            logger.error(f"FindUserByHookToken error for token {token}: {e}")
            user = None
        if user is None or user.id <= 0:
            dump_raw_delivery(token, wctx)
            logger.error(f"Unknown user token: {token}")
            return DeliveryResult()

        user_data = UserData.from_model(user)
        hook = user_data.find_hook(token)
        scope_user_to_hook(user_data, hook)
        if len(hook.services) == 1:
            ctx.service_name = hook.services[0]
        ctx.user = user_data

    elif token.startswith(CHAT_TOKEN_PREFIXES):
        try:
            chat = store.find_chat_by_hook_token(db, token)
        except SQLAlchemyError as e:
            logger.error(f"FindChatByHookToken error for token {token}: {e}")
            chat = None
        if chat is None or chat.id == 0:
            dump_raw_delivery(token, wctx)
            logger.error(f"Unknown chat token: {token}")
            return DeliveryResult()

        chat_data = ChatData.from_model(chat)
        hook = chat_data.find_hook(token)
        ctx.chat = chat_data

    else:
        return DeliveryResult(status_code=404)

    return await dispatch_hook(hook, ctx, wctx)
