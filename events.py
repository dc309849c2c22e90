"""
Internal Event Fan-out
======================

Delivers service-internal notifications (polling results, scheduled jobs)
to every chat or user matching a store query, outside of any HTTP request.
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from context import ChatData, Context, UserData, new_request_id
from database import SessionLocal
from errors import ConfigurationError
from plugins import ServicePlugin
from scoping import scope_user_to_services
import store

logger = logging.getLogger(__name__)


async def trigger_event_handler(
    service: ServicePlugin,
    query_chats: bool,
    query: Optional[store.StoreQuery],
    data: Any,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    """
    Invoke ``service.event_handler`` once per chat or user matching ``query``.

    Args:
        service (ServicePlugin): Service whose event handler is called
        query_chats (bool): Search chats when True, users otherwise
        query: Store query selecting the recipients; None means nothing to do
        data (Any): Opaque payload passed to every handler call
        session_factory: Factory for the store session used by this fan-out

    Returns:
        int: Number of handler calls that completed without error

    Raises:
        ConfigurationError: If the service has no event handler
    """
    if service.event_handler is None:
        raise ConfigurationError(f"EventHandler missed for {service.service_name} service")

    if query is None:
        return 0

    db = session_factory()
    try:
        ctx = Context(db=db, service_name=service.service_name, correlation_id=new_request_id())

        if query_chats:
            try:
                chats = store.find_chats(db, query)
            except Exception as e:
                logger.error(f"FindChats error for service {service.service_name}: {e}")
                chats = []
            targets = [ctx.derive(chat=ChatData.from_model(chat)) for chat in chats]
        else:
            try:
                users = store.find_users(db, query)
            except Exception as e:
                logger.error(f"FindUsers error for service {service.service_name}: {e}")
                users = []
            targets = []
            for user in users:
                user_data = scope_user_to_services(UserData.from_model(user), [service.service_name])
                targets.append(ctx.derive(user=user_data, chat=user_data.private_chat()))

        handled = 0
        for target_ctx in targets:
            try:
                await service.event_handler(target_ctx, data)
            except Exception as e:
                logger.error(
                    f"EventHandler returned error (service={service.service_name}, "
                    f"chat={target_ctx.chat_id}, user={target_ctx.user_id}): {e}"
                )
                continue
            handled += 1
        return handled
    finally:
        db.close()
