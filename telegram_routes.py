from fastapi import APIRouter, HTTPException, Query, Request, Response
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

from config import get_settings
from security import verify_compact_hash

router = APIRouter(prefix="/tg", tags=["telegram"])
logger = logging.getLogger(__name__)

# Receives (bot_id, update) for every authenticated update; set by the bot layer
UpdateConsumer = Callable[[int, Dict[str, Any]], Awaitable[None]]
_update_consumer: Optional[UpdateConsumer] = None


def set_update_consumer(consumer: Optional[UpdateConsumer]) -> None:
    global _update_consumer
    _update_consumer = consumer


@router.post("/{bot_id}")
async def telegram_update(
    request: Request,
    bot_id: int,
    secret: Optional[str] = Query(None)
):
    """Receive an update from Telegram for one of our bots"""
    token = get_settings().bot_tokens().get(bot_id)
    if token is None or not verify_compact_hash(token, secret):
        logger.error(f"Wrong secret provided for TG webhook (botID={bot_id})")
        raise HTTPException(status_code=403, detail="Wrong secret provided for TG webhook")

    try:
        update = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Update is not JSON")

    if _update_consumer is None:
        logger.warning(f"No update consumer registered, dropping update for bot {bot_id}")
        return Response(status_code=200)

    await _update_consumer(bot_id, update)
    return Response(status_code=200)
