"""
Subscription Store
==================

Query and update helpers over the SQLAlchemy models. Route handlers and the
dispatcher go through these functions instead of building queries inline, so
the hook/user/chat lookup rules live in one place.

A *store query* (as returned by a service's token_handler, or passed to the
event fan-out) is either a mapping of column filters, applied with
``filter_by``, or a SQLAlchemy clause applied with ``filter``.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import ClauseElement

from config import get_settings
from context import UserData
from errors import UnknownCorrelationError
from models import Chat, Hook, OAuthCorrelation, OAuthProvider, User

logger = logging.getLogger(__name__)

StoreQuery = Union[Mapping[str, Any], ClauseElement]

CORRELATION_PREFIX = "auth_"


def _apply_query(query, criteria: StoreQuery):
    if isinstance(criteria, Mapping):
        return query.filter_by(**criteria)
    return query.filter(criteria)


# Users and chats

def find_user_by_hook_token(db: Session, token: str) -> Optional[User]:
    """Return the user owning the hook with this token, searching users only."""
    return (
        db.query(User)
        .join(Hook, Hook.user_id == User.id)
        .filter(Hook.token == token)
        .first()
    )


def find_chat_by_hook_token(db: Session, token: str) -> Optional[Chat]:
    """Return the chat owning the hook with this token, searching chats only."""
    return (
        db.query(Chat)
        .join(Hook, Hook.chat_id == Chat.id)
        .filter(Hook.token == token)
        .first()
    )


def find_users(db: Session, criteria: StoreQuery) -> List[User]:
    return _apply_query(db.query(User), criteria).order_by(User.id).all()


def find_chats(db: Session, criteria: StoreQuery) -> List[Chat]:
    return _apply_query(db.query(Chat), criteria).order_by(Chat.id).all()


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_data(db: Session, user_id: int) -> Optional[UserData]:
    """Detached snapshot of a user, safe to narrow and hand to service handlers."""
    user = get_user(db, user_id)
    if user is None:
        return None
    return UserData.from_model(user)


def get_or_create_user(db: Session, user_id: int) -> User:
    user = get_user(db, user_id)
    if user is None:
        user = User(id=user_id, settings={}, protected={})
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Created user {user_id}")
    return user


def get_or_create_chat(db: Session, chat_id: int) -> Chat:
    chat = db.query(Chat).filter(Chat.id == chat_id).first()
    if chat is None:
        chat = Chat(id=chat_id)
        db.add(chat)
        db.commit()
        db.refresh(chat)
        logger.info(f"Created chat {chat_id}")
    return chat


def set_user_timezone(db: Session, user_id: int, tz: str) -> bool:
    """Store the browser-reported timezone on the user. Returns False if no row matched."""
    updated = db.query(User).filter(User.id == user_id).update({User.tz: tz})
    db.commit()
    return updated > 0


def save_protected_settings(db: Session, user_id: int, service_name: str, values: Dict[str, Any]) -> None:
    """
    Merge ``values`` into the user's protected settings for one service.

    Raises:
        SQLAlchemyError: If the update can't be committed (the session is rolled back)
    """
    user = get_or_create_user(db, user_id)
    protected = dict(user.protected or {})
    bundle = dict(protected.get(service_name) or {})
    bundle.update(values)
    protected[service_name] = bundle
    # Reassign so SQLAlchemy notices the JSON change
    user.protected = protected
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def save_settings(db: Session, user_id: int, service_name: str, values: Dict[str, Any]) -> None:
    """Merge ``values`` into the user's settings for one service."""
    user = get_or_create_user(db, user_id)
    settings = dict(user.settings or {})
    service_settings = dict(settings.get(service_name) or {})
    service_settings.update(values)
    settings[service_name] = service_settings
    user.settings = settings
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


# Hooks

def add_hook(
    db: Session,
    token: str,
    services: Sequence[str],
    chats: Optional[Sequence[int]] = None,
    user_id: Optional[int] = None,
    chat_id: Optional[int] = None,
) -> Hook:
    """
    Append a hook to a user's or a chat's hook list.

    Raises:
        ValueError: If the owner is ambiguous or the token is already taken
    """
    if (user_id is None) == (chat_id is None):
        raise ValueError("A hook is owned by exactly one user or one chat")
    if not token:
        raise ValueError("Hook token can't be empty")
    if db.query(Hook).filter(Hook.token == token).first() is not None:
        raise ValueError(f"Hook token already in use: {token}")

    if user_id is not None:
        get_or_create_user(db, user_id)
        position = db.query(Hook).filter(Hook.user_id == user_id).count()
    else:
        get_or_create_chat(db, chat_id)
        position = db.query(Hook).filter(Hook.chat_id == chat_id).count()

    hook = Hook(
        token=token,
        services=list(services),
        chats=list(chats or []),
        position=position,
        user_id=user_id,
        chat_id=chat_id,
    )
    db.add(hook)
    db.commit()
    db.refresh(hook)
    return hook


def remove_hook(db: Session, token: str) -> bool:
    deleted = db.query(Hook).filter(Hook.token == token).delete()
    db.commit()
    return deleted > 0


# OAuth correlation records

def correlation_key(auth_id: str) -> str:
    return CORRELATION_PREFIX + auth_id


def create_correlation(
    db: Session,
    user_id: int,
    service_name: str,
    base_url: str = "",
    ttl: Optional[timedelta] = None,
) -> str:
    """
    Start an OAuth linking flow for a user.

    Returns:
        str: The ephemeral id to embed in the /oauth1/ link or the OAuth2 state
    """
    if ttl is None:
        ttl = timedelta(minutes=get_settings().OAUTH_CORRELATION_TTL_MINUTES)
    auth_id = secrets.token_urlsafe(16)
    now = datetime.utcnow()
    db.add(OAuthCorrelation(
        key=correlation_key(auth_id),
        user_id=user_id,
        service=service_name,
        val={"base_url": base_url},
        created_at=now,
        expires_at=now + ttl,
    ))
    db.commit()
    return auth_id


def get_correlation(db: Session, auth_id: str, now: Optional[datetime] = None) -> Optional[OAuthCorrelation]:
    """Return the live correlation record for ``auth_id``; expired records count as missing."""
    if not auth_id:
        return None
    record = db.query(OAuthCorrelation).filter(OAuthCorrelation.key == correlation_key(auth_id)).first()
    if record is None:
        return None
    now = now or datetime.utcnow()
    if record.expires_at is not None and record.expires_at <= now:
        logger.info(f"OAuth correlation {auth_id} expired at {record.expires_at}")
        return None
    return record


def require_correlation(db: Session, auth_id: str, now: Optional[datetime] = None) -> OAuthCorrelation:
    """
    Like get_correlation, for flows that can't continue without the record.

    Raises:
        UnknownCorrelationError: If the record is missing, expired or has no valid user
    """
    record = get_correlation(db, auth_id, now)
    if record is None or record.user_id <= 0:
        raise UnknownCorrelationError(auth_id)
    return record


def set_correlation_request_token(db: Session, record: OAuthCorrelation, request_token: Dict[str, str]) -> None:
    val = dict(record.val or {})
    val["request_token"] = dict(request_token)
    record.val = val
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def purge_expired_correlations(db: Session, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    deleted = (
        db.query(OAuthCorrelation)
        .filter(OAuthCorrelation.expires_at.isnot(None), OAuthCorrelation.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info(f"Purged {deleted} expired OAuth correlation record(s)")
    return deleted


# OAuth providers

def find_oauth_provider(db: Session, provider_id: str) -> Optional[OAuthProvider]:
    return db.query(OAuthProvider).filter(OAuthProvider.id == provider_id).first()


def save_oauth_provider(
    db: Session,
    provider_id: str,
    service_name: str,
    base_url: str,
    client_id: str,
    client_secret: str,
) -> OAuthProvider:
    provider = find_oauth_provider(db, provider_id)
    if provider is None:
        provider = OAuthProvider(id=provider_id, service=service_name, base_url=base_url)
        db.add(provider)
    provider.client_id = client_id
    provider.client_secret = client_secret
    db.commit()
    db.refresh(provider)
    return provider
