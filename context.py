"""
Dispatch Context
================

Per-target execution context handed to service handlers, and the request
wrapper for inbound deliveries.

Users and chats are carried as detached snapshots (UserData, ChatData) built
from the ORM rows. Handlers can narrow or modify them freely: nothing is
written back to the store unless a store helper is called explicitly.
"""

import copy
import json
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import Request


@dataclass
class HookData:
    token: str
    services: List[str] = field(default_factory=list)
    chats: List[int] = field(default_factory=list)

    @classmethod
    def from_model(cls, hook) -> "HookData":
        return cls(
            token=hook.token,
            services=list(hook.services or []),
            chats=[int(chat_id) for chat_id in (hook.chats or [])],
        )


@dataclass
class UserData:
    id: int
    tz: Optional[str] = None
    hooks: List[HookData] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    protected: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, user) -> "UserData":
        return cls(
            id=user.id,
            tz=user.tz,
            hooks=[HookData.from_model(hook) for hook in user.hooks],
            settings=copy.deepcopy(user.settings or {}),
            protected=copy.deepcopy(user.protected or {}),
        )

    def private_chat(self) -> "ChatData":
        """The 1:1 conversation between the bot and this user."""
        return ChatData(id=self.id)

    def find_hook(self, token: str) -> Optional[HookData]:
        for hook in self.hooks:
            if hook.token == token:
                return hook
        return None


@dataclass
class ChatData:
    id: int
    hooks: List[HookData] = field(default_factory=list)

    @classmethod
    def from_model(cls, chat) -> "ChatData":
        return cls(id=chat.id, hooks=[HookData.from_model(hook) for hook in chat.hooks])

    @property
    def is_group(self) -> bool:
        return self.id < 0

    def find_hook(self, token: str) -> Optional[HookData]:
        for hook in self.hooks:
            if hook.token == token:
                return hook
        return None


_KEEP = object()


@dataclass
class Context:
    """
    Execution context of one handler invocation.

    ``db``, ``correlation_id`` and ``service_base_url`` are shared between a
    context and everything derived from it. ``user`` and ``chat`` are copied
    by ``derive`` so one fan-out target can never see another target's
    modifications.
    """
    db: Any = None
    service_name: str = ""
    correlation_id: str = ""
    service_base_url: str = ""
    user: Optional[UserData] = None
    chat: Optional[ChatData] = None

    def derive(self, user=_KEEP, chat=_KEEP, service_name: Optional[str] = None) -> "Context":
        """
        Build a child context for one dispatch target.

        Args:
            user: Replacement user (None clears it); defaults to a copy of the current one
            chat: Replacement chat (None clears it); defaults to a copy of the current one
            service_name: Replacement service name

        Returns:
            Context: A new context sharing the store handle with this one
        """
        user = self.user if user is _KEEP else user
        chat = self.chat if chat is _KEEP else chat
        return Context(
            db=self.db,
            service_name=service_name if service_name is not None else self.service_name,
            correlation_id=self.correlation_id,
            service_base_url=self.service_base_url,
            user=copy.deepcopy(user),
            chat=copy.deepcopy(chat),
        )

    @property
    def chat_id(self) -> int:
        return self.chat.id if self.chat is not None else 0

    @property
    def user_id(self) -> int:
        return self.user.id if self.user is not None else 0

    def protected_settings(self) -> Dict[str, Any]:
        """Credential bundle of the current user for the current service."""
        if self.user is None:
            return {}
        return self.user.protected.get(self.service_name) or {}

    def settings(self) -> Dict[str, Any]:
        if self.user is None:
            return {}
        return self.user.settings.get(self.service_name) or {}


def new_request_id() -> str:
    return secrets.token_hex(5)


@dataclass
class WebhookContext:
    """An inbound delivery, read once so every target sees the same payload."""
    request_id: str
    method: str = "POST"
    path: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    async def from_request(cls, request: Request) -> "WebhookContext":
        return cls(
            request_id=new_request_id(),
            method=request.method,
            path=request.url.path,
            headers={key.lower(): value for key, value in request.headers.items()},
            query=dict(request.query_params),
            body=await request.body(),
        )

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def query_param(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.query.get(name, default)

    def json(self) -> Any:
        """
        Decode the payload as JSON.

        Raises:
            ValueError: If the body is not valid JSON
        """
        try:
            return json.loads(self.body or b"null")
        except json.JSONDecodeError as e:
            raise ValueError(f"Delivery payload is not JSON: {e}")
