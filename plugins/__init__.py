# plugins/__init__.py
"""
Plugin System for the Hook Router
=================================

This module provides the foundation for the service plugin architecture of the
hook router. It defines the interface every third-party integration (Trello,
Gmail, GitLab, ...) implements and the registry the router resolves service
names against.

A service plugin exposes up to four handlers:
1. webhook_handler: called once per target chat for an inbound delivery
2. token_handler: turns a token-less delivery into a store query (auto-detect)
3. event_handler: called for internally triggered notifications
4. oauth_successful: called in the background after a user linked the service

and at most one of ``default_oauth1`` / ``default_oauth2``, describing how the
service's users authorize us.

Plugin Lifecycle:
---------------
1. Plugin classes are defined in packages under 'plugins/'
2. Each package registers its services on import with register_service_plugin
3. The application discovers plugins at startup and freezes the registry
4. The registry is read-only afterwards and shared by all requests

Adding a New Service:
------------------
1. Create a new directory under 'plugins/'
2. Subclass ServicePlugin and implement webhook_handler (plus the optional
   handlers the service needs)
3. Call register_service_plugin(MyService) in the package __init__.py
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type, Union
import logging

from errors import ConfigurationError

logger = logging.getLogger(__name__)

class PluginBase:
    """
    Base class for all plugins.

    Class Attributes:
        service_name (str): Unique identifier for the service this plugin supports
                           (e.g., "trello", "gmail")
    """

    service_name: str

@dataclass
class OAuthCredentials:
    """Result of a successful credential exchange."""
    access_token: str = ""
    refresh_token: str = ""
    token_secret: str = ""  # OAuth1 only
    expires_at: Optional[Any] = None  # datetime

# access_token_receiver(ctx, request) for OAuth2,
# access_token_receiver(ctx, request, request_token) for OAuth1
AccessTokenReceiver = Callable[..., Awaitable[OAuthCredentials]]

@dataclass(frozen=True)
class OAuth1Config:
    """
    OAuth 1.0a application registered with a provider.

    Endpoint URLs may be relative; they are resolved against the provider's
    base URL so the same config serves self-hosted instances.
    """
    consumer_key: str
    consumer_secret: str
    request_token_url: str
    authorize_url: str
    access_token_url: str
    access_token_receiver: Optional[AccessTokenReceiver] = None

@dataclass(frozen=True)
class OAuth2Config:
    """OAuth 2.0 application registered with a provider."""
    client_id: str
    client_secret: str
    auth_url: str
    token_url: str
    scopes: Tuple[str, ...] = field(default_factory=tuple)
    access_token_receiver: Optional[AccessTokenReceiver] = None

# (query_chats, query); a None query means "nothing to do"
TokenHandlerResult = Tuple[bool, Optional[Any]]

class ServicePlugin(PluginBase):
    """
    Base class for service plugins.

    Subclasses must implement ``webhook_handler``. The other handlers are
    optional capabilities: leave them as ``None`` when the service does not
    support them, or define them as async methods.

    Handlers signal failures by raising. Raise ``errors.FloodError`` when
    Telegram is rate limiting the bot; the router then stops fanning out the
    current delivery and answers 429. Any other exception is logged and the
    router continues with the next target.

    Class Attributes:
        service_name (str): Name used in hook records and URLs
        bot_username (str): Telegram bot that talks to this service's users
        default_base_url (str): Base URL of the public instance of the service
        default_oauth1 (OAuth1Config): OAuth 1.0a app, if the service uses it
        default_oauth2 (OAuth2Config): OAuth 2.0 app, if the service uses it
    """

    bot_username: Optional[str] = None
    default_base_url: str = ""
    default_oauth1: Optional[OAuth1Config] = None
    default_oauth2: Optional[OAuth2Config] = None

    # Optional capabilities
    token_handler: Optional[Callable[..., Awaitable[TokenHandlerResult]]] = None
    event_handler: Optional[Callable[..., Awaitable[None]]] = None
    oauth_successful: Optional[Callable[..., Awaitable[None]]] = None

    async def webhook_handler(self, ctx, wctx) -> None:
        """
        Handle an inbound delivery for one target chat.

        Args:
            ctx (context.Context): Dispatch context scoped to the target
            wctx (context.WebhookContext): The raw delivery

        Raises:
            NotImplementedError: If the subclass doesn't implement this method
        """
        raise NotImplementedError("Subclasses must implement webhook_handler")

    def get_bot_username(self) -> str:
        """Bot to send the user back to after an OAuth round-trip."""
        if self.bot_username:
            return self.bot_username
        from config import get_settings
        return get_settings().TELEGRAM_BOT_USERNAME or ""

# Plugin registry
_service_plugins: Dict[str, ServicePlugin] = {}
_frozen = False

def register_service_plugin(plugin: Union[Type[ServicePlugin], ServicePlugin]) -> ServicePlugin:
    """
    Register a service plugin with the system.

    Accepts either a ServicePlugin subclass, which is instantiated once, or an
    instance. The instance is shared by every request, so plugins must not
    keep per-request state on ``self``.

    Args:
        plugin: The service plugin class or instance to register

    Returns:
        ServicePlugin: The registered instance

    Raises:
        ConfigurationError: If the registry is frozen, or the plugin declares
                            both OAuth1 and OAuth2 configuration

    Example:
        >>> class TrelloService(ServicePlugin):
        ...     service_name = "trello"
        ...     async def webhook_handler(self, ctx, wctx): ...
        >>> register_service_plugin(TrelloService)
    """
    if _frozen:
        raise ConfigurationError(f"Service registry is frozen, can't register {plugin.service_name}")

    instance = plugin() if isinstance(plugin, type) else plugin
    if instance.default_oauth1 is not None and instance.default_oauth2 is not None:
        raise ConfigurationError(
            f"Service {instance.service_name} declares both OAuth1 and OAuth2 configuration"
        )

    _service_plugins[instance.service_name] = instance
    logger.info(f"Registered service plugin: {instance.service_name}")
    return instance

def unregister_service_plugin(service_name: str) -> None:
    """Remove a service plugin. Only allowed before the registry is frozen."""
    if _frozen:
        raise ConfigurationError(f"Service registry is frozen, can't unregister {service_name}")
    _service_plugins.pop(service_name, None)

def get_service_plugin(service_name: str) -> Optional[ServicePlugin]:
    """
    Get a service plugin by its service name.

    Args:
        service_name (str): The unique service name of the plugin to retrieve

    Returns:
        Optional[ServicePlugin]: The plugin instance if found, None otherwise
    """
    if not service_name:
        return None
    return _service_plugins.get(service_name)

def get_all_service_plugins() -> Mapping[str, ServicePlugin]:
    """
    Get all registered service plugins.

    Returns:
        Mapping[str, ServicePlugin]: Read-only view of the registry
    """
    return MappingProxyType(_service_plugins)

def freeze_registry() -> None:
    """Make the registry read-only. Called once plugin discovery is done."""
    global _frozen
    _frozen = True
    logger.info(f"Service registry frozen with {len(_service_plugins)} service(s)")

def is_registry_frozen() -> bool:
    return _frozen
