# plugin_manager.py
"""
Plugin Manager for the Hook Router
==================================

This module provides utilities for discovering, loading, and accessing service
plugins. It serves as the central coordination point for plugin operations and
is what the router, the event fan-out and the OAuth flow use to resolve a
service name to its plugin.

Usage:
------
The plugin_manager is instantiated as a singleton at the module level and should be
imported and used directly by application code:

    from plugin_manager import plugin_manager

    # Discover available plugins and lock the registry
    plugin_manager.discover_plugins()
    plugin_manager.freeze()

    # Get a service by name
    trello = plugin_manager.get_service("trello")
"""

import importlib
import logging
import os
from typing import Dict, List, Mapping, Optional

from plugins import (
    ServicePlugin,
    freeze_registry,
    get_all_service_plugins,
    get_service_plugin,
    is_registry_frozen,
)

logger = logging.getLogger(__name__)

class PluginManager:
    """
    Manager for service plugins.

    The PluginManager is responsible for:
    - Discovering plugin packages in the plugins directory
    - Loading plugin modules, which register their services on import
    - Freezing the registry once startup is complete
    - Providing access to registered services
    """

    def __init__(self, plugin_dir: Optional[str] = None):
        """
        Initialize the plugin manager.

        Plugins are not loaded during initialization; the discover_plugins
        method must be called to discover and load plugins.

        Args:
            plugin_dir (Optional[str]): Directory to scan, defaults to ./plugins
        """
        self._plugin_dir = plugin_dir or os.path.join(os.path.dirname(__file__), "plugins")
        self._loaded_plugins = set()

    def discover_plugins(self) -> List[str]:
        """
        Discover plugins in the plugins directory.

        Scans the plugins directory for plugin packages (subdirectories) and
        imports each one. A package that fails to import is logged and skipped;
        it never prevents the other services from loading.

        Returns:
            List[str]: Module names loaded by this call
        """
        loaded = []
        if not os.path.isdir(self._plugin_dir):
            logger.warning(f"Plugin directory not found: {self._plugin_dir}")
            return loaded

        for item in sorted(os.listdir(self._plugin_dir)):
            if os.path.isdir(os.path.join(self._plugin_dir, item)) and not item.startswith('__'):
                module_name = f"plugins.{item}"
                if module_name not in self._loaded_plugins:
                    try:
                        importlib.import_module(module_name)
                        self._loaded_plugins.add(module_name)
                        loaded.append(module_name)
                        logger.info(f"Discovered plugin: {module_name}")
                    except ImportError as e:
                        logger.error(f"Error loading plugin {module_name}: {e}")
        return loaded

    def freeze(self) -> None:
        """Lock the registry. Later registrations raise ConfigurationError."""
        if not is_registry_frozen():
            freeze_registry()

    def get_service(self, service_name: str) -> Optional[ServicePlugin]:
        """
        Get a service plugin by name.

        Args:
            service_name (str): The unique service name

        Returns:
            Optional[ServicePlugin]: The shared plugin instance, None if unknown
        """
        return get_service_plugin(service_name)

    def get_all_services(self) -> Mapping[str, ServicePlugin]:
        """Read-only mapping of service name to plugin instance."""
        return get_all_service_plugins()

    def get_oauth_services(self) -> Dict[str, ServicePlugin]:
        """Services that users can link through OAuth1 or OAuth2."""
        return {
            name: service
            for name, service in get_all_service_plugins().items()
            if service.default_oauth1 is not None or service.default_oauth2 is not None
        }

# Create a singleton instance
plugin_manager = PluginManager()
