"""
Scoped Secret Filter
====================

A user record holds settings and OAuth credentials for every service the user
has linked. Before a hook is served, the user snapshot is narrowed to the
services that hook names, so a service plugin only ever sees its own
configuration and credentials.
"""

import logging
from typing import Iterable

from context import HookData, UserData

logger = logging.getLogger(__name__)


def scope_user_to_services(user: UserData, services: Iterable[str]) -> UserData:
    """
    Drop settings and protected settings of every service not in ``services``.

    Mutates and returns the given snapshot.
    """
    allowed = set(services)

    for service_name in list(user.protected):
        if service_name not in allowed:
            del user.protected[service_name]

    for service_name in list(user.settings):
        if service_name not in allowed:
            del user.settings[service_name]

    return user


def scope_user_to_hook(user: UserData, hook: HookData) -> UserData:
    """
    Narrow a user snapshot to the single hook being served.

    After this call ``user.hooks == [hook]`` and ``user.settings`` /
    ``user.protected`` only contain keys listed in ``hook.services``.
    """
    user.hooks = [hook]
    scope_user_to_services(user, hook.services)
    logger.debug(f"Scoped user {user.id} to services {hook.services} for token {hook.token}")
    return user
