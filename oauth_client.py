"""
OAuth Provider Client
=====================

Talks to the OAuth provider of a service: resolves which provider instance
(public or self-hosted) a flow belongs to, obtains OAuth1 request tokens and
exchanges verifiers or authorization codes for access tokens.

OAuth1 uses requests-oauthlib, whose calls block, so they run in the
threadpool. OAuth2 code exchange goes through httpx.AsyncClient.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode, urljoin

import httpx
import requests
from requests_oauthlib import OAuth1Session
from starlette.concurrency import run_in_threadpool

from config import get_settings
from errors import CredentialExchangeError
from plugins import OAuth1Config, OAuth2Config, OAuthCredentials, ServicePlugin
from security import stable_id
import store

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30.0


@dataclass(frozen=True)
class ProviderInfo:
    """A concrete OAuth provider: one service at one base URL with one app."""
    id: str
    service: str
    base_url: str
    client_id: str
    client_secret: str

    def endpoint(self, url: str) -> str:
        """Resolve a possibly relative endpoint against the provider base URL."""
        if not self.base_url:
            return url
        return urljoin(self.base_url.rstrip("/") + "/", url)


def provider_internal_id(service_name: str, base_url: str) -> str:
    return stable_id(service_name, base_url.rstrip("/"))


def _app_credentials(service: ServicePlugin) -> Optional[Tuple[str, str]]:
    if service.default_oauth2 is not None:
        return service.default_oauth2.client_id, service.default_oauth2.client_secret
    if service.default_oauth1 is not None:
        return service.default_oauth1.consumer_key, service.default_oauth1.consumer_secret
    return None


def default_provider(service: ServicePlugin) -> Optional[ProviderInfo]:
    """Provider for the public instance of ``service``, built from its default OAuth config."""
    credentials = _app_credentials(service)
    if credentials is None:
        return None
    base_url = service.default_base_url or ""
    return ProviderInfo(
        id=provider_internal_id(service.service_name, base_url),
        service=service.service_name,
        base_url=base_url,
        client_id=credentials[0],
        client_secret=credentials[1],
    )


def _from_row(row) -> ProviderInfo:
    return ProviderInfo(
        id=row.id,
        service=row.service,
        base_url=row.base_url,
        client_id=row.client_id,
        client_secret=row.client_secret,
    )


def provider_for(db, service: ServicePlugin, base_url: str = "") -> Optional[ProviderInfo]:
    """
    Provider serving ``service`` at ``base_url``.

    A provider stored in the database wins; otherwise the default provider is
    used when ``base_url`` is empty or is the service's default base URL.
    """
    default = default_provider(service)
    base_url = base_url or service.default_base_url or ""

    row = store.find_oauth_provider(db, provider_internal_id(service.service_name, base_url))
    if row is not None:
        return _from_row(row)

    if default is not None and base_url.rstrip("/") == default.base_url.rstrip("/"):
        return default
    return None


def resolve_provider(db, provider_id: Optional[str], service: ServicePlugin, base_url: str = "") -> Optional[ProviderInfo]:
    """
    Provider named by an OAuth callback.

    Args:
        provider_id: Internal id from the callback URL; empty to use the
                     provider of ``service`` at ``base_url``
        service: Service of the correlation record being completed
        base_url: Base URL stored on the correlation record
    """
    if not provider_id:
        return provider_for(db, service, base_url)

    row = store.find_oauth_provider(db, provider_id)
    if row is not None:
        return _from_row(row)

    default = default_provider(service)
    if default is not None and default.id == provider_id:
        return default
    return None


def callback_url(provider: ProviderInfo) -> str:
    return f"{get_settings().BASE_URL.rstrip('/')}/auth/{provider.id}"


def oauth2_authorize_url(provider: ProviderInfo, config: OAuth2Config, state: str) -> str:
    """URL the user opens to grant access; ``state`` is the correlation id."""
    params = {
        "response_type": "code",
        "client_id": provider.client_id,
        "redirect_uri": callback_url(provider),
        "state": state,
    }
    if config.scopes:
        params["scope"] = " ".join(config.scopes)
    return f"{provider.endpoint(config.auth_url)}?{urlencode(params)}"


# OAuth1

def _fetch_request_token(provider: ProviderInfo, config: OAuth1Config, callback: str) -> Tuple[Dict[str, str], str]:
    session = OAuth1Session(provider.client_id, client_secret=provider.client_secret, callback_uri=callback)
    token = session.fetch_request_token(provider.endpoint(config.request_token_url))
    authorize_url = session.authorization_url(provider.endpoint(config.authorize_url))
    request_token = {
        "oauth_token": token.get("oauth_token", ""),
        "oauth_token_secret": token.get("oauth_token_secret", ""),
    }
    return request_token, authorize_url


async def fetch_oauth1_request_token(
    provider: ProviderInfo,
    config: OAuth1Config,
    callback: str,
) -> Tuple[Dict[str, str], str]:
    """
    Get a temporary request token and the URL to authorize it.

    Raises:
        CredentialExchangeError: If the provider refuses or can't be reached
    """
    try:
        return await run_in_threadpool(_fetch_request_token, provider, config, callback)
    except (ValueError, requests.RequestException) as e:
        logger.error(f"Error getting OAuth1 request token from {provider.service} ({provider.base_url}): {e}")
        raise CredentialExchangeError(str(e)) from e


def _fetch_access_token(provider: ProviderInfo, config: OAuth1Config, request_token: Dict[str, str], verifier: str) -> Dict[str, str]:
    session = OAuth1Session(
        provider.client_id,
        client_secret=provider.client_secret,
        resource_owner_key=request_token.get("oauth_token"),
        resource_owner_secret=request_token.get("oauth_token_secret"),
        verifier=verifier,
    )
    return session.fetch_access_token(provider.endpoint(config.access_token_url))


async def exchange_oauth1_verifier(
    provider: ProviderInfo,
    config: OAuth1Config,
    request_token: Dict[str, str],
    verifier: Optional[str],
) -> OAuthCredentials:
    """
    Exchange the verifier from the callback against the stored request token.

    Raises:
        CredentialExchangeError: On a missing verifier or request token, or a provider error
    """
    if not verifier:
        raise CredentialExchangeError("oauth_verifier is empty")
    if not request_token or not request_token.get("oauth_token"):
        raise CredentialExchangeError("No request token stored for this authorization")

    try:
        token = await run_in_threadpool(_fetch_access_token, provider, config, request_token, verifier)
    except (ValueError, requests.RequestException) as e:
        raise CredentialExchangeError(str(e)) from e

    return OAuthCredentials(
        access_token=token.get("oauth_token", ""),
        token_secret=token.get("oauth_token_secret", ""),
    )


# OAuth2

async def exchange_oauth2_code(provider: ProviderInfo, config: OAuth2Config, code: str) -> OAuthCredentials:
    """
    Exchange an authorization code at the provider's token endpoint.

    Raises:
        CredentialExchangeError: If the provider answers with an error
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": callback_url(provider),
        "client_id": provider.client_id,
        "client_secret": provider.client_secret,
    }
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            response = await client.post(
                provider.endpoint(config.token_url),
                data=data,
                headers={"Accept": "application/json"},
            )
    except httpx.HTTPError as e:
        raise CredentialExchangeError(f"Token endpoint unreachable: {e}") from e

    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        raise CredentialExchangeError(f"Token exchange failed ({response.status_code}): {response.text}")

    if response.status_code != 200 or "error" in payload:
        detail = payload.get("error_description") or payload.get("error") or response.text
        raise CredentialExchangeError(f"Token exchange failed ({response.status_code}): {detail}")

    expires_at = None
    if payload.get("expires_in"):
        try:
            expires_at = datetime.utcnow() + timedelta(seconds=int(payload["expires_in"]))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid expires_in from {provider.service}: {payload['expires_in']!r}")

    return OAuthCredentials(
        access_token=payload.get("access_token", ""),
        refresh_token=payload.get("refresh_token", ""),
        expires_at=expires_at,
    )


async def receive_access_token(ctx, request, service: ServicePlugin, provider: ProviderInfo, request_token: Dict[str, str]) -> OAuthCredentials:
    """
    Obtain the user's credentials from an OAuth callback request.

    Uses the service's own access_token_receiver when it has one, the
    default exchange otherwise.

    Raises:
        CredentialExchangeError: If no credentials could be obtained
    """
    if service.default_oauth2 is not None:
        config = service.default_oauth2
        if config.access_token_receiver is not None:
            return await _call_receiver(config.access_token_receiver, ctx, request)

        code = request.query_params.get("code")
        if not code:
            raise CredentialExchangeError("OAuth2 code is empty")
        return await exchange_oauth2_code(provider, config, code)

    if service.default_oauth1 is not None:
        config = service.default_oauth1
        if config.access_token_receiver is not None:
            return await _call_receiver(config.access_token_receiver, ctx, request, request_token)
        return await exchange_oauth1_verifier(
            provider, config, request_token, request.query_params.get("oauth_verifier")
        )

    raise CredentialExchangeError(f"Service {service.service_name} has no OAuth configuration")


async def _call_receiver(receiver, *args) -> OAuthCredentials:
    try:
        return await receiver(*args)
    except CredentialExchangeError:
        raise
    except Exception as e:
        raise CredentialExchangeError(str(e)) from e
