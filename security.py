import base64
import hashlib
import hmac
from typing import Optional

from config import get_settings


def compact_hash(value: str, key: Optional[str] = None) -> str:
    """
    Short url-safe keyed hash of ``value``.

    Used as the shared secret Telegram echoes back on update webhooks, so the
    bot token itself never appears in a URL.
    """
    key = key if key is not None else get_settings().SECRET_KEY
    digest = hmac.new(key.encode(), value.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")[:22]


def verify_compact_hash(value: str, provided: Optional[str], key: Optional[str] = None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(compact_hash(value, key), provided)


def stable_id(*parts: str) -> str:
    """Unkeyed identifier derived from ``parts``; stable across secret rotation."""
    digest = hashlib.sha256("\x00".join(parts).encode()).hexdigest()
    return digest[:16]
