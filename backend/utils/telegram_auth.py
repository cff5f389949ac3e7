"""
Telegram Mini App init-data verification.

The client sends `initData` (a URL-encoded query string) when opening the
WebSocket. The signature is HMAC-SHA256 over the sorted `key=value` lines
(minus `hash`), keyed by HMAC-SHA256("WebAppData", bot_token).
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Optional
from urllib.parse import parse_qsl

from pydantic import BaseModel, ValidationError

from config import settings
from utils.errors import AuthError

logger = logging.getLogger(__name__)


class TelegramUser(BaseModel):
    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: Optional[bool] = None
    photo_url: Optional[str] = None


DEV_USER = TelegramUser(id=12345, first_name="Dev", username="dev")


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def sign_init_data(fields: dict, bot_token: str) -> str:
    """Compute the `hash` value for a field dict (used by tests and local tooling)."""
    check_string = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    return hmac.new(_secret_key(bot_token), check_string.encode(), hashlib.sha256).hexdigest()


def validate_init_data(
    init_data: str,
    bot_token: str,
    max_age_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> TelegramUser:
    """Verify a signed init payload and return its user. Raises AuthError."""
    if not bot_token:
        raise AuthError("Server missing bot token")

    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = fields.pop("hash", None)
    if not received_hash:
        raise AuthError("Missing hash parameter")

    expected = sign_init_data(fields, bot_token)
    if not hmac.compare_digest(expected, received_hash):
        raise AuthError("Signature verification failed")

    max_age = settings.auth_max_age_seconds if max_age_seconds is None else max_age_seconds
    auth_date = fields.get("auth_date")
    if auth_date:
        try:
            issued = int(auth_date)
        except ValueError:
            raise AuthError("Malformed auth_date")
        current = time.time() if now is None else now
        if current - issued > max_age:
            raise AuthError("Data is outdated (>24h)")

    user_raw = fields.get("user")
    if not user_raw:
        raise AuthError("Missing user")
    try:
        return TelegramUser.model_validate(json.loads(user_raw))
    except (json.JSONDecodeError, ValidationError):
        raise AuthError("Malformed user JSON")


def authenticate(init_data: Optional[str]) -> TelegramUser:
    """Resolve the caller's identity for a new connection. Raises AuthError."""
    if not settings.telegram_bot_token and settings.env != "production":
        logger.warning("DEV MODE: skipping auth check (TELEGRAM_BOT_TOKEN not set)")
        return DEV_USER
    if not init_data:
        raise AuthError("No initData provided")
    return validate_init_data(init_data, settings.telegram_bot_token)
