"""Tests for Telegram init-data verification."""
import json
from urllib.parse import urlencode

import pytest

from config import settings
from utils import telegram_auth
from utils.errors import AuthError
from utils.telegram_auth import DEV_USER, sign_init_data, validate_init_data

BOT_TOKEN = "123456:TEST-bot-token"
NOW = 1_760_000_000


def _init_data(token=BOT_TOKEN, auth_date=NOW, user=None, tamper=None):
    fields = {
        "auth_date": str(auth_date),
        "query_id": "AAE-test",
        "user": json.dumps(user or {"id": 777, "first_name": "Ann", "username": "ann"}),
    }
    fields["hash"] = sign_init_data(fields, token)
    if tamper:
        fields.update(tamper)
    return urlencode(fields)


class TestValidateInitData:
    def test_valid_payload_returns_user(self):
        user = validate_init_data(_init_data(), BOT_TOKEN, now=NOW + 60)
        assert user.id == 777
        assert user.username == "ann"

    def test_wrong_token_rejected(self):
        """Test that a payload signed for another bot fails verification."""
        with pytest.raises(AuthError):
            validate_init_data(_init_data(token="999:other"), BOT_TOKEN, now=NOW)

    def test_tampered_field_rejected(self):
        data = _init_data(tamper={"user": json.dumps({"id": 1, "first_name": "Mallory"})})
        with pytest.raises(AuthError):
            validate_init_data(data, BOT_TOKEN, now=NOW)

    def test_missing_hash_rejected(self):
        with pytest.raises(AuthError):
            validate_init_data(urlencode({"auth_date": str(NOW)}), BOT_TOKEN, now=NOW)

    def test_outdated_payload_rejected(self):
        """Test that payloads older than the allowed age are refused."""
        with pytest.raises(AuthError):
            validate_init_data(_init_data(), BOT_TOKEN, max_age_seconds=86400, now=NOW + 86401)

    def test_missing_user_rejected(self):
        fields = {"auth_date": str(NOW)}
        fields["hash"] = sign_init_data(fields, BOT_TOKEN)
        with pytest.raises(AuthError):
            validate_init_data(urlencode(fields), BOT_TOKEN, now=NOW)

    def test_no_bot_token_rejected(self):
        with pytest.raises(AuthError):
            validate_init_data(_init_data(), "", now=NOW)


class TestAuthenticate:
    def test_dev_mode_bypass(self, monkeypatch):
        """Test that development servers without a bot token accept anyone as the dev user."""
        monkeypatch.setattr(settings, "telegram_bot_token", "")
        monkeypatch.setattr(settings, "env", "development")
        assert telegram_auth.authenticate(None) == DEV_USER

    def test_production_without_token_rejects(self, monkeypatch):
        monkeypatch.setattr(settings, "telegram_bot_token", "")
        monkeypatch.setattr(settings, "env", "production")
        with pytest.raises(AuthError):
            telegram_auth.authenticate("anything")

    def test_configured_token_requires_init_data(self, monkeypatch):
        monkeypatch.setattr(settings, "telegram_bot_token", BOT_TOKEN)
        with pytest.raises(AuthError):
            telegram_auth.authenticate(None)
