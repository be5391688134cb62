"""Telegram Bot API checks used when binding a bot to an instance."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict

import requests

logger = logging.getLogger(__name__)

BOT_TOKEN_PATTERN = re.compile(r"^\d+:[A-Za-z0-9_-]{35}$")


class TelegramError(RuntimeError):
    pass


class InvalidBotTokenError(TelegramError):
    pass


def looks_like_bot_token(token: str) -> bool:
    return bool(BOT_TOKEN_PATTERN.match(token or ""))


class TelegramClient:
    def __init__(self, api_base: str = "https://api.telegram.org", timeout: float = 10.0) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._http = requests.Session()

    def _call(self, token: str, method: str, **params: Any) -> Any:
        url = f"{self.api_base}/bot{token}/{method}"
        try:
            response = self._http.get(url, params=params or None, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TelegramError(f"Telegram {method} request failed: {exc}") from exc
        if response.status_code in (401, 404):
            raise InvalidBotTokenError("Telegram rejected the bot token")
        try:
            body = response.json()
        except ValueError as exc:
            raise TelegramError(f"Telegram {method} returned invalid JSON") from exc
        if not body.get("ok"):
            raise TelegramError(f"Telegram {method} failed: {body.get('description')}")
        return body.get("result")

    def get_me(self, token: str) -> Dict[str, Any]:
        result = self._call(token, "getMe")
        if not isinstance(result, dict) or not result.get("is_bot"):
            raise InvalidBotTokenError("Token does not belong to a bot")
        return result

    def delete_webhook(self, token: str) -> None:
        self._call(token, "deleteWebhook", drop_pending_updates="true")


__all__ = ["BOT_TOKEN_PATTERN", "InvalidBotTokenError", "TelegramClient", "TelegramError", "looks_like_bot_token"]
