import logging
from typing import Dict, Optional

import requests

from iiko_errors import TransportError
from writeoff_models import Action

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


def reply_markup(action: Action) -> Optional[Dict]:
    """One inline button per row, like the rest of the bot's menus"""
    if not action.options:
        return None
    return {
        "inline_keyboard": [
            [{"text": option.label, "callback_data": option.data}] for option in action.options
        ]
    }


class TelegramNotifier:
    def __init__(self, bot_token: str, timeout: int = 15):
        self.bot_token = bot_token
        self.timeout = timeout

    def _call(self, method: str, payload: Dict) -> Dict:
        url = f"{TELEGRAM_API}/bot{self.bot_token}/{method}"
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            # the URL embeds the bot token
            raise TransportError(f"Telegram {method} failed: {type(e).__name__}") from None
        if not data.get("ok"):
            raise TransportError(f"Telegram error: {data}")
        return data.get("result") or {}

    def send_action(self, chat_id: int, action: Action) -> Dict:
        payload = {"chat_id": chat_id, "text": action.text}
        markup = reply_markup(action)
        if markup:
            payload["reply_markup"] = markup
        return self._call("sendMessage", payload)

    def edit_action(self, chat_id: int, message_id: int, action: Action) -> Dict:
        payload = {"chat_id": chat_id, "message_id": message_id, "text": action.text}
        markup = reply_markup(action)
        if markup:
            payload["reply_markup"] = markup
        return self._call("editMessageText", payload)

    def send_text(self, chat_id: int, text: str) -> Dict:
        return self._call("sendMessage", {"chat_id": chat_id, "text": text})

    def answer_callback(self, callback_query_id: str, text: Optional[str] = None):
        payload = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        try:
            self._call("answerCallbackQuery", payload)
        except TransportError as e:
            # the button spinner times out on its own
            logger.warning(f"⚠️ answerCallbackQuery failed: {e}")
