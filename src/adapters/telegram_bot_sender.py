"""Telegram Bot API push adapter.

Each subscribed address is linked to a bot chat; a push is one sendMessage
call to that chat.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import httpx

from adapters.notification_formatting import format_push
from core.errors import PushDeliveryError
from core.models import NotificationPayload

LOGGER = logging.getLogger(__name__)

# Telegram answers 403 when the user blocked the bot and 400 "chat not found"
# when the chat is gone; both mean the subscription is dead.
GONE_STATUS = 410

ChatLookup = Callable[[str], Optional[str]]


class TelegramBotSender:
    """SenderPort adapter that sends pushes via the Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        chat_lookup: ChatLookup,
        frontend_base_url: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._bot_token = bot_token
        self._chat_lookup = chat_lookup
        self._frontend_base_url = frontend_base_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _endpoint(self) -> str:
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_push(self, address: str, payload: NotificationPayload) -> None:
        """Send the formatted notification to the address's chat."""

        chat_id = self._chat_lookup(address)
        if not chat_id:
            raise PushDeliveryError(f"No chat linked to {address}", status_code=404)

        body = {
            "chat_id": chat_id,
            "text": format_push(payload, mode="html", frontend_base_url=self._frontend_base_url),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            response = await self._client.post(self._endpoint(), json=body)
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"Bot API request failed: {exc}") from exc

        if response.status_code == 200:
            LOGGER.debug("Pushed %s to chat %s", payload.type.value, chat_id)
            return

        description = _description(response)
        if response.status_code == 403 or (
            response.status_code == 400 and "chat not found" in description.lower()
        ):
            raise PushDeliveryError(f"Chat {chat_id} unreachable: {description}", status_code=GONE_STATUS)
        raise PushDeliveryError(
            f"Bot API error {response.status_code}: {description}",
            status_code=response.status_code,
        )


def _description(response: httpx.Response) -> str:
    try:
        return str(response.json().get("description", response.text))
    except ValueError:
        return response.text
