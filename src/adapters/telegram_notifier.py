"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance. Recipients are chat ids (users or groups);
source references are "<chat_id>:<message_id>" strings. Rejected messages
(blocked bot, unknown chat) return False; network errors and timeouts
propagate so the caller can categorize them.
"""

from __future__ import annotations

import logging

from telegram import Bot, ReplyParameters
from telegram.error import BadRequest, Forbidden

from src.ports.notification_port import DeliveryError

logger = logging.getLogger(__name__)


def split_source_ref(source_ref: str) -> tuple[str, int]:
    """Split "<chat_id>:<message_id>" into its parts."""
    chat_id, _, message_id = source_ref.rpartition(":")
    if not chat_id or not message_id.isdigit():
        raise ValueError(f"Malformed source reference: {source_ref!r}")
    return chat_id, int(message_id)


def make_source_ref(chat_id: int | str, message_id: int) -> str:
    return f"{chat_id}:{message_id}"


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def deliver(self, recipient: str, message: str) -> bool:
        try:
            await self._bot.send_message(chat_id=recipient, text=message)
        except (BadRequest, Forbidden) as exc:
            logger.warning("Telegram delivery to %s failed: %s", recipient, exc)
            return False
        return True

    async def acknowledge(self, source_ref: str, message: str) -> bool:
        """Reply in-thread to the message that produced an obligation."""
        try:
            chat_id, message_id = split_source_ref(source_ref)
        except ValueError as exc:
            raise DeliveryError(f"Cannot reply to {source_ref!r}") from exc
        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=message,
                reply_parameters=ReplyParameters(
                    message_id=message_id, allow_sending_without_reply=True,
                ),
            )
        except (BadRequest, Forbidden) as exc:
            logger.warning("Acknowledgement for %s failed: %s", source_ref, exc)
            return False
        return True
