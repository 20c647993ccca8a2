"""Tests for src.adapters.telegram_notifier — Telegram delivery adapter."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from telegram.error import BadRequest, Forbidden, NetworkError

from src.adapters.telegram_notifier import TelegramNotifier, make_source_ref, split_source_ref
from src.ports.notification_port import DeliveryError


def _bot(side_effect=None):
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=side_effect)
    return bot


class TestSourceRef:
    def test_round_trip(self):
        assert split_source_ref(make_source_ref(-1001234, 42)) == ("-1001234", 42)

    @pytest.mark.parametrize("raw", ["", "42", "-100:", "-100:abc"])
    def test_malformed(self, raw):
        with pytest.raises(ValueError):
            split_source_ref(raw)


class TestDeliver:
    @pytest.mark.asyncio
    async def test_success(self):
        bot = _bot()
        assert await TelegramNotifier(bot).deliver("111", "hello") is True
        bot.send_message.assert_awaited_once_with(chat_id="111", text="hello")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [BadRequest("Chat not found"), Forbidden("bot was blocked by the user")])
    async def test_rejected(self, error):
        assert await TelegramNotifier(_bot(error)).deliver("111", "hello") is False

    @pytest.mark.asyncio
    async def test_network_error_propagates(self):
        with pytest.raises(NetworkError):
            await TelegramNotifier(_bot(NetworkError("Bad Gateway"))).deliver("111", "hello")


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_replies_to_source_message(self):
        bot = _bot()
        assert await TelegramNotifier(bot).acknowledge("-1001:42", "tracked") is True
        kwargs = bot.send_message.call_args.kwargs
        assert kwargs["chat_id"] == "-1001"
        assert kwargs["reply_parameters"].message_id == 42

    @pytest.mark.asyncio
    async def test_malformed_ref(self):
        with pytest.raises(DeliveryError):
            await TelegramNotifier(_bot()).acknowledge("conduit-thread", "tracked")

    @pytest.mark.asyncio
    async def test_rejected(self):
        assert await TelegramNotifier(_bot(BadRequest("Message to reply not found"))).acknowledge(
            "-1001:42", "tracked",
        ) is False
