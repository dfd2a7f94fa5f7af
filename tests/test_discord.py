"""Tests for the Discord channel (gateway objects faked)."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeReplyService, ok
from omnirouter.channels.discord_ch import DiscordAdapter
from omnirouter.errors import ChannelConnectionError, ConfigurationError, DeliveryError

BOT_USER = SimpleNamespace(id=999, name="helper")


def _message(content="hello", author_id=42, bot=False, guild=True, mentions=()):
    return SimpleNamespace(
        id=555,
        content=content,
        author=SimpleNamespace(id=author_id, name="ada", bot=bot, send=AsyncMock()),
        channel=SimpleNamespace(id=10, send=AsyncMock(), typing=AsyncMock()),
        guild=SimpleNamespace(id=77) if guild else None,
        mentions=list(mentions),
        reply=AsyncMock(),
    )


@pytest.fixture
def adapter():
    adapter = DiscordAdapter(
        token="token", discord_bot_id="999", reply_service=FakeReplyService(ok("Hello ada")), bot_id="helpdesk"
    )
    adapter._client = SimpleNamespace(
        user=BOT_USER, guilds=[object(), object()], fetch_user=AsyncMock(), close=AsyncMock()
    )
    return adapter


class TestConstruction:
    def test_requires_token(self):
        with pytest.raises(ConfigurationError):
            DiscordAdapter(token="")

    def test_defaults(self):
        adapter = DiscordAdapter(token="t")
        assert adapter.channel_name == "discord"
        assert adapter.reply_in_dms is True
        assert adapter.reply_on_mention is True


class TestNormalize:
    def test_guild_message(self, adapter):
        msg = adapter.normalize(_message())
        assert msg.content == "hello"
        assert msg.user_id == "42"
        assert msg.user_name == "ada"
        assert dict(msg.metadata) == {
            "channel_id": 10,
            "guild_id": 77,
            "message_id": 555,
            "is_mention": False,
            "is_dm": False,
        }

    def test_dm_and_mention_flags(self, adapter):
        msg = adapter.normalize(_message(guild=False, mentions=[BOT_USER]))
        assert msg.metadata["is_dm"] is True
        assert msg.metadata["guild_id"] is None
        assert msg.metadata["is_mention"] is True

    def test_bots_ignored(self, adapter):
        assert adapter.normalize(_message(bot=True)) is None

    def test_own_messages_ignored(self, adapter):
        assert adapter.normalize(_message(author_id=999)) is None

    def test_empty_ignored(self, adapter):
        assert adapter.normalize(_message(content="")) is None


class TestReplies:
    @pytest.mark.asyncio
    async def test_mention_gets_reply(self, adapter):
        message = _message(mentions=[BOT_USER])
        await adapter._on_discord_message(message)
        message.channel.typing.assert_awaited_once()
        message.reply.assert_awaited_once_with("Hello ada")
        message.author.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_plain_message_goes_to_dm(self, adapter):
        message = _message()
        await adapter._on_discord_message(message)
        message.author.send.assert_awaited_once_with("Hello ada")
        message.channel.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_dms_fall_back_to_channel(self, adapter):
        message = _message()
        message.author.send.side_effect = RuntimeError("Cannot send messages to this user")
        await adapter._on_discord_message(message)
        message.channel.send.assert_awaited_once_with("Hello ada")

    @pytest.mark.asyncio
    async def test_channel_reply_when_dms_disabled(self, adapter):
        adapter.reply_in_dms = False
        message = _message()
        await adapter._on_discord_message(message)
        message.channel.send.assert_awaited_once_with("Hello ada")

    @pytest.mark.asyncio
    async def test_ignored_message_not_processed(self, adapter):
        message = _message(bot=True)
        await adapter._on_discord_message(message)
        message.channel.typing.assert_not_awaited()
        assert adapter.reply_service.requests == []

    @pytest.mark.asyncio
    async def test_long_reply_chunked(self, adapter):
        adapter.reply_service = FakeReplyService(ok("z" * 4500))
        message = _message()
        await adapter._on_discord_message(message)
        assert [len(c.args[0]) for c in message.author.send.call_args_list] == [2000, 2000, 500]

    @pytest.mark.asyncio
    async def test_conversation_per_user(self, adapter):
        await adapter._on_discord_message(_message(author_id=1))
        await adapter._on_discord_message(_message(author_id=2))
        assert [r["chat_id"] for r in adapter.reply_service.requests] == ["discord-1", "discord-2"]


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_dm_by_user_id(self, adapter):
        user = SimpleNamespace(send=AsyncMock(return_value="sent"))
        adapter._client.fetch_user.return_value = user
        assert await adapter.send_message("42", "Ping") == ["sent"]
        adapter._client.fetch_user.assert_awaited_once_with(42)

    @pytest.mark.asyncio
    async def test_unknown_user(self, adapter):
        adapter._client.fetch_user.side_effect = RuntimeError("Unknown User")
        with pytest.raises(DeliveryError):
            await adapter.send_message("42", "Ping")

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(DeliveryError):
            await DiscordAdapter(token="t").send_message("42", "Ping")


class TestLifecycle:
    def test_status(self, adapter):
        status = adapter.get_status()
        assert status["username"] == str(BOT_USER)
        assert status["user_id"] == "999"
        assert status["guild_count"] == 2

    @pytest.mark.asyncio
    async def test_stop(self, adapter):
        client = adapter._client
        adapter.is_started = True
        await adapter.stop()
        client.close.assert_awaited_once()
        assert adapter.is_started is False
        assert adapter.get_status()["guild_count"] == 0


async def _never_ready():
    await asyncio.Event().wait()


class TestStartFailure:
    @pytest.fixture
    def fake_client(self, monkeypatch):
        pytest.importorskip("discord")
        client = MagicMock(login=AsyncMock(), connect=AsyncMock(), close=AsyncMock())
        client.wait_until_ready = AsyncMock(side_effect=_never_ready)
        monkeypatch.setattr("discord.Client", MagicMock(return_value=client))
        return client

    @pytest.mark.asyncio
    async def test_bad_token(self, fake_client):
        import discord

        fake_client.login.side_effect = discord.LoginFailure("Improper token has been passed.")
        adapter = DiscordAdapter(token="bad")

        with pytest.raises(ChannelConnectionError) as exc_info:
            await adapter.start()

        assert isinstance(exc_info.value.__cause__, discord.LoginFailure)
        fake_client.close.assert_awaited_once()
        assert adapter.is_started is False

    @pytest.mark.asyncio
    async def test_network_error_during_login(self, fake_client):
        fake_client.login.side_effect = OSError("Cannot connect to host discord.com:443")
        adapter = DiscordAdapter(token="token")

        with pytest.raises(ChannelConnectionError):
            await adapter.start()

        fake_client.close.assert_awaited_once()
        assert adapter._client is None

    @pytest.mark.asyncio
    async def test_gateway_closes_before_ready(self, fake_client):
        fake_client.connect.side_effect = OSError("gateway unreachable")
        adapter = DiscordAdapter(token="token")

        with pytest.raises(ConnectionError):
            await adapter.start()

        fake_client.close.assert_awaited_once()
        assert adapter._client is None
        assert adapter.is_started is False
