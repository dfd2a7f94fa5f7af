"""Discord channel adapter.

Requires discord.py: install with `pip install omnirouter[discord]`

To enable:
1. Set DISCORD_BOT_TOKEN in .env
2. Turn on the "Message Content" privileged intent for the bot
"""

from __future__ import annotations

import asyncio
from typing import Any

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage, split_message
from omnirouter.errors import ChannelConnectionError, ConfigurationError, DeliveryError

# Discord 2k char limit
_DISCORD_MAX_LEN = 2000


class DiscordAdapter(ChannelAdapter):
    """Discord bot adapter.

    Mentions are answered with a reply when `reply_on_mention` is set;
    otherwise the answer goes to the author's DMs when `reply_in_dms` is set
    (falling back to the channel if DMs are closed), else to the channel.
    """

    def __init__(
        self,
        token: str,
        discord_bot_id: str | None = None,
        reply_in_dms: bool = True,
        reply_on_mention: bool = True,
        **base_options: Any,
    ) -> None:
        base_options.setdefault("channel_name", "discord")
        super().__init__(**base_options)

        if not token:
            raise ConfigurationError("Discord token is required")

        self._token = token
        self.discord_bot_id = discord_bot_id
        self.reply_in_dms = reply_in_dms
        self.reply_on_mention = reply_on_mention
        self._client: Any = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Log in and wait for the gateway's READY event."""
        try:
            import discord
        except ImportError:
            raise ImportError(
                "discord.py is required for the Discord channel. "
                "Install with: pip install omnirouter[discord]"
            )

        intents = discord.Intents.default()
        intents.message_content = True
        client = discord.Client(intents=intents)

        @client.event
        async def on_message(message):
            await self._on_discord_message(message)

        try:
            await client.login(self._token)
        except Exception as e:
            await client.close()
            raise ChannelConnectionError(self.channel_name, f"Discord login failed: {e}") from e

        self._client = client
        self._task = asyncio.create_task(client.connect(), name="discord-gateway")
        ready = asyncio.create_task(client.wait_until_ready())
        done, _ = await asyncio.wait({self._task, ready}, return_when=asyncio.FIRST_COMPLETED)

        if ready not in done:
            ready.cancel()
            error = self._task.exception() if not self._task.cancelled() else None
            await client.close()
            self._client = None
            self._task = None
            raise ChannelConnectionError(
                self.channel_name, f"Discord gateway closed before ready: {error}"
            ) from error

        if not self.discord_bot_id:
            self.discord_bot_id = str(client.user.id)
        self.is_started = True
        self.logger.info("Discord connected as %s", client.user)

    def _is_mention(self, message: Any) -> bool:
        me = self._client.user if self._client else None
        return me is not None and any(u.id == me.id for u in message.mentions)

    async def _on_discord_message(self, message: Any) -> None:
        if self.normalize(message) is None:
            return

        try:
            await message.channel.typing()
        except Exception:
            self.logger.debug("Could not send typing indicator", exc_info=True)

        is_mention = self._is_mention(message)

        async def deliver(text: str) -> None:
            for chunk in split_message(text, _DISCORD_MAX_LEN):
                if is_mention and self.reply_on_mention:
                    await message.reply(chunk)
                elif self.reply_in_dms:
                    try:
                        await message.author.send(chunk)
                    except Exception:
                        # DMs closed; answer in the channel instead
                        await message.channel.send(chunk)
                else:
                    await message.channel.send(chunk)

        await self._dispatch(message, deliver, discord_message=message, client=self._client)

    def normalize(self, message: Any) -> NormalizedMessage | None:
        author = message.author
        if author.bot:
            return None
        if self.discord_bot_id and str(author.id) == str(self.discord_bot_id):
            return None
        if not message.content:
            return None

        guild = message.guild
        return NormalizedMessage(
            content=message.content,
            user_id=str(author.id),
            user_name=author.name,
            metadata={
                "channel_id": message.channel.id,
                "guild_id": guild.id if guild else None,
                "message_id": message.id,
                "is_mention": self._is_mention(message),
                "is_dm": guild is None,
            },
        )

    async def send_message(self, recipient: int | str, message: str) -> list[Any]:
        """DM a Discord user by id."""
        try:
            if self._client is None:
                raise RuntimeError("Discord adapter is not started")
            user = await self._client.fetch_user(int(recipient))
            return [await user.send(chunk) for chunk in split_message(message, _DISCORD_MAX_LEN)]
        except Exception as e:
            self.logger.error("Failed to send message to user %s: %s", recipient, e)
            raise DeliveryError(recipient, e) from e

    async def stop(self) -> None:
        client, self._client = self._client, None
        task, self._task = self._task, None
        if client is not None:
            await client.close()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self.logger.exception("Discord gateway ended with an error")
        await super().stop()

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        user = self._client.user if self._client else None
        status["username"] = str(user) if user else None
        status["user_id"] = self.discord_bot_id
        status["guild_count"] = len(self._client.guilds) if self._client else 0
        return status
