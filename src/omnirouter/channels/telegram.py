"""Telegram channel adapter.

Requires python-telegram-bot: install with `pip install omnirouter[telegram]`

To enable:
1. Create a bot with @BotFather and set TELEGRAM_BOT_TOKEN in .env
2. Enable the "telegram" channel in config.json (or pass --channel telegram)
"""

from __future__ import annotations

from functools import partial
from typing import Any

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage, split_message
from omnirouter.errors import ChannelConnectionError, ConfigurationError, DeliveryError

# Telegram message limit is 4096 characters
_TG_MAX_LEN = 4096

DEFAULT_WELCOME = "Hello! How can I help you today?"


class TelegramAdapter(ChannelAdapter):
    """Telegram bot adapter using long polling (no webhook / no deploy needed).

    Each Telegram user gets their own conversation on the reply service.
    `/start` is answered with `welcome_message`; ``{name}`` is replaced with
    the user's first name.
    """

    def __init__(
        self,
        token: str,
        welcome_message: str = DEFAULT_WELCOME,
        **base_options: Any,
    ) -> None:
        base_options.setdefault("channel_name", "telegram")
        super().__init__(**base_options)

        if not token:
            raise ConfigurationError("Telegram token is required")

        self._token = token
        self.welcome_message = welcome_message
        self.bot_username: str | None = None
        self._app: Any = None

    async def start(self) -> None:
        """Initialize the bot and begin polling; returns once polling runs."""
        try:
            from telegram.ext import ApplicationBuilder, MessageHandler, filters
        except ImportError:
            raise ImportError(
                "python-telegram-bot is required for the Telegram channel.\n"
                "Install with: pip install omnirouter[telegram]"
            )

        app = ApplicationBuilder().token(self._token).build()
        app.add_handler(MessageHandler(filters.TEXT, self._on_update))

        try:
            # initialize() calls getMe, so a bad token fails here
            await app.initialize()
            await app.start()
            await app.updater.start_polling(drop_pending_updates=True)
        except Exception as e:
            try:
                await self._shutdown(app)
            except Exception:
                self.logger.warning("Cleanup after failed start raised", exc_info=True)
            raise ChannelConnectionError(self.channel_name, f"Telegram login failed: {e}") from e

        self._app = app
        self.bot_username = app.bot.username
        self.is_started = True
        self.logger.info("Telegram connected as @%s", self.bot_username)

    async def _on_update(self, update: Any, context: Any = None) -> None:
        message = update.effective_message
        if message is None:
            return
        chat_id = message.chat_id

        if (message.text or "").strip().split("@")[0] == "/start":
            await self._greet(message)
            return

        try:
            await self._app.bot.send_chat_action(chat_id=chat_id, action="typing")
        except Exception:
            self.logger.debug("Could not send typing action", exc_info=True)

        await self._dispatch(
            message,
            partial(self._send, chat_id),
            telegram_update=update,
            client=self._app.bot,
        )

    async def _greet(self, message: Any) -> None:
        user = message.from_user
        if user is None or user.is_bot:
            return
        greeting = self.welcome_message.replace("{name}", user.first_name or "")
        try:
            await self._send(message.chat_id, greeting)
        except Exception:
            self.logger.exception("Failed to send welcome message")

    def normalize(self, message: Any) -> NormalizedMessage | None:
        user = message.from_user
        if user is None or user.is_bot:
            return None
        if not message.text:
            return None

        return NormalizedMessage(
            content=message.text,
            user_id=str(user.id),
            user_name=user.username or user.first_name,
            metadata={
                "chat_id": message.chat_id,
                "message_id": message.message_id,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "chat_type": message.chat.type,
            },
        )

    async def _send(self, chat_id: int | str, text: str) -> list[Any]:
        if self._app is None:
            raise RuntimeError("Telegram adapter is not started")
        # Split long responses to fit Telegram's 4096 char limit
        return [
            await self._app.bot.send_message(chat_id=chat_id, text=chunk)
            for chunk in split_message(text, _TG_MAX_LEN)
        ]

    async def send_message(self, recipient: int | str, message: str) -> list[Any]:
        try:
            return await self._send(recipient, message)
        except Exception as e:
            self.logger.error("Failed to send message to chat %s: %s", recipient, e)
            raise DeliveryError(recipient, e) from e

    @staticmethod
    async def _shutdown(app: Any) -> None:
        """Undo whatever part of initialize/start/start_polling succeeded."""
        if app.updater is not None and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()

    async def stop(self) -> None:
        app, self._app = self._app, None
        if app is not None:
            self.logger.info("Telegram channel stopping...")
            await self._shutdown(app)
        await super().stop()

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["username"] = self.bot_username
        return status
