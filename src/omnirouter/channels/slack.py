"""Slack channel adapter.

Requires slack-bolt: install with `pip install omnirouter[slack]`

Runs in Socket Mode when an app-level token (xapp-...) is given, otherwise
serves the Events API over HTTP on `port` (path /slack/events).
"""

from __future__ import annotations

import re
from typing import Any

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage
from omnirouter.errors import ChannelConnectionError, ConfigurationError, DeliveryError


class SlackAdapter(ChannelAdapter):
    """Slack app adapter built on slack-bolt's asyncio app.

    Replies are posted in the thread of the triggering message when it has
    one.
    """

    def __init__(
        self,
        token: str,
        signing_secret: str,
        app_token: str | None = None,
        host: str = "0.0.0.0",
        port: int = 3000,
        **base_options: Any,
    ) -> None:
        base_options.setdefault("channel_name", "slack")
        super().__init__(**base_options)

        if not token:
            raise ConfigurationError("Slack token is required")
        if not signing_secret:
            raise ConfigurationError("Slack signing_secret is required")

        self._token = token
        self._signing_secret = signing_secret
        self._app_token = app_token
        self.host = host
        self.port = port
        self.slack_bot_user_id: str | None = None
        self._app: Any = None
        self._socket_handler: Any = None
        self._runner: Any = None

    @property
    def socket_mode(self) -> bool:
        return bool(self._app_token)

    async def start(self) -> None:
        try:
            from slack_bolt.async_app import AsyncApp
            from slack_sdk.errors import SlackApiError
        except ImportError:
            raise ImportError(
                "slack-bolt is required for the Slack channel. "
                "Install with: pip install omnirouter[slack]"
            )

        app = AsyncApp(token=self._token, signing_secret=self._signing_secret)

        try:
            auth = await app.client.auth_test()
        except SlackApiError as e:
            raise ChannelConnectionError(self.channel_name, f"Slack auth failed: {e}") from e
        self.slack_bot_user_id = auth.get("user_id")

        @app.event("message")
        async def handle_message(event, say):
            await self._on_slack_message(event, say)

        self._app = app
        try:
            if self.socket_mode:
                from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler

                self._socket_handler = AsyncSocketModeHandler(app, self._app_token)
                await self._socket_handler.connect_async()
            else:
                from aiohttp import web

                self._runner = web.AppRunner(app.web_app(path="/slack/events", port=self.port))
                await self._runner.setup()
                await web.TCPSite(self._runner, self.host, self.port).start()
        except Exception as e:
            await self._teardown()
            raise ChannelConnectionError(self.channel_name, f"Slack listener failed: {e}") from e

        self.is_started = True
        self.logger.info(
            "Slack connected (%s)", "socket mode" if self.socket_mode else f"HTTP port {self.port}"
        )

    async def _on_slack_message(self, event: dict[str, Any], say: Any) -> None:
        thread_ts = event.get("thread_ts")

        async def deliver(text: str) -> None:
            if thread_ts:
                await say(text=text, thread_ts=thread_ts)
            else:
                await say(text=text)

        await self._dispatch(event, deliver, slack_event=event, say=say, client=self._app.client)

    def normalize(self, event: dict[str, Any]) -> NormalizedMessage | None:
        # Edits, joins, bot posts and our own messages all carry a subtype or bot_id
        if event.get("subtype") or event.get("bot_id"):
            return None
        user = event.get("user")
        if not user or user == self.slack_bot_user_id:
            return None

        text = event.get("text") or ""
        if self.slack_bot_user_id:
            text = re.sub(rf"<@{re.escape(self.slack_bot_user_id)}>", "", text)
        text = text.strip()
        if not text:
            return None

        return NormalizedMessage(
            content=text,
            user_id=user,
            user_name=event.get("username") or user,
            metadata={
                "channel": event.get("channel"),
                "thread_ts": event.get("thread_ts"),
                "ts": event.get("ts"),
                "channel_type": event.get("channel_type"),
            },
        )

    async def send_message(self, recipient: str, message: str) -> Any:
        """Post to a Slack channel or DM id."""
        try:
            if self._app is None:
                raise RuntimeError("Slack adapter is not started")
            return await self._app.client.chat_postMessage(channel=recipient, text=message)
        except Exception as e:
            self.logger.error("Failed to send message to channel %s: %s", recipient, e)
            raise DeliveryError(recipient, e) from e

    async def _teardown(self) -> None:
        handler, self._socket_handler = self._socket_handler, None
        runner, self._runner = self._runner, None
        if handler is not None:
            await handler.close_async()
        if runner is not None:
            await runner.cleanup()
        self._app = None

    async def stop(self) -> None:
        await self._teardown()
        await super().stop()

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["port"] = None if self.socket_mode else self.port
        status["socket_mode"] = self.socket_mode
        return status
