"""Router — owns the channel adapters, the message handler and their lifecycle.

One router fronts any number of adapters (one per channel). It installs a
single message handler on all of them, starts and stops them concurrently,
and exposes cross-channel send and broadcast.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from omnirouter.channels.base import ChannelAdapter, Context, MessageHandler, NormalizedMessage, ReplyService
from omnirouter.errors import ConfigurationError, NotFoundError
from omnirouter.log import component_logger

# async error_handler(error, message, context) -> reply text
ErrorHandler = Callable[[Exception, NormalizedMessage, Context], Awaitable[str | None]]


class RouterState(str, Enum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"


@dataclass
class BroadcastResult:
    """Outcome of broadcasting to one adapter.

    `reason` is set when the adapter cannot broadcast at all, `error` when
    it tried and failed.
    """

    channel: str
    success: bool
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class Router:
    """Routes every channel's messages through one handler.

    Usage::

        router = Router(
            reply_service=PortkeyReplyService(...),
            project_id="support",
            default_bot_id="helpdesk",
            adapters=[TelegramAdapter(token=...), SlackAdapter(...)],
        )

        async def handle(message, context):
            if message.content == "/ping":
                return "Pong!"
            return await context["adapter"].default_reply(message)

        router.on_message(handle)
        await router.start()
    """

    def __init__(
        self,
        reply_service: ReplyService,
        project_id: str | None = None,
        adapters: Iterable[ChannelAdapter] = (),
        default_bot_id: str | None = None,
        on_error: ErrorHandler | None = None,
        enable_logging: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        if reply_service is None:
            raise ConfigurationError("reply_service is required")

        self.reply_service = reply_service
        self.project_id = project_id
        self.default_bot_id = default_bot_id
        self.logger = component_logger("omnirouter.router", logger=logger, enabled=enable_logging)

        self._adapters: list[ChannelAdapter] = []
        self._handler: MessageHandler | None = None
        self._wrapped_handler: MessageHandler | None = None
        self._error_handler: ErrorHandler | None = on_error
        self.state = RouterState.UNSTARTED

        for adapter in adapters:
            self._register(adapter)

    @property
    def is_started(self) -> bool:
        return self.state is RouterState.STARTED

    @property
    def adapters(self) -> list[ChannelAdapter]:
        """Registered adapters in registration order."""
        return list(self._adapters)

    # ── Handlers ──

    def on_message(self, handler: MessageHandler) -> Router:
        """Install the message handler on every current and future adapter.

        Exceptions raised by `handler` are offered to the error handler
        installed at the time of the failure. If there is none, or it raises
        too, the original exception reaches the adapter, which answers with
        its fallback error message.
        """
        self._handler = handler

        async def wrapped(message: NormalizedMessage, context: Context) -> str | None:
            ctx = dict(context)
            ctx["router"] = self
            ctx["reply_service"] = self.reply_service
            try:
                return await handler(message, ctx)
            except Exception as error:
                error_handler = self._error_handler
                if error_handler is None:
                    raise
                try:
                    return await error_handler(error, message, ctx)
                except Exception:
                    self.logger.exception("Error handler failed on %s", ctx.get("channel"))
                raise error

        self._wrapped_handler = wrapped
        for adapter in self._adapters:
            adapter.set_message_handler(wrapped)
        return self

    def on_error(self, handler: ErrorHandler | None) -> Router:
        """Install or replace the error handler; applies to the next message."""
        self._error_handler = handler
        return self

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start every adapter concurrently and wait for all of them.

        Adapters that are already running are left alone. If any adapter
        fails, the others still get to start, the router stays unstarted and
        the first failure is re-raised.
        """
        if self.state in (RouterState.STARTED, RouterState.STARTING):
            self.logger.warning("Already started")
            return

        self.state = RouterState.STARTING
        pending = [a for a in self._adapters if not a.is_started]
        self.logger.info("Starting %d adapters...", len(pending))

        results = await asyncio.gather(
            *(self._start_adapter(a) for a in pending), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]

        if failures:
            self.state = RouterState.UNSTARTED
            self.logger.error("Failed to start %d of %d adapters", len(failures), len(pending))
            raise failures[0]

        self.state = RouterState.STARTED
        self.logger.info("All adapters started successfully")

    async def _start_adapter(self, adapter: ChannelAdapter) -> None:
        try:
            await adapter.start()
        except Exception:
            self.logger.exception("✗ %s adapter failed to start", adapter.channel_name)
            raise
        self.logger.info("✓ %s adapter started", adapter.channel_name)

    async def stop(self) -> None:
        """Stop every adapter concurrently. Never raises."""
        self.state = RouterState.STOPPING
        self.logger.info("Stopping all adapters...")

        await asyncio.gather(*(self._stop_adapter(a) for a in self._adapters))

        self.state = RouterState.UNSTARTED
        self.logger.info("All adapters stopped")

    async def _stop_adapter(self, adapter: ChannelAdapter) -> None:
        try:
            await adapter.stop()
            self.logger.info("✓ %s adapter stopped", adapter.channel_name)
        except Exception:
            self.logger.exception("Error stopping %s", adapter.channel_name)

    # ── Membership ──

    def get_adapter(self, channel_name: str) -> ChannelAdapter | None:
        for adapter in self._adapters:
            if adapter.channel_name == channel_name:
                return adapter
        return None

    def _register(self, adapter: ChannelAdapter) -> None:
        """Resolve an adapter's defaults and append it. Never overwrites."""
        if self.get_adapter(adapter.channel_name) is not None:
            raise ConfigurationError(f'Channel "{adapter.channel_name}" is already registered')

        if adapter.reply_service is None:
            adapter.reply_service = self.reply_service
        if not adapter.bot_id and self.default_bot_id:
            adapter.bot_id = self.default_bot_id
        if not adapter.bot_id:
            raise ConfigurationError(
                f'Channel "{adapter.channel_name}" has no bot_id and the router has no default_bot_id'
            )

        if self._wrapped_handler is not None:
            adapter.set_message_handler(self._wrapped_handler)

        self._adapters.append(adapter)
        self.logger.info("Registered %s adapter", adapter.channel_name)

    async def add_adapter(self, adapter: ChannelAdapter) -> None:
        """Register an adapter; start it right away if the router is running.

        If that start fails the adapter is unregistered again and the error
        is re-raised.
        """
        self._register(adapter)
        if not self.is_started:
            return
        try:
            await self._start_adapter(adapter)
        except Exception:
            self._adapters.remove(adapter)
            raise

    async def remove_adapter(self, channel_name: str) -> None:
        """Stop (best effort) and unregister an adapter.

        Raises:
            NotFoundError: no adapter is registered under `channel_name`.
        """
        adapter = self.get_adapter(channel_name)
        if adapter is None:
            raise NotFoundError(channel_name)

        await self._stop_adapter(adapter)
        self._adapters.remove(adapter)
        self.logger.info("Removed %s adapter", channel_name)

    # ── Outbound ──

    async def send_message(self, channel_name: str, recipient: Any, message: str) -> Any:
        """Send an out-of-band message through one channel.

        Raises:
            NotFoundError: the channel is not registered.
            DeliveryError: the adapter failed to deliver.
        """
        adapter = self.get_adapter(channel_name)
        if adapter is None:
            raise NotFoundError(channel_name)
        return await adapter.send_message(recipient, message)

    async def broadcast(
        self, message: str, channels: Iterable[str] | str | None = None
    ) -> list[BroadcastResult]:
        """Best-effort fan-out to all adapters, or only the named channels.

        `channels` may also be a single channel name.
        """
        if isinstance(channels, str):
            channels = [channels]
        names = set(channels or ())
        targets = [a for a in self._adapters if not names or a.channel_name in names]
        return list(await asyncio.gather(*(self._broadcast_one(a, message) for a in targets)))

    async def _broadcast_one(self, adapter: ChannelAdapter, message: str) -> BroadcastResult:
        broadcast = getattr(adapter, "broadcast", None)
        if not callable(broadcast):
            return BroadcastResult(
                channel=adapter.channel_name, success=False, reason="broadcast not supported"
            )
        try:
            await broadcast(message)
        except Exception as e:
            self.logger.warning("Broadcast to %s failed: %s", adapter.channel_name, e)
            return BroadcastResult(channel=adapter.channel_name, success=False, error=str(e))
        return BroadcastResult(channel=adapter.channel_name, success=True)

    # ── Status ──

    def get_status(self) -> dict[str, Any]:
        return {
            "is_started": self.is_started,
            "adapters": [a.get_status() for a in self._adapters],
            "project_id": self.project_id,
            "default_bot_id": self.default_bot_id,
        }
