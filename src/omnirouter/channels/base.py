"""Abstract base class for channel adapters.

Each channel normalizes incoming platform events into a `NormalizedMessage`
and hands it to `handle_message`, which either calls the handler installed
by the router or falls back to the default reply path (the reply service,
with retry). Adapters run on the router's asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Protocol

from omnirouter.errors import ConfigurationError, InvalidResponseError, ReplyServiceError
from omnirouter.log import component_logger

DEFAULT_ERROR_MESSAGE = "Sorry, I encountered an error processing your message."

# Reply service retry policy: 3 attempts, sleeping 1s then 2s between them
REPLY_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0

_sleep = asyncio.sleep

# Context passed alongside a message: {"channel", "adapter", ...extras}
Context = dict[str, Any]

# async handler(message, context) -> reply text, or None to send nothing
MessageHandler = Callable[["NormalizedMessage", Context], Awaitable[str | None]]

# async deliver(text) -> None, supplied per event by the concrete adapter
Deliver = Callable[[str], Awaitable[Any]]


class ReplyService(Protocol):
    """Request/response backend that turns a message into a reply.

    Success responses look like ``{"response": {"chat": {"reply": "..."}}}``,
    failures like ``{"err": ...}``.
    """

    async def chat(self, request: dict[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class NormalizedMessage:
    """Channel-agnostic inbound message.

    Attributes:
        content: The message text.
        user_id: Sender identity, unique within one channel only.
        user_name: Display label; defaults to `user_id`.
        metadata: Channel-specific context (ids, flags). Read-only.
    """

    content: str
    user_id: str
    user_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.user_name:
            object.__setattr__(self, "user_name", self.user_id)
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


def split_message(text: str, max_len: int) -> list[str]:
    """Split long text into chunks that fit a platform's message limit."""
    if len(text) <= max_len:
        return [text]
    chunks: list[str] = []
    while text:
        if len(text) <= max_len:
            chunks.append(text)
            break
        # Try to split at last newline before limit
        split_at = text.rfind("\n", 0, max_len)
        if split_at <= 0:
            split_at = max_len
        chunks.append(text[:split_at])
        text = text[split_at:].lstrip("\n")
    return chunks


def extract_reply(response: Any) -> str:
    """Pull the reply text out of a successful reply service response."""
    try:
        reply = response["response"]["chat"]["reply"]
    except (KeyError, TypeError) as e:
        raise InvalidResponseError(f"No reply in reply service response: {response!r}") from e
    if reply is None:
        raise InvalidResponseError(f"No reply in reply service response: {response!r}")
    return reply


class ChannelAdapter(ABC):
    """Base interface for all channel adapters.

    Subclasses implement `start`, `send_message` and `normalize`, call
    `super().stop()` from their own `stop`, and feed every platform event
    through `_dispatch` with a channel-appropriate `deliver` coroutine.
    """

    def __init__(
        self,
        channel_name: str,
        reply_service: ReplyService | None = None,
        bot_id: str | None = None,
        model: str | None = None,
        source_ids: list[str] | None = None,
        tags: list[str] | None = None,
        top: int | None = None,
        max_reply_tokens: int | None = None,
        provider_key: str | None = None,
        error_message: str = DEFAULT_ERROR_MESSAGE,
        enable_logging: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.channel_name = channel_name
        # Either may be None here; Router registration fills them in
        self.reply_service = reply_service
        self.bot_id = bot_id
        self.model = model
        self.source_ids = list(source_ids or [])
        self.tags = list(tags or [])
        self.top = top
        self.max_reply_tokens = max_reply_tokens
        self.provider_key = provider_key
        self.error_message = error_message
        self.message_handler: MessageHandler | None = None
        self.is_started = False
        self.logger = component_logger(
            f"omnirouter.channels.{channel_name}", logger=logger, enabled=enable_logging
        )

    # ── Lifecycle ──

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform. Returns once events can be received."""
        ...

    async def stop(self) -> None:
        """Release platform resources. Safe to call on a stopped adapter."""
        self.is_started = False
        self.logger.info("Adapter stopped")

    # ── Outbound ──

    @abstractmethod
    async def send_message(self, recipient: Any, message: str) -> Any:
        """Deliver a message outside the normal reply flow.

        Raises:
            DeliveryError: the platform rejected or failed the send.
        """
        ...

    # ── Inbound ──

    @abstractmethod
    def normalize(self, event: Any) -> NormalizedMessage | None:
        """Convert a raw platform event, or return None to ignore it."""
        ...

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self.message_handler = handler

    async def handle_message(
        self, message: NormalizedMessage, context: Context | None = None
    ) -> str | None:
        """Produce the reply for a message. None means send nothing."""
        if self.message_handler is not None:
            ctx = dict(context or {})
            ctx["channel"] = self.channel_name
            ctx["adapter"] = self
            return await self.message_handler(message, ctx)
        return await self.default_reply(message)

    async def default_reply(self, message: NormalizedMessage) -> str:
        """Ask the reply service, keyed by this channel and the sender."""
        return await self.process_message(message.content, self.chat_id_for(message.user_id))

    def chat_id_for(self, user_id: str) -> str:
        """Conversation id for a sender; stable across messages."""
        return f"{self.channel_name}-{user_id}"

    def build_request(self, content: str, chat_id: str, **overrides: Any) -> dict[str, Any]:
        """Build a reply service request from channel defaults and overrides."""
        request: dict[str, Any] = {
            "bot_id": self.bot_id,
            "model": overrides.get("model") or self.model,
            "provider_key": overrides.get("provider_key") or self.provider_key,
            "message": content,
            "source_ids": overrides.get("source_ids") or self.source_ids,
            "tags": overrides.get("tags") or self.tags,
            "top": overrides.get("top") or self.top,
            "max_reply_tokens": overrides.get("max_reply_tokens") or self.max_reply_tokens,
            "chat_id": chat_id,
            "channel": self.channel_name,
            "stream": False,
        }
        return {k: v for k, v in request.items() if v is not None and v != []}

    async def process_message(self, content: str, chat_id: str, **overrides: Any) -> str:
        """Call the reply service with retry and return the reply text.

        Transport failures and ``err`` responses are retried with exponential
        backoff; a response without a reply payload fails immediately.

        Raises:
            ReplyServiceError: the service kept answering with ``err``.
            InvalidResponseError: the response had no reply payload.
        """
        if self.reply_service is None:
            raise ConfigurationError(f"Adapter '{self.channel_name}' has no reply service")

        request = self.build_request(content, chat_id, **overrides)

        attempt = 0
        while True:
            try:
                response = await self.reply_service.chat(request)
                if isinstance(response, Mapping) and response.get("err"):
                    raise ReplyServiceError(response["err"])
            except Exception as e:
                if attempt == REPLY_ATTEMPTS - 1:
                    self.logger.error("Reply service failed after %d attempts: %s", REPLY_ATTEMPTS, e)
                    raise
                delay = RETRY_BASE_DELAY * 2 ** attempt
                self.logger.warning(
                    "Reply service attempt %d failed (%s), retrying in %.0fs", attempt + 1, e, delay
                )
                await _sleep(delay)
                attempt += 1
                continue

            return extract_reply(response)

    async def _dispatch(self, event: Any, deliver: Deliver, **extras: Any) -> str | None:
        """Run one platform event through normalize → handle → deliver.

        Any failure is logged and answered with `error_message`; a failure to
        send that fallback is logged and swallowed. Returns the delivered
        reply, if any.
        """
        try:
            message = self.normalize(event)
            if message is None or not message.content.strip():
                return None

            reply = await self.handle_message(message, extras)
            if reply is None:
                return None

            await deliver(reply)
            return reply
        except Exception:
            self.logger.exception("Error handling message")
            try:
                await deliver(self.error_message)
            except Exception:
                self.logger.exception("Failed to send error message")
            return None

    # ── Status ──

    def get_status(self) -> dict[str, Any]:
        return {
            "channel": self.channel_name,
            "is_started": self.is_started,
            "bot_id": self.bot_id,
            "model": self.model,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} channel={self.channel_name} started={self.is_started}>"
