"""Web chat channel — HTTP backend for an embedded live-chat widget.

Endpoints:
    POST /chat                      — Send a visitor message, get the reply
    GET  /chat/<user_id>/messages   — Poll out-of-band messages for a visitor
    POST /operator/status           — Mark human operators online/offline
    GET  /operator/messages         — Drain visitor messages waiting for an operator
    POST /operator/messages         — Operator reply to a visitor
    GET  /health                    — Health check

Replies to `POST /chat` are returned in the response body. Messages sent
with `send_message` or `broadcast` are queued per visitor until the widget
polls for them.

With `only_when_offline` (the default) the bot only answers while no
operator is online. Otherwise visitor messages are handed off to the
operator inbox and the chat response carries ``"handoff": true``.
"""

from __future__ import annotations

import asyncio
import hmac
import threading
from collections import OrderedDict, deque
from typing import Any

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage
from omnirouter.channels.webhook import WebhookServer, run_on_loop
from omnirouter.errors import ChannelConnectionError, DeliveryError

DEFAULT_REPLY_TIMEOUT = 120.0
MAX_MESSAGE_LEN = 4000
# Oldest visitor is forgotten past this many; oldest queued message dropped past the other
DEFAULT_MAX_VISITORS = 1000
DEFAULT_MAX_QUEUED = 100


class WebChatAdapter(ChannelAdapter):
    """Flask-based live-chat channel.

    Usage::

        adapter = WebChatAdapter(port=5000, bot_id="helpdesk")
        router.add_adapter(adapter)   # the router starts the HTTP server
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 5000,
        reply_timeout: float = DEFAULT_REPLY_TIMEOUT,
        only_when_offline: bool = True,
        operator_token: str | None = None,
        max_visitors: int = DEFAULT_MAX_VISITORS,
        max_queued: int = DEFAULT_MAX_QUEUED,
        **base_options: Any,
    ) -> None:
        base_options.setdefault("channel_name", "webchat")
        super().__init__(**base_options)
        self.host = host
        self.port = port
        self.reply_timeout = reply_timeout
        self.only_when_offline = only_when_offline
        self.operators_online = False
        self.operator_token = operator_token
        self.max_visitors = max_visitors
        self.max_queued = max_queued
        self._loop: asyncio.AbstractEventLoop | None = None
        self._server: WebhookServer | None = None
        self._app: Any = None
        self._outboxes: OrderedDict[str, deque[str]] = OrderedDict()
        self._operator_inbox: deque[dict[str, Any]] = deque(maxlen=max_queued * 10)
        self._outbox_lock = threading.Lock()

    def _create_app(self):
        """Create the Flask application with routes."""
        from flask import Flask, jsonify, request

        app = Flask(f"omnirouter-{self.channel_name}")

        @app.route("/health", methods=["GET"])
        def health():
            return jsonify({
                "status": "ok",
                "channel": self.channel_name,
                "is_started": self.is_started,
            })

        @app.route("/chat", methods=["POST"])
        def chat():
            data = request.get_json(silent=True) or {}
            content = str(data.get("message", "")).strip()
            user_id = str(data.get("user_id") or "anonymous")

            if not content:
                return jsonify({"error": "message is required"}), 400
            if len(content) > MAX_MESSAGE_LEN:
                return jsonify({"error": "message is too long"}), 413
            if self._loop is None:
                return jsonify({"error": "channel is not running"}), 503

            self._ensure_outbox(user_id)

            if self.handing_off:
                with self._outbox_lock:
                    self._operator_inbox.append(
                        {"user_id": user_id, "user_name": data.get("user_name"), "message": content}
                    )
                self.logger.debug("Operator online, handing off message from %s", user_id)
                return jsonify({"reply": None, "handoff": True})

            replies: list[str] = []

            async def deliver(text: str) -> None:
                replies.append(text)

            event = {"message": content, "user_id": user_id, "user_name": data.get("user_name")}
            try:
                run_on_loop(
                    self._loop,
                    self._dispatch(event, deliver, http_request=data),
                    timeout=self.reply_timeout,
                )
            except TimeoutError:
                return jsonify({"error": "reply timed out"}), 504

            return jsonify({"reply": replies[-1] if replies else None})

        @app.route("/chat/<user_id>/messages", methods=["GET"])
        def poll(user_id: str):
            return jsonify({"messages": self._drain_outbox(user_id)})

        @app.route("/operator/status", methods=["POST"])
        def operator_status():
            if not self._operator_authorized(request.headers.get("Authorization", "")):
                return jsonify({"error": "unauthorized"}), 401
            data = request.get_json(silent=True)
            if not isinstance(data, dict) or not isinstance(data.get("online"), bool):
                return jsonify({"error": "online must be true or false"}), 400
            self.operators_online = data["online"]
            self.logger.info("Operators %s", "online" if self.operators_online else "offline")
            return jsonify({"operators_online": self.operators_online})

        @app.route("/operator/messages", methods=["GET"])
        def operator_inbox():
            if not self._operator_authorized(request.headers.get("Authorization", "")):
                return jsonify({"error": "unauthorized"}), 401
            with self._outbox_lock:
                messages = list(self._operator_inbox)
                self._operator_inbox.clear()
            return jsonify({"messages": messages})

        @app.route("/operator/messages", methods=["POST"])
        def operator_reply():
            if not self._operator_authorized(request.headers.get("Authorization", "")):
                return jsonify({"error": "unauthorized"}), 401
            data = request.get_json(silent=True)
            if not isinstance(data, dict) or not data.get("user_id") or not data.get("message"):
                return jsonify({"error": "user_id and message are required"}), 400
            if not self._queue(str(data["user_id"]), str(data["message"])):
                return jsonify({"error": "unknown visitor"}), 404
            return jsonify({"queued": True})

        self._app = app
        return app

    @property
    def app(self):
        """Expose the Flask app for testing."""
        if self._app is None:
            self._create_app()
        return self._app

    # ── Operator handoff ──

    @property
    def handing_off(self) -> bool:
        """True while visitor messages go to operators instead of the bot."""
        return self.only_when_offline and self.operators_online

    def _operator_authorized(self, header: str) -> bool:
        if not self.operator_token:
            return True
        return hmac.compare_digest(header, f"Bearer {self.operator_token}")

    # ── Visitor outboxes ──

    def _ensure_outbox(self, user_id: str) -> None:
        with self._outbox_lock:
            if user_id in self._outboxes:
                self._outboxes.move_to_end(user_id)
                return
            self._outboxes[user_id] = deque(maxlen=self.max_queued)
            while len(self._outboxes) > self.max_visitors:
                evicted, _ = self._outboxes.popitem(last=False)
                self.logger.debug("Forgetting idle visitor %s", evicted)

    def _queue(self, user_id: str, message: str) -> int | None:
        """Append to a visitor's outbox; returns its length, or None if unknown."""
        with self._outbox_lock:
            outbox = self._outboxes.get(user_id)
            if outbox is None:
                return None
            outbox.append(message)
            return len(outbox)

    def _drain_outbox(self, user_id: str) -> list[str]:
        with self._outbox_lock:
            outbox = self._outboxes.get(user_id)
            if outbox is None:
                return []
            self._outboxes.move_to_end(user_id)
            messages = list(outbox)
            outbox.clear()
            return messages

    @property
    def visitors(self) -> list[str]:
        with self._outbox_lock:
            return list(self._outboxes)

    # ── Adapter contract ──

    def normalize(self, event: dict[str, Any]) -> NormalizedMessage | None:
        if self.handing_off:
            return None
        content = event.get("message")
        if not content:
            return None
        return NormalizedMessage(
            content=content,
            user_id=event["user_id"],
            user_name=event.get("user_name"),
            metadata={"visitor_id": event["user_id"]},
        )

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._server = WebhookServer(self.app, self.host, self.port, name=self.channel_name)
        try:
            self._server.start()
        except OSError as e:
            self._server = None
            raise ChannelConnectionError(
                self.channel_name, f"Cannot listen on {self.host}:{self.port}: {e}"
            ) from e
        self.is_started = True
        self.logger.info("Web chat listening on %s:%d", self.host, self._server.port)

    async def stop(self) -> None:
        if self._server is not None:
            await asyncio.to_thread(self._server.stop)
            self._server = None
        self._loop = None
        with self._outbox_lock:
            self._outboxes.clear()
            self._operator_inbox.clear()
        await super().stop()

    async def send_message(self, recipient: str, message: str) -> dict[str, Any]:
        """Queue a message for a visitor who has chatted before."""
        queued = self._queue(recipient, message)
        if queued is None:
            raise DeliveryError(recipient, LookupError("unknown visitor"))
        return {"recipient": recipient, "queued": queued}

    async def broadcast(self, message: str) -> int:
        """Queue a message for every known visitor; returns how many."""
        with self._outbox_lock:
            for outbox in self._outboxes.values():
                outbox.append(message)
            return len(self._outboxes)

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["port"] = self._server.port if self._server else self.port
        status["visitors"] = len(self.visitors)
        status["only_when_offline"] = self.only_when_offline
        status["operators_online"] = self.operators_online
        return status
