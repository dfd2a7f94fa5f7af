"""WhatsApp channel adapter — WhatsApp Cloud API (Meta Graph API).

Inbound messages arrive on a webhook served by this adapter; replies go
out through the Graph API with httpx.

To enable:
1. Create a WhatsApp app in Meta for Developers
2. Set WHATSAPP_ACCESS_TOKEN, the phone number id and a verify token
3. Point the app's webhook at http(s)://<host>:<port>/whatsapp/webhook
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
import hmac
import json
from functools import partial
from typing import Any

import httpx

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage, split_message
from omnirouter.channels.webhook import WebhookServer
from omnirouter.errors import ChannelConnectionError, ConfigurationError, DeliveryError

GRAPH_API = "https://graph.facebook.com/v19.0"

# WhatsApp text body limit
_WA_MAX_LEN = 4096


def _dicts(items: Any) -> list[dict]:
    """The dict members of a JSON list; anything else yields nothing."""
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def parse_webhook_payload(payload: dict[str, Any]) -> list[tuple[dict, dict[str, str]]]:
    """Flatten a webhook payload into (message, contact-name map) pairs.

    Status updates (delivered/read receipts) carry no messages and yield
    nothing. Malformed entries, changes and messages are skipped.
    """
    events: list[tuple[dict, dict[str, str]]] = []
    if not isinstance(payload, dict):
        return events
    for entry in _dicts(payload.get("entry")):
        for change in _dicts(entry.get("changes")):
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            contacts = {}
            for c in _dicts(value.get("contacts")):
                profile = c.get("profile")
                name = profile.get("name") if isinstance(profile, dict) else None
                contacts[c.get("wa_id", "")] = name or c.get("wa_id", "")
            for message in _dicts(value.get("messages")):
                events.append((message, contacts))
    return events


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Cloud API adapter.

    `allowed_contacts` restricts which phone numbers (wa_id) get answers;
    empty means everybody.
    """

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        verify_token: str,
        app_secret: str | None = None,
        allowed_contacts: list[str] | None = None,
        host: str = "0.0.0.0",
        port: int = 5001,
        webhook_path: str = "/whatsapp/webhook",
        http_client: httpx.AsyncClient | None = None,
        **base_options: Any,
    ) -> None:
        base_options.setdefault("channel_name", "whatsapp")
        super().__init__(**base_options)

        if not access_token:
            raise ConfigurationError("WhatsApp access_token is required")
        if not phone_number_id:
            raise ConfigurationError("WhatsApp phone_number_id is required")
        if not verify_token:
            raise ConfigurationError("WhatsApp verify_token is required")

        self._access_token = access_token
        self.phone_number_id = phone_number_id
        self._verify_token = verify_token
        self._app_secret = app_secret
        self.allowed_contacts = list(allowed_contacts or [])
        self.host = host
        self.port = port
        self.webhook_path = webhook_path
        self._http = http_client
        self._owns_http = http_client is None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._server: WebhookServer | None = None
        self._app: Any = None

    # ── Webhook ──

    def _create_app(self):
        from flask import Flask, Response, request

        app = Flask(f"omnirouter-{self.channel_name}")

        @app.route(self.webhook_path, methods=["GET"])
        def verify():
            mode = request.args.get("hub.mode")
            token = request.args.get("hub.verify_token")
            challenge = request.args.get("hub.challenge", "")
            if mode == "subscribe" and hmac.compare_digest(token or "", self._verify_token):
                self.logger.info("Webhook verified")
                return Response(challenge, status=200, mimetype="text/plain")
            return Response(status=403)

        @app.route(self.webhook_path, methods=["POST"])
        def inbound():
            body = request.get_data()
            if not self.signature_valid(body, request.headers.get("X-Hub-Signature-256", "")):
                return Response(status=403)
            if self._loop is None:
                return Response(status=503)

            try:
                payload = json.loads(body or b"{}")
            except json.JSONDecodeError:
                return Response(status=400)
            if not isinstance(payload, dict):
                return Response(status=400)

            # Acknowledge right away; Meta retries slow webhooks
            future = asyncio.run_coroutine_threadsafe(self.process_payload(payload), self._loop)
            future.add_done_callback(self._log_payload_failure)
            return Response(status=200)

        self._app = app
        return app

    @property
    def app(self):
        if self._app is None:
            self._create_app()
        return self._app

    def signature_valid(self, body: bytes, signature: str) -> bool:
        """Check Meta's X-Hub-Signature-256 header; always valid without app_secret."""
        if not self._app_secret:
            return True
        expected = "sha256=" + hmac.new(self._app_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature, expected)

    def _log_payload_failure(self, future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error("Failed to process webhook payload", exc_info=error)

    async def process_payload(self, payload: dict[str, Any]) -> None:
        """Handle every message of a webhook payload, one after another."""
        for message, contacts in parse_webhook_payload(payload):
            sender = message.get("from", "")
            await self._dispatch(
                {"message": message, "contacts": contacts},
                partial(self._send_text, sender),
                whatsapp_message=message,
            )

    # ── Adapter contract ──

    def normalize(self, event: dict[str, Any]) -> NormalizedMessage | None:
        message = event["message"]
        sender = message.get("from", "")
        if not sender:
            return None
        if self.allowed_contacts and sender not in self.allowed_contacts:
            return None
        if message.get("type") != "text":
            return None
        text = message.get("text")
        body = text.get("body") if isinstance(text, dict) else None
        if not isinstance(body, str):
            return None

        return NormalizedMessage(
            content=body,
            user_id=sender,
            user_name=event.get("contacts", {}).get(sender),
            metadata={
                "chat_id": sender,
                "message_id": message.get("id"),
                "timestamp": message.get("timestamp"),
            },
        )

    async def _send_text(self, to: str, text: str) -> list[dict]:
        if self._http is None:
            raise RuntimeError("WhatsApp adapter is not started")
        results = []
        for chunk in split_message(text, _WA_MAX_LEN):
            resp = await self._http.post(
                f"/{self.phone_number_id}/messages",
                json={
                    "messaging_product": "whatsapp",
                    "recipient_type": "individual",
                    "to": to,
                    "type": "text",
                    "text": {"preview_url": False, "body": chunk},
                },
            )
            resp.raise_for_status()
            results.append(resp.json())
        return results

    async def start(self) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=GRAPH_API,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=30.0,
            )

        # Fail fast on a bad token or phone number id
        try:
            resp = await self._http.get(f"/{self.phone_number_id}")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            await self._close_http()
            raise ChannelConnectionError(self.channel_name, f"Graph API check failed: {e}") from e

        self._loop = asyncio.get_running_loop()
        self._server = WebhookServer(self.app, self.host, self.port, name=self.channel_name)
        try:
            self._server.start()
        except OSError as e:
            self._server = None
            self._loop = None
            await self._close_http()
            raise ChannelConnectionError(
                self.channel_name, f"Cannot listen on {self.host}:{self.port}: {e}"
            ) from e

        self.is_started = True
        self.logger.info("WhatsApp connected (phone_number_id=%s)", self.phone_number_id)

    async def _close_http(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def stop(self) -> None:
        if self._server is not None:
            await asyncio.to_thread(self._server.stop)
            self._server = None
        self._loop = None
        await self._close_http()
        await super().stop()

    async def send_message(self, recipient: str, message: str) -> list[dict]:
        try:
            return await self._send_text(recipient, message)
        except Exception as e:
            self.logger.error("Failed to send message to %s: %s", recipient, e)
            raise DeliveryError(recipient, e) from e

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["allowed_contacts"] = len(self.allowed_contacts)
        status["has_allow_list"] = bool(self.allowed_contacts)
        status["phone_number_id"] = self.phone_number_id
        return status
