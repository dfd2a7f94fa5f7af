"""Portkey-backed reply service.

Implements the reply service contract the adapters call: takes a request
dict (bot_id, message, chat_id, channel, model, ...) and answers with
``{"response": {"chat": {"reply": ...}}}`` or ``{"err": ...}``.

Conversation memory is keyed by ``chat_id``, which adapters derive from
channel name and sender, so each user keeps one thread per channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from omnirouter.queue.command_queue import ChatLocks
from omnirouter.reply.persona import build_system_prompt, load_persona
from omnirouter.session.store import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
DEFAULT_MAX_HISTORY = 20


class PortkeyReplyService:
    """Reply service calling an OpenAI-compatible model through Portkey.

    `source_ids`, `tags`, `top` and `provider_key` are accepted for
    compatibility with retrieval-backed services and ignored here.
    """

    def __init__(
        self,
        client: Any = None,
        default_model: str | None = None,
        store: ConversationStore | None = None,
        personas_dir: str | None = None,
        max_history: int = DEFAULT_MAX_HISTORY,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        if client is None or default_model is None:
            from omnirouter.config import DEFAULT_MODEL, get_portkey_client

            client = client or get_portkey_client()
            default_model = default_model or DEFAULT_MODEL

        self._client = client
        self._default_model = default_model
        self._store = store
        self._personas_dir = personas_dir
        self._max_history = max_history
        self._max_tokens = max_tokens
        self._locks = ChatLocks()

    async def chat(self, request: dict[str, Any]) -> dict[str, Any]:
        message = request.get("message")
        chat_id = request.get("chat_id")
        if not message or not chat_id:
            return {"err": "message and chat_id are required"}

        async with self._locks.lock(chat_id):
            history = self._store.load(chat_id, limit=self._max_history) if self._store else []
            persona = load_persona(self._personas_dir, request.get("bot_id"))
            user_msg = {"role": "user", "content": message}

            kwargs: dict[str, Any] = {
                "model": request.get("model") or self._default_model,
                "messages": [
                    {"role": "system", "content": build_system_prompt(persona, request.get("channel"))},
                    *history,
                    user_msg,
                ],
                "max_tokens": request.get("max_reply_tokens") or self._max_tokens,
            }

            try:
                # The Portkey SDK is synchronous; keep it off the event loop
                response = await asyncio.to_thread(self._client.chat.completions.create, **kwargs)
            except Exception as e:
                logger.warning("Completion failed for %s: %s", chat_id, e)
                return {"err": str(e)}

            reply = response.choices[0].message.content
            if not reply:
                return {"err": "model returned an empty reply"}

            if self._store:
                self._store.append(chat_id, user_msg, {"role": "assistant", "content": reply})

        return {"response": {"chat": {"reply": reply}}}

    def reset(self, chat_id: str) -> None:
        """Forget a conversation's history."""
        if self._store:
            self._store.reset(chat_id)
