"""JSONL conversation history, keyed by the chat id adapters derive.

One file per conversation, one JSON message per line. Appends are
line-atomic, so a crash loses at most the line being written.
"""

from __future__ import annotations

import json
import os
import re


class ConversationStore:
    """Stores chat-completion style messages per conversation.

    Conversation ids look like ``telegram-12345``; they are sanitized before
    being used as file names.
    """

    def __init__(self, history_dir: str) -> None:
        self._dir = history_dir
        os.makedirs(self._dir, exist_ok=True)

    @property
    def history_dir(self) -> str:
        return self._dir

    @staticmethod
    def sanitize_id(chat_id: str) -> str:
        return re.sub(r"[^a-zA-Z0-9_\-]", "_", chat_id)

    def _path(self, chat_id: str) -> str:
        return os.path.join(self._dir, f"{self.sanitize_id(chat_id)}.jsonl")

    def load(self, chat_id: str, limit: int | None = None) -> list[dict]:
        """Return the conversation, or its last `limit` messages.

        Corrupted lines are skipped.
        """
        path = self._path(chat_id)
        if not os.path.exists(path):
            return []

        messages: list[dict] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    messages.append(json.loads(stripped))
                except json.JSONDecodeError:
                    continue

        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def append(self, chat_id: str, *messages: dict) -> None:
        """Append one or more messages in a single write."""
        if not messages:
            return
        lines = "".join(json.dumps(m, ensure_ascii=False) + "\n" for m in messages)
        with open(self._path(chat_id), "a", encoding="utf-8") as f:
            f.write(lines)

    def reset(self, chat_id: str) -> None:
        path = self._path(chat_id)
        if os.path.exists(path):
            os.remove(path)

    def conversations(self) -> list[str]:
        """Sanitized ids of every stored conversation."""
        return sorted(f[:-6] for f in os.listdir(self._dir) if f.endswith(".jsonl"))
