"""Configuration — Portkey client setup, env defaults and config.json loading.

Supports two modes:
1. Module-level constants (env-var driven, `.env` honored)
2. JSON config file at ~/.omnirouter/config.json (per-channel settings)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv

# Load .env from project root if present
load_dotenv()

# ── Portkey / reply service ──

PORTKEY_API_KEY = os.getenv("PORTKEY_API_KEY", "")
PORTKEY_BASE_URL = os.getenv("PORTKEY_BASE_URL", "https://api.portkey.ai/v1")
DEFAULT_MODEL = os.getenv("OMNIROUTER_MODEL", "@openai/gpt-4o-mini")

# ── Router ──

PROJECT_ID = os.getenv("OMNIROUTER_PROJECT_ID", "")
DEFAULT_BOT_ID = os.getenv("OMNIROUTER_BOT_ID", "")

# ── Workspace ──

WORKSPACE_DIR = os.path.expanduser(os.getenv("OMNIROUTER_WORKSPACE", "~/.omnirouter"))

# Channel name → env var holding its primary secret, used when config.json
# leaves the token out
CHANNEL_TOKEN_ENV = {
    "telegram": "TELEGRAM_BOT_TOKEN",
    "discord": "DISCORD_BOT_TOKEN",
    "slack": "SLACK_BOT_TOKEN",
    "whatsapp": "WHATSAPP_ACCESS_TOKEN",
}

KNOWN_CHANNELS = ("telegram", "discord", "slack", "whatsapp", "webchat", "console")


def get_portkey_client():
    """Create a Portkey client from PORTKEY_API_KEY / PORTKEY_BASE_URL."""
    from portkey_ai import Portkey

    return Portkey(
        api_key=PORTKEY_API_KEY,
        base_url=PORTKEY_BASE_URL,
    )


@dataclass
class ChannelDef:
    """Channel definition from config file.

    `options` carries the channel-specific keyword arguments
    (e.g. ``{"reply_on_mention": false}`` for Discord).
    """

    enabled: bool = False
    token: str | None = None
    bot_id: str | None = None
    model: str | None = None
    error_message: str | None = None
    host: str = "0.0.0.0"
    port: int | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def resolve_token(self, channel: str) -> str | None:
        """Token from config, falling back to the channel's env var."""
        if self.token:
            return self.token
        env_name = CHANNEL_TOKEN_ENV.get(channel)
        return os.getenv(env_name) if env_name else None


@dataclass
class AppConfig:
    """Full application configuration loaded from config.json.

    Every field has a default, so ``AppConfig()`` is usable as-is.
    """

    workspace: str = field(default_factory=lambda: WORKSPACE_DIR)
    project_id: str = field(default_factory=lambda: PROJECT_ID)
    default_bot_id: str = field(default_factory=lambda: DEFAULT_BOT_ID)
    default_model: str = field(default_factory=lambda: DEFAULT_MODEL)
    max_history: int = 20
    max_reply_tokens: int = 1024
    channels: dict[str, ChannelDef] = field(default_factory=dict)

    @property
    def history_dir(self) -> str:
        return os.path.join(self.workspace, "history")

    @property
    def personas_dir(self) -> str:
        return os.path.join(self.workspace, "personas")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Build config from a parsed JSON dict."""
        channels = {}
        for key, ch_data in data.get("channels", {}).items():
            channels[key] = ChannelDef(
                enabled=ch_data.get("enabled", False),
                token=ch_data.get("token"),
                bot_id=ch_data.get("bot_id"),
                model=ch_data.get("model"),
                error_message=ch_data.get("error_message"),
                host=ch_data.get("host", "0.0.0.0"),
                port=ch_data.get("port"),
                options=dict(ch_data.get("options", {})),
            )

        reply = data.get("reply_service", {})
        return cls(
            workspace=os.path.expanduser(data.get("workspace", WORKSPACE_DIR)),
            project_id=data.get("project_id", PROJECT_ID),
            default_bot_id=data.get("default_bot_id", DEFAULT_BOT_ID),
            default_model=reply.get("model", data.get("default_model", DEFAULT_MODEL)),
            max_history=reply.get("max_history", 20),
            max_reply_tokens=reply.get("max_reply_tokens", 1024),
            channels=channels,
        )

    @classmethod
    def from_file(cls, path: str) -> AppConfig:
        """Load config from a JSON file. Returns defaults if file doesn't exist."""
        if not os.path.exists(path):
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def load(cls, workspace: str | None = None) -> AppConfig:
        """Load config from the standard location.

        Checks:
        1. OMNIROUTER_CONFIG env var
        2. <workspace>/config.json
        3. Falls back to defaults
        """
        config_path = os.getenv("OMNIROUTER_CONFIG")
        if config_path and os.path.exists(config_path):
            return cls.from_file(config_path)

        ws = workspace or WORKSPACE_DIR
        return cls.from_file(os.path.join(ws, "config.json"))

    @property
    def enabled_channels(self) -> list[str]:
        return [name for name, ch in self.channels.items() if ch.enabled]

    def validate(self) -> list[str]:
        """Validate the config and return a list of warnings (empty = valid)."""
        warnings: list[str] = []

        if not self.default_model:
            warnings.append("No default_model specified")

        for name, ch in self.channels.items():
            if name not in KNOWN_CHANNELS:
                warnings.append(f"Channel '{name}': unknown channel type")
                continue
            if not ch.enabled:
                continue
            if not (ch.bot_id or self.default_bot_id):
                warnings.append(f"Channel '{name}': no bot_id and no default_bot_id")
            if name in CHANNEL_TOKEN_ENV and not ch.resolve_token(name):
                warnings.append(
                    f"Channel '{name}': missing token (set it or {CHANNEL_TOKEN_ENV[name]})"
                )

        return warnings
