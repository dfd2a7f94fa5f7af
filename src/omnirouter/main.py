"""Entry point for omnirouter.

  `omnirouter` — start every channel enabled in config.json
  `omnirouter --channel console` — chat with the reply service locally
  `omnirouter -c config.json --channel telegram --channel slack`

Runs until SIGINT/SIGTERM (or until the console channel quits).
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from typing import Any

from omnirouter.channels.base import ChannelAdapter
from omnirouter.config import KNOWN_CHANNELS, AppConfig, ChannelDef
from omnirouter.log import setup_logging
from omnirouter.router import Router


def build_adapter(name: str, channel: ChannelDef) -> ChannelAdapter:
    """Instantiate the adapter for a configured channel."""
    base: dict[str, Any] = {"bot_id": channel.bot_id, "model": channel.model}
    if channel.error_message:
        base["error_message"] = channel.error_message
    options = dict(channel.options)

    if name == "telegram":
        from omnirouter.channels.telegram import TelegramAdapter

        return TelegramAdapter(token=channel.resolve_token(name), **options, **base)

    if name == "discord":
        from omnirouter.channels.discord_ch import DiscordAdapter

        return DiscordAdapter(token=channel.resolve_token(name), **options, **base)

    if name == "slack":
        from omnirouter.channels.slack import SlackAdapter

        options.setdefault("signing_secret", os.getenv("SLACK_SIGNING_SECRET", ""))
        options.setdefault("app_token", os.getenv("SLACK_APP_TOKEN") or None)
        return SlackAdapter(
            token=channel.resolve_token(name), host=channel.host, port=channel.port or 3000,
            **options, **base,
        )

    if name == "whatsapp":
        from omnirouter.channels.whatsapp import WhatsAppAdapter

        options.setdefault("phone_number_id", os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""))
        options.setdefault("verify_token", os.getenv("WHATSAPP_VERIFY_TOKEN", ""))
        options.setdefault("app_secret", os.getenv("WHATSAPP_APP_SECRET") or None)
        return WhatsAppAdapter(
            access_token=channel.resolve_token(name), host=channel.host, port=channel.port or 5001,
            **options, **base,
        )

    if name == "webchat":
        from omnirouter.channels.webchat import WebChatAdapter

        options.setdefault("operator_token", os.getenv("WEBCHAT_OPERATOR_TOKEN") or None)
        return WebChatAdapter(host=channel.host, port=channel.port or 5000, **options, **base)

    if name == "console":
        from omnirouter.channels.console import ConsoleAdapter

        return ConsoleAdapter(**options, **base)

    raise ValueError(f"Unknown channel: {name}")


def build_router(config: AppConfig, channels: list[str], reply_service: Any = None) -> Router:
    """Build the router with the Portkey reply service and the given channels."""
    if reply_service is None:
        from omnirouter.reply.service import PortkeyReplyService
        from omnirouter.session.store import ConversationStore

        reply_service = PortkeyReplyService(
            default_model=config.default_model,
            store=ConversationStore(config.history_dir),
            personas_dir=config.personas_dir,
            max_history=config.max_history,
            max_tokens=config.max_reply_tokens,
        )

    adapters = [build_adapter(name, config.channels.get(name, ChannelDef(enabled=True))) for name in channels]
    return Router(
        reply_service=reply_service,
        project_id=config.project_id or None,
        default_bot_id=config.default_bot_id or None,
        adapters=adapters,
    )


async def _serve(router: Router) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: Ctrl+C raises KeyboardInterrupt instead

    try:
        await router.start()
    except Exception as e:
        print(f"Failed to start router: {e}")
        await router.stop()
        return 1

    status = router.get_status()
    print(f"omnirouter — {len(status['adapters'])} channel(s) running")
    for adapter in status["adapters"]:
        print(f"  ✓ {adapter['channel']} (bot: {adapter['bot_id']})")
    print("  Press Ctrl+C to stop.\n")

    waiters = [asyncio.create_task(stop.wait())]
    console = router.get_adapter("console")
    if console is not None:
        waiters.append(asyncio.create_task(console.closed.wait()))

    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    for waiter in waiters:
        waiter.cancel()

    print("\nShutting down...")
    await router.stop()
    return 0


def main():
    parser = argparse.ArgumentParser(description="omnirouter — route chat channels to one AI backend")
    parser.add_argument("--config", "-c", help="Path to config.json file")
    parser.add_argument(
        "--channel",
        action="append",
        choices=KNOWN_CHANNELS,
        help="Channel to start (repeatable; default: every enabled channel)",
    )
    parser.add_argument("--log-level", default=os.getenv("OMNIROUTER_LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    if args.config:
        config = AppConfig.from_file(args.config)
    else:
        # Auto-discover ~/.omnirouter/config.json (or OMNIROUTER_CONFIG env)
        config = AppConfig.load()

    channels = args.channel or config.enabled_channels
    if not channels:
        print("No channels enabled. Enable one in config.json or pass --channel.")
        sys.exit(1)

    # Channels picked on the command line count as enabled for validation
    for name in channels:
        config.channels.setdefault(name, ChannelDef()).enabled = True

    errors = config.validate()
    if errors:
        print("Config errors:")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)

    setup_logging(args.log_level)
    os.makedirs(config.workspace, exist_ok=True)

    try:
        router = build_router(config, channels)
    except Exception as e:
        print(f"Invalid channel configuration: {e}")
        sys.exit(1)

    sys.exit(asyncio.run(_serve(router)))


if __name__ == "__main__":
    main()
