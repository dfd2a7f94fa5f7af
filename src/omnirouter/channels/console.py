"""Console channel — chat with the router from the terminal.

Useful for trying handlers and personas locally without a chat platform.
Commands: /new (fresh conversation), /quit.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable

from omnirouter.channels.base import ChannelAdapter, NormalizedMessage

QUIT_COMMANDS = ("/quit", "/exit", "/q")


class ConsoleAdapter(ChannelAdapter):
    """Reads lines from stdin on a daemon thread and prints replies.

    `closed` is set once the user quits (or stdin ends), so a runner can
    shut the router down.
    """

    def __init__(
        self,
        user_id: str = "local",
        prompt: str = "You: ",
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], Any] = print,
        **base_options: Any,
    ) -> None:
        base_options.setdefault("channel_name", "console")
        super().__init__(**base_options)
        self._base_user_id = user_id
        self.user_id = user_id
        self._prompt = prompt
        self._input = input_fn
        self._output = output_fn
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lines: asyncio.Queue[str | None] | None = None
        self._reader_thread: threading.Thread | None = None
        self._task: asyncio.Task | None = None
        self.closed = asyncio.Event()

    def _reader(self) -> None:
        """Blocking stdin loop; runs on a daemon thread shared across restarts."""
        while True:
            try:
                line = self._input(self._prompt)
            except (EOFError, KeyboardInterrupt):
                line = None
            loop, lines = self._loop, self._lines
            if loop is None or lines is None:
                self.logger.debug("Console stopped, dropping input line")
            else:
                try:
                    loop.call_soon_threadsafe(lines.put_nowait, line)
                except RuntimeError:
                    # loop closed under us
                    self.logger.debug("Event loop gone, dropping input line")
            if line is None or line.strip().lower() in QUIT_COMMANDS:
                return

    async def _read_loop(self) -> None:
        while True:
            line = await self._lines.get()
            text = (line or "").strip()

            if line is None or text.lower() in QUIT_COMMANDS:
                self._output("Goodbye!")
                break
            if not text:
                continue
            if text.lower() == "/new":
                self.user_id = f"{self._base_user_id}:{datetime.now().strftime('%Y%m%d%H%M%S')}"
                self._output("  Session reset.")
                continue

            await self._dispatch(text, self._print_reply)

        self.closed.set()

    async def _print_reply(self, text: str) -> None:
        self._output(f"\n🤖 {text}\n")

    def normalize(self, event: str) -> NormalizedMessage | None:
        return NormalizedMessage(
            content=event,
            user_id=self.user_id,
            metadata={"session": self.user_id},
        )

    async def start(self) -> None:
        self.closed.clear()
        self._lines = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        # stdin can only have one reader; a previous one may still be blocked in input()
        if self._reader_thread is None or not self._reader_thread.is_alive():
            self._reader_thread = threading.Thread(target=self._reader, daemon=True, name="console-input")
            self._reader_thread.start()
        self._task = asyncio.create_task(self._read_loop(), name="console-channel")
        self.is_started = True

    async def stop(self) -> None:
        self._loop = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.closed.set()
        await super().stop()

    async def send_message(self, recipient: str, message: str) -> None:
        self._output(f"[to {recipient}] {message}")

    async def broadcast(self, message: str) -> None:
        self._output(f"[broadcast] {message}")

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        status["user_id"] = self.user_id
        return status
