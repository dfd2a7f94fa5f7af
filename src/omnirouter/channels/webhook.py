"""Embedded HTTP server for webhook-driven channels (WhatsApp, web chat).

Flask handles requests on werkzeug worker threads; the adapters themselves
live on the asyncio loop. `run_on_loop` hands a coroutine from a request
thread to the loop and waits for its result.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine

from werkzeug.serving import BaseWSGIServer, make_server

logger = logging.getLogger(__name__)


def run_on_loop(loop: asyncio.AbstractEventLoop, coro: Coroutine, timeout: float | None = None) -> Any:
    """Run `coro` on `loop` from another thread and return its result."""
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    try:
        return future.result(timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise TimeoutError(f"No result within {timeout}s") from None


class WebhookServer:
    """Serve a Flask app from a daemon thread.

    The socket is bound in `start()`, so once it returns the server accepts
    connections. Port 0 picks a free port (see `port`).
    """

    def __init__(self, app: Any, host: str, port: int, name: str) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._name = name
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self.is_running:
            return
        self._server = make_server(self._host, self._port, self._app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever, daemon=True, name=f"{self._name}-webhook"
        )
        self._thread.start()
        logger.info("%s webhook listening on %s:%d", self._name, self._host, self.port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

    @property
    def port(self) -> int:
        if self._server is not None:
            return self._server.server_port
        return self._port

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
