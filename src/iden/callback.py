# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

"""
Single-use local HTTP listener that captures the provider's redirect.

The server runs on a daemon thread; the caller suspends in `CallbackListener.wait`
until the first qualifying request is captured or the deadline passes. Capture is
guarded so exactly one request produces the result, after which the socket is
released.
"""

import html
import socket
import threading
from enum import StrEnum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

import anyio

from iden.exceptions import ListenerBindError
from iden.models import CallbackProviderError, CallbackResult, CallbackSuccess, CallbackTimeout
from iden.utils.logger import logger

DEFAULT_CALLBACK_TIMEOUT = 300.0

_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>{title}</title></head>
<body><h2>{title}</h2><p>{message}</p></body></html>
"""


class ListenerState(StrEnum):
    IDLE = "idle"
    LISTENING = "listening"
    CAPTURED = "captured"
    TIMED_OUT = "timed_out"
    BIND_FAILED = "bind_failed"
    CLOSED = "closed"


def parse_callback_query(query: str) -> CallbackSuccess | CallbackProviderError | None:
    """
    Interprets the redirect query string.

    Returns:
        CallbackProviderError when ``error`` is present, CallbackSuccess when both ``code``
        and ``state`` are present, otherwise None (not a valid redirect).
    """
    params = parse_qs(query)

    def first(name: str) -> str | None:
        values = params.get(name)
        return values[0] if values else None

    error = first("error")
    if error:
        return CallbackProviderError(error=error, description=first("error_description"))

    code = first("code")
    state = first("state")
    if code and state:
        return CallbackSuccess(code=code, state=state)
    return None


class _CaptureSlot:
    """Single-slot, first-writer-wins holder for the callback result."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self.result: CallbackSuccess | CallbackProviderError | None = None

    def offer(self, result: CallbackSuccess | CallbackProviderError) -> bool:
        with self._lock:
            if self.result is not None or self._event.is_set():
                return False
            self.result = result
            self._event.set()
            return True

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def close(self) -> None:
        # Wakes a waiter abandoned by cancellation; later offers are refused
        with self._lock:
            self._event.set()


class CallbackHandler(BaseHTTPRequestHandler):
    """Serves the redirect path of the owning listener."""

    server: "_CallbackHTTPServer"
    server_version = "iden-callback"

    def do_GET(self) -> None:
        listener = self.server.listener
        parsed = urlsplit(self.path)
        if parsed.path != listener.path:
            self._send_page(404, "Not Found", "Nothing to see here.")
            return

        result = parse_callback_query(parsed.query)
        if result is None:
            logger.warning("Callback request without code/state or error ignored")
            self._send_page(400, "Invalid callback", "The request did not carry an authorization response.")
            return

        if not listener._slot.offer(result):
            logger.warning("Callback received after capture; discarded")
            self._send_page(409, "Already completed", "This login has already completed.")
            return

        if isinstance(result, CallbackSuccess):
            logger.info("Authorization response captured")
            self._send_page(200, "Login complete", "You can close this window and return to the terminal.")
        else:
            logger.warning(f"Provider returned error '{result.error}' to the callback")
            self._send_page(
                400,
                "Login failed",
                f"The provider returned '{html.escape(result.error)}'. Return to the terminal for details.",
            )

    def _send_page(self, status: int, title: str, message: str) -> None:
        body = _PAGE.format(title=title, message=message).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        # The request line carries the authorization code; keep it out of the logs
        return


class _CallbackHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    allow_reuse_port = False
    daemon_threads = True

    def __init__(self, address: tuple[str, int], listener: "CallbackListener") -> None:
        self.listener = listener
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(address, CallbackHandler)


class CallbackListener:
    """
    Binds the host/port of `redirect_url` and captures exactly one redirect.

    Lifecycle: IDLE -> LISTENING -> CAPTURED | TIMED_OUT; IDLE -> BIND_FAILED; stop()
    from any live state -> CLOSED. The listener has no knowledge of which login attempt
    it serves, so it never compares ``state`` values.

    Attributes:
        host (str): Interface to bind.
        port (int): Port to bind; 0 picks a free port and is replaced by the bound one.
        path (str): The only path that is treated as a redirect.
        timeout (float): Seconds `wait` blocks before reporting a timeout.
    """

    def __init__(self, redirect_url: str, timeout: float = DEFAULT_CALLBACK_TIMEOUT) -> None:
        parsed = urlsplit(redirect_url)
        if not parsed.hostname:
            raise ValueError(f"Redirect URL '{redirect_url}' has no host")
        self.host = parsed.hostname
        self.port = parsed.port if parsed.port is not None else 80
        self.path = parsed.path or "/"
        self.timeout = timeout
        self.state = ListenerState.IDLE
        self._slot = _CaptureSlot()
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def redirect_uri(self) -> str:
        """The redirect URL as actually served (reflects the bound port)."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}{self.path}"

    def start(self) -> None:
        """
        Binds the socket and starts serving.

        Raises:
            ListenerBindError: If the address cannot be bound (e.g. port already in use).
            RuntimeError: If the listener was already started.
        """
        if self.state is not ListenerState.IDLE:
            raise RuntimeError(f"Callback listener cannot start from state '{self.state}'")

        try:
            server = _CallbackHTTPServer((self.host, self.port), self)
        except OSError as e:
            self.state = ListenerState.BIND_FAILED
            logger.error(f"Cannot bind callback listener on {self.host}:{self.port}: {e}")
            raise ListenerBindError(f"Cannot listen on {self.host}:{self.port}: {e}") from e

        self._server = server
        self.port = server.server_address[1]
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="iden-callback-listener",
            daemon=True,
        )
        self._thread.start()
        self.state = ListenerState.LISTENING
        logger.info(f"Listening for the authorization callback on {self.redirect_uri}")

    async def wait(self) -> CallbackResult:
        """
        Blocks until the redirect is captured or the deadline passes, then releases the socket.

        Cancellation (e.g. Ctrl-C or an enclosing cancel scope) releases the socket immediately.

        Returns:
            CallbackResult: CallbackSuccess, CallbackProviderError or CallbackTimeout.
        """
        if self.state is not ListenerState.LISTENING:
            raise RuntimeError(f"Callback listener cannot wait from state '{self.state}'")

        try:
            await anyio.to_thread.run_sync(self._slot.wait, self.timeout, abandon_on_cancel=True)
        except BaseException:
            self.stop()
            raise

        # server.shutdown() and the thread join block, so they run off the event loop
        result = self._slot.result
        if result is not None:
            await anyio.to_thread.run_sync(self._shutdown, ListenerState.CAPTURED)
            return result

        if self.state is ListenerState.LISTENING:
            logger.warning(f"No callback received within {self.timeout:.0f}s")
            await anyio.to_thread.run_sync(self._shutdown, ListenerState.TIMED_OUT)
        return CallbackTimeout()

    def stop(self) -> None:
        """Releases the socket. Safe to call in any state and more than once."""
        if self.state in (ListenerState.IDLE, ListenerState.LISTENING):
            self._shutdown(ListenerState.CLOSED)

    def _shutdown(self, final_state: ListenerState) -> None:
        self._slot.close()
        server, self._server = self._server, None
        thread, self._thread = self._thread, None
        if server is not None:
            server.shutdown()
            server.server_close()
        if thread is not None:
            thread.join(timeout=2)
        self.state = final_state
        logger.debug(f"Callback listener {final_state}")

    async def __aenter__(self) -> "CallbackListener":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()
