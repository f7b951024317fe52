# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import socket
import threading

import anyio
import httpx
import pytest
from conftest import Browser

from iden.callback import CallbackListener, ListenerState, parse_callback_query
from iden.exceptions import ListenerBindError
from iden.models import CallbackProviderError, CallbackSuccess, CallbackTimeout

REDIRECT = "http://127.0.0.1:0/callback"


def can_rebind(port: int) -> bool:
    """A fresh listener can take over the port once the previous one released it."""
    listener = CallbackListener(f"http://127.0.0.1:{port}/callback")
    try:
        listener.start()
    except ListenerBindError:
        return False
    listener.stop()
    return True


def ipv6_loopback_available() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as sock:
            sock.bind(("::1", 0))
    except OSError:
        return False
    return True


class RecordingListener(CallbackListener):
    """Records the thread each shutdown runs on."""

    def __init__(self, redirect_url: str, timeout: float) -> None:
        super().__init__(redirect_url, timeout=timeout)
        self.shutdown_threads: list[threading.Thread] = []

    def _shutdown(self, final_state: ListenerState) -> None:
        self.shutdown_threads.append(threading.current_thread())
        super()._shutdown(final_state)


def test_parse_callback_query() -> None:
    assert parse_callback_query("code=abc123&state=xyz") == CallbackSuccess(code="abc123", state="xyz")
    assert parse_callback_query("error=access_denied&error_description=User+denied&state=xyz") == CallbackProviderError(
        error="access_denied", description="User denied"
    )
    # error wins over code
    assert isinstance(parse_callback_query("code=abc&state=xyz&error=server_error"), CallbackProviderError)
    assert parse_callback_query("code=abc123") is None
    assert parse_callback_query("state=xyz") is None
    assert parse_callback_query("") is None


def test_redirect_uri_reflects_bound_port() -> None:
    listener = CallbackListener(REDIRECT)
    assert listener.port == 0
    listener.start()
    try:
        assert listener.port != 0
        assert listener.redirect_uri == f"http://127.0.0.1:{listener.port}/callback"
        assert listener.state is ListenerState.LISTENING
    finally:
        listener.stop()
    assert listener.state is ListenerState.CLOSED


def test_default_port_and_path() -> None:
    listener = CallbackListener("http://localhost")
    assert listener.port == 80
    assert listener.path == "/"


@pytest.mark.asyncio
async def test_captures_single_success(browser: Browser) -> None:
    async with CallbackListener(REDIRECT, timeout=5) as listener:
        browser.visit_later(f"{listener.redirect_uri}?code=abc123&state=xyz")
        result = await listener.wait()

    browser.join()
    assert result == CallbackSuccess(code="abc123", state="xyz")
    assert listener.state is ListenerState.CAPTURED
    assert browser.responses[0].status_code == 200
    assert "Login complete" in browser.responses[0].text
    assert browser.responses[0].headers["Cache-Control"] == "no-store"
    assert can_rebind(listener.port)


@pytest.mark.asyncio
async def test_captures_provider_error(browser: Browser) -> None:
    async with CallbackListener(REDIRECT, timeout=5) as listener:
        browser.visit_later(f"{listener.redirect_uri}?error=access_denied&error_description=nope&state=xyz")
        result = await listener.wait()

    browser.join()
    assert result == CallbackProviderError(error="access_denied", description="nope")
    assert browser.responses[0].status_code == 400


@pytest.mark.asyncio
async def test_ignores_wrong_path_and_incomplete_requests(browser: Browser) -> None:
    async with CallbackListener(REDIRECT, timeout=5) as listener:
        base = f"http://127.0.0.1:{listener.port}"
        assert browser.get(f"{base}/favicon.ico").status_code == 404
        assert browser.get(f"{base}/callback?code=only-code").status_code == 400
        assert browser.get(f"{base}/callback").status_code == 400
        assert listener.state is ListenerState.LISTENING

        assert browser.get(f"{base}/callback?code=abc123&state=xyz").status_code == 200
        result = await listener.wait()

    assert result == CallbackSuccess(code="abc123", state="xyz")


@pytest.mark.asyncio
async def test_requests_after_capture_are_discarded(browser: Browser) -> None:
    async with CallbackListener(REDIRECT, timeout=5) as listener:
        first = browser.get(f"{listener.redirect_uri}?code=first&state=s")
        second = browser.get(f"{listener.redirect_uri}?code=second&state=s")
        result = await listener.wait()

    assert first.status_code == 200
    assert second.status_code == 409
    assert "Already completed" in second.text
    assert isinstance(result, CallbackSuccess)
    assert result.code == "first"


@pytest.mark.asyncio
async def test_concurrent_requests_capture_exactly_one(browser: Browser) -> None:
    async with CallbackListener(REDIRECT, timeout=5) as listener:
        barrier = threading.Barrier(2)
        responses: dict[str, httpx.Response] = {}

        def hit(code: str) -> None:
            barrier.wait()
            responses[code] = browser.get(f"{listener.redirect_uri}?code={code}&state=s")

        threads = [threading.Thread(target=hit, args=(code,)) for code in ("one", "two")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        result = await listener.wait()

    statuses = sorted(r.status_code for r in responses.values())
    assert statuses == [200, 409]
    assert isinstance(result, CallbackSuccess)
    assert responses[result.code].status_code == 200


@pytest.mark.asyncio
async def test_timeout_releases_socket() -> None:
    listener = CallbackListener(REDIRECT, timeout=0.2)
    listener.start()
    port = listener.port

    result = await listener.wait()

    assert result == CallbackTimeout()
    assert listener.state is ListenerState.TIMED_OUT
    assert can_rebind(port)


@pytest.mark.asyncio
async def test_shutdown_after_capture_runs_off_the_event_loop(browser: Browser) -> None:
    loop_thread = threading.current_thread()
    listener = RecordingListener(REDIRECT, timeout=5)
    async with listener:
        browser.visit_later(f"{listener.redirect_uri}?code=abc123&state=xyz")
        result = await listener.wait()

    browser.join()
    assert isinstance(result, CallbackSuccess)
    assert listener.state is ListenerState.CAPTURED
    assert len(listener.shutdown_threads) == 1
    assert listener.shutdown_threads[0] is not loop_thread


@pytest.mark.asyncio
async def test_shutdown_after_timeout_runs_off_the_event_loop() -> None:
    loop_thread = threading.current_thread()
    listener = RecordingListener(REDIRECT, timeout=0.1)
    async with listener:
        result = await listener.wait()

    assert result == CallbackTimeout()
    assert listener.state is ListenerState.TIMED_OUT
    assert len(listener.shutdown_threads) == 1
    assert listener.shutdown_threads[0] is not loop_thread


@pytest.mark.asyncio
@pytest.mark.skipif(not ipv6_loopback_available(), reason="IPv6 loopback is not available")
async def test_ipv6_loopback_redirect(browser: Browser) -> None:
    async with CallbackListener("http://[::1]:0/callback", timeout=5) as listener:
        assert listener.port != 0
        assert listener.redirect_uri == f"http://[::1]:{listener.port}/callback"
        browser.visit_later(f"{listener.redirect_uri}?code=abc123&state=xyz")
        result = await listener.wait()

    browser.join()
    assert result == CallbackSuccess(code="abc123", state="xyz")
    assert browser.responses[0].status_code == 200


@pytest.mark.asyncio
async def test_cancellation_releases_socket() -> None:
    listener = CallbackListener(REDIRECT, timeout=30)
    listener.start()

    with anyio.move_on_after(0.2) as scope:
        await listener.wait()

    assert scope.cancelled_caught
    assert listener.state is ListenerState.CLOSED
    assert can_rebind(listener.port)


def test_bind_failure() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as occupied:
        occupied.bind(("127.0.0.1", 0))
        occupied.listen(1)
        port = occupied.getsockname()[1]

        listener = CallbackListener(f"http://127.0.0.1:{port}/callback")
        with pytest.raises(ListenerBindError) as exc_info:
            listener.start()

    assert exc_info.value.exit_code == 4
    assert listener.state is ListenerState.BIND_FAILED


def test_stop_is_idempotent() -> None:
    listener = CallbackListener(REDIRECT)
    listener.stop()
    assert listener.state is ListenerState.CLOSED
    listener.stop()

    started = CallbackListener(REDIRECT)
    started.start()
    started.stop()
    started.stop()
    assert started.state is ListenerState.CLOSED
