"""Pytest configuration and fixtures for rest-composer tests.

This file provides:
- RecordingChannel: In-memory MessageChannel that records what was sent
- PortReservation: Race-free port allocation for test servers
- EchoServer: Subprocess management for the FastAPI echo server
- Fixtures: Shared test infrastructure (store, dispatcher, server)
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Generator

import pytest

from rest_composer.channel import ChannelClosed, MessageChannel
from rest_composer.dispatcher import Dispatcher
from rest_composer.models import ReplyMessage, SendRequestMessage, TransportResponse
from rest_composer.store import Store

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
ECHO_SERVER_MODULE = "tests.integration.echo_server"


def make_transport_response(
    status_code: int = 200,
    headers: dict[str, str] | None = None,
    body: str = "",
    request_headers: dict[str, str] | None = None,
) -> TransportResponse:
    """Create a TransportResponse for testing.

    Prefer this over constructing TransportResponse directly - it provides
    sensible defaults for the fields tests rarely care about.
    """
    return TransportResponse(
        status_code=status_code,
        reason_phrase="OK" if status_code == 200 else "",
        headers=headers or {},
        body=body,
        elapsed_ms=10.0,
        request_headers=request_headers or {},
    )


class RecordingChannel(MessageChannel):
    """MessageChannel that keeps sent messages and lets tests reply by hand.

    Usage:
        channel = RecordingChannel()
        dispatcher.send_request()
        channel.reply(channel.sent[-1], response=make_transport_response())
    """

    def __init__(self) -> None:
        self.sent: list[SendRequestMessage] = []
        self.futures: dict[str, Future[ReplyMessage]] = {}
        self.closed = False

    def send(self, message: SendRequestMessage) -> Future[ReplyMessage]:
        if self.closed:
            raise ChannelClosed("Channel is closed")
        self.sent.append(message)
        future: Future[ReplyMessage] = Future()
        self.futures[message.id] = future
        return future

    def reply(
        self,
        message: SendRequestMessage,
        response: TransportResponse | None = None,
        request_headers: dict[str, str] | None = None,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> None:
        self.futures[message.id].set_result(
            ReplyMessage(
                id=message.id,
                response=response,
                request_headers=request_headers or {},
                error=error,
                error_kind=error_kind,
            )
        )

    def close(self) -> None:
        self.closed = True


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    The socket stays bound until release() is called just before the server
    starts, so no other process can take the port in between.
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def find_free_port() -> int:
    """Find an available port on localhost (racy; used for 'nothing listens here')."""
    with PortReservation() as reservation:
        return reservation.port


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except OSError:
            time.sleep(0.1)
    return False


class EchoServer:
    """Manages the echo server subprocess for integration tests.

    Runs tests/integration/echo_server.py as a subprocess. The server echoes
    requests back, returns arbitrary status codes and can delay its replies.
    """

    def __init__(self, reservation: PortReservation) -> None:
        self._reservation = reservation
        self.port = reservation.port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the echo server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", ECHO_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"EchoServer failed to start on port {self.port}. stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the server with SIGTERM, escalating to SIGKILL after 5s."""
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait(timeout=5)
            self._process = None

    def __enter__(self) -> EchoServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def store() -> Store:
    return Store()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def dispatcher(store: Store, channel: RecordingChannel) -> Dispatcher:
    return Dispatcher(store, channel)


@pytest.fixture(scope="session")
def echo_server() -> Generator[EchoServer, None, None]:
    """Start the echo server once per test session."""
    with EchoServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
