"""Message channels between the state side and the network-executing side.

A channel accepts a SendRequestMessage and returns immediately with a
concurrent.futures.Future that resolves to the matching ReplyMessage. The
future is the single resolution point for a reply; its done-callbacks run on
the channel's own thread.

Two implementations:
    ThreadChannel:     a worker thread running its own asyncio loop.
    SubprocessChannel: a `python -m rest_composer.worker` child process
                       speaking newline-delimited JSON (see worker.py).

Message ids only route a reply to its own future. Callers that issue several
requests before the first reply arrives see replies in completion order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import select
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import Any

import httpx
from pydantic import ValidationError

from rest_composer.models import ReplyMessage, SendRequestMessage
from rest_composer.transport import DEFAULT_TIMEOUT_MS, TransportClient
from rest_composer.worker import handle_message

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Base class for channel errors."""


class ChannelClosed(ChannelError):
    """Raised when sending on, or waiting for a reply from, a closed channel."""


class WorkerProtocolError(ChannelError):
    """Raised when the worker process does not follow the line protocol."""


class _PendingReplies:
    """Futures waiting for a reply, keyed by message id."""

    def __init__(self) -> None:
        self._futures: dict[str, Future[ReplyMessage]] = {}
        self._lock = threading.Lock()

    def add(self, message_id: str) -> Future[ReplyMessage]:
        future: Future[ReplyMessage] = Future()
        with self._lock:
            self._futures[message_id] = future
        return future

    def _pop(self, message_id: str) -> Future[ReplyMessage] | None:
        with self._lock:
            return self._futures.pop(message_id, None)

    def resolve(self, reply: ReplyMessage) -> None:
        future = self._pop(reply.id)
        if future is None:
            logger.warning("Dropping reply for unknown message %s", reply.id)
            return
        future.set_result(reply)

    def fail(self, message_id: str, error: BaseException) -> None:
        future = self._pop(message_id)
        if future is not None:
            future.set_exception(error)

    def fail_all(self, error: BaseException) -> None:
        with self._lock:
            futures = list(self._futures.values())
            self._futures.clear()
        for future in futures:
            future.set_exception(error)

    def __len__(self) -> int:
        with self._lock:
            return len(self._futures)


class MessageChannel(ABC):
    """Asynchronous boundary to the network-executing side."""

    @abstractmethod
    def send(self, message: SendRequestMessage) -> Future[ReplyMessage]:
        """Hand a message to the other side without waiting for the reply.

        Raises:
            ChannelClosed: If the channel has been closed.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the channel. Pending replies fail with ChannelClosed."""

    def __enter__(self) -> "MessageChannel":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()


class ThreadChannel(MessageChannel):
    """Runs the worker on a background thread with its own event loop.

    Usage:
        with ThreadChannel(timeout_ms=5000) as channel:
            reply = channel.send(message).result()
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Start the worker thread.

        Args:
            timeout_ms: Request timeout passed to the TransportClient.
            transport: Optional httpx transport, mainly for tests.

        Raises:
            ValueError: If timeout_ms is not positive.
        """
        # Built before the thread starts so construction errors reach the caller
        self._client = TransportClient(timeout_ms=timeout_ms, transport=transport)
        self._pending = _PendingReplies()
        self._closed = False
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="rest-composer-worker", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._loop.run_until_complete(self._client.aclose())
            self._loop.close()

    def send(self, message: SendRequestMessage) -> Future[ReplyMessage]:
        if self._closed:
            raise ChannelClosed("Channel is closed")

        future = self._pending.add(message.id)
        inner = asyncio.run_coroutine_threadsafe(
            handle_message(self._client, message), self._loop
        )

        def on_done(done: Future[ReplyMessage]) -> None:
            if done.cancelled():
                self._pending.fail(message.id, ChannelClosed("Channel closed before reply"))
            elif done.exception() is not None:
                self._pending.fail(message.id, done.exception())
            else:
                self._pending.resolve(done.result())

        inner.add_done_callback(on_done)
        return future

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        async def shutdown() -> None:
            current = asyncio.current_task()
            for task in asyncio.all_tasks():
                if task is not current:
                    task.cancel()
            self._loop.stop()

        asyncio.run_coroutine_threadsafe(shutdown(), self._loop)
        self._thread.join(timeout=5)
        self._pending.fail_all(ChannelClosed("Channel closed before reply"))


class SubprocessChannel(MessageChannel):
    """Runs the worker as a child Python process.

    Usage:
        with SubprocessChannel(timeout_ms=5000) as channel:
            reply = channel.send(message).result()
    """

    # Timeout for the worker's ready signal (seconds)
    STARTUP_TIMEOUT = 10.0

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        python: str | None = None,
        log_level: str = "WARNING",
    ) -> None:
        """Start the worker process and wait for its ready signal.

        Args:
            timeout_ms: Request timeout passed to the worker.
            python: Interpreter to run the worker with. Defaults to sys.executable.
            log_level: Logging level for the worker (its logs go to stderr).

        Raises:
            WorkerProtocolError: If the worker does not report ready in time.
        """
        self._pending = _PendingReplies()
        self._closed = False
        self._write_lock = threading.Lock()
        self._process = subprocess.Popen(
            [
                python or sys.executable, "-m", "rest_composer.worker",
                "--timeout-ms", str(timeout_ms),
                "--log-level", log_level,
            ],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=None,
            text=True,
            bufsize=1,  # Line buffered
        )
        try:
            self._wait_for_ready()
        except WorkerProtocolError:
            self._terminate()
            raise
        self._reader = threading.Thread(
            target=self._read_replies, name="rest-composer-reader", daemon=True
        )
        self._reader.start()

    def _wait_for_ready(self) -> None:
        ready, _, _ = select.select([self._process.stdout], [], [], self.STARTUP_TIMEOUT)
        if not ready:
            raise WorkerProtocolError(f"Worker startup timeout ({self.STARTUP_TIMEOUT}s)")

        ready_line = self._process.stdout.readline()
        if not ready_line:
            raise WorkerProtocolError("Worker exited during startup")
        try:
            ready_msg = json.loads(ready_line)
        except json.JSONDecodeError as e:
            raise WorkerProtocolError(f"Invalid ready message: {ready_line!r}") from e
        if not isinstance(ready_msg, dict) or not ready_msg.get("ready"):
            raise WorkerProtocolError(f"Unexpected ready message: {ready_line!r}")

    def _read_replies(self) -> None:
        for line in self._process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                reply = ReplyMessage.model_validate_json(line)
            except ValidationError as e:
                logger.warning("Discarding malformed reply from worker: %s", e)
                continue
            self._pending.resolve(reply)
        self._pending.fail_all(ChannelClosed("Worker exited before reply"))

    def send(self, message: SendRequestMessage) -> Future[ReplyMessage]:
        if self._closed or self._process.poll() is not None:
            raise ChannelClosed("Channel is closed")

        future = self._pending.add(message.id)
        try:
            with self._write_lock:
                self._process.stdin.write(message.model_dump_json() + "\n")
                self._process.stdin.flush()
        except (BrokenPipeError, ValueError) as e:
            # ValueError: stdin already closed
            self._pending.fail(message.id, ChannelClosed("Worker is not accepting messages"))
            raise ChannelClosed("Worker is not accepting messages") from e
        return future

    @property
    def is_running(self) -> bool:
        return self._process.poll() is None

    def close(self) -> None:
        """Close stdin so the worker finishes in-flight requests, then stop it."""
        if self._closed:
            return
        self._closed = True
        try:
            self._process.stdin.close()
        except BrokenPipeError:
            pass
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._terminate()
        self._reader.join(timeout=5)
        self._pending.fail_all(ChannelClosed("Channel closed before reply"))

    def _terminate(self) -> None:
        self._process.terminate()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            # Process ignored SIGTERM, escalate to SIGKILL
            self._process.kill()
            self._process.wait(timeout=5)
