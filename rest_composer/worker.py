"""Worker - The network-executing side of the message channel.

Turns SendRequestMessage objects into ReplyMessage objects by running them
through a TransportClient. Used in-process by ThreadChannel and as a
standalone subprocess by SubprocessChannel.

Subprocess protocol (newline-delimited JSON):
    Startup: worker sends {"ready":true}
    Request: parent sends a SendRequestMessage, e.g.
             {"id":"<uuid>","url":"https://...","method":"GET","headers":[...],...}
    Reply:   worker sends a ReplyMessage with the same id, e.g.
             {"id":"<uuid>","response":{...},"request_headers":{...}}
             {"id":"<uuid>","error":"Unexpected error occurred","error_kind":"unexpected"}

Requests are executed concurrently, so replies may come back in a different
order than the requests were sent.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import TextIO

from pydantic import ValidationError

from rest_composer.models import ReplyMessage, SendRequestMessage
from rest_composer.transport import (
    DEFAULT_TIMEOUT_MS,
    RequestTimeout,
    TransportClient,
    UnexpectedTransportError,
)

logger = logging.getLogger(__name__)


async def handle_message(client: TransportClient, message: SendRequestMessage) -> ReplyMessage:
    """Execute one send-request message and build its reply.

    Transport errors become error replies; they never escape this function.
    """
    try:
        response = await client.send(message.to_request_options())
    except RequestTimeout as e:
        logger.warning("Request %s timed out: %s", message.id, e)
        return ReplyMessage(id=message.id, error=str(e), error_kind="timeout")
    except UnexpectedTransportError as e:
        logger.warning("Request %s failed: %s", message.id, e)
        return ReplyMessage(id=message.id, error=str(e), error_kind="unexpected")

    logger.debug("Request %s answered with %d", message.id, response.status_code)
    return ReplyMessage(
        id=message.id,
        response=response,
        request_headers=response.request_headers,
    )


async def serve(
    stdin: TextIO,
    stdout: TextIO,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> None:
    """Read messages from stdin until EOF, writing one reply line per message."""
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[None]] = set()

    def write_line(payload: str) -> None:
        stdout.write(payload + "\n")
        stdout.flush()

    async def run(client: TransportClient, message: SendRequestMessage) -> None:
        reply = await handle_message(client, message)
        write_line(reply.model_dump_json())

    async with TransportClient(timeout_ms=timeout_ms) as client:
        write_line(json.dumps({"ready": True}))
        while True:
            line = await loop.run_in_executor(None, stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                message = SendRequestMessage.model_validate_json(line)
            except ValidationError as e:
                logger.warning("Discarding malformed message: %s", e)
                continue
            task = asyncio.create_task(run(client, message))
            pending.add(task)
            task.add_done_callback(pending.discard)

        if pending:
            await asyncio.gather(*pending)


def main() -> int:
    parser = argparse.ArgumentParser(description="rest-composer network worker")
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        dest="timeout_ms",
        help=f"Request timeout in milliseconds (default: {DEFAULT_TIMEOUT_MS})",
    )
    parser.add_argument("--log-level", default="WARNING", dest="log_level")
    args = parser.parse_args()

    # stdout carries the protocol, so logs go to stderr
    logging.basicConfig(level=args.log_level.upper(), stream=sys.stderr)

    try:
        asyncio.run(serve(sys.stdin, sys.stdout, timeout_ms=args.timeout_ms))
    except KeyboardInterrupt:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
