"""Tests for rest_composer.worker.

Tests cover:
- handle_message for success, timeout and unexpected failures
- serve() line protocol: ready signal, one reply per message, malformed input
"""

import io
import json
from unittest.mock import patch

import httpx
import pytest

from rest_composer.models import HttpMethod, ReplyMessage, SendRequestMessage, WireHeader
from rest_composer.transport import TransportClient
from rest_composer.worker import handle_message, serve


def _message(**overrides) -> SendRequestMessage:
    values = {
        "url": "https://api.example.com/items",
        "method": HttpMethod.GET,
        "headers": [WireHeader(name="X-Test", value="1")],
    }
    values.update(overrides)
    return SendRequestMessage(**values)


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_success_reply(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(418, text="teapot"))
        message = _message()

        async with TransportClient(transport=transport) as client:
            reply = await handle_message(client, message)

        assert reply.id == message.id
        assert reply.error is None
        assert reply.response.status_code == 418
        assert reply.response.body == "teapot"
        assert reply.request_headers["x-test"] == "1"

    @pytest.mark.asyncio
    async def test_timeout_reply(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        async with TransportClient(transport=httpx.MockTransport(handler)) as client:
            reply = await handle_message(client, _message())

        assert reply.response is None
        assert reply.error == "read timed out"
        assert reply.error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_unexpected_reply(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with TransportClient(transport=httpx.MockTransport(handler)) as client:
            reply = await handle_message(client, _message())

        assert reply.response is None
        assert reply.error == "Unexpected error occurred"
        assert reply.error_kind == "unexpected"


class TestServe:
    @pytest.mark.asyncio
    async def test_protocol(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))
        first, second = _message(), _message(method=HttpMethod.DELETE)
        stdin = io.StringIO(
            first.model_dump_json() + "\n"
            + "\n"
            + "not json\n"
            + second.model_dump_json() + "\n"
        )
        stdout = io.StringIO()

        def make_client(timeout_ms: int) -> TransportClient:
            return TransportClient(timeout_ms=timeout_ms, transport=transport)

        with patch("rest_composer.worker.TransportClient", side_effect=make_client):
            await serve(stdin, stdout, timeout_ms=1000)

        lines = stdout.getvalue().splitlines()
        assert json.loads(lines[0]) == {"ready": True}
        replies = [ReplyMessage.model_validate_json(line) for line in lines[1:]]
        assert sorted(reply.id for reply in replies) == sorted([first.id, second.id])
        assert all(reply.response.body == "ok" for reply in replies)

    @pytest.mark.asyncio
    async def test_empty_input_only_sends_ready(self):
        stdout = io.StringIO()
        await serve(io.StringIO(""), stdout)
        assert stdout.getvalue() == '{"ready": true}\n'
