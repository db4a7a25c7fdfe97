"""Dispatcher - Actions that compose, sign and send requests.

send_request() builds a wire-ready request from the Store, signs it, hands
it to the message channel and returns without waiting. The reply is applied
to the Store when it arrives.

Only one request is tracked implicitly. If send_request() is called again
before the previous reply has arrived, both replies update the same response
in the order they arrive, and the later request may be answered first.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import Any, Callable, Mapping

from rest_composer.channel import MessageChannel
from rest_composer.models import (
    AuthType,
    ContentType,
    Header,
    HttpMethod,
    NetworkStatus,
    ReplyMessage,
    RequestOptions,
    SendRequestMessage,
    TransportResponse,
    WireHeader,
    get_auth_type_info,
)
from rest_composer.signers import SignerFactory
from rest_composer.store import Mutation, StateError, Store
from rest_composer.transport import RequestTimeout, TransportError, UnexpectedTransportError

logger = logging.getLogger(__name__)

Deliver = Callable[[Callable[[], None]], Any]


def _deliver_immediately(callback: Callable[[], None]) -> None:
    callback()


class Dispatcher:
    """Action layer over a Store.

    Usage:
        store = Store()
        with ThreadChannel() as channel:
            dispatcher = Dispatcher(store, channel)
            dispatcher.set_url("https://example.com")
            response = dispatcher.send_request().result()
    """

    def __init__(
        self,
        store: Store,
        channel: MessageChannel,
        signer_factory: type[SignerFactory] | SignerFactory = SignerFactory,
        deliver: Deliver | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: The state container to read from and commit to.
            channel: Channel to the network-executing side.
            signer_factory: Anything with a create(auth_type, params) method.
            deliver: Runs reply handling on the state side's thread, e.g.
                     loop.call_soon_threadsafe. Defaults to running it on
                     whichever thread resolves the reply.
        """
        self._store = store
        self._channel = channel
        self._signer_factory = signer_factory
        self._deliver = deliver or _deliver_immediately

    @property
    def store(self) -> Store:
        return self._store

    # -------------------------------------------------------------------------
    # Simple actions
    # -------------------------------------------------------------------------

    def set_network_status(self, status: NetworkStatus | str) -> None:
        self._store.commit(Mutation.UPDATE_NETWORK_STATUS, status)

    def set_url(self, url: str) -> None:
        self._store.commit(Mutation.UPDATE_URL, url)

    def select_auth_type(self, auth_type: AuthType | str) -> None:
        """Select an auth scheme and reset its params so credentials never carry over."""
        self._store.commit(Mutation.SELECT_AUTH_TYPE, get_auth_type_info(auth_type))
        self._store.commit(Mutation.SET_AUTH_PARAMS, {})

    def set_auth_params(self, params: Mapping[str, Any]) -> None:
        self._store.commit(Mutation.SET_AUTH_PARAMS, params)

    def select_http_method(self, method: HttpMethod | str) -> None:
        self._store.commit(Mutation.SELECT_HTTP_METHOD, method)

    def set_request_body(self, body: str) -> None:
        self._store.commit(Mutation.SET_REQUEST_BODY, body)

    def select_content_type(self, content_type: ContentType | str) -> None:
        self._store.commit(Mutation.SELECT_CONTENT_TYPE, content_type)

    def add_header(self, name: str, value: str = "", sending_status: bool = True) -> None:
        self._store.commit(
            Mutation.ADD_HEADER, Header(name=name, value=value, sending_status=sending_status)
        )

    def update_header(self, index: int, **changes: Any) -> None:
        self._store.commit(Mutation.UPDATE_HEADER, (index, changes))

    def remove_header(self, index: int) -> None:
        self._store.commit(Mutation.REMOVE_HEADER, index)

    def toggle_header(self, index: int) -> None:
        headers = self._store.state.request.headers
        if not 0 <= index < len(headers):
            raise StateError(f"No header at index {index}")
        header = headers[index]
        self.update_header(index, sending_status=not header.sending_status)

    # -------------------------------------------------------------------------
    # Request / response
    # -------------------------------------------------------------------------

    def build_request_options(self) -> RequestOptions:
        """Build the unsigned wire request from the current state."""
        request = self._store.state.request
        return RequestOptions(
            url=request.url,
            method=request.method,
            headers=[
                WireHeader(name=header.name, value=header.value)
                for header in request.headers
                if header.sending_status
            ],
            body=request.body or None,
        )

    def send_request(self) -> Future[TransportResponse]:
        """Sign the current request and send it over the channel.

        Returns:
            A future resolving to the TransportResponse, or failing with
            RequestTimeout / UnexpectedTransportError / ChannelClosed. The
            Store is updated before the future resolves.

        Raises:
            UnknownAuthType: If the selected auth type has no signer.
            MissingCredentials: If the signer's parameters are incomplete.
            ChannelClosed: If the channel is closed.
        """
        auth = self._store.state.auth
        auth_params = dict(auth.params)

        options = self.build_request_options()
        signer = self._signer_factory.create(auth.selected, auth_params)
        signed = signer.sign(options, auth_params)

        message = SendRequestMessage(
            url=signed.url,
            method=signed.method,
            headers=signed.headers,
            body=signed.body,
            auth_type=auth.selected,
            auth_params=auth_params,
        )
        logger.debug("Sending %s %s (message %s)", message.method.value, message.url, message.id)

        result: Future[TransportResponse] = Future()
        reply_future = self._channel.send(message)
        reply_future.add_done_callback(
            lambda done: self._deliver(lambda: self._on_reply(done, result))
        )
        return result

    def _on_reply(
        self,
        done: Future[ReplyMessage],
        result: Future[TransportResponse],
    ) -> None:
        error = done.exception()
        if error is not None:
            self.receive_error(str(error))
            result.set_exception(error)
            return

        reply = done.result()
        if reply.response is None:
            transport_error = _reply_error(reply)
            self.receive_error(str(transport_error))
            result.set_exception(transport_error)
            return

        self.receive_response(
            response=reply.response.model_dump(),
            request_headers=reply.request_headers,
        )
        result.set_result(reply.response)

    def receive_response(
        self,
        response: Mapping[str, Any] | None = None,
        request_headers: Mapping[str, str] | None = None,
    ) -> None:
        """Replace the stored response and sent headers with the given ones."""
        if response is not None:
            self._store.commit(Mutation.UPDATE_RESPONSE, response)
        if request_headers is not None:
            self._store.commit(Mutation.UPDATE_SENT_REQUEST_HEADERS, request_headers)

    def receive_error(self, message: str) -> None:
        """Record a failed send without touching the last received response."""
        logger.debug("Request failed: %s", message)
        self._store.commit(Mutation.SET_TRANSPORT_ERROR, message)


def _reply_error(reply: ReplyMessage) -> TransportError:
    if reply.error_kind == "timeout":
        return RequestTimeout(reply.error or "Request timed out")
    return UnexpectedTransportError()
