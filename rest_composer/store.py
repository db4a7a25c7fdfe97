"""Store - Owns the request/response state and its named mutations.

All writes to AppState go through Store.commit with one of the Mutation
names below; each mutation owns exactly one write. Subscribers are notified
after every commit, which is how front ends learn that a reply landed.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from rest_composer.models import (
    CONTENT_TYPE_HEADER,
    AppState,
    AuthTypeInfo,
    ContentType,
    Header,
    HttpMethod,
    NetworkStatus,
)

logger = logging.getLogger(__name__)


class StateError(Exception):
    """Raised when a mutation would break a state invariant."""


class Mutation(str, Enum):
    UPDATE_NETWORK_STATUS = "UPDATE_NETWORK_STATUS"
    UPDATE_URL = "UPDATE_URL"
    SELECT_AUTH_TYPE = "SELECT_AUTH_TYPE"
    SET_AUTH_PARAMS = "SET_AUTH_PARAMS"
    SELECT_HTTP_METHOD = "SELECT_HTTP_METHOD"
    SET_REQUEST_BODY = "SET_REQUEST_BODY"
    SELECT_CONTENT_TYPE = "SELECT_CONTENT_TYPE"
    ADD_HEADER = "ADD_HEADER"
    UPDATE_HEADER = "UPDATE_HEADER"
    REMOVE_HEADER = "REMOVE_HEADER"
    UPDATE_RESPONSE = "UPDATE_RESPONSE"
    UPDATE_SENT_REQUEST_HEADERS = "UPDATE_SENT_REQUEST_HEADERS"
    SET_TRANSPORT_ERROR = "SET_TRANSPORT_ERROR"


Subscriber = Callable[[Mutation, AppState], None]


def _update_network_status(state: AppState, status: NetworkStatus | str) -> None:
    state.network_status = NetworkStatus(status)


def _update_url(state: AppState, url: str) -> None:
    state.request.url = url


def _select_auth_type(state: AppState, auth_type: AuthTypeInfo) -> None:
    # Credentials belong to one scheme and never carry over
    if state.auth.selected != auth_type.id:
        state.auth.params = {}
    state.auth.selected = auth_type.id


def _set_auth_params(state: AppState, params: Mapping[str, Any]) -> None:
    # Values may arrive as None from a half-filled form; those are dropped
    state.auth.params = {key: str(value) for key, value in params.items() if value is not None}


def _select_http_method(state: AppState, method: HttpMethod | str) -> None:
    state.request.method = HttpMethod(method)


def _set_request_body(state: AppState, body: str) -> None:
    state.request.body = body


def _select_content_type(state: AppState, content_type: ContentType | str) -> None:
    resolved = ContentType(content_type)
    state.request.content_type = resolved
    if resolved.mime_type is None:
        return
    for header in state.request.headers:
        if header.matches(CONTENT_TYPE_HEADER):
            header.value = resolved.mime_type
            return
    state.request.headers.insert(0, Header(name=CONTENT_TYPE_HEADER, value=resolved.mime_type))


def _add_header(state: AppState, header: Header) -> None:
    state.request.headers.append(header)


def _header_at(state: AppState, index: int) -> Header:
    if not 0 <= index < len(state.request.headers):
        raise StateError(f"No header at index {index}")
    return state.request.headers[index]


def _update_header(state: AppState, payload: tuple[int, Mapping[str, Any]]) -> None:
    index, changes = payload
    header = _header_at(state, index)
    if "name" in changes and header.matches(CONTENT_TYPE_HEADER):
        if not str(changes["name"]).lower() == CONTENT_TYPE_HEADER:
            raise StateError("The content-type header cannot be renamed")
    unknown = set(changes) - set(Header.model_fields)
    if unknown:
        raise StateError(f"Unknown header fields: {', '.join(sorted(unknown))}")
    try:
        updated = Header.model_validate({**header.model_dump(), **changes})
    except ValidationError as e:
        raise StateError(f"Invalid header update: {e}") from e
    state.request.headers[index] = updated


def _remove_header(state: AppState, index: int) -> None:
    header = _header_at(state, index)
    remaining = [h for h in state.request.headers if h.matches(CONTENT_TYPE_HEADER)]
    if header.matches(CONTENT_TYPE_HEADER) and len(remaining) == 1:
        raise StateError("The content-type header cannot be removed")
    del state.request.headers[index]


def _update_response(state: AppState, response: Mapping[str, Any]) -> None:
    state.response = dict(response)
    state.last_error = None


def _update_sent_request_headers(state: AppState, headers: Mapping[str, str]) -> None:
    state.sent_request_headers = dict(headers)


def _set_transport_error(state: AppState, message: str | None) -> None:
    state.last_error = message


_MUTATIONS: dict[Mutation, Callable[[AppState, Any], None]] = {
    Mutation.UPDATE_NETWORK_STATUS: _update_network_status,
    Mutation.UPDATE_URL: _update_url,
    Mutation.SELECT_AUTH_TYPE: _select_auth_type,
    Mutation.SET_AUTH_PARAMS: _set_auth_params,
    Mutation.SELECT_HTTP_METHOD: _select_http_method,
    Mutation.SET_REQUEST_BODY: _set_request_body,
    Mutation.SELECT_CONTENT_TYPE: _select_content_type,
    Mutation.ADD_HEADER: _add_header,
    Mutation.UPDATE_HEADER: _update_header,
    Mutation.REMOVE_HEADER: _remove_header,
    Mutation.UPDATE_RESPONSE: _update_response,
    Mutation.UPDATE_SENT_REQUEST_HEADERS: _update_sent_request_headers,
    Mutation.SET_TRANSPORT_ERROR: _set_transport_error,
}


class Store:
    """Explicitly owned state container.

    Usage:
        store = Store()
        store.commit(Mutation.UPDATE_URL, "https://example.com")
        store.state.request.url  # "https://example.com"
    """

    def __init__(self, state: AppState | None = None) -> None:
        self._state = state or AppState()
        self._subscribers: list[Subscriber] = []

    @property
    def state(self) -> AppState:
        return self._state

    def commit(self, mutation: Mutation, payload: Any = None) -> None:
        """Apply one named mutation and notify subscribers.

        Raises:
            StateError: If the mutation would break an invariant.
        """
        mutation = Mutation(mutation)
        _MUTATIONS[mutation](self._state, payload)
        logger.debug("Committed %s", mutation.value)
        for subscriber in list(self._subscribers):
            subscriber(mutation, self._state)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe
