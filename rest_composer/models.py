"""Internal data models for rest-composer.

All models use Pydantic v2. The request/response state is mutated in place
by Store mutations only; wire-level models (RequestOptions, channel messages)
are treated as values and copied rather than mutated.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Registries
# =============================================================================


class AuthType(str, Enum):
    """Supported authentication schemes."""

    NONE = "none"
    WSSE = "wsse"


class AuthTypeInfo(BaseModel):
    """An authentication scheme as presented to the user."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: AuthType = Field(description="Scheme identifier")
    label: str = Field(description="Human-readable name")


AUTH_TYPES: dict[AuthType, AuthTypeInfo] = {
    AuthType.NONE: AuthTypeInfo(id=AuthType.NONE, label="None"),
    AuthType.WSSE: AuthTypeInfo(id=AuthType.WSSE, label="WSSE"),
}


def get_auth_type_info(auth_type: AuthType | str) -> AuthTypeInfo:
    """Look up the registry entry for an auth type id.

    Raises:
        ValueError: If the id is not a registered auth type.
    """
    return AUTH_TYPES[AuthType(auth_type)]


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class ContentType(str, Enum):
    """Body content types selectable for a request.

    CUSTOM means the user manages the content-type header by hand.
    """

    CUSTOM = "custom"
    JSON = "json"
    XML = "xml"
    FORM = "form"
    TEXT = "text"

    @property
    def mime_type(self) -> str | None:
        return _MIME_TYPES.get(self)


_MIME_TYPES: dict[ContentType, str] = {
    ContentType.JSON: "application/json",
    ContentType.XML: "application/xml",
    ContentType.FORM: "application/x-www-form-urlencoded",
    ContentType.TEXT: "text/plain",
}


class NetworkStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


CONTENT_TYPE_HEADER = "content-type"


# =============================================================================
# Request Models
# =============================================================================


class Header(BaseModel):
    """One header row of the request being composed.

    Rows with sending_status=False stay in the model but are left out of the
    wire request.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    name: str = Field(description="Header name as entered (matched case-insensitively)")
    value: str = Field(default="", description="Header value")
    sending_status: bool = Field(default=True, description="Whether the header is sent")

    def matches(self, name: str) -> bool:
        return self.name.lower() == name.lower()


class WireHeader(BaseModel):
    """A header as it goes on the wire."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    value: str


class RequestOptions(BaseModel):
    """A wire-ready request, built fresh for every dispatch.

    Signers return a copy with their headers added instead of mutating the
    instance they were given.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str = Field(description="Absolute request URL")
    method: HttpMethod = Field(default=HttpMethod.GET, description="HTTP method")
    headers: list[WireHeader] = Field(
        default_factory=list, description="Ordered name/value pairs"
    )
    body: str | None = Field(default=None, description="Raw request body, None if empty")

    def header(self, name: str) -> str | None:
        """Return the first value of a header (case-insensitive), or None."""
        for header in self.headers:
            if header.name.lower() == name.lower():
                return header.value
        return None

    def with_header(self, name: str, value: str) -> RequestOptions:
        """Return a copy with one more header appended."""
        return self.model_copy(
            update={"headers": [*self.headers, WireHeader(name=name, value=value)]}
        )


def _default_headers() -> list[Header]:
    return [Header(name=CONTENT_TYPE_HEADER, value="application/json", sending_status=True)]


class RequestState(BaseModel):
    """The request currently being composed."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    url: str = ""
    method: HttpMethod = HttpMethod.GET
    headers: list[Header] = Field(default_factory=_default_headers)
    body: str = ""
    content_type: ContentType = ContentType.CUSTOM


class AuthState(BaseModel):
    """Selected authentication scheme and its parameters."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    selected: AuthType = AuthType.NONE
    params: dict[str, str] = Field(default_factory=dict)


class AppState(BaseModel):
    """Everything the Store owns.

    response is {} until the first reply arrives and is then replaced
    wholesale on every reply; no history is kept.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    network_status: NetworkStatus = NetworkStatus.ONLINE
    request: RequestState = Field(default_factory=RequestState)
    auth: AuthState = Field(default_factory=AuthState)
    response: dict[str, Any] = Field(default_factory=dict)
    sent_request_headers: dict[str, str] = Field(default_factory=dict)
    last_error: str | None = None


# =============================================================================
# Transport Models
# =============================================================================


class TransportResponse(BaseModel):
    """One HTTP reply, whatever its status code.

    The body is the raw response text; nothing is parsed.
    """

    model_config = ConfigDict(extra="forbid")

    status_code: int = Field(description="HTTP status code")
    reason_phrase: str = Field(default="", description="Status reason phrase")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Response headers (lowercase keys)"
    )
    body: str = Field(default="", description="Raw response text")
    http_version: str = Field(default="HTTP/1.1", description="Protocol version")
    elapsed_ms: float = Field(default=0.0, description="Response time in milliseconds")
    request_headers: dict[str, str] = Field(
        default_factory=dict,
        description="Headers the transport actually transmitted",
        exclude=True,
    )


# =============================================================================
# Channel IPC Models
# =============================================================================


def _new_message_id() -> str:
    return str(uuid.uuid4())


class SendRequestMessage(BaseModel):
    """Outbound 'send-request' message to the network-executing side."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=_new_message_id, description="Routes the reply back to its sender")
    url: str
    method: HttpMethod
    headers: list[WireHeader] = Field(default_factory=list)
    body: str | None = None
    auth_type: AuthType = AuthType.NONE
    auth_params: dict[str, str] = Field(default_factory=dict)

    def to_request_options(self) -> RequestOptions:
        return RequestOptions(
            url=self.url, method=self.method, headers=self.headers, body=self.body
        )


ErrorKind = Literal["timeout", "unexpected"]


class ReplyMessage(BaseModel):
    """Inbound reply for one SendRequestMessage.

    Exactly one of response/error is set.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Id of the SendRequestMessage this answers")
    response: TransportResponse | None = None
    request_headers: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    error_kind: ErrorKind | None = None


# =============================================================================
# Runtime Configuration Models
# =============================================================================


class AuthPreset(BaseModel):
    """Authentication selected at startup (supports ${ENV_VAR} substitution)."""

    model_config = ConfigDict(extra="forbid")

    type: AuthType = Field(description="Auth scheme")
    params: dict[str, str] = Field(default_factory=dict, description="Scheme parameters")


class ComposerConfig(BaseModel):
    """Top-level configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int = Field(default=60000, gt=0, description="Request timeout in milliseconds")
    log_level: str = Field(default="WARNING", description="Logging level name")
    default_headers: dict[str, str] = Field(
        default_factory=dict, description="Headers added to every new session"
    )
    auth: AuthPreset | None = Field(default=None, description="Initial authentication")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return level


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
