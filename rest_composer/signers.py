"""Request signers - add authentication material to wire-ready requests.

Each supported AuthType has one Signer subclass and one arm in
SignerFactory.create. Callers never branch on the auth type themselves.

WSSE header format:
    X-WSSE: UsernameToken Username="<key>", PasswordDigest="<digest>",
            Nonce="<nonce>", Created="<created>"

    digest = base64(sha1(nonce + created + secret))
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Mapping

from rest_composer.models import AuthType, RequestOptions

logger = logging.getLogger(__name__)

WSSE_HEADER = "X-WSSE"


class SignerError(Exception):
    """Base class for signer errors."""


class UnknownAuthType(SignerError, ValueError):
    """Raised when no signer exists for the requested auth type."""

    def __init__(self, auth_type: object) -> None:
        self.auth_type = auth_type
        super().__init__(f'Unknown authentication type "{auth_type}"')


class MissingCredentials(SignerError):
    """Raised when a signer is asked to sign without its required parameters."""


class Signer(ABC):
    """Transforms a wire-ready request by adding authentication material."""

    @abstractmethod
    def sign(
        self,
        request_options: RequestOptions,
        params: Mapping[str, str] | None = None,
    ) -> RequestOptions:
        """Return the signed request. Implementations must not mutate the input."""


class NoneSigner(Signer):
    """Signer for requests without authentication."""

    def sign(
        self,
        request_options: RequestOptions,
        params: Mapping[str, str] | None = None,
    ) -> RequestOptions:
        return request_options


def password_digest(nonce: str, created: str, secret: str) -> str:
    """Compute the WSSE PasswordDigest for the given nonce, timestamp and secret."""
    raw = (nonce + created + secret).encode("utf-8")
    return base64.b64encode(hashlib.sha1(raw).digest()).decode("ascii")


def _default_nonce() -> str:
    return secrets.token_hex(16)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_created(moment: datetime) -> str:
    """Format a timestamp as ISO 8601 UTC with a trailing Z, second precision."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class WsseSigner(Signer):
    """Signs requests with a WSSE UsernameToken header.

    Every call generates a new nonce and timestamp, so signing the same
    request twice yields two different headers. Tests that need a stable
    header inject nonce_factory and clock.

    Usage:
        signer = WsseSigner({"key": "user", "secret": "s3cret"})
        signed = signer.sign(request_options)
    """

    def __init__(
        self,
        params: Mapping[str, str] | None = None,
        *,
        nonce_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the signer.

        Args:
            params: Default credentials ({"key": ..., "secret": ...}). Checked
                    when signing, not here.
            nonce_factory: Returns a fresh printable nonce per call.
            clock: Returns the current time (timezone-aware).
        """
        self._params = dict(params or {})
        self._nonce_factory = nonce_factory or _default_nonce
        self._clock = clock or _utc_now

    def sign(
        self,
        request_options: RequestOptions,
        params: Mapping[str, str] | None = None,
    ) -> RequestOptions:
        """Return a copy of request_options with an X-WSSE header added.

        Args:
            request_options: The request to sign.
            params: Credentials to use instead of the constructor's.

        Raises:
            MissingCredentials: If key or secret is absent or empty.
        """
        credentials = params if params is not None else self._params
        key = credentials.get("key")
        secret = credentials.get("secret")
        missing = [name for name, value in (("key", key), ("secret", secret)) if not value]
        if missing:
            raise MissingCredentials(
                f"WSSE signing requires {' and '.join(missing)}"
            )

        nonce = self._nonce_factory()
        created = format_created(self._clock())
        digest = password_digest(nonce, created, secret)

        logger.debug("Signing %s %s with WSSE (created=%s)", request_options.method.value,
                     request_options.url, created)
        return request_options.with_header(
            WSSE_HEADER,
            f'UsernameToken Username="{key}", PasswordDigest="{digest}", '
            f'Nonce="{nonce}", Created="{created}"',
        )


class SignerFactory:
    """Maps an AuthType and its parameters to a Signer."""

    @staticmethod
    def create(
        auth_type: AuthType | str,
        params: Mapping[str, str] | None = None,
    ) -> Signer:
        """Create the signer for auth_type.

        Raises:
            UnknownAuthType: If auth_type is not a supported scheme.
        """
        try:
            resolved = AuthType(auth_type)
        except ValueError:
            raise UnknownAuthType(auth_type) from None

        if resolved is AuthType.WSSE:
            return WsseSigner(params)
        if resolved is AuthType.NONE:
            return NoneSigner()
        raise UnknownAuthType(resolved.value)
