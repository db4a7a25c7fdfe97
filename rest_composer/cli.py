"""CLI entry point for rest-composer.

Composes a request through the same Store/Dispatcher actions a UI uses,
sends it through a message channel and prints the response.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from rest_composer.channel import ChannelError, MessageChannel, SubprocessChannel, ThreadChannel
from rest_composer.config_loader import ConfigError, build_store, load_config
from rest_composer.dispatcher import Dispatcher
from rest_composer.models import (
    CONTENT_TYPE_HEADER,
    AuthType,
    ComposerConfig,
    ContentType,
    HttpMethod,
    TransportResponse,
)
from rest_composer.signers import SignerError
from rest_composer.store import StateError
from rest_composer.transport import TransportError

logger = logging.getLogger(__name__)


def parse_header(value: str) -> tuple[str, str]:
    """Parse a "Name: value" header argument.

    Raises:
        argparse.ArgumentTypeError: If there is no colon or the name is empty.
    """
    name, sep, header_value = value.partition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected format: Name: value"
        )
    return (name.strip(), header_value.strip())


def parse_auth_param(value: str) -> tuple[str, str]:
    """Parse a key=value auth parameter.

    Raises:
        argparse.ArgumentTypeError: If there is no '=' or the key is empty.
    """
    key, sep, param_value = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(
            f"Invalid auth parameter '{value}'. Expected format: key=value"
        )
    return (key.strip(), param_value)


def positive_int(value: str) -> int:
    """Parse and validate a positive integer value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


@dataclass
class SendArgs:
    """Parsed arguments for send mode."""

    url: str
    method: HttpMethod
    headers: list[tuple[str, str]]
    data: str | None
    content_type: ContentType | None
    auth: AuthType | None
    auth_params: dict[str, str]
    config: Path | None
    timeout_ms: int | None
    subprocess: bool
    show_request_headers: bool
    fail: bool
    log_level: str | None


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with the send subcommand."""
    parser = argparse.ArgumentParser(
        prog="rest-composer",
        description="Compose, sign and send HTTP requests.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Execution mode")

    send_parser = subparsers.add_parser("send", help="Send one request and print the response")
    send_parser.add_argument("url", help="Request URL")
    send_parser.add_argument(
        "-X", "--method",
        type=str.upper,
        choices=[m.value for m in HttpMethod],
        default=HttpMethod.GET.value,
        help="HTTP method (default: GET)",
    )
    send_parser.add_argument(
        "-H", "--header",
        type=parse_header,
        action="append",
        default=[],
        dest="headers",
        metavar="'NAME: VALUE'",
        help="Add a request header (can be repeated)",
    )
    send_parser.add_argument(
        "-d", "--data",
        type=str,
        default=None,
        help="Request body, or @PATH to read it from a file",
    )
    send_parser.add_argument(
        "--content-type",
        choices=[c.value for c in ContentType],
        default=None,
        dest="content_type",
        help="Body content type; sets the content-type header unless 'custom'",
    )
    send_parser.add_argument(
        "--auth",
        choices=[a.value for a in AuthType],
        default=None,
        help="Authentication scheme (overrides the config file)",
    )
    send_parser.add_argument(
        "--auth-param",
        type=parse_auth_param,
        action="append",
        default=[],
        dest="auth_params",
        metavar="KEY=VALUE",
        help="Authentication parameter, e.g. key=... or secret=... (can be repeated)",
    )
    send_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (YAML)",
    )
    send_parser.add_argument(
        "--timeout-ms",
        type=positive_int,
        default=None,
        dest="timeout_ms",
        metavar="MILLISECONDS",
        help="Request timeout (default: from config, else 60000)",
    )
    send_parser.add_argument(
        "--subprocess",
        action="store_true",
        default=False,
        help="Run the network side in a separate worker process",
    )
    send_parser.add_argument(
        "--show-request-headers",
        action="store_true",
        default=False,
        dest="show_request_headers",
        help="Print the headers that were actually sent to stderr",
    )
    send_parser.add_argument(
        "--fail",
        action="store_true",
        default=False,
        help="Exit with status 1 on HTTP 4xx/5xx responses",
    )
    send_parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        dest="log_level",
        help="Logging level (default: from config, else WARNING)",
    )

    return parser


def parse_args(args: list[str] | None = None) -> SendArgs:
    """Parse command-line arguments and return typed args dataclass.

    Args:
        args: Command-line arguments to parse. If None, uses sys.argv[1:].

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command != "send":
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")

    return SendArgs(
        url=namespace.url,
        method=HttpMethod(namespace.method),
        headers=namespace.headers,
        data=namespace.data,
        content_type=ContentType(namespace.content_type) if namespace.content_type else None,
        auth=AuthType(namespace.auth) if namespace.auth else None,
        auth_params=dict(namespace.auth_params),
        config=namespace.config,
        timeout_ms=namespace.timeout_ms,
        subprocess=namespace.subprocess,
        show_request_headers=namespace.show_request_headers,
        fail=namespace.fail,
        log_level=namespace.log_level,
    )


def read_body(data: str) -> str:
    """Return the body argument, reading it from a file when it starts with '@'."""
    if not data.startswith("@"):
        return data
    path = Path(data[1:])
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read body file {path}: {e}") from e


def compose_request(dispatcher: Dispatcher, args: SendArgs) -> None:
    """Apply the command-line options to the Store through dispatcher actions."""
    dispatcher.set_url(args.url)
    dispatcher.select_http_method(args.method)

    if args.content_type is not None:
        dispatcher.select_content_type(args.content_type)

    for name, value in args.headers:
        if name.lower() == CONTENT_TYPE_HEADER:
            index = next(
                i for i, header in enumerate(dispatcher.store.state.request.headers)
                if header.matches(CONTENT_TYPE_HEADER)
            )
            dispatcher.update_header(index, value=value)
        else:
            dispatcher.add_header(name, value)

    if args.data is not None:
        dispatcher.set_request_body(read_body(args.data))

    if args.auth is not None:
        dispatcher.select_auth_type(args.auth)
    if args.auth_params:
        dispatcher.set_auth_params({**dispatcher.store.state.auth.params, **args.auth_params})


def print_response(response: TransportResponse) -> None:
    print(f"{response.http_version} {response.status_code} {response.reason_phrase}".rstrip())
    for name, value in response.headers.items():
        print(f"{name}: {value}")
    print()
    print(response.body)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        args = parse_args(argv)
        return run_send(args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def run_send(args: SendArgs) -> int:
    """Run send mode."""
    try:
        config = load_config(args.config) if args.config else ComposerConfig()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    log_level = args.log_level or config.log_level.upper()
    logging.basicConfig(level=log_level, stream=sys.stderr)
    timeout_ms = args.timeout_ms or config.timeout_ms

    channel: MessageChannel
    try:
        if args.subprocess:
            channel = SubprocessChannel(timeout_ms=timeout_ms, log_level=log_level)
        else:
            channel = ThreadChannel(timeout_ms=timeout_ms)
    except ChannelError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    with channel:
        dispatcher = Dispatcher(build_store(config), channel)
        try:
            compose_request(dispatcher, args)
            future = dispatcher.send_request()
        except (ConfigError, SignerError, StateError, ChannelError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        try:
            response = future.result()
        except (TransportError, ChannelError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        if args.show_request_headers:
            for name, value in dispatcher.store.state.sent_request_headers.items():
                print(f"> {name}: {value}", file=sys.stderr)

    print_response(response)
    if args.fail and response.status_code >= 400:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
