"""Constants and configuration for httpprobe.

Probe parameters are read by the CLI from flags, then from ``PROBE_*``
environment variables (click ``envvar``), then from a file named by
``PROBE_*_FILE``.  The click parameter types below do the conversion and
validation for all three sources.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Callable, Optional

import click

# User agent for probe requests
USER_AGENT = "httpprobe/0.1.0"

# Phase names, in metric output order
PHASE_CONTENT_TRANSFER = "contentTransfer"
PHASE_DNS_LOOKUP = "dnsLookup"
PHASE_FIRST_BYTE = "firstByte"
PHASE_TCP_CONNECTION = "tcpConnection"
PHASE_TLS_HANDSHAKE = "tlsHandshake"

PHASE_NAMES = [
    PHASE_CONTENT_TRANSFER,
    PHASE_DNS_LOOKUP,
    PHASE_FIRST_BYTE,
    PHASE_TCP_CONNECTION,
    PHASE_TLS_HANDSHAKE,
]
PHASE_LABELS = {
    PHASE_CONTENT_TRANSFER: "Transfer",
    PHASE_DNS_LOOKUP: "DNS",
    PHASE_FIRST_BYTE: "TTFB",
    PHASE_TCP_CONNECTION: "TCP",
    PHASE_TLS_HANDSHAKE: "TLS",
}

# Redirect statuses that are followed
REDIRECT_STATUS_CODES = frozenset({301, 302})

# Characters left as-is when percent-encoding a request target
PATH_SAFE = "/?=&%:@!$'()*+,;~-._"

# Accepted status codes when no expectation is given
DEFAULT_EXPECTED_STATUS_CODES = ["2xx", "3xx"]

DEFAULT_LOG_LEVEL = "warning"
LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]

# Environment variables read by the CLI
ENV_METHOD = "PROBE_METHOD"
ENV_FOLLOW_REDIRECTS = "PROBE_FOLLOW_REDIRECTS"
ENV_ALLOW_UNAUTHORIZED = "PROBE_ALLOW_UNAUTHORIZED"
ENV_HEADER = "PROBE_HEADER"
ENV_HTTP2 = "PROBE_HTTP2"
ENV_TIMEOUT = "PROBE_TIMEOUT"
ENV_MAX_REDIRECTS = "PROBE_MAX_REDIRECTS"
ENV_DNS_SERVER = "PROBE_DNS_SERVER"
ENV_EXPECT_HTTP_REDIRECTS = "PROBE_EXPECT_HTTP_REDIRECTS"
ENV_EXPECT_HTTP_REDIRECT_TO = "PROBE_EXPECT_HTTP_REDIRECT_TO"
ENV_BODY_MATCH = "PROBE_HTTP_RESPONSE_BODY_MATCH"
ENV_BODY_MISMATCH = "PROBE_HTTP_RESPONSE_BODY_MISMATCH"
ENV_EXPECT_HTTP_SECURE = "PROBE_EXPECT_HTTP_SECURE"
ENV_EXPECT_HTTP_STATUS_CODE = "PROBE_EXPECT_HTTP_STATUS_CODE"
ENV_EXPECT_HTTP_VERSION = "PROBE_EXPECT_HTTP_VERSION"
ENV_LOG_LEVEL = "PROBE_LOG_LEVEL"

_STATUS_RE = re.compile(r"^([1-5]xx|[1-5]\d\d)$", re.IGNORECASE)


def read_env_file(name: str) -> Optional[str]:
    """Return the stripped contents of the file named by ``$name_FILE``, if set."""
    file_name = os.environ.get(f"{name}_FILE")
    if not file_name:
        return None
    try:
        return Path(file_name).read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise click.BadParameter(f"could not read {name}_FILE ({file_name}): {exc.strerror or exc}") from exc


def env_file_default(name: str, default: Any = None, separator: Optional[str] = None) -> Callable[[], Any]:
    """Lazy click default: ``$name_FILE`` contents, else *default*.

    With a *separator*, the file holds several values (for ``multiple``
    options).
    """

    def _default():
        value = read_env_file(name)
        if value is None:
            return default
        if separator is None:
            return value
        return [part for part in value.split(separator) if part.strip()]

    return _default


class MethodType(click.ParamType):
    name = "method"

    def convert(self, value, param, ctx):
        method = str(value).strip().upper()
        if not method.isalpha():
            self.fail(f"{value!r} is not an HTTP method name", param, ctx)
        return method


class HeaderType(click.ParamType):
    """``Name=Value`` pairs; one per line when read from the environment."""

    name = "name=value"
    envvar_list_splitter = "\n"

    def convert(self, value, param, ctx):
        if isinstance(value, tuple):
            return value
        name, sep, header_value = str(value).partition("=")
        name = name.strip()
        if not sep or not name:
            self.fail(f'{value!r} does not have the form "Name=Value"', param, ctx)
        return name, header_value


class RedirectCountType(click.ParamType):
    """An exact redirect count, or a boolean (any redirect / none)."""

    name = "count|boolean"

    def convert(self, value, param, ctx):
        if isinstance(value, (bool, int)):
            return value
        text = str(value).strip()
        if text.isdigit():
            return int(text)
        try:
            return click.BOOL.convert(text, param, ctx)
        except click.BadParameter:
            self.fail(f"{value!r} is neither a redirect count nor a boolean", param, ctx)


class PatternType(click.ParamType):
    """A regular expression; one per line when read from the environment."""

    name = "regex"
    envvar_list_splitter = "\n"

    def convert(self, value, param, ctx):
        try:
            re.compile(value)
        except re.error as exc:
            self.fail(f"{value!r} is not a valid regular expression: {exc}", param, ctx)
        return value


class StatusCodeType(click.ParamType):
    """A literal status code or an ``Nxx`` class; comma separated in the environment."""

    name = "code"
    envvar_list_splitter = ","

    def convert(self, value, param, ctx):
        text = str(value).strip()
        if not _STATUS_RE.match(text):
            self.fail(f"{value!r} is not a status code or class such as 2xx", param, ctx)
        return text.lower()


METHOD = MethodType()
HEADER = HeaderType()
REDIRECT_COUNT = RedirectCountType()
PATTERN = PatternType()
STATUS_CODE = StatusCodeType()


def headers_to_dict(pairs) -> dict[str, list[str]]:
    """Group ``(name, value)`` pairs into a name -> values mapping."""
    headers: dict[str, list[str]] = {}
    for name, value in pairs:
        headers.setdefault(name, []).append(value)
    return headers
