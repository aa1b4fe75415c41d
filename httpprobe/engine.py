"""Core probe engine for httpprobe.

A probe is a chain of legs.  Each leg is one request/response pair on a
fresh connection, measured phase by phase:

    DNS -> TCP -> TLS -> first byte -> transfer

The TLS socket is the TCP socket upgraded in place with ``start_tls`` so
that every milestone belongs to the same connection.  When a leg ends
with a 301/302 and redirects are followed, the next leg starts against
the Location header only after the previous socket is closed; legs never
overlap.  Durations are added to the chain's TimingRecorder, so phase
totals cover the whole redirect chain.

Public API:
    launch_request    -- issue one leg and return its response (or None)
    follow_redirects  -- chain legs until a terminal response
    probe_http        -- full probe: legs, expectation checks, metrics
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
import ssl
from typing import Optional
from urllib.parse import quote, urljoin, urlsplit

import dns.asyncresolver
import dns.exception
import dns.rdatatype
import h2.config
import h2.connection
import h2.events
import h2.exceptions

from httpprobe.config import PATH_SAFE, REDIRECT_STATUS_CODES, USER_AGENT
from httpprobe.metrics import assemble_metrics
from httpprobe.models import (
    HttpResult,
    ProbeOutcome,
    ProbeParams,
    ProbeResult,
    ProbeState,
    RequestDescriptor,
)
from httpprobe.timing import LegTimes, TimingRecorder
from httpprobe.validators import check_expectations, validate

logger = logging.getLogger(__name__)

# Status codes whose responses never carry a body
_NO_BODY_STATUSES = frozenset({204, 304})

# RFC 9110 token, the allowed form of a header name
_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

# Headers that must not be sent over HTTP/2
_H2_FORBIDDEN_HEADERS = frozenset(
    {"connection", "host", "keep-alive", "proxy-connection", "transfer-encoding", "upgrade"}
)


class InvalidTargetError(ValueError):
    """The URL to probe is not an absolute http(s) URL."""


class ProtocolError(Exception):
    """The server sent something that is not a valid HTTP response."""


# Everything that ends a leg without a response.  These are outcomes,
# not errors, from the caller's point of view.
TRANSPORT_ERRORS = (
    OSError,
    EOFError,
    asyncio.TimeoutError,
    dns.exception.DNSException,
    h2.exceptions.H2Error,
    ProtocolError,
)


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------

def build_request(target: str, params: ProbeParams) -> RequestDescriptor:
    """Parse *target* and merge *params* into an immutable request descriptor."""
    parts = urlsplit(target.strip())
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.hostname:
        raise InvalidTargetError(f"Cannot probe {target!r}: an absolute http(s) URL is required")
    try:
        port = parts.port or (443 if scheme == "https" else 80)
    except ValueError as exc:
        raise InvalidTargetError(f"Cannot probe {target!r}: {exc}") from exc

    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    path = quote(path, safe=PATH_SAFE)

    host = parts.hostname
    if not host.isascii():
        try:
            host = host.encode("idna").decode("ascii")
        except UnicodeError as exc:
            raise InvalidTargetError(f"Cannot probe {target!r}: invalid host name ({exc})") from exc
    default_port = 443 if scheme == "https" else 80
    host_header = f"[{host}]" if ":" in host else host
    if port != default_port:
        host_header = f"{host_header}:{port}"

    supplied = {name.lower() for name in params.headers}
    headers = [
        (name, value)
        for name, value in (("Host", host_header), ("User-Agent", USER_AGENT), ("Accept", "*/*"))
        if name.lower() not in supplied
    ]
    for name, values in params.headers.items():
        for value in values:
            _check_header(name, value)
            headers.append((name, value))

    return RequestDescriptor(
        method=(params.method or "GET").upper(),
        scheme=scheme,
        host=host,
        port=port,
        path=path,
        headers=tuple(headers),
        verify=not params.allow_unauthorized,
    )


def _check_header(name: str, value: str) -> None:
    """Reject a header that cannot be written as HTTP/1.1 (latin-1, single line)."""
    if not _TOKEN_RE.match(name):
        raise InvalidTargetError(f"Cannot send header {name!r}: invalid header name")
    if "\r" in value or "\n" in value:
        raise InvalidTargetError(f"Cannot send header {name!r}: value contains a line break")
    try:
        value.encode("latin-1")
    except UnicodeEncodeError as exc:
        raise InvalidTargetError(f"Cannot send header {name!r}: value is not latin-1 ({exc.reason})") from exc


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# DNS resolution
# ---------------------------------------------------------------------------

async def _resolve_with_dnspython(hostname: str, params: ProbeParams) -> str:
    """Resolve *hostname* via dnspython, preferring A and falling back to AAAA."""
    if params.dns_server:
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = [params.dns_server]
    else:
        resolver = dns.asyncresolver.Resolver()
    if params.timeout is not None:
        resolver.lifetime = params.timeout

    last_error: dns.exception.DNSException | None = None
    for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        try:
            answer = await resolver.resolve(hostname, rdtype)
            return str(answer[0])
        except dns.exception.DNSException as exc:
            last_error = exc
            continue

    raise last_error  # type: ignore[misc]


async def _resolve_dns(hostname: str, params: ProbeParams) -> str:
    """Return an address for *hostname*.

    Names that dnspython cannot resolve (``localhost``, hosts-file
    entries, hosts without a resolv.conf) are handed to the system
    resolver unless an explicit DNS server was requested.
    """
    try:
        return await _resolve_with_dnspython(hostname, params)
    except dns.exception.DNSException as exc:
        if params.dns_server:
            raise
        logger.debug("dnspython could not resolve %s (%s), trying system resolver", hostname, exc)

    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    if not infos:
        raise socket.gaierror(f"No address found for {hostname}")
    # Same preference as above: IPv4 first
    ipv4 = [info for info in infos if info[0] == socket.AF_INET]
    return (ipv4 or infos)[0][4][0]


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

def _build_ssl_context(params: ProbeParams) -> ssl.SSLContext:
    """Certificate-verifying context, unless unauthorized servers are allowed."""
    ctx = ssl.create_default_context()
    if params.allow_unauthorized:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    ctx.set_alpn_protocols(["h2", "http/1.1"] if params.http2 else ["http/1.1"])
    return ctx


# ---------------------------------------------------------------------------
# HTTP/1.1 exchange
# ---------------------------------------------------------------------------

def _parse_head(block: bytes) -> tuple[str, int, dict[str, str]]:
    """Parse a status line and header block into (version, status, headers)."""
    lines = block.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/"):
        raise ProtocolError(f"Malformed status line: {lines[0]!r}")
    try:
        status_code = int(parts[1])
    except ValueError:
        raise ProtocolError(f"Malformed status code: {parts[1]!r}") from None

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" not in line:
            continue
        name, _, value = line.partition(":")
        name = name.strip().lower()
        value = value.strip()
        headers[name] = f"{headers[name]}, {value}" if name in headers else value

    return parts[0][len("HTTP/"):], status_code, headers


async def _read_chunked_body(reader: asyncio.StreamReader, initial_data: bytes) -> bytes:
    """Read a chunked transfer-encoded body."""
    buf = initial_data
    body_parts: list[bytes] = []

    while True:
        while b"\r\n" not in buf:
            chunk = await reader.read(4096)
            if not chunk:
                raise ProtocolError("Connection closed inside a chunked body")
            buf += chunk

        line_end = buf.index(b"\r\n")
        size_str = buf[:line_end].decode("latin-1").split(";")[0].strip()
        buf = buf[line_end + 2:]
        try:
            chunk_size = int(size_str, 16)
        except ValueError:
            raise ProtocolError(f"Malformed chunk size: {size_str!r}") from None

        if chunk_size == 0:
            break

        # data + trailing \r\n
        needed = chunk_size + 2
        if len(buf) < needed:
            buf += await reader.readexactly(needed - len(buf))

        body_parts.append(buf[:chunk_size])
        buf = buf[needed:]

    return b"".join(body_parts)


async def _exchange_h1(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    request: RequestDescriptor,
    recorder: TimingRecorder,
    leg: LegTimes,
) -> HttpResult:
    """Send *request* as HTTP/1.1 and read the complete response."""
    lines = [f"{request.method} {request.path} HTTP/1.1"]
    lines.extend(f"{name}: {value}" for name, value in request.headers)
    if not any(name.lower() == "connection" for name, _ in request.headers):
        lines.append("Connection: close")
    writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
    await writer.drain()

    buf = b""
    while True:
        while b"\r\n\r\n" not in buf:
            chunk = await reader.read(65536)
            if not chunk:
                raise ProtocolError("Connection closed before the response headers were complete")
            recorder.first_byte(leg)
            buf += chunk

        head_end = buf.index(b"\r\n\r\n")
        http_version, status_code, headers = _parse_head(buf[:head_end])
        buf = buf[head_end + 4:]
        # Skip interim responses such as 100 Continue.
        if 100 <= status_code < 200 and status_code != 101:
            continue
        break

    transfer_encoding = headers.get("transfer-encoding", "").lower()
    content_length = headers.get("content-length")

    if request.method == "HEAD" or status_code in _NO_BODY_STATUSES or status_code < 200:
        body = b""
    elif "chunked" in transfer_encoding:
        body = await _read_chunked_body(reader, buf)
    elif content_length is not None and content_length.strip().isdigit():
        remaining = int(content_length) - len(buf)
        body = buf[:int(content_length)]
        if remaining > 0:
            body += await reader.readexactly(remaining)
    else:
        # Read until EOF (Connection: close)
        body_parts = [buf]
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                break
            body_parts.append(chunk)
        body = b"".join(body_parts)

    recorder.response_ended(leg)

    return HttpResult(
        status_code=status_code,
        headers=headers,
        body=body,
        http_version=http_version,
    )


# ---------------------------------------------------------------------------
# HTTP/2 exchange (opt-in, selected through ALPN)
# ---------------------------------------------------------------------------

async def _exchange_h2(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    request: RequestDescriptor,
    recorder: TimingRecorder,
    leg: LegTimes,
) -> HttpResult:
    """Send *request* on an HTTP/2 connection via the h2 library."""
    conn = h2.connection.H2Connection(config=h2.config.H2Configuration(client_side=True))
    conn.initiate_connection()

    headers = [
        (":method", request.method),
        (":path", request.path),
        (":scheme", request.scheme),
        (":authority", request.netloc),
    ]
    for name, value in request.headers:
        if name.lower() not in _H2_FORBIDDEN_HEADERS:
            headers.append((name.lower(), value))

    stream_id = conn.get_next_available_stream_id()
    conn.send_headers(stream_id, headers, end_stream=True)
    writer.write(conn.data_to_send())
    await writer.drain()

    response_headers: dict[str, str] = {}
    status_code = 0
    body_chunks: list[bytes] = []
    stream_ended = False

    while not stream_ended:
        data = await reader.read(65535)
        if not data:
            raise ProtocolError("Connection closed before the HTTP/2 stream ended")

        for event in conn.receive_data(data):
            if getattr(event, "stream_id", stream_id) != stream_id:
                continue

            if isinstance(event, h2.events.ResponseReceived):
                recorder.first_byte(leg)
                for header_name, header_value in event.headers:
                    name = header_name.decode() if isinstance(header_name, bytes) else header_name
                    value = header_value.decode() if isinstance(header_value, bytes) else header_value
                    if name == ":status":
                        status_code = int(value)
                    elif name in response_headers:
                        response_headers[name] = f"{response_headers[name]}, {value}"
                    else:
                        response_headers[name] = value

            elif isinstance(event, h2.events.DataReceived):
                recorder.first_byte(leg)
                body_chunks.append(event.data)
                conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)

            elif isinstance(event, h2.events.StreamEnded):
                stream_ended = True

            elif isinstance(event, h2.events.StreamReset):
                raise ProtocolError(f"HTTP/2 stream reset: error code {event.error_code}")

            elif isinstance(event, h2.events.ConnectionTerminated):
                raise ProtocolError(f"HTTP/2 connection terminated: error code {event.error_code}")

        pending = conn.data_to_send()
        if pending:
            writer.write(pending)
            await writer.drain()

    recorder.response_ended(leg)

    return HttpResult(
        status_code=status_code,
        headers=response_headers,
        body=b"".join(body_chunks),
        http_version="2.0",
    )


# ---------------------------------------------------------------------------
# One leg
# ---------------------------------------------------------------------------

async def _close_writer(writer: asyncio.StreamWriter | None) -> None:
    """Close a stream writer and wait for the transport to go away."""
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def _run_leg(
    request: RequestDescriptor,
    params: ProbeParams,
    recorder: TimingRecorder,
    leg: LegTimes,
) -> HttpResult:
    writer: asyncio.StreamWriter | None = None
    try:
        # ---- DNS (skipped for IP literals) ----
        address = request.host
        if not _is_ip_address(request.host):
            address = await _resolve_dns(request.host, params)
            recorder.dns_resolved(leg)

        # ---- TCP ----
        reader, writer = await asyncio.open_connection(address, request.port)
        recorder.tcp_connected(leg)

        # ---- TLS ----
        certificate: Optional[bytes] = None
        alpn_protocol: Optional[str] = None
        if request.is_secure:
            await writer.start_tls(_build_ssl_context(params), server_hostname=request.host)
            recorder.tls_secured(leg)
            ssl_object = writer.get_extra_info("ssl_object")
            if ssl_object is not None:
                certificate = ssl_object.getpeercert(binary_form=True)
                alpn_protocol = ssl_object.selected_alpn_protocol()

        # ---- First byte + transfer ----
        if alpn_protocol == "h2":
            result = await _exchange_h2(reader, writer, request, recorder, leg)
        else:
            result = await _exchange_h1(reader, writer, request, recorder, leg)
        result.peer_certificate = certificate
        return result
    finally:
        await _close_writer(writer)


async def launch_request(
    target: str,
    params: ProbeParams,
    state: ProbeState,
) -> Optional[HttpResult]:
    """Issue one leg against *target* and return its response.

    The request descriptor is appended to *state* before any network
    activity.  Transport failures (DNS, connect, TLS, reset, malformed
    framing, the opt-in timeout) are logged and yield ``None``.

    Raises
    ------
    InvalidTargetError
        If *target* is not an absolute http(s) URL.
    """
    request = build_request(target, params)
    state.requests.append(request)
    leg = state.timing.start_leg()

    logger.debug("%s %s", request.method, request.url)
    try:
        if params.timeout is not None:
            return await asyncio.wait_for(
                _run_leg(request, params, state.timing, leg),
                timeout=params.timeout,
            )
        return await _run_leg(request, params, state.timing, leg)
    except TRANSPORT_ERRORS as exc:
        logger.debug("Request to %s failed: %s", request.url, exc or type(exc).__name__)
        return None


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------

def should_follow(response: HttpResult, params: ProbeParams) -> bool:
    return params.follow_redirects and response.status_code in REDIRECT_STATUS_CODES


async def follow_redirects(
    target: str,
    params: ProbeParams,
    state: Optional[ProbeState] = None,
) -> ProbeOutcome:
    """Run legs from *target* until one is terminal.

    A leg is terminal when it failed, when redirects are not followed,
    when its status is not 301/302, when it has no Location header, or
    when the opt-in ``max_redirects`` ceiling has been reached.
    """
    if state is None:
        state = ProbeState()

    response = await launch_request(target, params, state)
    while response is not None and should_follow(response, params):
        location = response.headers.get("location", "").strip()
        if not location:
            logger.debug("HTTP %d from %s without a Location header", response.status_code, target)
            break
        if params.max_redirects is not None and state.redirects >= params.max_redirects:
            state.redirect_limit_reached = True
            logger.debug("Not following redirect to %s: limit of %d reached", location, params.max_redirects)
            break

        state.redirects += 1
        target = urljoin(state.last_request.url, location)
        logger.debug("Following HTTP %d redirect #%d to %s", response.status_code, state.redirects, target)
        try:
            response = await launch_request(target, params, state)
        except InvalidTargetError as exc:
            logger.debug("Cannot follow redirect: %s", exc)
            response = None

    return ProbeOutcome(response=response, state=state)


# ---------------------------------------------------------------------------
# Full probe
# ---------------------------------------------------------------------------

async def probe_http(
    target: str,
    params: Optional[ProbeParams] = None,
    state: Optional[ProbeState] = None,
) -> ProbeResult:
    """Probe *target* and return its metrics, failures and overall success.

    Expectations are checked for well-formedness before any network
    activity; a malformed one raises
    :class:`~httpprobe.validators.ExpectationError`.

    Raises
    ------
    InvalidTargetError
        If *target* is not an absolute http(s) URL.
    """
    if params is None:
        params = ProbeParams()
    check_expectations(params)
    build_request(target, params)

    outcome = await follow_redirects(target, params, state)

    failures = []
    if outcome.response is not None:
        failures = validate(params, outcome.response, outcome.state)

    return ProbeResult(
        target=target,
        metrics=assemble_metrics(outcome.response, outcome.state),
        failures=failures,
        success=outcome.response is not None and not failures,
    )
