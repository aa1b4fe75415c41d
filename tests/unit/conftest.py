import asyncio
import ipaddress
import itertools
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import h2.config
import h2.connection
import h2.events
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from httpprobe.timing import TimingRecorder

CERT_NOT_AFTER = datetime(2031, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

_REASONS = {200: "OK", 204: "No Content", 301: "Moved Permanently", 302: "Found", 404: "Not Found", 500: "Internal Server Error"}


@dataclass
class Route:
    status: int = 200
    headers: dict = field(default_factory=dict)
    body: bytes = b""
    chunked: bool = False
    version: str = "1.1"
    raw: Optional[bytes] = None  # sent verbatim instead of a rendered response
    hang: bool = False  # never answer; wait for the client to go away

    def render(self, method: str) -> bytes:
        if self.raw is not None:
            return self.raw
        headers = dict(self.headers)
        if self.chunked:
            headers["Transfer-Encoding"] = "chunked"
            payload = b""
            if self.body:
                half = len(self.body) // 2 or 1
                for piece in (self.body[:half], self.body[half:]):
                    if piece:
                        payload += f"{len(piece):x}\r\n".encode() + piece + b"\r\n"
            payload += b"0\r\n\r\n"
        else:
            headers.setdefault("Content-Length", str(len(self.body)))
            payload = self.body
        lines = [f"HTTP/{self.version} {self.status} {_REASONS.get(self.status, 'Status')}"]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
        return head if method == "HEAD" else head + payload


@dataclass
class SeenRequest:
    method: str
    path: str
    headers: dict


class StubServer:
    """Minimal HTTP/1.1 server on 127.0.0.1 answering from a route table."""

    def __init__(self, routes=None, ssl_context: Optional[ssl.SSLContext] = None):
        self.routes: dict[str, Route] = dict(routes or {})
        self.requests: list[SeenRequest] = []
        self._ssl = ssl_context
        self._server = None
        self.port = 0

    @property
    def scheme(self) -> str:
        return "https" if self._ssl else "http"

    def url(self, path: str = "/", host: str = "127.0.0.1") -> str:
        return f"{self.scheme}://{host}:{self.port}{path}"

    async def __aenter__(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0, ssl=self._ssl)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc_info):
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        ssl_object = writer.get_extra_info("ssl_object")
        if ssl_object is not None and ssl_object.selected_alpn_protocol() == "h2":
            await self._handle_h2(reader, writer)
            return
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            lines = head.decode("latin-1").split("\r\n")
            method, path, _ = lines[0].split(" ", 2)
            headers = {}
            for line in lines[1:]:
                if ":" in line:
                    name, _, value = line.partition(":")
                    headers[name.strip().lower()] = value.strip()
            self.requests.append(SeenRequest(method, path, headers))

            route = self.routes.get(path, Route(404, body=b"not found"))
            if route.hang:
                await reader.read()
            else:
                writer.write(route.render(method))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError, ssl.SSLError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass

    async def _handle_h2(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Answer HTTP/2 requests; bodies go out as two DATA frames."""
        conn = h2.connection.H2Connection(
            config=h2.config.H2Configuration(client_side=False, header_encoding="utf-8")
        )
        conn.initiate_connection()
        writer.write(conn.data_to_send())
        try:
            await writer.drain()
            while True:
                data = await reader.read(65535)
                if not data:
                    break
                for event in conn.receive_data(data):
                    if not isinstance(event, h2.events.RequestReceived):
                        continue
                    headers = dict(event.headers)
                    path = headers.pop(":path")
                    method = headers.pop(":method")
                    self.requests.append(SeenRequest(method, path, headers))

                    route = self.routes.get(path, Route(404, body=b"not found"))
                    body = b"" if method == "HEAD" else route.body
                    response_headers = [(":status", str(route.status))]
                    response_headers += [(name.lower(), value) for name, value in route.headers.items()]
                    response_headers.append(("content-length", str(len(route.body))))
                    conn.send_headers(event.stream_id, response_headers)
                    half = len(body) // 2
                    conn.send_data(event.stream_id, body[:half])
                    conn.send_data(event.stream_id, body[half:], end_stream=True)
                writer.write(conn.data_to_send())
                await writer.drain()
        except (ConnectionError, ssl.SSLError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass


@pytest.fixture(scope="session")
def certificate_files(tmp_path_factory):
    """Self-signed certificate for 127.0.0.1, as (cert_path, key_path)."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "127.0.0.1")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime(2024, 1, 1, tzinfo=timezone.utc))
        .not_valid_after(CERT_NOT_AFTER)
        .add_extension(
            x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    directory = tmp_path_factory.mktemp("tls")
    cert_path = directory / "cert.pem"
    key_path = directory / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@pytest.fixture
def server_ssl_context(certificate_files):
    cert_path, key_path = certificate_files
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(str(cert_path), str(key_path))
    ctx.set_alpn_protocols(["h2", "http/1.1"])
    return ctx


@pytest.fixture
def ticking_recorder():
    """TimingRecorder whose clock advances by exactly one second per reading."""
    ticks = itertools.count()
    return TimingRecorder(clock=lambda: float(next(ticks)))
