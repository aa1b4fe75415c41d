"""Data models for httpprobe."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from httpprobe.timing import TimingRecorder

MetricValue = Union[int, float, bool, str, datetime, None]


@dataclass
class ProbeParams:
    """Parameter bag for one probe: request options plus expectations."""

    method: str = "GET"
    follow_redirects: bool = True
    allow_unauthorized: bool = False
    headers: dict[str, list[str]] = field(default_factory=dict)
    http2: bool = False
    timeout: Optional[float] = None  # per leg, seconds; None = unbounded
    max_redirects: Optional[int] = None  # None = unbounded
    dns_server: Optional[str] = None

    expect_http_redirects: Optional[Union[int, bool]] = None
    expect_http_redirect_to: Optional[str] = None
    expect_http_response_body_match: list[str] = field(default_factory=list)
    expect_http_response_body_mismatch: list[str] = field(default_factory=list)
    expect_http_secure: Optional[bool] = None
    expect_http_status_code: list[Union[str, int]] = field(default_factory=list)
    expect_http_version: Optional[str] = None


@dataclass(frozen=True)
class RequestDescriptor:
    """One issued request.  Appended to the probe state, never modified."""

    method: str
    scheme: str
    host: str
    port: int
    path: str  # includes the query string, if any
    headers: tuple[tuple[str, str], ...] = ()
    verify: bool = True

    @property
    def is_secure(self) -> bool:
        return self.scheme == "https"

    @property
    def netloc(self) -> str:
        default_port = 443 if self.is_secure else 80
        host = f"[{self.host}]" if ":" in self.host else self.host
        return host if self.port == default_port else f"{host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.netloc}{self.path}"


@dataclass
class ProbeState:
    """Accumulated state of a single probe chain.

    Owned by exactly one in-flight probe and handed explicitly from leg to
    leg; phase durations are summed across every leg of the chain.
    """

    requests: list[RequestDescriptor] = field(default_factory=list)
    timing: TimingRecorder = field(default_factory=TimingRecorder)
    redirects: int = 0
    redirect_limit_reached: bool = False

    @property
    def last_request(self) -> Optional[RequestDescriptor]:
        return self.requests[-1] if self.requests else None

    @property
    def secure(self) -> bool:
        # Any leg, not only the final one.
        return "tlsHandshake" in self.timing.durations


@dataclass
class HttpResult:
    """Response collected for one leg on the raw socket."""

    status_code: int = 0
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    http_version: str = ""  # "1.1", "1.0", "2.0"
    peer_certificate: Optional[bytes] = None  # DER, TLS legs only

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class ProbeOutcome:
    """Final response (None on transport failure) and the state at termination."""

    response: Optional[HttpResult]
    state: ProbeState


@dataclass
class Failure:
    """A single violated expectation."""

    cause: str
    description: str
    actual: object = None
    expected: object = None

    def to_dict(self) -> dict:
        data: dict = {"cause": self.cause, "description": self.description}
        if self.actual is not None:
            data["actual"] = self.actual
        if self.expected is not None:
            data["expected"] = self.expected
        return data


@dataclass
class Metric:
    """A named, unit-tagged observation."""

    name: str
    unit: str
    value: MetricValue
    description: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class ProbeResult:
    """What a probe hands to the outside world."""

    target: str
    metrics: list[Metric] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)
    success: bool = False

    def get_metric(self, name: str, **tags: str) -> Optional[Metric]:
        for metric in self.metrics:
            if metric.name == name and all(metric.tags.get(k) == v for k, v in tags.items()):
                return metric
        return None
