"""Metric assembly for a finished probe.

Metrics are emitted whether or not the probe succeeded.  Values that
cannot be observed (no response, no certificate, unparsable header)
are ``None``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509

from httpprobe.config import PHASE_NAMES
from httpprobe.models import HttpResult, Metric, MetricValue, ProbeState

logger = logging.getLogger(__name__)


def build_metric(
    name: str,
    unit: str,
    value: MetricValue,
    description: str,
    tags: Optional[dict[str, str]] = None,
) -> Metric:
    return Metric(name=name, unit=unit, value=value, description=description, tags=dict(tags or {}))


def certificate_expiry(certificate: Optional[bytes]) -> Optional[datetime]:
    """Return the ``notAfter`` date of a DER certificate, in UTC."""
    if not certificate:
        return None
    try:
        cert = x509.load_der_x509_certificate(certificate)
    except ValueError as exc:
        logger.debug("Could not parse peer certificate: %s", exc)
        return None

    not_after = cert.not_valid_after_utc if hasattr(cert, "not_valid_after_utc") else cert.not_valid_after
    if not_after.tzinfo is None:
        not_after = not_after.replace(tzinfo=timezone.utc)
    return not_after


def content_length(response: Optional[HttpResult]) -> Optional[int]:
    if response is None:
        return None
    value = response.headers.get("content-length", "").strip()
    if not value.isdigit():
        return None
    return int(value)


def http_version_number(response: Optional[HttpResult]) -> Optional[float]:
    if response is None:
        return None
    try:
        return float(response.http_version)
    except ValueError:
        return None


def assemble_metrics(response: Optional[HttpResult], state: ProbeState) -> list[Metric]:
    """Build the ordered metric list for a probe's final response and state."""
    metrics: list[Metric] = []

    metrics.append(build_metric(
        "httpCertificateExpiry",
        "datetime",
        certificate_expiry(response.peer_certificate if response is not None else None),
        "Expiration date of the SSL certificate",
    ))

    metrics.append(build_metric(
        "httpContentLength",
        "bytes",
        content_length(response),
        "Length of the HTTP response entity in bytes",
    ))

    for phase in PHASE_NAMES:
        if phase not in state.timing.durations:
            continue
        metrics.append(build_metric(
            "httpDuration",
            "seconds",
            state.timing.durations[phase],
            "Duration of the HTTP request(s) by phase, summed over all redirects, in seconds",
            {"phase": phase},
        ))

    metrics.append(build_metric(
        "httpRedirects",
        "quantity",
        state.redirects,
        "Number of times HTTP 301 or 302 redirects were followed",
    ))

    metrics.append(build_metric(
        "httpSecure",
        "boolean",
        # TLS on any leg, not only the final one
        state.secure,
        "Indicates whether SSL/TLS was used for the request (or any redirect)",
    ))

    metrics.append(build_metric(
        "httpStatusCode",
        "number",
        response.status_code if response is not None else None,
        "HTTP status code of the final response",
    ))

    metrics.append(build_metric(
        "httpVersion",
        "number",
        http_version_number(response),
        "HTTP version of the final response",
    ))

    return metrics
