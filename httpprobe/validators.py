"""Expectation checks over a probe's final response.

Every validator is a pure function ``(params, response, state) -> list``
of :class:`~httpprobe.models.Failure`; none of them mutates its inputs,
so running the set twice on the same inputs gives the same failures.
"""

from __future__ import annotations

import re
from typing import Callable, Optional
from urllib.parse import SplitResult, quote, urlsplit

from httpprobe.config import DEFAULT_EXPECTED_STATUS_CODES, PATH_SAFE
from httpprobe.models import Failure, HttpResult, ProbeParams, ProbeState

Validator = Callable[[ProbeParams, HttpResult, ProbeState], list[Failure]]

_STATUS_CLASS_RE = re.compile(r"^([1-5])xx$", re.IGNORECASE)


class ExpectationError(ValueError):
    """An expectation is malformed and cannot be checked."""


def _parse_expected_url(value: str) -> SplitResult:
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.netloc:
        raise ExpectationError(f"Expected redirect target {value!r} is not an absolute URL")
    try:
        parts.port
    except ValueError as exc:
        raise ExpectationError(f"Expected redirect target {value!r} is invalid: {exc}") from exc
    return parts


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ExpectationError(f"Invalid regular expression {pattern!r}: {exc}") from exc


def check_expectations(params: ProbeParams) -> None:
    """Raise :class:`ExpectationError` if any expectation is malformed."""
    if params.expect_http_redirect_to is not None:
        _parse_expected_url(params.expect_http_redirect_to)
    for pattern in params.expect_http_response_body_match + params.expect_http_response_body_mismatch:
        _compile(pattern)
    if (
        isinstance(params.expect_http_redirects, int)
        and not isinstance(params.expect_http_redirects, bool)
        and params.expect_http_redirects < 0
    ):
        raise ExpectationError(
            f"Expected redirect count must not be negative; got {params.expect_http_redirects}"
        )


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------

def _expected_redirects(params: ProbeParams) -> Optional[int | bool]:
    if params.expect_http_redirects is not None:
        return params.expect_http_redirects
    if params.expect_http_redirect_to:
        return True
    return None


def validate_http_redirects(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    expected = _expected_redirects(params)

    if isinstance(expected, bool):
        if expected and not state.redirects:
            return [Failure(
                cause="missingHttpRedirect",
                description="Expected the server to send an HTTP redirection",
            )]
        if not expected and state.redirects:
            return [Failure(
                cause="unexpectedHttpRedirect",
                description="Did not expect the server to send an HTTP redirection",
                actual=state.redirects,
                expected=0,
            )]
        return []

    if expected is not None and state.redirects != expected:
        return [Failure(
            cause="invalidHttpRedirectCount",
            description=(
                f"Expected the HTTP request to be redirected exactly {expected} "
                f"time{'s' if expected != 1 else ''}"
            ),
            actual=state.redirects,
            expected=expected,
        )]

    return []


def validate_http_redirect_limit(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    if not state.redirect_limit_reached:
        return []
    return [Failure(
        cause="tooManyHttpRedirects",
        description=f"Stopped following HTTP redirects after {params.max_redirects}",
        actual=state.redirects,
        expected=params.max_redirects,
    )]


def _location_key(parts: SplitResult) -> tuple[str, str, int, str]:
    """(scheme, host, port, path) with the scheme's default port filled in."""
    scheme = parts.scheme.lower()
    port = parts.port or (443 if scheme == "https" else 80)
    return scheme, (parts.hostname or "").lower(), port, quote(parts.path or "/", safe=PATH_SAFE)


def validate_http_redirect_target(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    if params.expect_http_redirect_to is None:
        return []

    expected = _parse_expected_url(params.expect_http_redirect_to)
    last_request = state.last_request
    if last_request is None:
        return []

    actual = urlsplit(last_request.url)
    if _location_key(expected) != _location_key(actual):
        return [Failure(
            cause="invalidHttpRedirectLocation",
            description=f"Expected the request to be redirected to {params.expect_http_redirect_to}",
            actual=last_request.url,
            expected=expected.geturl(),
        )]

    return []


# ---------------------------------------------------------------------------
# Body
# ---------------------------------------------------------------------------

def validate_http_response_body(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    body = response.text
    failures: list[Failure] = []

    for pattern in params.expect_http_response_body_match:
        if not _compile(pattern).search(body):
            failures.append(Failure(
                cause="httpResponseBodyMismatch",
                description=f"Expected the HTTP response body to match the following regular expression: {pattern}",
                expected=pattern,
            ))

    for pattern in params.expect_http_response_body_mismatch:
        match = _compile(pattern).search(body)
        if match:
            failures.append(Failure(
                cause="unexpectedHttpResponseBodyMatch",
                description=f"Did not expect the HTTP response body to match the following regular expression: {pattern}",
                actual=match.group(0),
                expected=pattern,
            ))

    return failures


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------

def validate_http_security(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    # "Secure" means a TLS handshake happened on any leg of the chain.
    if params.expect_http_secure is True and not state.secure:
        return [Failure(
            cause="insecureHttp",
            description="Expected the server to use SSL/TLS for the request (or final redirect)",
        )]
    if params.expect_http_secure is False and state.secure:
        return [Failure(
            cause="unexpectedlySecureHttp",
            description="Did not expect the server to use SSL/TLS for the request (or final redirect)",
        )]
    return []


# ---------------------------------------------------------------------------
# Status code and version
# ---------------------------------------------------------------------------

def status_code_matches(actual: int, expected: str | int) -> bool:
    """Whether *actual* matches a literal code or an ``Nxx`` class."""
    text = str(expected).strip()
    class_match = _STATUS_CLASS_RE.match(text)
    if class_match:
        range_start = int(class_match.group(1)) * 100
        return range_start <= actual <= range_start + 99
    try:
        return int(text) == actual
    except ValueError:
        return False


def validate_http_status_code(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    expected = list(params.expect_http_status_code) or list(DEFAULT_EXPECTED_STATUS_CODES)
    if any(status_code_matches(response.status_code, code) for code in expected):
        return []
    return [Failure(
        cause="invalidHttpStatusCode",
        description=f"Expected HTTP status code to match one of the following: {', '.join(str(c) for c in expected)}",
        actual=response.status_code,
        expected=[str(c) for c in expected],
    )]


def _as_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_http_version(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    expected = params.expect_http_version
    if not expected:
        return []

    actual = response.http_version
    if str(actual) == str(expected):
        return []
    actual_number, expected_number = _as_float(actual), _as_float(expected)
    if actual_number is not None and actual_number == expected_number:
        return []

    return [Failure(
        cause="invalidHttpVersion",
        description=f'Expected HTTP version to be "{expected}"',
        actual=actual,
        expected=expected_number if expected_number is not None else expected,
    )]


VALIDATORS: tuple[Validator, ...] = (
    validate_http_redirects,
    validate_http_redirect_limit,
    validate_http_redirect_target,
    validate_http_response_body,
    validate_http_security,
    validate_http_status_code,
    validate_http_version,
)


def validate(params: ProbeParams, response: HttpResult, state: ProbeState) -> list[Failure]:
    """Run every validator and concatenate their failures, in order."""
    failures: list[Failure] = []
    for validator in VALIDATORS:
        failures.extend(validator(params, response, state))
    return failures
