"""CLI entry point for httpprobe."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.logging import RichHandler

from httpprobe import __version__
from httpprobe import config as cfg
from httpprobe.config import env_file_default
from httpprobe.models import ProbeParams

EXIT_FAILED = 1
EXIT_USAGE = 2


@click.command()
@click.argument("url")
@click.option("-X", "--method", type=cfg.METHOD, envvar=cfg.ENV_METHOD,
              default=env_file_default(cfg.ENV_METHOD, "GET"), help="HTTP method [default: GET]")
@click.option("--follow-redirects", type=click.BOOL, envvar=cfg.ENV_FOLLOW_REDIRECTS,
              default=env_file_default(cfg.ENV_FOLLOW_REDIRECTS, True), help="Follow 301/302 redirects [default: yes]")
@click.option("-k", "--allow-unauthorized", type=click.BOOL, envvar=cfg.ENV_ALLOW_UNAUTHORIZED,
              default=env_file_default(cfg.ENV_ALLOW_UNAUTHORIZED, False), help="Skip server certificate verification [default: no]")
@click.option("-H", "--header", "headers", type=cfg.HEADER, multiple=True, envvar=cfg.ENV_HEADER,
              default=env_file_default(cfg.ENV_HEADER, separator="\n"), help="Request header as Name=Value (repeatable)")
@click.option("--http2", type=click.BOOL, envvar=cfg.ENV_HTTP2,
              default=env_file_default(cfg.ENV_HTTP2, False), help="Offer HTTP/2 through ALPN on https targets [default: no]")
@click.option("-t", "--timeout", type=click.FloatRange(min=0, min_open=True), envvar=cfg.ENV_TIMEOUT,
              default=env_file_default(cfg.ENV_TIMEOUT), help="Per-request timeout in seconds [default: none]")
@click.option("--max-redirects", type=click.IntRange(min=0), envvar=cfg.ENV_MAX_REDIRECTS,
              default=env_file_default(cfg.ENV_MAX_REDIRECTS), help="Stop following redirects after N hops [default: no limit]")
@click.option("--dns-server", envvar=cfg.ENV_DNS_SERVER,
              default=env_file_default(cfg.ENV_DNS_SERVER), help="Custom DNS server (e.g., 8.8.8.8)")
@click.option("--expect-redirects", type=cfg.REDIRECT_COUNT, envvar=cfg.ENV_EXPECT_HTTP_REDIRECTS,
              default=env_file_default(cfg.ENV_EXPECT_HTTP_REDIRECTS), help="Exact redirect count, or yes/no")
@click.option("--expect-redirect-to", envvar=cfg.ENV_EXPECT_HTTP_REDIRECT_TO,
              default=env_file_default(cfg.ENV_EXPECT_HTTP_REDIRECT_TO), help="URL the final request must target")
@click.option("--expect-body-match", type=cfg.PATTERN, multiple=True, envvar=cfg.ENV_BODY_MATCH,
              default=env_file_default(cfg.ENV_BODY_MATCH, separator="\n"), help="Regex the body must match (repeatable)")
@click.option("--expect-body-mismatch", type=cfg.PATTERN, multiple=True, envvar=cfg.ENV_BODY_MISMATCH,
              default=env_file_default(cfg.ENV_BODY_MISMATCH, separator="\n"), help="Regex the body must not match (repeatable)")
@click.option("--expect-secure", type=click.BOOL, envvar=cfg.ENV_EXPECT_HTTP_SECURE,
              default=env_file_default(cfg.ENV_EXPECT_HTTP_SECURE), help="Require (yes) or forbid (no) SSL/TLS")
@click.option("--expect-status", type=cfg.STATUS_CODE, multiple=True, envvar=cfg.ENV_EXPECT_HTTP_STATUS_CODE,
              default=env_file_default(cfg.ENV_EXPECT_HTTP_STATUS_CODE, separator=","),
              help="Status code or class such as 2xx (repeatable) [default: 2xx, 3xx]")
@click.option("--expect-http-version", envvar=cfg.ENV_EXPECT_HTTP_VERSION,
              default=env_file_default(cfg.ENV_EXPECT_HTTP_VERSION), help="Expected HTTP version, e.g. 1.1")
@click.option("--json", "json_output", is_flag=True, help="Output JSON to stdout")
@click.option("--csv", "csv_output", is_flag=True, help="Output metrics as CSV to stdout")
@click.option("-o", "--output", default=None, help="Write results to file")
@click.option("--log-level", type=click.Choice(cfg.LOG_LEVELS, case_sensitive=False), envvar=cfg.ENV_LOG_LEVEL,
              default=env_file_default(cfg.ENV_LOG_LEVEL, cfg.DEFAULT_LOG_LEVEL), help="Log level [default: warning]")
@click.version_option(version=__version__)
def main(
    url: str,
    method: str,
    follow_redirects: bool,
    allow_unauthorized: bool,
    headers: tuple[tuple[str, str], ...],
    http2: bool,
    timeout: float | None,
    max_redirects: int | None,
    dns_server: str | None,
    expect_redirects: int | bool | None,
    expect_redirect_to: str | None,
    expect_body_match: tuple[str, ...],
    expect_body_mismatch: tuple[str, ...],
    expect_secure: bool | None,
    expect_status: tuple[str, ...],
    expect_http_version: str | None,
    json_output: bool,
    csv_output: bool,
    output: str | None,
    log_level: str,
) -> None:
    """httpprobe — HTTP(S) endpoint probe.

    Requests URL, times each connection phase (DNS, TCP, TLS, first
    byte, transfer) across any redirects, and checks the final response
    against the given expectations.  Exits 0 on success, 1 when the
    probe failed and 2 on invalid input.  Every option can also be set
    through a PROBE_* environment variable, or through PROBE_*_FILE
    naming a file that holds the value.
    """
    from httpprobe.display import render_error

    _setup_logging(log_level)

    params = ProbeParams(
        method=method,
        follow_redirects=follow_redirects,
        allow_unauthorized=allow_unauthorized,
        headers=cfg.headers_to_dict(headers),
        http2=http2,
        timeout=timeout,
        max_redirects=max_redirects,
        dns_server=dns_server,
        expect_http_redirects=expect_redirects,
        expect_http_redirect_to=expect_redirect_to,
        expect_http_response_body_match=list(expect_body_match),
        expect_http_response_body_mismatch=list(expect_body_mismatch),
        expect_http_secure=expect_secure,
        expect_http_status_code=list(expect_status),
        expect_http_version=expect_http_version.strip() if expect_http_version else None,
    )

    from httpprobe.engine import probe_http

    try:
        result = asyncio.run(probe_http(url, params))
    except ValueError as exc:
        # Unusable target URL or malformed expectation
        render_error(str(exc))
        sys.exit(EXIT_USAGE)
    except KeyboardInterrupt:
        render_error("Interrupted.")
        sys.exit(130)

    _handle_output(result, json_output, csv_output, output)
    sys.exit(0 if result.success else EXIT_FAILED)


def _setup_logging(level: str) -> None:
    from httpprobe.display import err_console

    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _handle_output(result, json_output: bool, csv_output: bool, output_file: str | None) -> None:
    """Handle output rendering and export."""
    from httpprobe.display import console, render_result
    from httpprobe.export import export_csv, export_json, write_to_file

    if json_output or csv_output:
        text = export_json(result) if json_output else export_csv(result)
        if output_file:
            write_to_file(text, output_file)
        else:
            click.echo(text)
        return

    render_result(result)

    # Also write to file if -o specified (terminal mode writes JSON)
    if output_file:
        write_to_file(export_json(result), output_file)
        console.print(f"\n[dim]Results written to {output_file}[/dim]")


if __name__ == "__main__":
    main()
