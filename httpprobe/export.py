"""JSON and CSV export for probe results."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone

from httpprobe.models import Metric, MetricValue, ProbeResult


def export_json(result: ProbeResult, indent: int | None = 2) -> str:
    """Export a probe result as a JSON string."""
    data = _build_export_dict(result)
    return json.dumps(data, indent=indent, default=str)


def export_csv(result: ProbeResult) -> str:
    """Export the metrics of a probe result as CSV (one row per metric)."""
    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(["name", "unit", "value", "phase"])
    for metric in result.metrics:
        value = _serialize_value(metric.value)
        writer.writerow([
            metric.name,
            metric.unit,
            "" if value is None else value,
            metric.tags.get("phase", ""),
        ])

    return output.getvalue()


def write_to_file(content: str, filepath: str) -> None:
    """Write export content to a file."""
    with open(filepath, "w") as f:
        f.write(content)


def format_datetime(value: datetime) -> str:
    """ISO-8601 in UTC with a ``Z`` suffix, e.g. ``2030-01-31T12:00:00Z``."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).isoformat() + "Z"


def _serialize_value(value: MetricValue) -> MetricValue:
    if isinstance(value, datetime):
        return format_datetime(value)
    return value


def _metric_to_dict(metric: Metric) -> dict:
    mdata: dict = {
        "name": metric.name,
        "unit": metric.unit,
        "value": _serialize_value(metric.value),
        "description": metric.description,
    }
    if metric.tags:
        mdata["tags"] = dict(metric.tags)
    return mdata


def _build_export_dict(result: ProbeResult) -> dict:
    """Build a serializable dictionary from a ProbeResult."""
    return {
        "target": result.target,
        "success": result.success,
        "failures": [failure.to_dict() for failure in result.failures],
        "metrics": [_metric_to_dict(metric) for metric in result.metrics],
    }
