"""Log routing and per-table poll metrics.

Log output always goes to stderr, since the JSON Lines sink may own stdout.
The poller reports what each table did in a cycle as ``METRIC`` records;
``JSONFormatter`` turns those into a ``metric`` block that log aggregation
can pick up without parsing the message text.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

__all__ = ["setup_logging", "JSONFormatter", "PollMetrics"]

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}

_METRIC_UNITS = {
    "rows_fetched": "rows",
    "records_emitted": "records",
    "invalid_rows": "rows",
}


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON object.

    Metric records get a ``metric`` block with name, value and unit. Any
    other attributes passed through ``extra`` (``source``, ``table``) are
    collected under ``context``.

    Example output:
        {"timestamp": "2025-01-15T10:30:00.123000Z", "level": "INFO",
         "logger": "sqlsource.lib.poller", "message": "METRIC rows_fetched=42",
         "metric": {"name": "rows_fetched", "value": 42, "unit": "rows"},
         "context": {"source": "orders_db", "table": "dbo.orders"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if "metric_name" in context:
            data["metric"] = {
                "name": context.pop("metric_name"),
                "value": context.pop("metric_value", None),
                "unit": context.pop("metric_unit", None),
            }
        if context:
            data["context"] = context

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class PollMetrics:
    """Report per-table poll metrics as INFO log records.

    Every value becomes its own ``METRIC name=value`` record carrying
    ``metric_name``, ``metric_value``, ``metric_unit`` (when known),
    ``source`` and ``table`` attributes.

    Example:
        metrics = PollMetrics("sqlsource.lib.poller", source="orders_db")
        metrics.report("dbo.orders", rows_fetched=42, watermark_position=20250115103000)
    """

    def __init__(self, logger_name: str, source: str):
        self._logger = logging.getLogger(logger_name)
        self.source = source

    def report(self, table: str, **values: Any) -> None:
        for name, value in values.items():
            extra: Dict[str, Any] = {
                "metric_name": name,
                "metric_value": value,
                "source": self.source,
                "table": table,
            }
            unit = _METRIC_UNITS.get(name)
            if unit:
                extra["metric_unit"] = unit
            self._logger.info("METRIC %s=%s", name, value, extra=extra)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Replace the root handlers with stderr and an optional log file.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_format: Use ``JSONFormatter`` for every handler
        log_file: Also append log lines to this file
    """
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATE_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    logging.getLogger("tenacity").setLevel(logging.WARNING)
