"""Incremental SQL extraction by per-table watermarks.

Polls relational tables for rows newer than a stored watermark, emits them
as records and checkpoints the advanced watermarks.

Usage:
    python -m sqlsource run ./orders.yaml
    python -m sqlsource run ./orders.yaml --once
"""

from sqlsource.lib.config_loader import SourceConfig, load_config
from sqlsource.lib.poller import SqlSourcePoller
from sqlsource.lib.watermark import IndicatorType, TableSpec, Watermark

__all__ = [
    "SourceConfig",
    "load_config",
    "SqlSourcePoller",
    "IndicatorType",
    "TableSpec",
    "Watermark",
]
