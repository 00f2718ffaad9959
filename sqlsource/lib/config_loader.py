"""YAML configuration loader for SQL sources.

Example YAML (orders.yaml):
    source:
      name: orders_db
      connection:
        url: "DRIVER={ODBC Driver 18 for SQL Server};SERVER=db01;DATABASE=Sales"
        user: ${DB_USER}
        password: ${DB_PASSWORD}
        read_only: true
      checkpoint:
        path: ./state
        file_name: orders.status
      poll_interval_seconds: 10
      batch_size: 100
      max_rows: 10000
      tables:
        - name: dbo.orders
          indicator_column: updated_at
          indicator_type: date
          columns: [id, status, updated_at]
          static_fields: {env: prod}
          lookback_seconds: 5

Usage:
    # Command line
    sql-source run ./orders.yaml

    # Python API
    from sqlsource.lib.config_loader import load_config
    config = load_config("./orders.yaml")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from sqlsource.lib.connections import SessionFactory, odbc_session_factory
from sqlsource.lib.env import expand_options
from sqlsource.lib.errors import ConfigurationError, InvalidWatermarkValue
from sqlsource.lib.transform import DEFAULT_DATE_FORMAT
from sqlsource.lib.watermark import (
    IndicatorType,
    TableSpec,
    decode_timestamp,
    encode_timestamp,
    normalize_indicator_value,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ConnectionSettings",
    "OutputSettings",
    "SourceConfig",
    "load_config",
    "parse_config",
    "validate_config",
    "DEFAULT_CHECKPOINT_DIR",
]

DEFAULT_CHECKPOINT_DIR = "/var/lib/sqlsource"
OUTPUT_FORMATS = ("jsonl", "delimited")
DATE_ONLY_DIGITS = 8


@dataclass
class ConnectionSettings:
    url: str
    user: str
    password: str = field(repr=False)
    read_only: bool = False
    timeout: Optional[int] = None

    def session_factory(self) -> SessionFactory:
        return odbc_session_factory(
            self.url,
            user=self.user,
            password=self.password,
            read_only=self.read_only,
            timeout=self.timeout,
        )


@dataclass
class OutputSettings:
    format: str = "jsonl"
    path: Optional[str] = None
    delimiter: str = ","
    enclose_by_quotes: bool = True


@dataclass
class SourceConfig:
    """Fully validated source configuration."""

    name: str
    connection: ConnectionSettings
    checkpoint_path: Path
    tables: List[TableSpec]
    poll_interval_seconds: float = 10.0
    batch_size: int = 100
    max_rows: int = 10000
    retries: int = 3
    retry_backoff_seconds: float = 0.0
    date_format: str = DEFAULT_DATE_FORMAT
    line_end: str = "\n"
    output: OutputSettings = field(default_factory=OutputSettings)
    config_path: Optional[Path] = None

    def explain(self) -> str:
        """Return a human-readable summary of the source."""
        lines = [
            f"Source:     {self.name}",
            f"Config:     {self.config_path or '(inline)'}",
            f"Checkpoint: {self.checkpoint_path}",
            f"Output:     {self.output.format} -> {self.output.path or 'stdout'}",
            f"Polling:    every {self.poll_interval_seconds}s, "
            f"batch {self.batch_size}, max rows {self.max_rows or 'unbounded'}",
            "Tables:",
        ]
        for table in self.tables:
            lines.append(
                f"  {table.name} by {table.indicator_column} ({table.indicator_type.value})"
            )
        return "\n".join(lines)


def _resolve_path(path: str, config_dir: Path) -> str:
    """Resolve ./ and ../ paths relative to the config file location."""
    if not path or os.path.isabs(path):
        return path
    if path.startswith("./") or path.startswith("../"):
        return str(config_dir / path)
    return path


def _require(mapping: Mapping[str, Any], key: str, prefix: str) -> Any:
    value = mapping.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(f"{prefix}{key} is required", field=f"{prefix}{key}")
    return value


def _as_int(value: Any, name: str, *, minimum: int = 0, table: Optional[str] = None) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer", field=name, value=value, table=table)
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{name} must be an integer", field=name, value=value, table=table
        ) from exc
    if result < minimum:
        raise ConfigurationError(
            f"{name} must be >= {minimum}", field=name, value=value, table=table
        )
    return result


def _as_float(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number", field=name, value=value) from exc
    if result < 0:
        raise ConfigurationError(f"{name} must be non-negative", field=name, value=value)
    return result


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1", "false", "no", "0"):
        return value.strip().lower() in ("true", "yes", "1")
    raise ConfigurationError(f"{name} must be true or false", field=name, value=value)


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value]


def _parse_static_fields(config: Mapping[str, Any], table_name: str) -> Dict[str, str]:
    raw = config.get("static_fields")
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}

    names = _split_list(raw)
    values = _split_list(config.get("static_values"))
    if len(names) != len(values):
        raise ConfigurationError(
            f"static_fields has {len(names)} name(s) but static_values has {len(values)}",
            field="static_values",
            table=table_name,
        )
    return dict(zip(names, values))


def _parse_start_from(raw: Any, indicator_type: IndicatorType, table_name: str) -> Optional[int]:
    if raw is None:
        return None
    # YAML turns unquoted timestamps into datetime or date objects
    if isinstance(raw, datetime):
        return encode_timestamp(raw)
    if isinstance(raw, date):
        return encode_timestamp(datetime(raw.year, raw.month, raw.day))

    invalid = ConfigurationError(
        f"start_from {raw!r} is not a valid {indicator_type.value} position",
        field="start_from",
        value=raw,
        table=table_name,
    )
    if isinstance(raw, int) and not isinstance(raw, bool):
        position = raw
    else:
        try:
            position = normalize_indicator_value(str(raw), indicator_type)
        except InvalidWatermarkValue as exc:
            raise invalid from exc

    if indicator_type != IndicatorType.DATE:
        return position

    # A bare yyyyMMdd date starts at midnight
    if len(str(position)) == DATE_ONLY_DIGITS:
        position *= 1000000
    try:
        decode_timestamp(position)
    except ValueError as exc:
        raise invalid from exc
    return position


def _parse_table(config: Any, index: int) -> TableSpec:
    prefix = f"tables[{index}]."
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"tables[{index}] must be a mapping", field=f"tables[{index}]")

    name = str(_require(config, "name", prefix))
    indicator_column = str(_require(config, "indicator_column", prefix))

    raw_type = _require(config, "indicator_type", prefix)
    try:
        indicator_type = IndicatorType.normalize(raw_type)
    except ValueError as exc:
        raise ConfigurationError(
            str(exc), field=f"{prefix}indicator_type", value=raw_type, table=name
        ) from exc

    index_raw = config.get("indicator_column_index")
    indicator_index = (
        None
        if index_raw is None
        else _as_int(index_raw, f"{prefix}indicator_column_index", table=name)
    )

    return TableSpec(
        name=name,
        indicator_column=indicator_column,
        indicator_type=indicator_type,
        select_columns=tuple(_split_list(config.get("columns"))),
        static_fields=_parse_static_fields(config, name),
        indicator_column_index=indicator_index,
        lookback_seconds=_as_int(
            config.get("lookback_seconds", 0), f"{prefix}lookback_seconds", table=name
        ),
        start_from=_parse_start_from(config.get("start_from"), indicator_type, name),
    )


def parse_config(
    raw: Mapping[str, Any],
    config_dir: Optional[Path] = None,
    *,
    config_path: Optional[Path] = None,
) -> SourceConfig:
    """Build a SourceConfig from the parsed ``source`` mapping.

    Args:
        raw: Mapping under the top-level ``source`` key
        config_dir: Directory used to resolve ./ relative paths

    Raises:
        ConfigurationError: If a mandatory setting is missing or invalid
    """
    config_dir = config_dir or Path.cwd()
    config = expand_options(dict(raw))

    connection_cfg = config.get("connection") or {}
    if not isinstance(connection_cfg, Mapping):
        raise ConfigurationError("connection must be a mapping", field="connection")
    if connection_cfg.get("password") is None:
        raise ConfigurationError("connection.password is required", field="connection.password")
    timeout_raw = connection_cfg.get("timeout")
    connection = ConnectionSettings(
        url=str(_require(connection_cfg, "url", "connection.")),
        user=str(_require(connection_cfg, "user", "connection.")),
        password=str(connection_cfg["password"]),
        read_only=_as_bool(connection_cfg.get("read_only", False), "connection.read_only"),
        timeout=None if timeout_raw is None else _as_int(timeout_raw, "connection.timeout"),
    )

    checkpoint_cfg = config.get("checkpoint") or {}
    if not isinstance(checkpoint_cfg, Mapping):
        raise ConfigurationError("checkpoint must be a mapping", field="checkpoint")
    file_name = str(_require(checkpoint_cfg, "file_name", "checkpoint."))
    checkpoint_dir = _resolve_path(
        str(checkpoint_cfg.get("path") or DEFAULT_CHECKPOINT_DIR), config_dir
    )

    tables_cfg = config.get("tables")
    if not tables_cfg or not isinstance(tables_cfg, list):
        raise ConfigurationError("tables must list at least one table", field="tables")
    tables = [_parse_table(table_cfg, i) for i, table_cfg in enumerate(tables_cfg)]

    seen: Dict[str, int] = {}
    for table in tables:
        if table.name in seen:
            raise ConfigurationError(
                f"Table {table.name} is configured more than once", field="tables", table=table.name
            )
        seen[table.name] = 1

    output_cfg = config.get("output") or {}
    fmt = str(output_cfg.get("format", "jsonl")).strip().lower()
    if fmt not in OUTPUT_FORMATS:
        raise ConfigurationError(
            f"Invalid output.format '{fmt}'. Valid options: {', '.join(OUTPUT_FORMATS)}",
            field="output.format",
            value=fmt,
        )
    delimiter = str(output_cfg.get("delimiter", ","))
    if len(delimiter) != 1:
        raise ConfigurationError(
            "output.delimiter must be a single character", field="output.delimiter", value=delimiter
        )
    output_path = output_cfg.get("path")
    output = OutputSettings(
        format=fmt,
        path=_resolve_path(str(output_path), config_dir) if output_path else None,
        delimiter=delimiter,
        enclose_by_quotes=_as_bool(
            output_cfg.get("enclose_by_quotes", True), "output.enclose_by_quotes"
        ),
    )

    line_end = config.get("line_end", "\n")
    if not isinstance(line_end, str):
        raise ConfigurationError("line_end must be a string", field="line_end", value=line_end)

    return SourceConfig(
        name=str(config.get("name") or (config_path.stem if config_path else "sqlsource")),
        connection=connection,
        checkpoint_path=Path(checkpoint_dir) / file_name,
        tables=tables,
        poll_interval_seconds=_as_float(
            config.get("poll_interval_seconds", 10), "poll_interval_seconds"
        ),
        batch_size=_as_int(config.get("batch_size", 100), "batch_size", minimum=1),
        max_rows=_as_int(config.get("max_rows", 10000), "max_rows"),
        retries=_as_int(config.get("retries", 3), "retries"),
        retry_backoff_seconds=_as_float(
            config.get("retry_backoff_seconds", 0), "retry_backoff_seconds"
        ),
        date_format=str(config.get("date_format") or DEFAULT_DATE_FORMAT),
        line_end=line_end,
        output=output,
        config_path=config_path,
    )


def load_config(config_path: Union[str, Path]) -> SourceConfig:
    """Load a source from a YAML configuration file.

    Raises:
        ConfigurationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

    if not document:
        raise ConfigurationError("Empty configuration file")
    if not isinstance(document, Mapping) or not isinstance(document.get("source"), Mapping):
        raise ConfigurationError("Configuration must have a 'source' section", field="source")

    config = parse_config(
        document["source"], config_path.parent.resolve(), config_path=config_path
    )
    logger.debug("Loaded config %s with %d table(s)", config_path, len(config.tables))
    return config


def validate_config(config_path: Union[str, Path]) -> List[str]:
    """Validate a YAML configuration file without connecting.

    Returns:
        List of validation issues (empty if valid)
    """
    issues: List[str] = []

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        issues.append(str(e))
        return issues
    except FileNotFoundError as e:
        issues.append(str(e))
        return issues

    checkpoint_dir = config.checkpoint_path.parent
    if checkpoint_dir.exists() and not os.access(checkpoint_dir, os.W_OK):
        issues.append(f"Checkpoint directory is not writable: {checkpoint_dir}")
    if config.checkpoint_path.is_dir():
        issues.append(f"Checkpoint path is a directory: {config.checkpoint_path}")

    for table in config.tables:
        if table.lookback_seconds and table.indicator_type != IndicatorType.DATE:
            issues.append(
                f"{table.name}: lookback_seconds only applies to date indicators"
            )

    return issues
