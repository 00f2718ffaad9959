"""SQL source library modules.

This package contains the watermark model, checkpoint store, query builder,
connection handling and poll orchestration for incremental SQL extraction.
"""

from sqlsource.lib.checkpoint import CheckpointStore
from sqlsource.lib.config_loader import (
    ConnectionSettings,
    OutputSettings,
    SourceConfig,
    load_config,
    parse_config,
    validate_config,
)
from sqlsource.lib.connections import (
    ConnectionManager,
    ConnectionState,
    DatabaseSession,
    OdbcSession,
    QueryResult,
    QueryStatus,
    build_connection_string,
    odbc_session_factory,
)
from sqlsource.lib.env import expand_env_vars, expand_options, load_env_file
from sqlsource.lib.errors import (
    CheckpointError,
    ConfigurationError,
    InvalidWatermarkValue,
    SessionError,
    SourceError,
    WatermarkBindingError,
    is_disconnect_error,
)
from sqlsource.lib.logging import JSONFormatter, PollMetrics, setup_logging
from sqlsource.lib.poller import CycleResult, SqlSourcePoller, TableOutcome, TableResult
from sqlsource.lib.query import IncrementalQuery, bind_position, build_incremental_query
from sqlsource.lib.resilience import RetryConfig, build_retrying
from sqlsource.lib.sinks import (
    CollectingSink,
    DelimitedSink,
    JsonLinesSink,
    RecordSink,
    open_sink,
)
from sqlsource.lib.transform import RowTransformer, TransformResult
from sqlsource.lib.watermark import IndicatorType, TableSpec, Watermark

__all__ = [
    # Checkpoint
    "CheckpointStore",
    # Config
    "ConnectionSettings",
    "OutputSettings",
    "SourceConfig",
    "load_config",
    "parse_config",
    "validate_config",
    # Connections
    "ConnectionManager",
    "ConnectionState",
    "DatabaseSession",
    "OdbcSession",
    "QueryResult",
    "QueryStatus",
    "build_connection_string",
    "odbc_session_factory",
    # Env
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Errors
    "CheckpointError",
    "ConfigurationError",
    "InvalidWatermarkValue",
    "SessionError",
    "SourceError",
    "WatermarkBindingError",
    "is_disconnect_error",
    # Logging
    "JSONFormatter",
    "PollMetrics",
    "setup_logging",
    # Poller
    "CycleResult",
    "SqlSourcePoller",
    "TableOutcome",
    "TableResult",
    # Query
    "IncrementalQuery",
    "bind_position",
    "build_incremental_query",
    # Resilience
    "RetryConfig",
    "build_retrying",
    # Sinks
    "CollectingSink",
    "DelimitedSink",
    "JsonLinesSink",
    "RecordSink",
    "open_sink",
    # Transform
    "RowTransformer",
    "TransformResult",
    # Watermark
    "IndicatorType",
    "TableSpec",
    "Watermark",
]
