"""Incremental query construction for a table watermark."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Tuple

from sqlsource.lib.errors import WatermarkBindingError
from sqlsource.lib.watermark import IndicatorType, TableSpec, Watermark, decode_timestamp

__all__ = ["IncrementalQuery", "build_incremental_query", "bind_position", "BIND_DATE_FORMAT"]

BIND_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_QUERY_TEMPLATE = "SELECT {columns} FROM {table} WHERE {indicator} > ? ORDER BY {indicator}"


@dataclass(frozen=True)
class IncrementalQuery:
    """Parameterized query selecting rows past a watermark.

    Attributes:
        sql: Query text with exactly one ``?`` placeholder
        params: Positional parameters, always a single bound watermark
        max_rows: Result cap; 0 means unbounded
        fetch_size: Driver fetch-size hint; 0 leaves the driver default
    """

    sql: str
    params: Tuple[Any, ...]
    max_rows: int = 0
    fetch_size: int = 0


def bind_position(table: TableSpec, position: int) -> Any:
    """Convert a stored position into the query parameter for the table.

    DATE positions must be exactly 14 digits of yyyyMMddHHmmss. They are
    moved back by the table's lookback window and rendered as
    ``YYYY-MM-DD HH:MM:SS``.

    Raises:
        WatermarkBindingError: If a DATE position is not a valid timestamp
    """
    if table.indicator_type == IndicatorType.DATE:
        try:
            moment = decode_timestamp(position)
        except ValueError as exc:
            raise WatermarkBindingError(
                f"Cannot bind DATE watermark {position}: {exc}",
                position=position,
                table=table.name,
            ) from exc
        if table.lookback_seconds:
            moment -= timedelta(seconds=table.lookback_seconds)
        return moment.strftime(BIND_DATE_FORMAT)

    if table.indicator_type == IndicatorType.NUMBER:
        return int(position)

    return str(position)


def build_incremental_query(watermark: Watermark, *, max_rows: int = 0) -> IncrementalQuery:
    """Build the incremental query for a watermark.

    Args:
        watermark: Current watermark of the table
        max_rows: Maximum rows per query, 0 for no cap

    Returns:
        IncrementalQuery ordered ascending on the indicator column

    Example:
        >>> build_incremental_query(wm, max_rows=100).sql
        'SELECT * FROM dbo.orders WHERE UPDATED_AT > ? ORDER BY UPDATED_AT'
    """
    table = watermark.table
    param = bind_position(table, watermark.current_position())

    sql = _QUERY_TEMPLATE.format(
        columns=table.select_clause,
        table=table.name,
        indicator=table.indicator_column,
    )
    cap = max(max_rows, 0)
    return IncrementalQuery(sql=sql, params=(param,), max_rows=cap, fetch_size=cap)
