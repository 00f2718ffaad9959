"""Row transformation and watermark advancement.

Turns fetched rows into emit-ready records and moves a watermark forward
past every row it has seen.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from sqlsource.lib.errors import InvalidWatermarkValue
from sqlsource.lib.watermark import TableSpec, Watermark

logger = logging.getLogger(__name__)

__all__ = ["RowTransformer", "TransformResult", "DEFAULT_DATE_FORMAT"]

DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INDICATOR_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

Record = Dict[str, Any]


def _jsonify(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


@dataclass
class TransformResult:
    """Records built from one batch and the watermark movement they caused."""

    records: List[Record] = field(default_factory=list)
    position_before: Optional[int] = None
    position_after: Optional[int] = None
    invalid_rows: int = 0

    @property
    def advanced(self) -> bool:
        return self.position_after != self.position_before


class RowTransformer:
    """Build records from rows and advance watermarks.

    Args:
        date_format: strftime pattern for date/time values in records
        line_end: Terminator appended by ``encode``
    """

    def __init__(self, date_format: str = DEFAULT_DATE_FORMAT, line_end: str = "\n"):
        self.date_format = date_format
        self.line_end = line_end

    def _format_value(self, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (datetime, date, time)):
            return value.strftime(self.date_format)
        return value

    def transform_row(self, row: Mapping[str, Any], table: TableSpec) -> Record:
        """Return a new record for a row; the row itself is not modified.

        NULLs become empty strings and temporal values are rendered with
        ``date_format``. Static fields are applied last and win over
        same-named columns.
        """
        record: Record = {key: self._format_value(value) for key, value in row.items()}
        record.update(table.static_fields)
        return record

    def indicator_value(self, row: Mapping[str, Any], table: TableSpec) -> Optional[str]:
        """Read the indicator column of a source row as a string.

        The column lookup ignores case since drivers differ in how they
        report column names. Timestamps are rendered in a fixed format so
        that normalization does not depend on ``date_format``.
        """
        wanted = table.indicator_column
        value: Any = None
        if wanted in row:
            value = row[wanted]
        else:
            for key, candidate in row.items():
                if key.upper() == wanted:
                    value = candidate
                    break

        if value is None:
            return None
        if isinstance(value, datetime):
            text = value.strftime(INDICATOR_DATE_FORMAT)
        elif isinstance(value, date):
            text = value.strftime("%Y-%m-%d 00:00:00")
        else:
            text = str(value)
        return text or None

    def process_batch(
        self, rows: Optional[Iterable[Mapping[str, Any]]], watermark: Watermark
    ) -> TransformResult:
        """Transform a batch and advance the watermark row by row.

        A row with an unparseable indicator value is still returned as a
        record but leaves the watermark where it was.

        Args:
            rows: Fetched rows in indicator order
            watermark: Watermark to advance in place

        Returns:
            TransformResult with the records and positions before and after
        """
        before = watermark.current_position()
        result = TransformResult(position_before=before, position_after=before)
        if not rows:
            return result

        table = watermark.table
        for row in rows:
            raw = self.indicator_value(row, table)
            try:
                watermark.advance(raw)
            except InvalidWatermarkValue as exc:
                result.invalid_rows += 1
                logger.warning(
                    "Row in %s has invalid %s value %r, watermark not advanced",
                    table.name,
                    table.indicator_column,
                    exc.value,
                )
            result.records.append(self.transform_row(row, table))

        result.position_after = watermark.current_position()
        return result

    def encode(self, record: Mapping[str, Any]) -> str:
        """Serialize a record as one JSON object followed by ``line_end``."""
        return json.dumps(record, default=_jsonify, ensure_ascii=False) + self.line_end
