"""Per-table watermark model for incremental polling.

A watermark is the extraction boundary for one table: every query fetches
rows whose indicator column is strictly greater than it. All three indicator
types are encoded as comparable integers so that advancing and comparing is
type-agnostic everywhere except at the normalization boundary:

- DATE: ``yyyyMMddHHmmss`` as a decimal integer (``20250115103000``)
- NUMBER: the raw numeric value
- STRING: the digits of the original value (``-``, ``:`` and whitespace
  stripped); the column must still be integer-like and monotonic
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from sqlsource.lib.errors import ConfigurationError, InvalidWatermarkValue

logger = logging.getLogger(__name__)

__all__ = [
    "IndicatorType",
    "TableSpec",
    "Watermark",
    "POSITION_FORMAT",
    "DATE_POSITION_DIGITS",
    "decode_timestamp",
    "default_position",
    "encode_timestamp",
    "build_watermarks",
    "normalize_indicator_value",
]

POSITION_FORMAT = "%Y%m%d%H%M%S"
DATE_POSITION_DIGITS = 14

_STRIP_PATTERN = re.compile(r"[-:\s]")
_INTEGER_PATTERN = re.compile(r"[0-9]+")
_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_$#]*(\.[A-Za-z_][A-Za-z0-9_$#]*)*")


class IndicatorType(str, Enum):
    """Type of the indicator column, governs binding and defaults."""

    DATE = "date"
    NUMBER = "number"
    STRING = "string"

    @classmethod
    def choices(cls) -> List[str]:
        """Return list of valid enum values."""
        return [member.value for member in cls]

    @classmethod
    def normalize(cls, raw: "str | IndicatorType | None") -> "IndicatorType":
        """Normalize an indicator type value."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            raise ValueError(
                f"Indicator type is required. Valid options: {', '.join(cls.choices())}"
            )

        candidate = str(raw).strip().lower()
        for member in cls:
            if member.value == candidate:
                return member

        raise ValueError(
            f"Invalid IndicatorType '{raw}'. Valid options: {', '.join(cls.choices())}"
        )


def _now() -> datetime:
    return datetime.now()


def encode_timestamp(value: datetime) -> int:
    """Encode a datetime as a yyyyMMddHHmmss integer position."""
    return int(value.strftime(POSITION_FORMAT))


def decode_timestamp(position: int) -> datetime:
    """Decode a DATE position back into a datetime.

    Raises:
        ValueError: Unless the position is a valid 14-digit yyyyMMddHHmmss value
    """
    text = str(position)
    if len(text) != DATE_POSITION_DIGITS:
        raise ValueError(f"expected {DATE_POSITION_DIGITS} digits, got {len(text)}")
    return datetime.strptime(text, POSITION_FORMAT)


def default_position(indicator_type: IndicatorType) -> int:
    """Starting position for a table with no checkpoint.

    DATE tables start "now" rather than from the epoch, NUMBER tables at -1
    so that a key of 0 is still picked up, STRING tables at 0.
    """
    if indicator_type == IndicatorType.DATE:
        return encode_timestamp(_now())
    if indicator_type == IndicatorType.NUMBER:
        return -1
    return 0


def normalize_indicator_value(raw: str, indicator_type: IndicatorType) -> int:
    """Normalize a raw indicator value into an integer position.

    Args:
        raw: Indicator value as observed in a row or stored in a checkpoint
        indicator_type: Type of the indicator column

    Returns:
        Integer position

    Raises:
        InvalidWatermarkValue: If the normalized value is not an integer

    Example:
        >>> normalize_indicator_value("2021-09-01 10:30:00", IndicatorType.DATE)
        20210901103000
    """
    cleaned = _STRIP_PATTERN.sub("", raw)
    if indicator_type == IndicatorType.DATE and len(cleaned) > DATE_POSITION_DIGITS:
        cleaned = cleaned[:DATE_POSITION_DIGITS]

    if not _INTEGER_PATTERN.fullmatch(cleaned):
        raise InvalidWatermarkValue(
            f"Indicator value {raw!r} is not integer-parseable after normalization",
            value=raw,
        )
    return int(cleaned)


def _check_identifier(name: str, *, what: str, table: Optional[str] = None) -> str:
    candidate = (name or "").strip()
    if not _IDENTIFIER_PATTERN.fullmatch(candidate):
        raise ConfigurationError(
            f"Invalid {what}: {candidate!r}. Expected an SQL identifier, e.g. 'updated_at'",
            field=what,
            value=name,
            table=table,
        )
    return candidate


@dataclass(frozen=True)
class TableSpec:
    """Static configuration of one polled table.

    Example:
        table = TableSpec(
            name="dbo.orders",
            indicator_column="updated_at",
            indicator_type=IndicatorType.DATE,
            select_columns=("id", "status", "updated_at"),
            static_fields={"env": "prod"},
            lookback_seconds=5,
        )
    """

    name: str
    indicator_column: str
    indicator_type: IndicatorType
    select_columns: Tuple[str, ...] = ()
    static_fields: Mapping[str, str] = field(default_factory=dict, hash=False)
    indicator_column_index: Optional[int] = None
    lookback_seconds: int = 0
    start_from: Optional[int] = None

    def __post_init__(self) -> None:
        name = _check_identifier(self.name, what="table name")
        object.__setattr__(self, "name", name)

        indicator = _check_identifier(
            self.indicator_column, what="indicator_column", table=name
        ).upper()
        object.__setattr__(self, "indicator_column", indicator)

        try:
            indicator_type = IndicatorType.normalize(self.indicator_type)
        except ValueError as exc:
            raise ConfigurationError(
                str(exc), field="indicator_type", value=self.indicator_type, table=name
            ) from exc
        object.__setattr__(self, "indicator_type", indicator_type)

        columns = tuple(c.strip() for c in self.select_columns if c and c.strip())
        if columns == ("*",):
            columns = ()
        for column in columns:
            _check_identifier(column, what="column", table=name)
        object.__setattr__(self, "select_columns", columns)
        object.__setattr__(self, "static_fields", MappingProxyType(dict(self.static_fields)))

        if self.lookback_seconds < 0:
            raise ConfigurationError(
                "lookback_seconds must be non-negative",
                field="lookback_seconds",
                value=self.lookback_seconds,
                table=name,
            )

        if self.indicator_column_index is not None and columns:
            index = self.indicator_column_index
            if not 0 <= index < len(columns) or columns[index].upper() != indicator:
                raise ConfigurationError(
                    f"indicator_column_index {index} does not point at {indicator}",
                    field="indicator_column_index",
                    value=index,
                    table=name,
                )

    @property
    def select_clause(self) -> str:
        return ", ".join(self.select_columns) if self.select_columns else "*"

    @property
    def initial_position(self) -> int:
        if self.start_from is not None:
            return self.start_from
        return default_position(self.indicator_type)


@dataclass
class Watermark:
    """Current extraction boundary of one table.

    The position only ever moves forward: ``advance`` keeps the maximum of
    the current and the observed value.
    """

    table: TableSpec
    position: Optional[int] = None

    @property
    def name(self) -> str:
        return self.table.name

    def current_position(self) -> int:
        """Return the position, applying the default rule if unset.

        A DATE table with a zero position is treated as unset.
        """
        if self.position is None or (
            self.table.indicator_type == IndicatorType.DATE and self.position == 0
        ):
            self.position = default_position(self.table.indicator_type)
            logger.debug("Defaulted watermark for %s to %s", self.name, self.position)
        return self.position

    def advance(self, observed_raw: Optional[str]) -> int:
        """Advance to an observed indicator value.

        Args:
            observed_raw: Indicator value as a string; empty is a no-op

        Returns:
            The position after the call

        Raises:
            InvalidWatermarkValue: If the value is not integer-parseable
        """
        if not observed_raw:
            return self.current_position()

        try:
            parsed = normalize_indicator_value(observed_raw, self.table.indicator_type)
        except InvalidWatermarkValue as exc:
            exc.table = self.name
            raise
        return self.advance_to(parsed)

    def advance_to(self, position: int) -> int:
        """Merge an already-encoded position, never moving backwards."""
        current = self.current_position()
        if position > current:
            self.position = position
        return self.position if self.position is not None else current

    def copy(self) -> "Watermark":
        """Return a detached copy for pending advancement."""
        return replace(self)


def build_watermarks(tables: Sequence[TableSpec]) -> Dict[str, Watermark]:
    """Build fresh watermarks from configured start positions."""
    return {t.name: Watermark(table=t, position=t.initial_position) for t in tables}
