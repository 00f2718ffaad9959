"""Record sinks.

A sink receives the records of one chunk and must have handed them off
(written and flushed) before ``emit`` returns; the poller commits the
watermark only after that.
"""

from __future__ import annotations

import csv
import logging
import sys
from pathlib import Path
from typing import IO, Any, Callable, List, Mapping, Optional, Protocol, Sequence, Union

from sqlsource.lib.transform import RowTransformer

logger = logging.getLogger(__name__)

__all__ = [
    "RecordSink",
    "JsonLinesSink",
    "DelimitedSink",
    "CollectingSink",
    "open_sink",
]

Record = Mapping[str, Any]


class RecordSink(Protocol):
    def emit(self, records: Sequence[Record]) -> int: ...

    def close(self) -> None: ...


class _StreamSink:
    """Shared stream handling: stdout when no path is given, else append to a file."""

    def __init__(self, path: Optional[Union[str, Path]] = None, stream: Optional[IO[str]] = None):
        self.path = Path(path) if path else None
        self._owns_stream = stream is None and self.path is not None
        if stream is not None:
            self._stream = stream
        elif self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._stream = open(self.path, "a", encoding="utf-8", newline="")
        else:
            self._stream = sys.stdout

    def close(self) -> None:
        if self._owns_stream and not self._stream.closed:
            self._stream.close()
            logger.debug("Closed sink file %s", self.path)


class JsonLinesSink(_StreamSink):
    """Write each record as one JSON object per line.

    Args:
        path: Output file, stdout if omitted
        encoder: Record serializer, defaults to ``RowTransformer().encode``
        stream: Explicit text stream, overrides ``path``
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        encoder: Optional[Callable[[Record], str]] = None,
        stream: Optional[IO[str]] = None,
    ):
        super().__init__(path, stream)
        self._encode = encoder or RowTransformer().encode

    def emit(self, records: Sequence[Record]) -> int:
        for record in records:
            self._stream.write(self._encode(record))
        self._stream.flush()
        return len(records)


class DelimitedSink(_StreamSink):
    """Write each record as one delimited line of its values, in column order.

    Args:
        path: Output file, stdout if omitted
        delimiter: Single-character field separator
        enclose_by_quotes: Quote every field instead of only where needed
        line_end: Line terminator
        stream: Explicit text stream, overrides ``path``
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        delimiter: str = ",",
        enclose_by_quotes: bool = True,
        line_end: str = "\n",
        stream: Optional[IO[str]] = None,
    ):
        if len(delimiter) != 1:
            raise ValueError(f"delimiter must be a single character, got {delimiter!r}")
        super().__init__(path, stream)
        self._writer = csv.writer(
            self._stream,
            delimiter=delimiter,
            quoting=csv.QUOTE_ALL if enclose_by_quotes else csv.QUOTE_MINIMAL,
            lineterminator=line_end,
        )

    def emit(self, records: Sequence[Record]) -> int:
        for record in records:
            self._writer.writerow(list(record.values()))
        self._stream.flush()
        return len(records)


class CollectingSink:
    """Keep emitted records in memory."""

    def __init__(self) -> None:
        self.records: List[Record] = []
        self.closed = False

    def emit(self, records: Sequence[Record]) -> int:
        self.records.extend(records)
        return len(records)

    def close(self) -> None:
        self.closed = True


def open_sink(
    fmt: str = "jsonl",
    path: Optional[Union[str, Path]] = None,
    *,
    transformer: Optional[RowTransformer] = None,
    delimiter: str = ",",
    enclose_by_quotes: bool = True,
) -> RecordSink:
    """Create a sink from output settings.

    Args:
        fmt: ``jsonl`` or ``delimited``
        path: Output file, stdout if omitted
        transformer: Supplies the JSON encoder and line terminator
        delimiter: Field separator for ``delimited``
        enclose_by_quotes: Quote all fields for ``delimited``
    """
    transformer = transformer or RowTransformer()
    fmt = fmt.strip().lower()
    if fmt == "jsonl":
        return JsonLinesSink(path, encoder=transformer.encode)
    if fmt == "delimited":
        return DelimitedSink(
            path,
            delimiter=delimiter,
            enclose_by_quotes=enclose_by_quotes,
            line_end=transformer.line_end,
        )
    raise ValueError(f"Unsupported output format '{fmt}'. Valid options: jsonl, delimited")
