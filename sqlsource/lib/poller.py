"""Poll orchestration.

One cycle queries every configured table in order, emits the new records
and then persists all watermarks with a single checkpoint write. A table's
watermark only moves after its records were handed to the sink, so a crash
or sink failure replays rows instead of losing them.

Example:
    config = load_config("orders.yaml")
    with SqlSourcePoller.from_config(config) as poller:
        poller.run()
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlsource.lib.checkpoint import CheckpointStore
from sqlsource.lib.config_loader import SourceConfig
from sqlsource.lib.connections import ConnectionManager, SessionFactory
from sqlsource.lib.errors import CheckpointError
from sqlsource.lib.logging import PollMetrics
from sqlsource.lib.sinks import RecordSink, open_sink
from sqlsource.lib.transform import RowTransformer
from sqlsource.lib.watermark import TableSpec, Watermark

logger = logging.getLogger(__name__)

__all__ = ["SqlSourcePoller", "CycleResult", "TableResult", "TableOutcome"]


class TableOutcome(str, Enum):
    OK = "ok"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    EMIT_FAILED = "emit_failed"


@dataclass
class TableResult:
    """What one cycle did for one table."""

    table: str
    outcome: TableOutcome
    rows_fetched: int = 0
    records_emitted: int = 0
    invalid_rows: int = 0
    position_before: Optional[int] = None
    position_after: Optional[int] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.outcome == TableOutcome.OK


@dataclass
class CycleResult:
    tables: List[TableResult] = field(default_factory=list)
    checkpoint_saved: bool = False

    @property
    def records_emitted(self) -> int:
        return sum(t.records_emitted for t in self.tables)

    @property
    def rows_fetched(self) -> int:
        return sum(t.rows_fetched for t in self.tables)

    @property
    def ok(self) -> bool:
        return self.checkpoint_saved and all(t.ok for t in self.tables)

    def by_table(self) -> Dict[str, TableResult]:
        return {t.table: t for t in self.tables}


class SqlSourcePoller:
    """Periodically extract new rows from a set of tables.

    Args:
        tables: Tables to poll, in polling order
        connection: Connection manager owning the database session
        checkpoint: Store for watermark positions
        sink: Destination for records
        transformer: Row transformer, defaults to ``RowTransformer()``
        batch_size: Records per sink call
        poll_interval_seconds: Delay between the end of one cycle and the next
        name: Source name used in log context
    """

    def __init__(
        self,
        tables: Sequence[TableSpec],
        connection: ConnectionManager,
        checkpoint: CheckpointStore,
        sink: RecordSink,
        *,
        transformer: Optional[RowTransformer] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 10.0,
        name: str = "sqlsource",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.tables = list(tables)
        self.connection = connection
        self.checkpoint = checkpoint
        self.sink = sink
        self.transformer = transformer or RowTransformer()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.name = name
        self._watermarks: Dict[str, Watermark] = {}
        self._started = False
        self._stop_event = threading.Event()
        self._metrics = PollMetrics(__name__, source=name)

    @classmethod
    def from_config(
        cls,
        config: SourceConfig,
        *,
        session_factory: Optional[SessionFactory] = None,
        sink: Optional[RecordSink] = None,
    ) -> "SqlSourcePoller":
        """Build a poller and its collaborators from a loaded config."""
        transformer = RowTransformer(config.date_format, config.line_end)
        connection = ConnectionManager(
            session_factory or config.connection.session_factory(),
            retries=config.retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
            max_rows=config.max_rows,
        )
        if sink is None:
            sink = open_sink(
                config.output.format,
                config.output.path,
                transformer=transformer,
                delimiter=config.output.delimiter,
                enclose_by_quotes=config.output.enclose_by_quotes,
            )
        return cls(
            config.tables,
            connection,
            CheckpointStore(config.checkpoint_path),
            sink,
            transformer=transformer,
            batch_size=config.batch_size,
            poll_interval_seconds=config.poll_interval_seconds,
            name=config.name,
        )

    @property
    def watermarks(self) -> Mapping[str, Watermark]:
        return self._watermarks

    def start(self) -> None:
        """Load the checkpoint and open the database session.

        A failed open is not fatal; the first query reopens the session
        within its retry budget. Later calls do nothing.
        """
        if self._started:
            return
        self._watermarks = self.checkpoint.load(self.tables)
        self._started = True
        try:
            self.connection.open()
        except Exception as exc:
            logger.warning("Could not open database session at start, will retry: %s", exc)
        logger.info(
            "Source %s started with %d table(s), checkpoint %s",
            self.name,
            len(self.tables),
            self.checkpoint.path,
        )

    def poll_once(self) -> CycleResult:
        """Run one poll cycle over all tables and save the checkpoint once."""
        if not self._started:
            self.start()

        result = CycleResult()
        for table in self.tables:
            result.tables.append(self._poll_table(self._watermarks[table.name]))

        try:
            self.checkpoint.save(self._watermarks)
            result.checkpoint_saved = True
        except CheckpointError as exc:
            logger.error("Checkpoint not saved, positions kept in memory: %s", exc)

        logger.debug(
            "Cycle finished: %d row(s) fetched, %d record(s) emitted",
            result.rows_fetched,
            result.records_emitted,
        )
        return result

    def _poll_table(self, watermark: Watermark) -> TableResult:
        table = watermark.table
        before = watermark.current_position()

        query_result = self.connection.execute(watermark)
        if not query_result.ok:
            return TableResult(
                table=table.name,
                outcome=TableOutcome(query_result.status.value),
                position_before=before,
                position_after=before,
                error=query_result.error,
            )

        pending = watermark.copy()
        transformed = self.transformer.process_batch(query_result.rows, pending)

        try:
            emitted = self._emit(transformed.records)
        except Exception as exc:
            logger.error(
                "Emitting records of %s failed, watermark stays at %s: %s",
                table.name,
                before,
                exc,
            )
            return TableResult(
                table=table.name,
                outcome=TableOutcome.EMIT_FAILED,
                rows_fetched=len(query_result.rows),
                invalid_rows=transformed.invalid_rows,
                position_before=before,
                position_after=before,
                error=exc,
            )

        after = watermark.advance_to(pending.current_position())
        if query_result.rows:
            logger.info(
                "Polled %s: %d row(s), watermark %s -> %s",
                table.name,
                len(query_result.rows),
                before,
                after,
            )
        self._metrics.report(
            table.name,
            rows_fetched=len(query_result.rows),
            records_emitted=emitted,
            invalid_rows=transformed.invalid_rows,
            watermark_position=after,
        )

        return TableResult(
            table=table.name,
            outcome=TableOutcome.OK,
            rows_fetched=len(query_result.rows),
            records_emitted=emitted,
            invalid_rows=transformed.invalid_rows,
            position_before=before,
            position_after=after,
        )

    def _emit(self, records: List[Dict[str, Any]]) -> int:
        emitted = 0
        for offset in range(0, len(records), self.batch_size):
            emitted += self.sink.emit(records[offset : offset + self.batch_size])
        return emitted

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> int:
        """Poll until stopped.

        The stop signal is checked between cycles; a running cycle always
        completes. Errors escaping a cycle are logged and polling goes on.

        Args:
            stop_event: Event that ends the loop when set
            max_cycles: Stop after this many cycles

        Returns:
            Number of cycles run
        """
        if stop_event is not None:
            self._stop_event = stop_event

        cycles = 0
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Poll cycle failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            self._stop_event.wait(self.poll_interval_seconds)

        logger.info("Source %s stopped after %d cycle(s)", self.name, cycles)
        return cycles

    def stop(self) -> None:
        self._stop_event.set()

    def close(self) -> None:
        """Release the session and the sink. Errors are logged, not raised."""
        self.connection.close()
        try:
            self.sink.close()
        except Exception as exc:
            logger.warning("Error closing sink: %s", exc)

    def __enter__(self) -> "SqlSourcePoller":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
