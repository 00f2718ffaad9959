"""Database session handling for incremental queries.

The ``ConnectionManager`` owns exactly one session, created on demand by an
injected factory. Every query attempt first checks that the session is
alive and reopens it if not, so a dropped connection is healed inside the
retry budget of the query that noticed it.

Example:
    factory = odbc_session_factory(
        "DRIVER={ODBC Driver 18 for SQL Server};SERVER=db;DATABASE=Sales",
        user="reader",
        password="secret",
        read_only=True,
    )
    manager = ConnectionManager(factory, retries=3, max_rows=10000)
    result = manager.execute(watermark)
    if result.ok:
        ...
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import tenacity

from sqlsource.lib.errors import SessionError, WatermarkBindingError, is_disconnect_error
from sqlsource.lib.query import IncrementalQuery, build_incremental_query
from sqlsource.lib.resilience import RetryConfig, build_retrying
from sqlsource.lib.watermark import Watermark

logger = logging.getLogger(__name__)

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "DatabaseSession",
    "OdbcSession",
    "QueryResult",
    "QueryStatus",
    "SessionFactory",
    "build_connection_string",
    "odbc_session_factory",
]

Row = Dict[str, Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RETRYING = "retrying"
    FAILED = "failed"


class QueryStatus(str, Enum):
    """Outcome of one incremental query."""

    OK = "ok"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"


@dataclass
class QueryResult:
    """Tagged result of ``ConnectionManager.execute``.

    ``EXHAUSTED`` and ``FATAL`` results always carry an empty row list, so a
    failed query can never be mistaken for new data.
    """

    status: QueryStatus
    rows: List[Row] = field(default_factory=list)
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == QueryStatus.OK

    def __len__(self) -> int:
        return len(self.rows)


class DatabaseSession(Protocol):
    """Minimal session interface the connection manager relies on."""

    def is_open(self) -> bool: ...

    def execute(
        self,
        sql: str,
        params: Sequence[Any],
        *,
        max_rows: int = 0,
        fetch_size: int = 0,
    ) -> List[Row]: ...

    def close(self) -> None: ...


SessionFactory = Callable[[], DatabaseSession]


def build_connection_string(url: str, user: Optional[str], password: Optional[str]) -> str:
    """Build an ODBC connection string from a base string and credentials.

    Credentials already present in ``url`` are left alone.

    Example:
        >>> build_connection_string("DSN=sales", "reader", "pw")
        'DSN=sales;UID=reader;PWD=pw'
    """
    conn_str = url.strip().rstrip(";")
    keys = {part.split("=", 1)[0].strip().upper() for part in conn_str.split(";") if "=" in part}

    if user and "UID" not in keys and "USER" not in keys:
        conn_str += f";UID={user}"
    if password and "PWD" not in keys and "PASSWORD" not in keys:
        conn_str += f";PWD={password}"
    return conn_str


class OdbcSession:
    """Session backed by a pyodbc connection."""

    def __init__(self, connection: Any):
        self._conn = connection

    @classmethod
    def connect(
        cls,
        connection_string: str,
        *,
        read_only: bool = False,
        timeout: Optional[int] = None,
    ) -> "OdbcSession":
        """Open a pyodbc connection.

        Raises:
            ImportError: If pyodbc is not installed
            SessionError: If the driver refuses the connection
        """
        try:
            import pyodbc
        except ImportError as exc:
            raise ImportError(
                "pyodbc is required for database sources. Install with: pip install pyodbc"
            ) from exc

        try:
            conn = pyodbc.connect(connection_string, readonly=read_only, timeout=timeout or 0)
        except pyodbc.Error as exc:
            raise SessionError("Failed to open database connection", cause=exc) from exc
        return cls(conn)

    def is_open(self) -> bool:
        if self._conn is None:
            return False
        return not getattr(self._conn, "closed", False)

    def execute(
        self,
        sql: str,
        params: Sequence[Any],
        *,
        max_rows: int = 0,
        fetch_size: int = 0,
    ) -> List[Row]:
        if self._conn is None:
            raise SessionError("Session is closed")

        cursor = self._conn.cursor()
        try:
            if fetch_size > 0:
                cursor.arraysize = fetch_size
            cursor.execute(sql, *params)
            columns = [col[0] for col in cursor.description or ()]
            raw_rows = cursor.fetchmany(max_rows) if max_rows > 0 else cursor.fetchall()
            return [dict(zip(columns, row)) for row in raw_rows]
        finally:
            cursor.close()

    def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()


def odbc_session_factory(
    url: str,
    *,
    user: Optional[str] = None,
    password: Optional[str] = None,
    read_only: bool = False,
    timeout: Optional[int] = None,
) -> SessionFactory:
    """Return a factory opening pyodbc sessions with fixed settings."""
    return functools.partial(
        OdbcSession.connect,
        build_connection_string(url, user, password),
        read_only=read_only,
        timeout=timeout,
    )


class ConnectionManager:
    """Own a database session and run incremental queries with retries.

    Args:
        session_factory: Callable returning a new open session
        retries: Retries after the first attempt for each query
        retry_backoff_seconds: Fixed delay between attempts
        max_rows: Result cap per query, 0 for unbounded
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        retries: int = 3,
        retry_backoff_seconds: float = 0.0,
        max_rows: int = 0,
    ):
        self._factory = session_factory
        self.retries = retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_rows = max_rows
        self._session: Optional[DatabaseSession] = None
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_open(self) -> bool:
        if self._session is None:
            return False
        try:
            return bool(self._session.is_open())
        except Exception as exc:
            logger.debug("Session liveness check failed: %s", exc)
            return False

    def open(self) -> None:
        """Create a new session through the factory, closing any current one."""
        self._teardown()
        self._session = self._factory()
        self._state = ConnectionState.CONNECTED
        logger.debug("Database session opened")

    def close(self) -> None:
        """Close the session. Errors are logged, never raised."""
        self._teardown()
        self._state = ConnectionState.DISCONNECTED

    def execute(self, watermark: Watermark, *, retries: Optional[int] = None) -> QueryResult:
        """Run the incremental query for a watermark.

        Args:
            watermark: Watermark of the table to query
            retries: Override the retry budget for this call

        Returns:
            QueryResult; never raises for query or connection failures
        """
        table = watermark.name
        try:
            query = build_incremental_query(watermark, max_rows=self.max_rows)
        except WatermarkBindingError as exc:
            logger.error("Cannot query %s: %s", table, exc)
            return QueryResult(status=QueryStatus.FATAL, error=exc)

        budget = self.retries if retries is None else retries
        config = RetryConfig.from_retries(budget, self.retry_backoff_seconds)
        attempts = 0
        rows: List[Row] = []

        def mark_retrying(_state: tenacity.RetryCallState) -> None:
            self._state = ConnectionState.RETRYING

        try:
            for attempt in build_retrying(config, f"Query on {table}", on_retry=mark_retrying):
                with attempt:
                    attempts += 1
                    rows = self._run(query)
        except Exception as exc:
            self._state = ConnectionState.FAILED
            logger.error(
                "Query on %s failed after %d attempt(s), skipping this cycle: %s",
                table,
                attempts,
                exc,
            )
            return QueryResult(status=QueryStatus.EXHAUSTED, error=exc, attempts=attempts)

        logger.debug("Query on %s returned %d row(s)", table, len(rows))
        return QueryResult(status=QueryStatus.OK, rows=rows, attempts=attempts)

    def _run(self, query: IncrementalQuery) -> List[Row]:
        if not self.is_open():
            self.open()

        session = self._session
        if session is None:
            raise SessionError("Session is not open")
        try:
            rows = session.execute(
                query.sql,
                query.params,
                max_rows=query.max_rows,
                fetch_size=query.fetch_size,
            )
        except Exception as exc:
            if is_disconnect_error(exc):
                logger.warning("Database connection lost: %s", exc)
                self._teardown()
            raise

        self._state = ConnectionState.CONNECTED
        return rows

    def _teardown(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            session.close()
        except Exception as exc:
            logger.warning("Error closing database session: %s", exc)
