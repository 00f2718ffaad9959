"""Pytest configuration and fixtures."""

import logging
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlsource.lib.watermark import IndicatorType, TableSpec  # noqa: E402
from tests.fakes import FakeDatabase  # noqa: E402


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo handler and level changes made by setup_logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            handler.close()
            root.removeHandler(handler)
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def orders_table():
    """DATE-indexed table starting at the beginning of 2025."""
    return TableSpec(
        name="dbo.orders",
        indicator_column="updated_at",
        indicator_type=IndicatorType.DATE,
        select_columns=("id", "status", "updated_at"),
        start_from=20250101000000,
    )


@pytest.fixture
def events_table():
    """NUMBER-indexed table with a static field."""
    return TableSpec(
        name="dbo.events",
        indicator_column="id",
        indicator_type=IndicatorType.NUMBER,
        static_fields={"source": "events_db"},
    )


@pytest.fixture
def order_rows():
    return [
        {"id": 1, "status": "new", "updated_at": datetime(2025, 1, 2, 8, 0, 0)},
        {"id": 2, "status": "paid", "updated_at": datetime(2025, 1, 2, 9, 30, 0)},
        {"id": 3, "status": None, "updated_at": datetime(2025, 1, 3, 12, 15, 45)},
    ]


@pytest.fixture
def event_rows():
    return [{"id": i, "kind": f"event-{i}"} for i in range(1, 6)]


@pytest.fixture
def database(order_rows, event_rows):
    return FakeDatabase({"dbo.orders": order_rows, "dbo.events": event_rows})
