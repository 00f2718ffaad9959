"""Tests for YAML configuration loading and validation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from sqlsource.lib.config_loader import (
    DEFAULT_CHECKPOINT_DIR,
    load_config,
    parse_config,
    validate_config,
)
from sqlsource.lib.errors import ConfigurationError
from sqlsource.lib.watermark import IndicatorType

FULL_CONFIG = """
source:
  name: orders_db
  connection:
    url: "DRIVER={ODBC Driver 18 for SQL Server};SERVER=db01;DATABASE=Sales"
    user: ${DB_USER}
    password: ${DB_PASSWORD}
    read_only: true
    timeout: 15
  checkpoint:
    path: ./state
    file_name: orders.status
  poll_interval_seconds: 2.5
  batch_size: 50
  max_rows: 500
  retries: 1
  retry_backoff_seconds: 0.5
  date_format: "%d/%m/%Y"
  output:
    format: delimited
    path: ./out/orders.csv
    delimiter: "|"
    enclose_by_quotes: false
  tables:
    - name: dbo.orders
      indicator_column: updated_at
      indicator_type: date
      columns: [id, status, updated_at]
      static_fields: {env: prod}
      lookback_seconds: 5
      start_from: 2025-01-01 00:00:00
    - name: dbo.events
      indicator_column: id
      indicator_type: number
      indicator_column_index: 1
      columns: "event_no, id"
"""


def _write(tmp_path: Path, text: str, name: str = "source.yaml") -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def _minimal(**overrides):
    raw = {
        "connection": {"url": "DSN=sales", "user": "reader", "password": "secret"},
        "checkpoint": {"file_name": "orders.status"},
        "tables": [{"name": "dbo.orders", "indicator_column": "id", "indicator_type": "number"}],
    }
    raw.update(overrides)
    return raw


def _table(**overrides):
    table = {"name": "dbo.orders", "indicator_column": "id", "indicator_type": "number"}
    table.update(overrides)
    return table


class TestLoadConfig:
    def test_full_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DB_USER", "reader")
        monkeypatch.setenv("DB_PASSWORD", "s3cret")

        config = load_config(_write(tmp_path, FULL_CONFIG))

        assert config.name == "orders_db"
        assert config.connection.user == "reader"
        assert config.connection.password == "s3cret"
        assert config.connection.read_only is True
        assert config.connection.timeout == 15
        assert config.checkpoint_path == tmp_path.resolve() / "state" / "orders.status"
        assert config.poll_interval_seconds == 2.5
        assert config.batch_size == 50
        assert config.max_rows == 500
        assert config.retries == 1
        assert config.retry_backoff_seconds == 0.5
        assert config.date_format == "%d/%m/%Y"
        assert config.output.format == "delimited"
        assert config.output.path == str(tmp_path.resolve() / "out" / "orders.csv")
        assert config.output.delimiter == "|"
        assert config.output.enclose_by_quotes is False

        orders, events = config.tables
        assert orders.indicator_type == IndicatorType.DATE
        assert orders.indicator_column == "UPDATED_AT"
        assert orders.select_columns == ("id", "status", "updated_at")
        assert orders.static_fields == {"env": "prod"}
        assert orders.lookback_seconds == 5
        assert orders.start_from == 20250101000000
        assert events.select_columns == ("event_no", "id")
        assert events.indicator_column_index == 1
        assert events.start_from is None

    def test_password_not_in_repr(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DB_USER", "reader")
        monkeypatch.setenv("DB_PASSWORD", "s3cret")
        config = load_config(_write(tmp_path, FULL_CONFIG))
        assert "s3cret" not in repr(config.connection)

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = _write(
            tmp_path,
            """
            source:
              connection: {url: "DSN=sales", user: reader, password: ""}
              checkpoint: {file_name: x.status}
              tables:
                - {name: t, indicator_column: id, indicator_type: number}
            """,
            name="billing.yaml",
        )
        config = load_config(path)
        assert config.name == "billing"
        assert config.connection.password == ""
        assert config.config_path == path

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Empty configuration file"):
            load_config(_write(tmp_path, ""))

    def test_missing_source_section(self, tmp_path):
        with pytest.raises(ConfigurationError, match="'source' section"):
            load_config(_write(tmp_path, "pipeline:\n  name: x\n"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(_write(tmp_path, "source: [unclosed\n"))

    def test_quoted_start_from(self, tmp_path):
        path = _write(
            tmp_path,
            """
            source:
              connection: {url: "DSN=sales", user: reader, password: pw}
              checkpoint: {file_name: x.status}
              tables:
                - name: t
                  indicator_column: modified
                  indicator_type: date
                  start_from: "2024-06-30 23:59:59"
            """,
        )
        assert load_config(path).tables[0].start_from == 20240630235959

    def test_date_only_start_from(self, tmp_path):
        path = _write(
            tmp_path,
            """
            source:
              connection: {url: "DSN=sales", user: reader, password: pw}
              checkpoint: {file_name: x.status}
              tables:
                - {name: t, indicator_column: modified, indicator_type: date, start_from: 2024-06-30}
            """,
        )
        assert load_config(path).tables[0].start_from == 20240630000000


    def test_quoted_date_only_start_from_starts_at_midnight(self, tmp_path):
        path = _write(
            tmp_path,
            """
            source:
              connection: {url: "DSN=sales", user: reader, password: pw}
              checkpoint: {file_name: x.status}
              tables:
                - {name: t, indicator_column: modified, indicator_type: date, start_from: "2024-06-30"}
            """,
        )
        assert load_config(path).tables[0].start_from == 20240630000000


class TestParseConfig:
    def test_defaults(self, tmp_path):
        config = parse_config(_minimal(), tmp_path)

        assert config.name == "sqlsource"
        assert config.checkpoint_path == Path(DEFAULT_CHECKPOINT_DIR) / "orders.status"
        assert config.poll_interval_seconds == 10.0
        assert config.batch_size == 100
        assert config.max_rows == 10000
        assert config.retries == 3
        assert config.line_end == "\n"
        assert config.output.format == "jsonl"
        assert config.output.path is None
        assert config.tables[0].select_columns == ()

    def test_static_fields_as_lists(self, tmp_path):
        config = parse_config(
            _minimal(tables=[_table(static_fields="env, region", static_values="prod,eu")]),
            tmp_path,
        )
        assert config.tables[0].static_fields == {"env": "prod", "region": "eu"}

    def test_static_fields_count_mismatch(self, tmp_path):
        with pytest.raises(ConfigurationError, match="static_values"):
            parse_config(
                _minimal(tables=[_table(static_fields="env,region", static_values="prod")]),
                tmp_path,
            )

    def test_star_columns_select_everything(self, tmp_path):
        config = parse_config(_minimal(tables=[_table(columns="*")]), tmp_path)
        assert config.tables[0].select_clause == "*"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ({"connection": {"user": "u", "password": "p"}}, "connection.url"),
            ({"connection": {"url": "DSN=x", "password": "p"}}, "connection.user"),
            ({"connection": {"url": "DSN=x", "user": "u"}}, "connection.password"),
            ({"checkpoint": {}}, "checkpoint.file_name"),
            ({"tables": []}, "tables"),
            ({"tables": [{"indicator_column": "id", "indicator_type": "number"}]}, "tables[0].name"),
            ({"tables": [{"name": "t", "indicator_type": "number"}]}, "tables[0].indicator_column"),
            ({"tables": [{"name": "t", "indicator_column": "id"}]}, "tables[0].indicator_type"),
        ],
    )
    def test_missing_mandatory_setting(self, tmp_path, raw, expected):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_config(_minimal(**raw), tmp_path)
        assert exc_info.value.field == expected

    def test_unknown_indicator_type(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_config(_minimal(tables=[_table(indicator_type="timestamp")]), tmp_path)
        assert exc_info.value.field == "tables[0].indicator_type"
        assert exc_info.value.table == "dbo.orders"

    def test_invalid_start_from(self, tmp_path):
        with pytest.raises(ConfigurationError, match="start_from"):
            parse_config(_minimal(tables=[_table(start_from="yesterday")]), tmp_path)

    @pytest.mark.parametrize(
        "start_from", ["2024-06", "2024-06-30 10:3", 202406301030, 20251399000000, "2024-13-01"]
    )
    def test_date_start_from_must_be_a_full_timestamp(self, tmp_path, start_from):
        table = _table(indicator_column="modified", indicator_type="date", start_from=start_from)
        with pytest.raises(ConfigurationError) as exc_info:
            parse_config(_minimal(tables=[table]), tmp_path)
        assert exc_info.value.field == "start_from"
        assert exc_info.value.table == "dbo.orders"

    def test_date_start_from_integer_date_is_padded(self, tmp_path):
        table = _table(indicator_column="modified", indicator_type="date", start_from=20240630)
        assert parse_config(_minimal(tables=[table]), tmp_path).tables[0].start_from == 20240630000000

    def test_number_start_from_is_not_padded(self, tmp_path):
        config = parse_config(_minimal(tables=[_table(start_from=20240630)]), tmp_path)
        assert config.tables[0].start_from == 20240630

    def test_duplicate_tables(self, tmp_path):
        with pytest.raises(ConfigurationError, match="more than once"):
            parse_config(_minimal(tables=[_table(), _table()]), tmp_path)

    def test_bad_identifier(self, tmp_path):
        with pytest.raises(ConfigurationError):
            parse_config(_minimal(tables=[_table(name="orders; DROP TABLE x")]), tmp_path)

    def test_unknown_output_format(self, tmp_path):
        with pytest.raises(ConfigurationError, match="output.format"):
            parse_config(_minimal(output={"format": "parquet"}), tmp_path)

    def test_multi_character_delimiter(self, tmp_path):
        with pytest.raises(ConfigurationError, match="single character"):
            parse_config(_minimal(output={"format": "delimited", "delimiter": "||"}), tmp_path)

    def test_line_end_must_be_string(self, tmp_path):
        with pytest.raises(ConfigurationError, match="line_end"):
            parse_config(_minimal(line_end=10), tmp_path)

    def test_custom_line_end(self, tmp_path):
        assert parse_config(_minimal(line_end="\r\n"), tmp_path).line_end == "\r\n"

    @pytest.mark.parametrize("key, value", [("batch_size", 0), ("retries", -1), ("max_rows", "many")])
    def test_bad_numbers(self, tmp_path, key, value):
        with pytest.raises(ConfigurationError, match=key):
            parse_config(_minimal(**{key: value}), tmp_path)

    def test_boolean_strings(self, tmp_path):
        raw = _minimal()
        raw["connection"]["read_only"] = "yes"
        assert parse_config(raw, tmp_path).connection.read_only is True

    def test_env_vars_in_tables(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORDERS_TABLE", "dbo.orders_2025")
        config = parse_config(_minimal(tables=[_table(name="${ORDERS_TABLE}")]), tmp_path)
        assert config.tables[0].name == "dbo.orders_2025"

    def test_explain(self, tmp_path):
        text = parse_config(_minimal(name="orders_db"), tmp_path).explain()
        assert "Source:     orders_db" in text
        assert "jsonl -> stdout" in text
        assert "dbo.orders by ID (number)" in text


class TestValidateConfig:
    def test_valid(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DB_USER", "reader")
        monkeypatch.setenv("DB_PASSWORD", "pw")
        path = _write(tmp_path, FULL_CONFIG.replace("lookback_seconds: 5", "lookback_seconds: 0"))
        assert validate_config(path) == []

    def test_missing_file(self, tmp_path):
        issues = validate_config(tmp_path / "missing.yaml")
        assert len(issues) == 1
        assert "not found" in issues[0]

    def test_configuration_error_is_reported(self, tmp_path):
        issues = validate_config(_write(tmp_path, "source:\n  name: x\n"))
        assert len(issues) == 1
        assert "connection.password" in issues[0]

    def test_checkpoint_path_is_directory(self, tmp_path):
        (tmp_path / "state" / "x.status").mkdir(parents=True)
        path = _write(
            tmp_path,
            """
            source:
              connection: {url: "DSN=sales", user: reader, password: pw}
              checkpoint: {path: ./state, file_name: x.status}
              tables:
                - {name: t, indicator_column: id, indicator_type: number}
            """,
        )
        issues = validate_config(path)
        assert any("is a directory" in issue for issue in issues)

    def test_lookback_on_number_table(self, tmp_path):
        path = _write(
            tmp_path,
            """
            source:
              connection: {url: "DSN=sales", user: reader, password: pw}
              checkpoint: {path: ./state, file_name: x.status}
              tables:
                - {name: t, indicator_column: id, indicator_type: number, lookback_seconds: 30}
            """,
        )
        assert validate_config(path) == ["t: lookback_seconds only applies to date indicators"]


def test_bundled_example_config_is_valid():
    example = Path(__file__).parent.parent / "examples" / "orders.yaml"

    config = load_config(example)

    assert config.name == "sales_orders"
    assert [t.name for t in config.tables] == ["Sales.Orders", "Audit.Events"]
    assert config.tables[1].static_fields == {"source_system": "sales_dw", "stream": "audit"}
    assert validate_config(example) == []
