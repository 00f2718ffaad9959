"""Tests for the per-table watermark model."""

from __future__ import annotations

from datetime import datetime

import pytest

from sqlsource.lib import watermark as watermark_module
from sqlsource.lib.errors import ConfigurationError, InvalidWatermarkValue
from sqlsource.lib.watermark import (
    IndicatorType,
    TableSpec,
    Watermark,
    build_watermarks,
    decode_timestamp,
    default_position,
    normalize_indicator_value,
)


@pytest.fixture
def frozen_now(monkeypatch):
    moment = datetime(2025, 1, 15, 10, 30, 0)
    monkeypatch.setattr(watermark_module, "_now", lambda: moment)
    return moment


def _table(indicator_type, **kwargs):
    return TableSpec(name="t", indicator_column="ind", indicator_type=indicator_type, **kwargs)


class TestIndicatorType:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("date", IndicatorType.DATE),
            ("NUMBER", IndicatorType.NUMBER),
            (" String ", IndicatorType.STRING),
            (IndicatorType.DATE, IndicatorType.DATE),
        ],
    )
    def test_normalize(self, raw, expected):
        assert IndicatorType.normalize(raw) is expected

    def test_normalize_rejects_unknown(self):
        with pytest.raises(ValueError, match="Valid options: date, number, string"):
            IndicatorType.normalize("timestamp")

    def test_normalize_rejects_none(self):
        with pytest.raises(ValueError):
            IndicatorType.normalize(None)


class TestTableSpec:
    def test_indicator_column_is_upper_cased(self):
        table = TableSpec("dbo.orders", "updated_at", IndicatorType.DATE)
        assert table.indicator_column == "UPDATED_AT"

    def test_indicator_type_accepts_string(self):
        table = TableSpec("orders", "id", "number")  # type: ignore[arg-type]
        assert table.indicator_type is IndicatorType.NUMBER

    def test_bad_indicator_type_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            TableSpec("orders", "id", "float")  # type: ignore[arg-type]

    @pytest.mark.parametrize("name", ["orders; DROP TABLE x", "", "1orders", "a b"])
    def test_rejects_invalid_table_names(self, name):
        with pytest.raises(ConfigurationError):
            TableSpec(name, "id", IndicatorType.NUMBER)

    def test_rejects_invalid_column(self):
        with pytest.raises(ConfigurationError):
            TableSpec("orders", "id", IndicatorType.NUMBER, select_columns=("id", "count(*)"))

    def test_star_means_all_columns(self):
        table = TableSpec("orders", "id", IndicatorType.NUMBER, select_columns=("*",))
        assert table.select_columns == ()
        assert table.select_clause == "*"

    def test_select_clause_joins_columns(self):
        table = TableSpec("orders", "id", IndicatorType.NUMBER, select_columns=("id", "name"))
        assert table.select_clause == "id, name"

    def test_indicator_index_must_point_at_indicator(self):
        TableSpec(
            "orders",
            "updated_at",
            IndicatorType.DATE,
            select_columns=("id", "updated_at"),
            indicator_column_index=1,
        )
        with pytest.raises(ConfigurationError, match="does not point at UPDATED_AT"):
            TableSpec(
                "orders",
                "updated_at",
                IndicatorType.DATE,
                select_columns=("id", "updated_at"),
                indicator_column_index=0,
            )
        with pytest.raises(ConfigurationError):
            TableSpec(
                "orders",
                "updated_at",
                IndicatorType.DATE,
                select_columns=("id", "updated_at"),
                indicator_column_index=5,
            )

    def test_negative_lookback_rejected(self):
        with pytest.raises(ConfigurationError):
            _table(IndicatorType.DATE, lookback_seconds=-1)

    def test_is_immutable(self):
        table = _table(IndicatorType.NUMBER)
        with pytest.raises(AttributeError):
            table.name = "other"  # type: ignore[misc]

    def test_static_fields_are_read_only(self):
        fields = {"env": "prod"}
        table = _table(IndicatorType.NUMBER, static_fields=fields)
        fields["env"] = "dev"

        assert table.static_fields == {"env": "prod"}
        with pytest.raises(TypeError):
            table.static_fields["env"] = "dev"  # type: ignore[index]

    def test_is_hashable(self):
        first = _table(IndicatorType.NUMBER, static_fields={"env": "prod"})
        second = _table(IndicatorType.NUMBER, static_fields={"env": "prod"})

        assert first == second
        assert hash(first) == hash(second)
        assert len({first, second}) == 1


class TestDefaults:
    def test_number_default(self):
        assert default_position(IndicatorType.NUMBER) == -1

    def test_string_default(self):
        assert default_position(IndicatorType.STRING) == 0

    def test_date_default_is_now(self, frozen_now):
        assert default_position(IndicatorType.DATE) == 20250115103000

    def test_unset_position_is_materialised(self, frozen_now):
        wm = Watermark(_table(IndicatorType.DATE))
        assert wm.current_position() == 20250115103000
        assert wm.position == 20250115103000

    def test_zero_date_position_is_treated_as_unset(self, frozen_now):
        wm = Watermark(_table(IndicatorType.DATE), position=0)
        assert wm.current_position() == 20250115103000

    def test_zero_number_position_is_kept(self):
        wm = Watermark(_table(IndicatorType.NUMBER), position=0)
        assert wm.current_position() == 0

    def test_build_watermarks_uses_start_from(self):
        tables = [_table(IndicatorType.NUMBER, start_from=100)]
        assert build_watermarks(tables)["t"].position == 100


class TestNormalization:
    def test_date_value(self):
        assert normalize_indicator_value("2021-09-01 10:30:00", IndicatorType.DATE) == 20210901103000

    def test_date_fraction_is_truncated(self):
        value = normalize_indicator_value("2021-09-01 10:30:00.123", IndicatorType.DATE)
        assert value == 20210901103000

    def test_number_value(self):
        assert normalize_indicator_value("4711", IndicatorType.NUMBER) == 4711

    @pytest.mark.parametrize("raw", ["123abc", "12.5", "abc"])
    def test_non_integer_rejected(self, raw):
        with pytest.raises(InvalidWatermarkValue):
            normalize_indicator_value(raw, IndicatorType.NUMBER)

    def test_invalid_value_is_value_error(self):
        with pytest.raises(ValueError):
            normalize_indicator_value("x", IndicatorType.STRING)


class TestDecodeTimestamp:
    def test_full_position(self):
        assert decode_timestamp(20250115103000) == datetime(2025, 1, 15, 10, 30, 0)

    @pytest.mark.parametrize("position", [20240630, 2021911103000, 202501151030001, -1])
    def test_requires_fourteen_digits(self, position):
        with pytest.raises(ValueError, match="expected 14 digits"):
            decode_timestamp(position)


class TestAdvance:
    def test_advance_date(self):
        wm = Watermark(_table(IndicatorType.DATE), position=20200101000000)
        assert wm.advance("2021-09-01 10:30:00") == 20210901103000
        assert wm.position == 20210901103000

    @pytest.mark.parametrize(
        "indicator_type, start, lower, higher, expected",
        [
            (
                IndicatorType.DATE,
                20250115103000,
                "2025-01-01 00:00:00",
                "2025-02-01 08:00:00",
                20250201080000,
            ),
            (IndicatorType.NUMBER, 100, "50", "150", 150),
            (IndicatorType.STRING, 100, "0050", "0150", 150),
        ],
    )
    def test_never_moves_backwards(self, indicator_type, start, lower, higher, expected):
        wm = Watermark(_table(indicator_type), position=start)
        assert wm.advance(lower) == start
        assert wm.advance(higher) == expected
        assert wm.advance(lower) == expected
        assert wm.position == expected

    def test_empty_value_is_noop(self):
        wm = Watermark(_table(IndicatorType.NUMBER), position=7)
        assert wm.advance(None) == 7
        assert wm.advance("") == 7

    @pytest.mark.parametrize(
        "indicator_type, start",
        [
            (IndicatorType.DATE, 20250115103000),
            (IndicatorType.NUMBER, 7),
            (IndicatorType.STRING, 7),
        ],
    )
    def test_invalid_value_leaves_position(self, indicator_type, start):
        wm = Watermark(_table(indicator_type), position=start)
        with pytest.raises(InvalidWatermarkValue) as excinfo:
            wm.advance("123abc")
        assert wm.position == start
        assert excinfo.value.table == "t"
        assert excinfo.value.value == "123abc"

    def test_advance_to_is_monotonic(self):
        wm = Watermark(_table(IndicatorType.NUMBER), position=10)
        assert wm.advance_to(5) == 10
        assert wm.advance_to(20) == 20

    def test_copy_is_detached(self):
        wm = Watermark(_table(IndicatorType.NUMBER), position=10)
        pending = wm.copy()
        pending.advance("99")
        assert pending.position == 99
        assert wm.position == 10
        assert pending.table is wm.table
