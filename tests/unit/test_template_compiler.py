"""
Unit Tests for Template Compiler
================================

Tests for chart payload construction, markup rendering and configuration errors.
"""

import pytest
import jinja2
from datetime import date, datetime

from chart_render.core.rendering.errors import ConfigError
from chart_render.core.rendering.template_compiler import (
    ChartTemplateCompiler,
    compile_chart,
    container_id_for,
    sort_points,
)
from chart_render.models.schemas import ChartKind, DataPoint, RenderConfig, TemplateKind

from tests.utils.assertions import assert_valid_chart_markup, extract_payload
from tests.utils.data_generators import ChartDataGenerator


@pytest.fixture
def compiler():
    """Compiler without external chart scripts."""
    return ChartTemplateCompiler(script_urls=[])


class TestSortPoints:
    """Test chronological, series-stable ordering."""

    def test_orders_by_timestamp_then_key(self, multi_series_points):
        ordered = sort_points(multi_series_points)

        pairs = [(p.timestamp, p.series_key) for p in ordered]
        assert pairs == sorted(pairs)

    def test_key_order_is_case_sensitive(self):
        day = date(2024, 1, 1)
        points = [
            DataPoint(timestamp=day, series_key="beta", value=1),
            DataPoint(timestamp=day, series_key="Zeta", value=2),
            DataPoint(timestamp=day, series_key="alpha", value=3),
        ]

        assert [p.series_key for p in sort_points(points)] == ["Zeta", "alpha", "beta"]

    def test_missing_key_sorts_first(self):
        day = date(2024, 1, 1)
        points = [
            DataPoint(timestamp=day, series_key="a", value=1),
            DataPoint(timestamp=day, value=2),
        ]

        assert sort_points(points)[0].series_key is None


class TestContainerId:
    """Test container id derivation from the wait selector."""

    def test_id_selector(self):
        assert container_id_for("#latency-chart") == "latency-chart"

    def test_complex_selector_falls_back(self):
        assert container_id_for("div.chart > svg") == "chartdiv"


class TestMultiSeriesPayload:
    """Test grouping, pivoting and color assignment."""

    def test_rows_are_chronological(self, compiler, multi_series_points, sample_config):
        payload = compiler.build_payload(multi_series_points, sample_config)

        dates = [row["date"] for row in payload["rows"]]
        assert dates == sorted(dates)
        assert len(dates) == len(set(dates)) == 5

    def test_one_series_per_key_in_first_seen_order(self, compiler, multi_series_points, sample_config):
        payload = compiler.build_payload(multi_series_points, sample_config)

        # All keys appear on the first day, so first-seen order is lexicographic
        assert [s["key"] for s in payload["series"]] == ["Orange", "Telekom", "Vodafone"]
        assert [s["field"] for s in payload["series"]] == ["s0", "s1", "s2"]
        assert payload["multiSeries"] is True

    def test_first_seen_order_follows_earliest_timestamp(self, compiler, sample_config):
        points = [
            DataPoint(timestamp=date(2024, 1, 2), series_key="A", value=1),
            DataPoint(timestamp=date(2024, 1, 1), series_key="B", value=2),
        ]

        payload = compiler.build_payload(points, sample_config)

        assert [s["key"] for s in payload["series"]] == ["B", "A"]

    @pytest.mark.parametrize("palette_size,series_count", [(1, 4), (3, 7), (10, 3)])
    def test_colors_cycle_through_palette(self, compiler, palette_size, series_count):
        palette = tuple(f"#00000{i}" for i in range(palette_size))
        config = RenderConfig(color_palette=palette)
        keys = [f"op{i:02d}" for i in range(series_count)]
        points = ChartDataGenerator.multi_series(keys, days=2)

        payload = compiler.build_payload(points, config)

        for index, series in enumerate(payload["series"]):
            assert series["color"] == palette[index % palette_size]

    def test_values_land_in_matching_fields(self, compiler, sample_config):
        day = date(2024, 1, 1)
        points = [
            DataPoint(timestamp=day, series_key="Orange", value=12.5),
            DataPoint(timestamp=day, series_key="Vodafone", value=30),
            DataPoint(timestamp=date(2024, 1, 2), series_key="Vodafone", value=31),
        ]

        payload = compiler.build_payload(points, sample_config)

        assert payload["rows"] == [
            {"date": "2024-01-01", "s0": 12.5, "s1": 30.0},
            {"date": "2024-01-02", "s1": 31.0},
        ]

    def test_duplicate_point_last_wins(self, compiler, sample_config):
        day = date(2024, 1, 1)
        points = [
            DataPoint(timestamp=day, series_key="A", value=1),
            DataPoint(timestamp=day, series_key="A", value=2),
        ]

        payload = compiler.build_payload(points, sample_config)

        assert payload["rows"] == [{"date": "2024-01-01", "s0": 2.0}]

    def test_same_day_timestamps_stay_separate_rows(self, compiler, sample_config):
        points = [
            DataPoint(timestamp=datetime(2024, 1, 1, 10, 0), series_key="A", value=1),
            DataPoint(timestamp=datetime(2024, 1, 1, 11, 0), series_key="A", value=2),
            DataPoint(timestamp=datetime(2024, 1, 1, 11, 0), series_key="B", value=3),
        ]

        payload = compiler.build_payload(points, sample_config)

        assert payload["rows"] == [
            {"date": "2024-01-01T10:00:00", "s0": 1.0},
            {"date": "2024-01-01T11:00:00", "s0": 2.0, "s1": 3.0},
        ]
        assert payload["dateFormat"] == "yyyy-MM-dd'T'HH:mm:ss"

    def test_sub_second_timestamps_keep_milliseconds(self, compiler, sample_config):
        points = [
            DataPoint(timestamp=datetime(2024, 1, 1, 10, 0, 0, 250000), series_key="A", value=1),
            DataPoint(timestamp=datetime(2024, 1, 1, 10, 0, 0, 750000), series_key="A", value=2),
        ]

        payload = compiler.build_payload(points, sample_config)

        assert [row["date"] for row in payload["rows"]] == [
            "2024-01-01T10:00:00.250",
            "2024-01-01T10:00:00.750",
        ]
        assert payload["dateFormat"] == "yyyy-MM-dd'T'HH:mm:ss.SSS"

    def test_daily_data_uses_plain_dates(self, compiler, multi_series_points, sample_config):
        payload = compiler.build_payload(multi_series_points, sample_config)

        assert payload["dateFormat"] == "yyyy-MM-dd"
        assert all(len(row["date"]) == 10 for row in payload["rows"])

    def test_unkeyed_data_falls_back_to_single_series(self, compiler, single_series_points, sample_config):
        payload = compiler.build_payload(single_series_points, sample_config)

        assert payload["multiSeries"] is False
        assert payload["series"][0]["field"] == "value"

    def test_mixed_keyed_and_unkeyed_points_rejected(self, compiler, sample_config):
        points = [
            DataPoint(timestamp=date(2024, 1, 1), series_key="A", value=1),
            DataPoint(timestamp=date(2024, 1, 1), value=2),
        ]

        with pytest.raises(ConfigError, match="mixes"):
            compiler.build_payload(points, sample_config)


class TestSingleSeriesPayload:
    """Test single-series binding."""

    @pytest.fixture
    def single_config(self):
        return RenderConfig(
            template_kind=TemplateKind.SINGLE_SERIES,
            value_label="Jitter",
            color_palette=("#2196F3",),
        )

    def test_one_row_per_point_in_order(self, compiler, single_series_points, single_config):
        payload = compiler.build_payload(single_series_points, single_config)

        assert len(payload["rows"]) == 7
        assert [row["date"] for row in payload["rows"]] == sorted(
            row["date"] for row in payload["rows"]
        )
        assert payload["series"] == [
            {"key": None, "name": "Jitter", "field": "value", "color": "#2196F3"}
        ]

    def test_single_key_is_allowed(self, compiler, single_config):
        points = ChartDataGenerator.multi_series(["Orange"], days=3)

        payload = compiler.build_payload(points, single_config)

        assert payload["series"][0]["key"] == "Orange"

    def test_two_keys_at_same_timestamp_rejected(self, compiler, single_config):
        day = date(2024, 1, 1)
        points = [
            DataPoint(timestamp=day, series_key="Orange", value=1),
            DataPoint(timestamp=day, series_key="Vodafone", value=2),
        ]

        with pytest.raises(ConfigError, match="distinct series keys"):
            compiler.build_payload(points, single_config)


class TestConfigErrors:
    """Test configuration failures."""

    def test_empty_palette_with_multi_series_data(self, compiler, multi_series_points):
        config = RenderConfig(color_palette=())

        with pytest.raises(ConfigError, match="color_palette"):
            compiler.compile(multi_series_points, config)

    def test_unknown_template_kind_in_mapping(self, compiler, multi_series_points):
        with pytest.raises(ConfigError, match="Invalid render config"):
            compiler.compile(multi_series_points, {"template_kind": "pie"})

    def test_unknown_template_kind_on_constructed_config(self, compiler, multi_series_points):
        config = RenderConfig.model_construct(
            **{**RenderConfig().model_dump(), "template_kind": "pie"}
        )

        with pytest.raises(ConfigError, match="Unknown template kind"):
            compiler.build_payload(multi_series_points, config)

    def test_invalid_data_point_mapping(self, compiler, sample_config):
        with pytest.raises(ConfigError, match="Invalid data point"):
            compiler.compile([{"date": "not-a-date", "value": 1}], sample_config)


class TestMarkup:
    """Test the rendered HTML document."""

    def test_compile_is_deterministic(self, compiler, multi_series_points, sample_config):
        first = compiler.compile(multi_series_points, sample_config)
        second = ChartTemplateCompiler(script_urls=[]).compile(
            list(reversed(multi_series_points)), sample_config
        )

        assert first == second

    def test_markup_is_well_formed(self, compiler, multi_series_points, sample_config):
        markup = compiler.compile(multi_series_points, sample_config)

        assert_valid_chart_markup(markup)
        assert "width: 800px;" in markup
        assert "height: 500px;" in markup

    def test_empty_data_renders_empty_chart(self, compiler, sample_config):
        markup = compiler.compile([], sample_config)

        assert_valid_chart_markup(markup)
        payload = extract_payload(markup)
        assert payload["rows"] == []
        assert payload["scrollbar"] is False

    def test_payload_round_trips_through_markup(self, compiler, multi_series_points, sample_config):
        markup = compiler.compile(multi_series_points, sample_config)

        assert extract_payload(markup) == compiler.build_payload(multi_series_points, sample_config)

    def test_axis_title_uses_label_and_unit(self, compiler, multi_series_points, sample_config):
        payload = extract_payload(compiler.compile(multi_series_points, sample_config))

        assert payload["valueAxisTitle"] == "Latency (ms)"
        assert payload["title"] == "Network Latency - Last 30 Days"
        assert payload["chartKind"] == "line"

    def test_untrusted_title_cannot_break_out(self, compiler, multi_series_points):
        title = '</script><script>alert("x")</script>'
        config = RenderConfig(title=title, chart_kind=ChartKind.AREA)

        markup = compiler.compile(multi_series_points, config)

        assert title not in markup
        assert markup.count("</script>") == 2
        assert extract_payload(markup)["title"] == title

    def test_script_urls_are_included(self, multi_series_points, sample_config):
        compiler = ChartTemplateCompiler(script_urls=["https://cdn.example.test/core.js"])

        markup = compiler.compile(multi_series_points, sample_config)

        assert '<script src="https://cdn.example.test/core.js"></script>' in markup

    def test_scrollbar_enabled_for_long_series(self, compiler, sample_config):
        points = ChartDataGenerator.multi_series(["A"], days=16)

        payload = compiler.build_payload(points, sample_config)

        assert payload["scrollbar"] is True

    def test_template_error_becomes_config_error(self, compiler, multi_series_points, sample_config):
        compiler.env.loader = jinja2.DictLoader({"chart.html": "{{ missing_value }}"})

        with pytest.raises(ConfigError, match="Template rendering failed"):
            compiler.compile(multi_series_points, sample_config)

    def test_module_function_uses_settings_urls(self, multi_series_points, sample_config):
        markup = compile_chart(multi_series_points, sample_config)

        assert "<script src=" not in markup
        assert_valid_chart_markup(markup)
