"""
Template Compiler
=================

Convert chart data points and a render configuration into a self-contained
HTML document. The document carries a fixed rendering script that reads a
JSON payload embedded in the page; data and labels never become script text.
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from pathlib import Path
import re

import jinja2
from pydantic import ValidationError

from chart_render.config.logging import get_logger
from chart_render.config.settings import get_settings
from chart_render.core.rendering.errors import ConfigError
from chart_render.models.schemas import DataPoint, RenderConfig, TemplateKind

logger = get_logger(__name__)

TEMPLATE_NAME = "chart.html"
DEFAULT_CONTAINER_ID = "chartdiv"
SCROLLBAR_MIN_ROWS = 15

# amCharts input formats for each ISO layout emitted in rows, by timespec
INPUT_DATE_FORMATS: Dict[Optional[str], str] = {
    None: "yyyy-MM-dd",
    "seconds": "yyyy-MM-dd'T'HH:mm:ss",
    "milliseconds": "yyyy-MM-dd'T'HH:mm:ss.SSS",
}

_ID_SELECTOR = re.compile(r"^#([A-Za-z][A-Za-z0-9_-]*)$")

Payload = Dict[str, Any]


def sort_points(data: Iterable[DataPoint]) -> List[DataPoint]:
    """Order points by timestamp, then by series key (case-sensitive)."""
    return sorted(data, key=lambda point: (point.timestamp, point.series_key or ""))


def timespec_for(points: Sequence[DataPoint]) -> Optional[str]:
    """Coarsest ISO timespec that keeps every distinct timestamp apart."""
    if any(point.timestamp.microsecond for point in points):
        return "milliseconds"
    if any(point.has_time for point in points):
        return "seconds"
    return None


def format_timestamp(point: DataPoint, timespec: Optional[str]) -> str:
    if timespec is None:
        return point.timestamp.date().isoformat()
    return point.timestamp.isoformat(timespec=timespec)


def container_id_for(wait_selector: str) -> str:
    """Element id of the chart container targeted by an ``#id`` selector."""
    match = _ID_SELECTOR.match(wait_selector)
    return match.group(1) if match else DEFAULT_CONTAINER_ID


class ChartTemplateCompiler:
    """Jinja2-based chart document compiler."""

    def __init__(self, script_urls: Optional[Sequence[str]] = None) -> None:
        self.script_urls = list(
            get_settings().chart_script_urls if script_urls is None else script_urls
        )
        self.logger: Any = logger.bind(compiler="jinja2")  # structlog.BoundLoggerBase
        self._builders: Dict[TemplateKind, Callable[[List[DataPoint], RenderConfig, Optional[str]], Payload]] = {
            TemplateKind.MULTI_SERIES: self._build_multi_series,
            TemplateKind.SINGLE_SERIES: self._build_single_series,
        }
        self._setup_jinja2_environment()

    def _setup_jinja2_environment(self) -> None:
        """Setup Jinja2 template environment."""
        template_dir = Path(__file__).parent / "templates"
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(template_dir)),
            autoescape=jinja2.select_autoescape(["html", "xml"]),
            undefined=jinja2.StrictUndefined,
        )
        # Stable key order keeps output byte-identical across calls
        self.env.policies["json.dumps_kwargs"] = {"sort_keys": True, "separators": (",", ":")}

        def px(value: int) -> str:
            """Convert numeric value to CSS pixels."""
            return f"{value}px"

        self.env.filters["px"] = px

    def compile(
        self,
        data: Iterable[Union[DataPoint, Mapping[str, Any]]],
        config: Union[RenderConfig, Mapping[str, Any]],
    ) -> str:
        """
        Compile data points into a chart document.

        Args:
            data: Data points (or mappings shaped like them)
            config: Render configuration (or a mapping shaped like it)

        Returns:
            Self-contained HTML markup

        Raises:
            ConfigError: If the configuration cannot be compiled
        """
        config = self._coerce_config(config)
        payload = self.build_payload(data, config)

        try:
            template = self.env.get_template(TEMPLATE_NAME)
            html = template.render(
                title=config.title,
                width=config.width,
                height=config.height,
                container_id=payload["containerId"],
                script_urls=self.script_urls,
                payload=payload,
            )
        except jinja2.TemplateError as e:
            error_msg = f"Template rendering failed: {e}"
            self.logger.error("Chart compilation failed", error=error_msg)
            raise ConfigError(error_msg)

        self.logger.debug(
            "Chart markup compiled",
            series=len(payload["series"]),
            rows=len(payload["rows"]),
            html_length=len(html),
        )
        return html

    def build_payload(
        self,
        data: Iterable[Union[DataPoint, Mapping[str, Any]]],
        config: Union[RenderConfig, Mapping[str, Any]],
    ) -> Payload:
        """
        Build the structured payload consumed by the chart script.

        Raises:
            ConfigError: If the configuration is invalid for the data
        """
        config = self._coerce_config(config)
        points = sort_points(self._coerce_points(data))

        if not config.color_palette:
            raise ConfigError("color_palette must contain at least one color")

        builder = self._builders.get(config.template_kind)
        if builder is None:
            raise ConfigError(f"Unknown template kind: {config.template_kind!r}")

        timespec = timespec_for(points)
        payload = builder(points, config, timespec)
        payload.update(
            {
                "containerId": container_id_for(config.wait_selector),
                "dateFormat": INPUT_DATE_FORMATS[timespec],
                "title": config.title,
                "chartKind": config.chart_kind.value,
                "unit": config.unit or "",
                "valueAxisTitle": self._value_axis_title(config),
                "scrollbar": len(payload["rows"]) > SCROLLBAR_MIN_ROWS,
            }
        )
        return payload

    def _build_multi_series(
        self, points: List[DataPoint], config: RenderConfig, timespec: Optional[str]
    ) -> Payload:
        """Group points by series key and pivot them into one row per timestamp."""
        keyed = sum(1 for point in points if point.series_key)
        if keyed == 0:
            return self._build_single_series(points, config, timespec)
        if keyed != len(points):
            raise ConfigError("Data mixes points with and without a series key")

        palette = config.color_palette
        index_by_key: Dict[str, int] = {}
        for point in points:
            index_by_key.setdefault(point.series_key, len(index_by_key))  # type: ignore[arg-type]

        series = [
            {
                "key": key,
                "name": key,
                "field": f"s{index}",
                "color": palette[index % len(palette)],
            }
            for key, index in index_by_key.items()
        ]

        rows: Dict[str, Dict[str, Any]] = {}
        for point in points:
            stamp = format_timestamp(point, timespec)
            row = rows.setdefault(stamp, {"date": stamp})
            row[f"s{index_by_key[point.series_key]}"] = point.value  # type: ignore[index]

        return {"multiSeries": True, "series": series, "rows": list(rows.values())}

    def _build_single_series(
        self, points: List[DataPoint], config: RenderConfig, timespec: Optional[str]
    ) -> Payload:
        """Bind one series directly to the point values."""
        keys = {point.series_key for point in points if point.series_key}
        if len(keys) > 1:
            raise ConfigError(
                f"Single-series template received {len(keys)} distinct series keys"
            )

        series = [
            {
                "key": next(iter(keys)) if keys else None,
                "name": config.value_label or "Value",
                "field": "value",
                "color": config.color_palette[0],
            }
        ]
        rows = [
            {"date": format_timestamp(point, timespec), "value": point.value} for point in points
        ]
        return {"multiSeries": False, "series": series, "rows": rows}

    def _value_axis_title(self, config: RenderConfig) -> str:
        label = config.value_label or "Value"
        return f"{label} ({config.unit})" if config.unit else label

    def _coerce_config(self, config: Union[RenderConfig, Mapping[str, Any]]) -> RenderConfig:
        if isinstance(config, RenderConfig):
            return config
        try:
            return RenderConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigError(f"Invalid render config: {e}")

    def _coerce_points(
        self, data: Iterable[Union[DataPoint, Mapping[str, Any]]]
    ) -> Tuple[DataPoint, ...]:
        try:
            return tuple(
                point if isinstance(point, DataPoint) else DataPoint.model_validate(point)
                for point in data
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid data point: {e}")


def compile_chart(
    data: Iterable[Union[DataPoint, Mapping[str, Any]]],
    config: Union[RenderConfig, Mapping[str, Any]],
) -> str:
    """
    Compile data points into chart markup.

    Args:
        data: Data points
        config: Render configuration

    Returns:
        Self-contained HTML markup
    """
    return ChartTemplateCompiler().compile(data, config)
