"""
KPI Datasets
============

Turn KPI rows from the data-access layer (one row per date, operator and
measurement set) into chart data points and ready-made render requests.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional
import math
import numbers

from pydantic import ValidationError

from chart_render.config.logging import get_logger
from chart_render.core.rendering.template_compiler import sort_points
from chart_render.models.schemas import (
    ChartKind,
    DataPoint,
    DataRenderRequest,
    RenderConfig,
    TemplateKind,
)

logger = get_logger(__name__)

KPI_CHART_DEFAULTS: Dict[str, Any] = {
    "chart_kind": ChartKind.LINE,
    "template_kind": TemplateKind.MULTI_SERIES,
    "width": 1200,
    "height": 700,
}


def _as_float(value: Any) -> Optional[float]:
    """Finite float for numeric cells (including Decimal), otherwise None."""
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, Decimal)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def transform_kpi_rows(
    rows: Iterable[Mapping[str, Any]],
    field: str,
    date_field: str = "dateid",
    series_field: str = "operator",
) -> List[DataPoint]:
    """
    Extract one KPI column as data points.

    Rows whose value is missing, non-numeric or NaN are skipped. The result
    is sorted by date, then series key.
    """
    points: List[DataPoint] = []
    skipped = 0
    for row in rows:
        value = _as_float(row.get(field))
        if value is None:
            skipped += 1
            continue
        try:
            points.append(
                DataPoint(
                    timestamp=row[date_field],
                    series_key=row.get(series_field) or None,
                    value=value,
                )
            )
        except (KeyError, ValidationError) as e:
            logger.warning("Skipping malformed KPI row", field=field, error=str(e))
            skipped += 1

    if skipped:
        logger.debug("KPI rows skipped", field=field, skipped=skipped, kept=len(points))
    return sort_points(points)


def series_keys(data: Iterable[DataPoint]) -> List[str]:
    """Distinct series keys present in the data, sorted."""
    return sorted({point.series_key for point in data if point.series_key})


def kpi_chart_request(
    rows: Iterable[Mapping[str, Any]],
    field: str,
    **overrides: Any,
) -> DataRenderRequest:
    """
    Build a multi-series chart request for one KPI column.

    Keyword overrides are applied on top of the KPI defaults and may use any
    RenderConfig field name.
    """
    config: Dict[str, Any] = {
        "title": f"{field} - Last 30 Days",
        "value_label": field,
        **KPI_CHART_DEFAULTS,
    }
    config.update(overrides)
    return DataRenderRequest(
        data=tuple(transform_kpi_rows(rows, field)),
        config=RenderConfig(**config),
    )


def latency_chart_request(rows: Iterable[Mapping[str, Any]]) -> DataRenderRequest:
    """Chart request for network latency in milliseconds."""
    return kpi_chart_request(
        rows,
        "latency",
        title="Network Latency - Last 30 Days",
        value_label="Latency",
        unit="ms",
    )
