"""
Chart Render
============

Render time-series data (or raw markup) to PNG inside an isolated,
short-lived worker process.

Modules:
- config: Settings and structured logging
- models: Pydantic request/result schemas
- core.rendering: Template compiler, render worker and process manager
- core.datasets: Shaping of KPI rows into chart requests
"""

from chart_render.core.rendering.errors import (
    ChartRenderError,
    ConfigError,
    FailureKind,
    InputError,
    RenderError,
    RenderTimeoutError,
    SpawnError,
    WorkerError,
)
from chart_render.core.rendering.process_manager import ProcessManager, render, render_sync
from chart_render.core.rendering.template_compiler import compile_chart
from chart_render.models.schemas import (
    ChartKind,
    DataPoint,
    DataRenderRequest,
    MarkupRenderRequest,
    RenderConfig,
    RenderFailure,
    RenderResult,
    TemplateKind,
)

__all__ = [
    "ChartRenderError",
    "ConfigError",
    "FailureKind",
    "InputError",
    "RenderError",
    "RenderTimeoutError",
    "SpawnError",
    "WorkerError",
    "ProcessManager",
    "render",
    "render_sync",
    "compile_chart",
    "ChartKind",
    "DataPoint",
    "DataRenderRequest",
    "MarkupRenderRequest",
    "RenderConfig",
    "RenderFailure",
    "RenderResult",
    "TemplateKind",
]
