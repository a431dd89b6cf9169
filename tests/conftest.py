"""
Test Configuration
==================

Pytest configuration with fixtures for all test types.
Provides test settings, fake worker commands and sample chart data.
"""

import sys
from pathlib import Path
from typing import Generator, List

import pytest
from pydantic_settings import SettingsConfigDict

from chart_render.config import settings as settings_module
from chart_render.config.settings import Settings
from chart_render.models.schemas import (
    ChartKind,
    DataPoint,
    MarkupRenderRequest,
    RenderConfig,
    TemplateKind,
)

from tests.utils.data_generators import ChartDataGenerator

FAKE_WORKER = Path(__file__).parent / "fixtures" / "fake_worker.py"


# Test settings override
class TestSettings(Settings):
    """Test-specific settings."""

    __test__ = False

    environment: str = "testing"
    log_level: str = "DEBUG"
    render_timeout: float = 10.0
    termination_grace_seconds: float = 0.5
    readiness_timeout_ms: int = 2000
    settle_wait_ms: int = 0
    chart_script_urls: List[str] = []

    model_config = SettingsConfigDict(env_file=".env.test")


@pytest.fixture(scope="session")
def test_settings() -> TestSettings:
    """Test settings fixture."""
    return TestSettings()


@pytest.fixture(scope="session", autouse=True)
def override_settings(test_settings: TestSettings) -> Generator[TestSettings, None, None]:
    """Install test settings as the global settings instance."""
    previous = settings_module.settings
    settings_module.settings = test_settings
    yield test_settings
    settings_module.settings = previous


@pytest.fixture
def fake_worker_command():
    """Build a worker command running the fake worker with a behaviour."""

    def _command(*args: str) -> List[str]:
        return [sys.executable, str(FAKE_WORKER), *args]

    return _command


@pytest.fixture
def sample_config() -> RenderConfig:
    """Multi-series line chart configuration."""
    return RenderConfig(
        width=800,
        height=500,
        title="Network Latency - Last 30 Days",
        chart_kind=ChartKind.LINE,
        template_kind=TemplateKind.MULTI_SERIES,
        unit="ms",
        value_label="Latency",
        color_palette=("#FF6B6B", "#4ECDC4", "#45B7D1"),
        settle_wait_ms=0,
    )


@pytest.fixture
def multi_series_points() -> List[DataPoint]:
    """Three operators over five days, shuffled."""
    return ChartDataGenerator.multi_series(["Vodafone", "Orange", "Telekom"], days=5)


@pytest.fixture
def single_series_points() -> List[DataPoint]:
    """One unkeyed series over seven days."""
    return ChartDataGenerator.single_series(days=7)


@pytest.fixture
def sample_markup_request() -> MarkupRenderRequest:
    """Markup request whose container is already populated."""
    return MarkupRenderRequest(
        markup='<html><body><div id="chartdiv"><span>ready</span></div></body></html>',
        width=320,
        height=200,
        settle_wait_ms=0,
    )
