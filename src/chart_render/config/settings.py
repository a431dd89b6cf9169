"""
Application Settings
===================

Rendering and worker settings using Pydantic Settings.
Supports development, testing, and production environments.
"""

from typing import Optional, List, Union
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
from pathlib import Path


DEFAULT_CHART_SCRIPT_URLS = [
    "https://cdn.amcharts.com/lib/4/core.js",
    "https://cdn.amcharts.com/lib/4/charts.js",
    "https://cdn.amcharts.com/lib/4/themes/animated.js",
]


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    # Application Configuration
    app_name: str = Field(default="Chart Render", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(
        default="development", description="Environment: development, testing, production"
    )
    debug: bool = Field(default=False, description="Debug mode")

    # Rendering Configuration
    default_width: int = Field(default=1000, gt=0, description="Default render width")
    default_height: int = Field(default=600, gt=0, description="Default render height")
    max_width: int = Field(default=4000, gt=0, description="Maximum render width")
    max_height: int = Field(default=4000, gt=0, description="Maximum render height")
    render_timeout: float = Field(default=30.0, gt=0, description="Render deadline in seconds")
    readiness_timeout_ms: int = Field(
        default=15000, gt=0, description="Cap on waiting for the chart container to populate"
    )
    settle_wait_ms: int = Field(
        default=3000, ge=0, description="Pause after readiness before capture"
    )
    chart_script_urls: List[str] = Field(
        default_factory=lambda: list(DEFAULT_CHART_SCRIPT_URLS),
        description="Charting library scripts loaded by compiled chart documents",
    )

    # Worker Process Configuration
    worker_python: Optional[str] = Field(
        default=None, description="Interpreter used to launch render workers"
    )
    termination_grace_seconds: float = Field(
        default=2.0, gt=0, description="Grace period between terminate and kill"
    )
    max_concurrent_workers: Optional[int] = Field(
        default=None, gt=0, description="Optional cap on simultaneously running workers"
    )

    # Browser Configuration
    playwright_headless: bool = Field(default=True, description="Run browser in headless mode")
    browser_args: List[str] = Field(
        default=[
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
        ],
        description="Chromium launch arguments",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_dir: Optional[Path] = Field(default=None, description="Directory for rotating log files")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "testing", "production"}
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("browser_args", "chart_script_urls", mode="before")
    @classmethod
    def parse_string_list(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse a list from a JSON array string or a comma-separated string."""
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("[") and v.endswith("]"):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("log_dir")
    @classmethod
    def create_log_dir(cls, v: Optional[Path]) -> Optional[Path]:
        """Ensure the log directory exists."""
        if v is not None:
            v.mkdir(parents=True, exist_ok=True)
        return v

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, env_prefix="CHART_RENDER_"
    )


# Global settings instance - will be initialized when needed
settings = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
