"""
Pydantic Models and Schemas
===========================

Data models for chart data points, render configuration, render requests
exchanged with the worker process, and render results.
All models are immutable once constructed.
"""

from typing import Annotated, Optional, Tuple, Union, Literal, Mapping, Any
from datetime import date, datetime, time, timezone
from enum import Enum

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from chart_render.core.rendering.errors import (
    ChartRenderError,
    ConfigError,
    FailureKind,
    error_for,
)


DEFAULT_COLOR_PALETTE: Tuple[str, ...] = (
    "#FF6B6B",
    "#4ECDC4",
    "#45B7D1",
    "#96CEB4",
    "#FFEAA7",
    "#DDA0DD",
    "#98D8C8",
    "#F7DC6F",
    "#BB8FCE",
    "#85C1E9",
)

DEFAULT_WAIT_SELECTOR = "#chartdiv"


# Enums
class ChartKind(str, Enum):
    """Visual series type."""
    LINE = "line"
    COLUMN = "column"
    AREA = "area"


class TemplateKind(str, Enum):
    """Chart document template."""
    MULTI_SERIES = "multi_series"
    SINGLE_SERIES = "single_series"

    @classmethod
    def _missing_(cls, value: object) -> Optional["TemplateKind"]:
        if not isinstance(value, str):
            return None
        name = value.lower().replace("-", "_")
        for member in cls:
            if member.value == name:
                return member
        # Template names used by the chat bot
        legacy = {"kpi": cls.MULTI_SERIES, "simple": cls.SINGLE_SERIES}
        return legacy.get(name)


# Chart data
class DataPoint(BaseModel):
    """One time-series sample. Timestamps are naive, aware ones are converted to UTC."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., validation_alias=AliasChoices("timestamp", "date", "dateid"))
    series_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("series_key", "seriesKey", "operator")
    )
    value: float = Field(..., allow_inf_nan=False)

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Any:
        """Accept dates, datetimes and ISO strings with or without a time part."""
        if isinstance(v, str):
            try:
                v = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
            except ValueError:
                return v
        if isinstance(v, datetime):
            if v.tzinfo is not None:
                v = v.astimezone(timezone.utc).replace(tzinfo=None)
            return v
        if isinstance(v, date):
            return datetime.combine(v, time())
        return v

    @property
    def has_time(self) -> bool:
        return self.timestamp.time() != time()


class RenderConfig(BaseModel):
    """Chart appearance and capture configuration."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    width: int = Field(default=1000, gt=0, description="Container width in pixels")
    height: int = Field(default=600, gt=0, description="Container height in pixels")
    title: str = Field(default="KPI Chart")
    chart_kind: ChartKind = Field(
        default=ChartKind.LINE,
        validation_alias=AliasChoices("chart_kind", "chartKind", "chartType"),
    )
    template_kind: TemplateKind = Field(
        default=TemplateKind.MULTI_SERIES,
        validation_alias=AliasChoices("template_kind", "templateKind", "template"),
    )
    unit: Optional[str] = None
    value_label: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("value_label", "valueLabel", "kpiName")
    )
    color_palette: Tuple[str, ...] = Field(
        default=DEFAULT_COLOR_PALETTE,
        validation_alias=AliasChoices("color_palette", "colorPalette", "colors"),
    )
    wait_selector: str = Field(
        default=DEFAULT_WAIT_SELECTOR,
        min_length=1,
        validation_alias=AliasChoices("wait_selector", "waitSelector", "waitForSelector"),
    )
    settle_wait_ms: int = Field(
        default=3000,
        ge=0,
        validation_alias=AliasChoices("settle_wait_ms", "settleWaitMillis", "waitTime"),
    )

    @field_validator("template_kind", mode="before")
    @classmethod
    def accept_legacy_template(cls, v: Any) -> Any:
        """Map the chat bot's template names onto template kinds."""
        if isinstance(v, str):
            try:
                return TemplateKind(v)
            except ValueError:
                return v
        return v


class SurfaceOptions(BaseModel):
    """Resolved rendering surface parameters used by the worker."""
    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    wait_selector: str
    settle_wait_ms: int
    readiness_timeout_ms: int
    optimize_png: bool = False


# Render requests
class BaseRenderRequest(BaseModel):
    """Fields common to both request modes."""
    model_config = ConfigDict(frozen=True)

    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    deadline_ms: Optional[int] = Field(default=None, gt=0)
    wait_selector: Optional[str] = Field(default=None, min_length=1)
    settle_wait_ms: Optional[int] = Field(default=None, ge=0)
    readiness_timeout_ms: Optional[int] = Field(default=None, gt=0)
    optimize_png: bool = False

    def _defaults(self, settings: Any) -> Tuple[int, int, str, int]:
        return (
            settings.default_width,
            settings.default_height,
            DEFAULT_WAIT_SELECTOR,
            settings.settle_wait_ms,
        )

    def surface_options(self, settings: Any) -> SurfaceOptions:
        """
        Resolve surface parameters: request overrides first, then mode
        defaults, then settings.

        Raises:
            ConfigError: If the resolved size exceeds the configured maximum
        """
        width, height, wait_selector, settle_wait_ms = self._defaults(settings)
        options = SurfaceOptions(
            width=self.width or width,
            height=self.height or height,
            wait_selector=self.wait_selector or wait_selector,
            settle_wait_ms=settle_wait_ms if self.settle_wait_ms is None else self.settle_wait_ms,
            readiness_timeout_ms=self.readiness_timeout_ms or settings.readiness_timeout_ms,
            optimize_png=self.optimize_png,
        )
        if options.width > settings.max_width or options.height > settings.max_height:
            raise ConfigError(
                f"Render size {options.width}x{options.height} exceeds maximum "
                f"{settings.max_width}x{settings.max_height}"
            )
        return options

    def with_surface(self, options: SurfaceOptions) -> "BaseRenderRequest":
        """Copy of the request with every surface parameter filled in."""
        return self.model_copy(
            update={
                "width": options.width,
                "height": options.height,
                "wait_selector": options.wait_selector,
                "settle_wait_ms": options.settle_wait_ms,
                "readiness_timeout_ms": options.readiness_timeout_ms,
            }
        )


class DataRenderRequest(BaseRenderRequest):
    """Mode A: chart compiled from data points inside the worker."""
    mode: Literal["data"] = "data"
    data: Tuple[DataPoint, ...] = ()
    config: RenderConfig = Field(default_factory=RenderConfig)
    script_urls: Optional[Tuple[str, ...]] = Field(
        default=None, description="Chart library scripts; the worker's settings apply when unset"
    )

    def _defaults(self, settings: Any) -> Tuple[int, int, str, int]:
        return (
            self.config.width,
            self.config.height,
            self.config.wait_selector,
            self.config.settle_wait_ms,
        )


class MarkupRenderRequest(BaseRenderRequest):
    """Mode B: caller-supplied markup rendered verbatim."""
    mode: Literal["markup"] = "markup"
    markup: str = Field(..., min_length=1)


RenderRequest = Annotated[
    Union[DataRenderRequest, MarkupRenderRequest], Field(discriminator="mode")
]

_request_adapter: TypeAdapter = TypeAdapter(RenderRequest)


def parse_render_request(
    payload: Union[str, bytes, Mapping[str, Any], BaseRenderRequest],
) -> Union[DataRenderRequest, MarkupRenderRequest]:
    """
    Validate a render request from JSON text, bytes, or a mapping.

    Raises:
        pydantic.ValidationError: If the payload is not a valid request
    """
    if isinstance(payload, (DataRenderRequest, MarkupRenderRequest)):
        return payload
    if isinstance(payload, (str, bytes)):
        return _request_adapter.validate_json(payload)
    return _request_adapter.validate_python(payload)


# Render results
_USER_MESSAGES = {
    FailureKind.TIMEOUT: "Sorry, generating the chart took too long. Please try again later.",
    FailureKind.CONFIG: "Sorry, the chart could not be generated from this configuration.",
}


class RenderFailure(BaseModel):
    """Typed render failure with diagnostic text."""
    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    diagnostic: str = ""
    ignorable: bool = False

    @property
    def user_message(self) -> str:
        """Short apologetic message suitable for end users."""
        return _USER_MESSAGES.get(
            self.kind, "Sorry, there was an error generating your chart."
        )

    def to_error(self) -> ChartRenderError:
        """Exception instance equivalent to this failure."""
        return error_for(self.kind, self.diagnostic, ignorable=self.ignorable)


class RenderResult(BaseModel):
    """Outcome of a render call: image bytes or a failure."""
    model_config = ConfigDict(frozen=True)

    image: Optional[bytes] = None
    failure: Optional[RenderFailure] = None

    @model_validator(mode="after")
    def check_exclusive(self) -> "RenderResult":
        """Exactly one of image and failure must be set."""
        if (self.image is None) == (self.failure is None):
            raise ValueError("RenderResult requires exactly one of image or failure")
        return self

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, image: bytes) -> "RenderResult":
        return cls(image=image)

    @classmethod
    def from_error(cls, error: ChartRenderError) -> "RenderResult":
        return cls(
            failure=RenderFailure(
                kind=error.kind, diagnostic=error.message, ignorable=error.ignorable
            )
        )

    def unwrap(self) -> bytes:
        """
        Return the image bytes.

        Raises:
            ChartRenderError: The typed error matching the failure kind
        """
        if self.failure is not None:
            raise self.failure.to_error()
        assert self.image is not None
        return self.image
