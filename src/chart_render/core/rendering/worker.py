"""
Render Worker
=============

Playwright-based render worker executed as an isolated child process:

    python -m chart_render.core.rendering.worker

The worker reads one JSON render request from stdin, compiles chart markup
when given data, loads the markup into a headless Chromium page, waits for the
chart container to populate, settles, captures a PNG and writes the raw bytes
to stdout. On failure it writes ``"<kind>: <message>"`` to stderr and exits
with the status matching the failure kind. Stdout carries image bytes and
nothing else.
"""

from typing import Any, BinaryIO, Optional, Tuple, Union
import asyncio
import io
import os
import signal
import sys

from playwright.async_api import async_playwright, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from PIL import Image  # type: ignore
from pydantic import ValidationError

from chart_render.config.logging import get_logger, setup_logging
from chart_render.config.settings import Settings, get_settings
from chart_render.core.rendering.errors import (
    ChartRenderError,
    InputError,
    RenderError,
    WorkerError,
    WorkerExitCode,
    exit_code_for,
)
from chart_render.core.rendering.template_compiler import ChartTemplateCompiler
from chart_render.models.schemas import (
    DataRenderRequest,
    MarkupRenderRequest,
    SurfaceOptions,
    parse_render_request,
)

logger = get_logger(__name__)

# Ready once the target container has at least one child element
READINESS_CHECK = """(selector) => {
    const element = document.querySelector(selector);
    return !!element && element.children.length > 0;
}"""


def optimize_png(png_bytes: bytes) -> bytes:
    """
    Recompress PNG bytes with Pillow.

    Returns the original bytes if recompression fails or does not help.
    """
    try:
        image = Image.open(io.BytesIO(png_bytes))
        output = io.BytesIO()
        image.save(output, format="PNG", optimize=True, compress_level=9)
        optimized_bytes = output.getvalue()
    except (OSError, ValueError) as e:
        logger.warning("PNG optimization failed, using original", error=str(e))
        return png_bytes

    logger.debug(
        "PNG optimization completed",
        original_size=len(png_bytes),
        optimized_size=len(optimized_bytes),
    )
    return optimized_bytes if len(optimized_bytes) < len(png_bytes) else png_bytes


class PlaywrightSurface:
    """Headless Chromium rendering surface, created and torn down per capture."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.logger: Any = logger.bind(component="surface")  # structlog.BoundLoggerBase

    async def capture(self, markup: str, options: SurfaceOptions) -> bytes:
        """
        Load markup, wait for readiness, settle and capture a PNG.

        Raises:
            RenderError: If the target container never populates
            WorkerError: If the browser fails to start or render
        """
        try:
            async with async_playwright() as playwright:
                browser = await playwright.chromium.launch(
                    headless=self.settings.playwright_headless,
                    args=self.settings.browser_args,
                )
                try:
                    context = await browser.new_context(
                        viewport={"width": options.width, "height": options.height},
                    )
                    page = await context.new_page()
                    await page.set_content(markup, wait_until="domcontentloaded")
                    await self._await_readiness(page, options)
                    await page.wait_for_timeout(options.settle_wait_ms)
                    png_bytes = await page.screenshot(
                        type="png",
                        full_page=False,
                        clip={"x": 0, "y": 0, "width": options.width, "height": options.height},
                    )
                finally:
                    await browser.close()
        except PlaywrightError as e:
            raise WorkerError(f"Browser rendering failed: {e}")

        self.logger.info("Surface captured", file_size=len(png_bytes))

        if options.optimize_png:
            png_bytes = optimize_png(png_bytes)
        return png_bytes

    async def _await_readiness(self, page: Page, options: SurfaceOptions) -> None:
        try:
            await page.wait_for_function(
                READINESS_CHECK,
                arg=options.wait_selector,
                timeout=options.readiness_timeout_ms,
            )
        except PlaywrightTimeoutError:
            raise RenderError(
                f"Target container {options.wait_selector!r} never populated "
                f"within {options.readiness_timeout_ms}ms"
            )


class RenderWorker:
    """One render request, read once from the input channel and answered once."""

    def __init__(
        self,
        stdin: BinaryIO,
        stdout: BinaryIO,
        stderr: BinaryIO,
        settings: Optional[Settings] = None,
        surface: Optional[PlaywrightSurface] = None,
    ):
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self.settings = settings or get_settings()
        self.surface = surface or PlaywrightSurface(self.settings)
        self.logger: Any = logger.bind(component="render_worker", pid=os.getpid())

    async def run(self) -> int:
        """Process the request and return the exit status."""
        try:
            request = self.read_request()
            options = request.surface_options(self.settings)
            markup = self.obtain_markup(request)
            image = await self.surface.capture(markup, options)
            if not image:
                raise WorkerError("Rendering produced no image bytes")
        except ChartRenderError as e:
            return self.emit_failure(e)
        except asyncio.CancelledError:
            self.emit_failure(WorkerError("Render worker terminated"))
            return int(WorkerExitCode.TERMINATED)
        except Exception as e:
            self.logger.exception("Unexpected render worker error")
            return self.emit_failure(WorkerError(f"Unexpected worker error: {e}"))

        self.emit_result(image)
        return int(WorkerExitCode.OK)

    def read_request(self) -> Union[DataRenderRequest, MarkupRenderRequest]:
        """
        Read and validate the whole request from the input channel.

        Raises:
            InputError: If the input is empty or malformed
        """
        raw = self.stdin.read()
        if not raw or not raw.strip():
            raise InputError("No render request received on stdin")
        try:
            request = parse_render_request(raw)
        except ValidationError as e:
            raise InputError(f"Malformed render request: {e}")

        self.logger.info("Render request received", mode=request.mode, request_size=len(raw))
        return request

    def obtain_markup(self, request: Union[DataRenderRequest, MarkupRenderRequest]) -> str:
        """Compile chart markup for data requests, pass markup requests through."""
        if isinstance(request, DataRenderRequest):
            script_urls = request.script_urls
            if script_urls is None:
                script_urls = tuple(self.settings.chart_script_urls)
            compiler = ChartTemplateCompiler(script_urls)
            return compiler.compile(request.data, request.config)
        return request.markup

    def emit_result(self, image: bytes) -> None:
        self.stdout.write(image)
        self.stdout.flush()
        self.logger.info("Render result written", file_size=len(image))

    def emit_failure(self, error: ChartRenderError) -> int:
        self.logger.error("Render worker failed", kind=error.kind.value, error=error.message)
        self.stderr.write(f"{error.kind.value}: {error.message}".encode("utf-8", "replace"))
        self.stderr.flush()
        return exit_code_for(error)


def claim_channels() -> Tuple[BinaryIO, BinaryIO, BinaryIO]:
    """
    Take private handles on the process pipes.

    File descriptors 1 and 2 are pointed at the null device afterwards so
    the browser, its driver and library code cannot write into the channels.
    """
    sys.stdout.flush()
    sys.stderr.flush()
    stdout = os.fdopen(os.dup(1), "wb")
    stderr = os.fdopen(os.dup(2), "wb")
    devnull = os.open(os.devnull, os.O_WRONLY)
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
    finally:
        os.close(devnull)
    return sys.stdin.buffer, stdout, stderr


async def serve(worker: RenderWorker) -> int:
    """Run the worker with SIGTERM/SIGINT cancelling it, so cleanup still runs."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    assert task is not None
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform
    return await worker.run()


def main() -> None:
    stdin, stdout, stderr = claim_channels()
    setup_logging(worker=True)
    worker = RenderWorker(stdin, stdout, stderr)
    exit_code = asyncio.run(serve(worker))
    stdout.close()
    stderr.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
