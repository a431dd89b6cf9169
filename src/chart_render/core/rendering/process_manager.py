"""
Worker Process Manager
======================

Spawn one render worker process per request, ship the serialized request over
its stdin, collect the PNG bytes from stdout and the diagnostic text from
stderr, and enforce a wall-clock deadline. On timeout the worker and every
process it started (browser, driver) are terminated.
"""

from typing import Any, List, Mapping, Optional, Sequence, Union
from datetime import timedelta
import asyncio
import os
import signal
import sys
import weakref

import psutil  # type: ignore
from pydantic import ValidationError

from chart_render.config.logging import ensure_logging, get_logger
from chart_render.config.settings import Settings, get_settings
from chart_render.core.rendering.errors import (
    ChartRenderError,
    ConfigError,
    FailureKind,
    RenderTimeoutError,
    SpawnError,
    WorkerError,
    error_for,
    kind_for_exit_code,
)
from chart_render.core.rendering.template_compiler import ChartTemplateCompiler
from chart_render.models.schemas import (
    BaseRenderRequest,
    DataRenderRequest,
    MarkupRenderRequest,
    RenderResult,
    parse_render_request,
)

logger = get_logger(__name__)

WORKER_MODULE = "chart_render.core.rendering.worker"

Deadline = Union[float, int, timedelta]
RequestLike = Union[DataRenderRequest, MarkupRenderRequest, Mapping[str, Any], str, bytes]


def list_descendants(pid: int) -> List[psutil.Process]:
    """Snapshot every process started, directly or not, by ``pid``."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []


def terminate_processes(descendants: List[psutil.Process], grace: float) -> List[psutil.Process]:
    """
    Send SIGTERM to the given processes, wait up to ``grace`` seconds, then
    SIGKILL the survivors.

    The worker itself is never passed here: its parent signals and reaps it.

    Returns:
        Processes that were still alive after the kill
    """
    for proc in descendants:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(descendants, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    _, still_alive = psutil.wait_procs(alive, timeout=grace)
    return still_alive


def kill_process_group(pgid: int) -> None:
    """SIGKILL a whole process group, ignoring groups that are already gone."""
    if not hasattr(os, "killpg"):
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class ProcessManager:
    """Run render requests in isolated, short-lived worker processes."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        worker_command: Optional[Sequence[str]] = None,
    ):
        ensure_logging()
        self.settings = settings or get_settings()
        self.worker_command = list(worker_command) if worker_command else [
            self.settings.worker_python or sys.executable,
            "-m",
            WORKER_MODULE,
        ]
        self.compiler = ChartTemplateCompiler(self.settings.chart_script_urls)
        self.logger: Any = logger.bind(component="process_manager")  # structlog.BoundLoggerBase

        # Worker slots, one semaphore per event loop
        self._semaphores: Any = weakref.WeakKeyDictionary()

    async def render(self, request: RequestLike, deadline: Optional[Deadline] = None) -> RenderResult:
        """
        Render a request in a fresh worker process.

        Args:
            request: Data or markup render request (model, mapping or JSON)
            deadline: Wall-clock limit in seconds or as a timedelta; defaults
                to the request's ``deadline_ms``, then the configured timeout

        Returns:
            RenderResult holding PNG bytes or a typed failure
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            request = self.prepare(request)
            timeout = self.resolve_deadline(request, deadline)

            slots = self._slots(loop)
            if slots is None:
                image = await self._run_worker(request, timeout)
            else:
                try:
                    await asyncio.wait_for(slots.acquire(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise RenderTimeoutError(
                        f"Deadline of {timeout:.1f}s elapsed while waiting for a worker slot"
                    )
                try:
                    remaining = timeout - (loop.time() - started)
                    if remaining <= 0:
                        raise RenderTimeoutError(
                            f"Deadline of {timeout:.1f}s elapsed while waiting for a worker slot"
                        )
                    image = await self._run_worker(request, remaining)
                finally:
                    slots.release()

        except ChartRenderError as e:
            self.logger.warning(
                "Render failed",
                kind=e.kind.value,
                diagnostic=e.message,
                elapsed=round(loop.time() - started, 3),
            )
            return RenderResult.from_error(e)

        self.logger.info(
            "Render completed",
            file_size=len(image),
            elapsed=round(loop.time() - started, 3),
        )
        return RenderResult.success(image)

    def prepare(self, request: RequestLike) -> Union[DataRenderRequest, MarkupRenderRequest]:
        """
        Validate a request before any process is spawned.

        Data requests are compiled once here so configuration errors surface
        without paying for a worker. The returned request carries the resolved
        surface parameters and chart scripts, so the worker renders with this
        manager's settings rather than its own environment.

        Raises:
            ConfigError: If the request or its chart configuration is invalid
        """
        try:
            parsed = parse_render_request(request)  # type: ignore[arg-type]
        except ValidationError as e:
            raise ConfigError(f"Invalid render request: {e}")

        options = parsed.surface_options(self.settings)
        if isinstance(parsed, DataRenderRequest):
            self.compiler.build_payload(parsed.data, parsed.config)
            if parsed.script_urls is None:
                parsed = parsed.model_copy(
                    update={"script_urls": tuple(self.settings.chart_script_urls)}
                )
        return parsed.with_surface(options)  # type: ignore[return-value]

    def _slots(self, loop: asyncio.AbstractEventLoop) -> Optional[asyncio.Semaphore]:
        limit = self.settings.max_concurrent_workers
        if not limit:
            return None
        semaphore = self._semaphores.get(loop)
        if semaphore is None:
            semaphore = self._semaphores[loop] = asyncio.Semaphore(limit)
        return semaphore

    def resolve_deadline(self, request: BaseRenderRequest, deadline: Optional[Deadline]) -> float:
        """Deadline in seconds: explicit argument, then request, then settings."""
        if isinstance(deadline, timedelta):
            seconds = deadline.total_seconds()
        elif deadline is not None:
            seconds = float(deadline)
        elif request.deadline_ms is not None:
            seconds = request.deadline_ms / 1000.0
        else:
            seconds = float(self.settings.render_timeout)

        if seconds <= 0:
            raise ConfigError(f"Deadline must be positive, got {seconds}s")
        return seconds

    async def _run_worker(
        self, request: Union[DataRenderRequest, MarkupRenderRequest], timeout: float
    ) -> bytes:
        payload = request.model_dump_json().encode("utf-8")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.worker_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn render worker: {e}")

        self.logger.info(
            "Render worker spawned",
            pid=process.pid,
            mode=request.mode,
            deadline=round(timeout, 3),
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            raise RenderTimeoutError(f"Render worker exceeded deadline of {timeout:.1f}s")
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        return self._collect(process.returncode, stdout, stderr)

    def _collect(self, returncode: Optional[int], stdout: bytes, stderr: bytes) -> bytes:
        diagnostic = stderr.decode("utf-8", "replace").strip()

        if returncode == 0:
            if not stdout:
                raise WorkerError("Render worker exited successfully without producing an image")
            if diagnostic:
                self.logger.warning(
                    "Render worker wrote to its error channel on success", diagnostic=diagnostic
                )
            return stdout

        if returncode is None or returncode < 0:
            signum = "unknown" if returncode is None else -returncode
            raise WorkerError(f"Render worker terminated by signal {signum}. {diagnostic}".strip())

        kind = kind_for_exit_code(returncode)
        prefix = f"{kind.value}: "
        message = diagnostic[len(prefix):] if diagnostic.startswith(prefix) else diagnostic
        if kind is FailureKind.WORKER:
            message = f"Render worker failed with code {returncode}. {message}".strip()
        raise error_for(kind, message or f"Render worker exited with code {returncode}")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the worker and its descendants within a bounded grace period."""
        grace = self.settings.termination_grace_seconds
        pid = process.pid

        # Snapshot before the worker dies, orphans are reparented and lost otherwise
        tree = list_descendants(pid)
        descendants = asyncio.create_task(asyncio.to_thread(terminate_processes, tree, grace))
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            self.logger.warning("Render worker ignored SIGTERM, killing", pid=pid)

        kill_process_group(pid)
        survivors = await descendants
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                self.logger.error("Render worker could not be reaped", pid=pid)

        self.logger.info(
            "Render worker terminated",
            pid=pid,
            returncode=process.returncode,
            survivors=len(survivors),
        )


# Lazily created default manager
_default_manager: Optional[ProcessManager] = None


def get_process_manager() -> ProcessManager:
    """Get the default process manager instance."""
    global _default_manager
    if _default_manager is None:
        _default_manager = ProcessManager()
    return _default_manager


async def render(request: RequestLike, deadline: Optional[Deadline] = None) -> RenderResult:
    """
    Render a request to PNG in an isolated worker process.

    Args:
        request: Data or markup render request
        deadline: Wall-clock limit in seconds or as a timedelta

    Returns:
        RenderResult holding PNG bytes or a typed failure
    """
    return await get_process_manager().render(request, deadline)


def render_sync(request: RequestLike, deadline: Optional[Deadline] = None) -> RenderResult:
    """Blocking variant of :func:`render` for synchronous callers."""
    return asyncio.run(ProcessManager().render(request, deadline))
