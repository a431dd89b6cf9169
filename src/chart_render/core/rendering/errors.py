"""
Render Errors
=============

Failure taxonomy shared by the host-side process manager and the render worker.

Each failure kind has its own exception class and a process exit code so the
worker can report the kind across the process boundary without the host
having to inspect diagnostic text.
"""

from enum import Enum, IntEnum
from typing import Dict, Type


class FailureKind(str, Enum):
    """Kinds of render pipeline failures."""

    CONFIG = "config_error"
    INPUT = "input_error"
    SPAWN = "spawn_error"
    TIMEOUT = "timeout_error"
    RENDER = "render_error"
    WORKER = "worker_error"


class WorkerExitCode(IntEnum):
    """Exit statuses used by the render worker."""

    OK = 0
    WORKER_FAILURE = 1
    INPUT_ERROR = 2
    CONFIG_ERROR = 3
    RENDER_ERROR = 4
    TERMINATED = 143


class ChartRenderError(Exception):
    """Base exception for render pipeline failures."""

    kind: FailureKind = FailureKind.WORKER

    def __init__(self, message: str, ignorable: bool = False):
        super().__init__(message)
        self.message = message
        self.ignorable = ignorable


class ConfigError(ChartRenderError):
    """Invalid template or chart configuration, detected before spawning."""

    kind = FailureKind.CONFIG


class InputError(ChartRenderError):
    """Malformed request received by the worker."""

    kind = FailureKind.INPUT


class SpawnError(ChartRenderError):
    """The worker process could not be created."""

    kind = FailureKind.SPAWN


class RenderTimeoutError(ChartRenderError):
    """The render deadline elapsed before the worker exited."""

    kind = FailureKind.TIMEOUT


class RenderError(ChartRenderError):
    """The rendering surface never became ready for capture."""

    kind = FailureKind.RENDER


class WorkerError(ChartRenderError):
    """The worker exited nonzero or broke the output contract."""

    kind = FailureKind.WORKER


ERROR_CLASSES: Dict[FailureKind, Type[ChartRenderError]] = {
    FailureKind.CONFIG: ConfigError,
    FailureKind.INPUT: InputError,
    FailureKind.SPAWN: SpawnError,
    FailureKind.TIMEOUT: RenderTimeoutError,
    FailureKind.RENDER: RenderError,
    FailureKind.WORKER: WorkerError,
}

EXIT_CODES: Dict[FailureKind, WorkerExitCode] = {
    FailureKind.INPUT: WorkerExitCode.INPUT_ERROR,
    FailureKind.CONFIG: WorkerExitCode.CONFIG_ERROR,
    FailureKind.RENDER: WorkerExitCode.RENDER_ERROR,
}


def error_for(kind: FailureKind, message: str, ignorable: bool = False) -> ChartRenderError:
    """Build the exception instance matching a failure kind."""
    return ERROR_CLASSES[kind](message, ignorable=ignorable)


def exit_code_for(error: ChartRenderError) -> int:
    """Exit status the worker uses to report an error."""
    return int(EXIT_CODES.get(error.kind, WorkerExitCode.WORKER_FAILURE))


def kind_for_exit_code(code: int) -> FailureKind:
    """Failure kind the host assigns to a nonzero worker exit status."""
    for kind, exit_code in EXIT_CODES.items():
        if exit_code == code:
            return kind
    return FailureKind.WORKER
