"""Supervisor exception classes.

fox-supervisor errors v0.1.0
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from .runtime.handle import ChildHandle
    from .runtime.terminator import TerminationReport

__all__ = [
    "SupervisorError",
    "SpawnFailure",
    "InvalidHandle",
    "NotFound",
    "EmptyRegistry",
    "TerminationTimeout",
    "ServerStartError",
]


class SupervisorError(Exception):
    """Base class for supervisor errors."""
    pass


class SpawnFailure(SupervisorError):
    """The OS could not create the child process.

    Attributes:
        command: Executable that was requested
        argv: Full argument vector
        cause: Underlying OSError
    """

    def __init__(self, command: str, argv: Sequence[str], cause: BaseException | None = None) -> None:
        self.command = command
        self.argv = list(argv)
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to spawn {command!r}{detail}")


class InvalidHandle(SupervisorError, ValueError):
    """A missing or duplicate handle was passed to the registry."""
    pass


class NotFound(SupervisorError, LookupError):
    """The handle is not tracked by the registry."""

    def __init__(self, handle: Any, message: str | None = None) -> None:
        self.handle = handle
        super().__init__(message or f"Handle {handle!r} is not registered")


class EmptyRegistry(NotFound):
    """Removal was attempted while the registry tracks no handles."""

    def __init__(self, handle: Any) -> None:
        super().__init__(handle, f"Cannot remove {handle!r} from an empty registry")


class TerminationTimeout(SupervisorError, TimeoutError):
    """One or more handles did not report close within the timeout.

    Attributes:
        handles: Handles that never confirmed termination
        timeout: The bound that was exceeded (seconds)
        report: Full termination report for the batch
    """

    def __init__(
        self,
        handles: Sequence["ChildHandle"],
        timeout: float,
        report: "TerminationReport | None" = None,
    ) -> None:
        self.handles = list(handles)
        self.timeout = timeout
        self.report = report
        pids = ", ".join(str(h.pid) for h in self.handles)
        super().__init__(
            f"{len(self.handles)} child process(es) did not close within {timeout}s (pid={pids})"
        )


class ServerStartError(SupervisorError):
    """The launched server exited or never reported readiness."""
    pass
