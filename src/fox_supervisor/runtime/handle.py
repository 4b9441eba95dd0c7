"""Child process handle and launch options.

A ChildHandle is the identity and I/O surface of one spawned process. It is
owned by the caller that launched it and referenced by the ChildRegistry
until the process closes.

Key design points:
- Close notification is an asyncio.Event set by the handle's watcher once
  the process has exited and its pipes are drained; waiting on it after the
  process is gone returns immediately.
- Signals go to the child's process group when it was started in its own
  session (POSIX), falling back to the pid.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from ..errors import SupervisorError

if TYPE_CHECKING:
    from .channel import MessageChannel

__all__ = [
    "ChildHandle",
    "HandleState",
    "LaunchMode",
    "LaunchOptions",
    "LaunchResult",
    "IS_WINDOWS",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class LaunchMode(str, Enum):
    """How a handle's output and messages reach the caller."""

    BUFFERED = "buffered"
    STREAMED = "streamed"
    CHANNEL = "channel"


class HandleState(Enum):
    """Supervisory lifecycle of a handle."""

    LAUNCHED = "launched"
    REGISTERED = "registered"
    RUNNING = "running"
    SIGNAL_SENT = "signal_sent"
    CLOSED = "closed"
    DEREGISTERED = "deregistered"


@dataclass(frozen=True)
class LaunchOptions:
    """Options for a single launch.

    Attributes:
        working_directory: Directory the child starts in (None = current)
        environment: Variables passed to the child. Only these are passed
            unless inherit_environment is set.
        inherit_environment: Merge the supervisor's own environment
            underneath ``environment``
        show_echo: Mirror output chunks to the supervisor's stdout/stderr
            (None = configuration default)
        new_session: Start the child in its own session/process group
        encoding: Text encoding used to decode output
    """

    working_directory: Path | str | None = None
    environment: Mapping[str, str] = field(default_factory=dict)
    inherit_environment: bool = False
    show_echo: bool | None = None
    new_session: bool = True
    encoding: str = "utf-8"

    @classmethod
    def coerce(cls, value: "LaunchOptions | Mapping[str, Any] | None") -> "LaunchOptions":
        """Accept LaunchOptions, a mapping of its field names, or None."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        unknown = set(value) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown launch option(s): {', '.join(sorted(unknown))}")
        return cls(**value)

    def build_environment(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the exact environment the child will receive."""
        env: dict[str, str] = dict(os.environ) if self.inherit_environment else {}
        env.update(self.environment)
        if extra:
            env.update(extra)
        return env


@dataclass(frozen=True)
class LaunchResult:
    """Outcome of a closed handle.

    ``stdout``/``stderr`` are only collected for buffered launches.
    """

    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.exit_code == 0


class ChildHandle:
    """One spawned OS child process.

    Handles compare by identity. They are created by the Launcher, never
    directly by callers.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: Sequence[str],
        mode: LaunchMode,
        options: LaunchOptions,
        channel: "MessageChannel | None" = None,
    ) -> None:
        self.process = process
        self.pid: int = process.pid
        self.argv = list(argv)
        self.mode = mode
        self.options = options
        self.channel = channel
        self.created_at = datetime.now()
        self.state = HandleState.LAUNCHED
        self._closed = asyncio.Event()
        self._result: LaunchResult | None = None

    def __repr__(self) -> str:
        return (
            f"ChildHandle(pid={self.pid}, "
            f"mode={self.mode.value}, "
            f"cmd={self.argv[0] if self.argv else ''}, "
            f"state={self.state.value})"
        )

    @property
    def command(self) -> str:
        return self.argv[0]

    @property
    def returncode(self) -> int | None:
        """Raw OS return code, None while running."""
        return self.process.returncode

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def result(self) -> LaunchResult | None:
        return self._result

    async def wait_closed(self) -> None:
        """Wait until the process has exited and its output is drained."""
        await self._closed.wait()

    async def wait(self) -> LaunchResult:
        """Wait for close and return the launch result."""
        await self._closed.wait()
        if self._result is None:
            raise SupervisorError(f"{self!r} closed without a result")
        return self._result

    def send_signal(self, sig: int) -> bool:
        """Deliver ``sig`` to the child.

        A child in its own session is signalled through its process group
        until the handle closes, including after the leader has exited while
        descendants still hold its pipes.

        Returns:
            True if the signal was delivered, False if the process was
            already gone
        """
        if self.closed:
            return False
        group = not IS_WINDOWS and self.options.new_session
        if not group and self.process.returncode is not None:
            return False

        try:
            if group:
                self._signal_group(sig)
            else:
                self.process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"Signal {sig} not delivered, process already exited pid={self.pid}")
            return False

        if self.state is not HandleState.CLOSED:
            self.state = HandleState.SIGNAL_SENT
        return True

    def kill(self) -> bool:
        """Force kill the child (SIGKILL on POSIX)."""
        if IS_WINDOWS:
            if self.closed or self.process.returncode is not None:
                return False
            try:
                self.process.kill()
            except ProcessLookupError:
                return False
            return True
        return self.send_signal(signal.SIGKILL)

    def _signal_group(self, sig: int) -> None:
        # pgid == pid because of start_new_session; the group outlives a
        # reaped leader, so getpgid(pid) cannot be used here
        try:
            os.killpg(self.pid, sig)
            logger.debug(f"Sent signal {sig} to process group pgid={self.pid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            self.process.send_signal(sig)

    async def send(self, payload: Any) -> None:
        """Send one message over the handle's channel."""
        if self.channel is None:
            raise SupervisorError(f"{self!r} was not launched with a message channel")
        await self.channel.send(payload)

    def _mark_closed(self, result: LaunchResult) -> None:
        self._result = result
        self.state = HandleState.CLOSED
        self._closed.set()
