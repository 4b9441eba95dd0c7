"""Server bootstrap.

Launches the application server as a streamed child with the runtime
environment name set in its environment, and waits until the server reports
that it is listening.
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

import anyio

from .config import Config
from .errors import ServerStartError
from .runtime.handle import ChildHandle, LaunchOptions
from .supervisor import Supervisor

__all__ = ["ServerLauncher"]

logger = logging.getLogger(__name__)


class ServerLauncher:
    """Start one server process under a Supervisor.

    Example:
        server = ServerLauncher(supervisor)
        await server.start("node", ["app/index.js"])
        exit_code = await server.wait()
    """

    def __init__(self, supervisor: Supervisor, config: Config | None = None) -> None:
        self.supervisor = supervisor
        self.config = config if config is not None else supervisor.config
        self.handle: ChildHandle | None = None
        self.exit_code: int | None = None
        self._ready: anyio.Event | None = None
        self._tail = ""

    @property
    def ready(self) -> bool:
        return self._ready is not None and self._ready.is_set()

    async def start(
        self,
        command: str,
        args: Sequence[str],
        working_directory: Path | str | None = None,
        environment: Mapping[str, str] | None = None,
        *,
        wait_ready: bool = True,
    ) -> ChildHandle:
        """Launch the server.

        The child inherits the supervisor's environment with the runtime
        environment variable (``NODE_ENV`` by default) set on top.

        Raises:
            SpawnFailure: the server could not be started
            ServerStartError: the server exited, or did not report readiness
                within ``ready_timeout``
        """
        env = {self.config.environment_variable: self.config.environment}
        if environment:
            env.update(environment)

        options = LaunchOptions(
            working_directory=working_directory,
            environment=env,
            inherit_environment=True,
            show_echo=True,
        )
        self._ready = ready = anyio.Event()
        self._tail = ""
        decoder = codecs.getincrementaldecoder(options.encoding)(errors="replace")
        pattern = self.config.ready_pattern

        def on_stdout(chunk: bytes) -> None:
            if ready.is_set():
                return
            text = self._tail + decoder.decode(chunk)
            if pattern in text:
                logger.info(f"Server reported ready ({pattern!r})")
                ready.set()
                return
            # Keep enough text to match a marker split across chunks
            self._tail = text[-len(pattern):]

        def on_complete(error: BaseException | None, exit_code: int | None) -> None:
            self.exit_code = exit_code
            if error is not None:
                logger.error(f"Server supervision failed: {error}")
            else:
                logger.info(f"Server exited with code {exit_code}")

        logger.info(
            f"Starting server: {command} {' '.join(args)} "
            f"({self.config.environment_variable}={self.config.environment})"
        )
        self.handle = await self.supervisor.launch_streamed(
            command, args, options, on_complete, on_stdout
        )

        if wait_ready:
            await self._wait_ready(self.handle, ready)
        return self.handle

    async def _wait_ready(self, handle: ChildHandle, ready: anyio.Event) -> None:
        with anyio.move_on_after(self.config.ready_timeout):
            async with anyio.create_task_group() as tg:

                async def watch_ready() -> None:
                    await ready.wait()
                    tg.cancel_scope.cancel()

                async def watch_exit() -> None:
                    await handle.wait_closed()
                    tg.cancel_scope.cancel()

                tg.start_soon(watch_ready)
                tg.start_soon(watch_exit)

        if ready.is_set():
            return
        if handle.closed:
            raise ServerStartError(
                f"Server exited with code {handle.returncode} before reporting "
                f"{self.config.ready_pattern!r}"
            )
        raise ServerStartError(
            f"Server did not report {self.config.ready_pattern!r} "
            f"within {self.config.ready_timeout}s (pid={handle.pid})"
        )

    async def wait(self) -> int | None:
        """Wait for the server to close and return its exit code."""
        if self.handle is None:
            raise ServerStartError("Server was not started")
        result = await self.handle.wait()
        return result.exit_code
