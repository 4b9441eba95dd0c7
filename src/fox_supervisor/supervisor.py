"""Supervisor facade.

Owns one ChildRegistry and the Launcher/Terminator that share it, so the
registry lives exactly as long as the supervisor does.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Callable

from .config import Config, get_config
from .errors import TerminationTimeout
from .runtime.handle import ChildHandle
from .runtime.launcher import (
    BufferedCallback,
    ChunkCallback,
    CompleteCallback,
    Launcher,
    MessageCallback,
    OptionsArg,
)
from .runtime.registry import ChildRegistry
from .runtime.terminator import SignalArg, TerminationReport, Terminator

__all__ = ["Supervisor"]

logger = logging.getLogger(__name__)


class Supervisor:
    """Launch, track and terminate child processes.

    Example:
        ```python
        async with Supervisor() as supervisor:
            handle = await supervisor.launch_streamed(
                "node", ["server.js"], LaunchOptions(environment=env),
                on_stdout=print,
            )
            ...
            await supervisor.kill_children(on_done=lambda: None)
        # leaving the block terminates anything still running
        ```

    Attributes:
        config: Active configuration
        registry: Registry of live children
        launcher: Launcher bound to the registry
        terminator: Terminator bound to the registry
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        registry: ChildRegistry | None = None,
        exit_callback: Callable[[], Any] | None = None,
    ) -> None:
        self.config = config if config is not None else get_config()
        self.registry = registry if registry is not None else ChildRegistry()
        self.launcher = Launcher(self.registry, self.config)
        self.terminator = Terminator(self.registry, self.config, exit_callback=exit_callback)
        self._closed = False

    async def launch_buffered(
        self,
        command: str,
        args: Sequence[str],
        options: OptionsArg = None,
        on_complete: BufferedCallback | None = None,
    ) -> ChildHandle:
        return await self.launcher.launch_buffered(command, args, options, on_complete)

    async def launch_streamed(
        self,
        command: str,
        args: Sequence[str],
        options: OptionsArg = None,
        on_complete: CompleteCallback | None = None,
        on_stdout: ChunkCallback | None = None,
        on_stderr: ChunkCallback | None = None,
    ) -> ChildHandle:
        return await self.launcher.launch_streamed(
            command, args, options, on_complete, on_stdout, on_stderr
        )

    async def launch_channel(
        self,
        command: str,
        args: Sequence[str],
        options: OptionsArg = None,
        on_complete: CompleteCallback | None = None,
        on_stdout: ChunkCallback | None = None,
        on_stderr: ChunkCallback | None = None,
        on_message: MessageCallback | None = None,
    ) -> ChildHandle:
        return await self.launcher.launch_channel(
            command, args, options, on_complete, on_stdout, on_stderr, on_message
        )

    async def execute(
        self,
        command_line: str,
        on_complete: BufferedCallback | None = None,
        options: OptionsArg = None,
    ) -> ChildHandle:
        return await self.launcher.execute(command_line, on_complete, options)

    async def kill_children(
        self,
        start_index: int | None = None,
        sig: SignalArg = None,
        on_done: Callable[[], Any] | None = None,
        *,
        timeout: float | None = None,
        escalate: bool | None = None,
    ) -> TerminationReport:
        return await self.terminator.kill_children(
            start_index, sig, on_done, timeout=timeout, escalate=escalate
        )

    async def kill_child(
        self,
        handle: ChildHandle,
        sig: SignalArg = None,
        *,
        timeout: float | None = None,
        escalate: bool | None = None,
    ) -> TerminationReport:
        return await self.terminator.kill_child(handle, sig, timeout=timeout, escalate=escalate)

    @property
    def children(self) -> list[ChildHandle]:
        """Snapshot of the live children in registry order."""
        return self.registry.snapshot()

    async def aclose(self) -> None:
        """Terminate every remaining child and wait for the watchers.

        Stragglers are escalated to SIGKILL. A child that survives even that
        is logged, not raised.
        """
        if self._closed:
            return
        self._closed = True

        if len(self.registry):
            logger.info(f"Supervisor closing, terminating {len(self.registry)} child process(es)")
            try:
                await self.terminator.kill_children(0, on_done=_noop, escalate=True)
            except TerminationTimeout as e:
                logger.warning(f"Supervisor close left running children: {e}")

        await self.launcher.aclose(timeout=self.config.kill_timeout)
        logger.debug("Supervisor closed")

    async def __aenter__(self) -> "Supervisor":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _noop() -> None:
    return None
