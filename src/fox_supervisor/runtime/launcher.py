"""Child process launcher.

fox-supervisor runtime module v0.1.0

This module provides three launch modes over one watcher:
- buffered: stdout/stderr collected and delivered once the child closes
- streamed: stdout/stderr chunks delivered as they arrive, then an exit
  notification
- channel: streamed plus a JSON-lines message channel

Key design points:
- POSIX: start_new_session=True so host terminal signals do not reach the
  child directly
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- stdin is DEVNULL; children never inherit the supervisor's stdin
- Every successful launch registers exactly one handle; the handle's watcher
  deregisters it when the child closes
- Callback failures are logged and never reach the supervisor
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Awaitable

import anyio

from ..config import Config, get_config
from ..errors import SpawnFailure
from .callbacks import invoke_safely
from .channel import CHANNEL_FD_ENV, MessageChannel, create_socket_pair
from .handle import (
    IS_WINDOWS,
    ChildHandle,
    HandleState,
    LaunchMode,
    LaunchOptions,
    LaunchResult,
)
from .registry import ChildRegistry

__all__ = [
    "Launcher",
    "BufferedCallback",
    "CompleteCallback",
    "ChunkCallback",
    "MessageCallback",
]

logger = logging.getLogger(__name__)

# Bytes read per output chunk
CHUNK_SIZE = 4096

# on_complete(error, exit_code, stdout_text, stderr_text)
BufferedCallback = Callable[[BaseException | None, int | None, str, str], Any]
# on_complete(error, exit_code)
CompleteCallback = Callable[[BaseException | None, int | None], Any]
ChunkCallback = Callable[[bytes], Any]
MessageCallback = Callable[[Any], Any]

OptionsArg = LaunchOptions | Mapping[str, Any] | None


class Launcher:
    """Spawns child processes and supervises them until they close.

    Example:
        registry = ChildRegistry()
        launcher = Launcher(registry)

        def done(error, exit_code, stdout, stderr):
            print(exit_code, stdout)

        handle = await launcher.launch_buffered("echo", ["hi"], None, done)
        result = await handle.wait()
    """

    def __init__(self, registry: ChildRegistry, config: Config | None = None) -> None:
        self.registry = registry
        self.config = config if config is not None else get_config()
        self._watchers: set[asyncio.Task[None]] = set()

    # =========================================================================
    # Launch modes
    # =========================================================================

    async def launch_buffered(
        self,
        command: str,
        args: Sequence[str],
        options: OptionsArg = None,
        on_complete: BufferedCallback | None = None,
    ) -> ChildHandle:
        """Launch a child and deliver its complete output after it closes.

        Raises:
            ValueError: empty command or missing args
            SpawnFailure: the OS could not create the process
        """
        opts = LaunchOptions.coerce(options)
        process, argv = await self._spawn(command, args, opts, LaunchMode.BUFFERED)
        handle = self._register(process, argv, LaunchMode.BUFFERED, opts)

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []

        def build_result(error: BaseException | None, exit_code: int | None) -> LaunchResult:
            return LaunchResult(
                exit_code=exit_code,
                stdout=b"".join(stdout_chunks).decode(opts.encoding, errors="replace"),
                stderr=b"".join(stderr_chunks).decode(opts.encoding, errors="replace"),
                error=error,
            )

        async def notify(result: LaunchResult) -> None:
            await invoke_safely(
                on_complete,
                result.error,
                result.exit_code,
                result.stdout,
                result.stderr,
                description=f"on_complete (pid={handle.pid})",
            )

        self._start_watcher(
            handle,
            on_stdout=stdout_chunks.append,
            on_stderr=stderr_chunks.append,
            build_result=build_result,
            notify=notify,
        )
        return handle

    async def launch_streamed(
        self,
        command: str,
        args: Sequence[str],
        options: OptionsArg = None,
        on_complete: CompleteCallback | None = None,
        on_stdout: ChunkCallback | None = None,
        on_stderr: ChunkCallback | None = None,
    ) -> ChildHandle:
        """Launch a child and deliver each output chunk as it arrives.

        ``on_complete(error, exit_code)`` fires exactly once after close.
        """
        opts = LaunchOptions.coerce(options)
        process, argv = await self._spawn(command, args, opts, LaunchMode.STREAMED)
        handle = self._register(process, argv, LaunchMode.STREAMED, opts)
        self._start_watcher(
            handle,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            build_result=_exit_only_result,
            notify=self._exit_notifier(handle, on_complete),
        )
        return handle

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
        """Launch a child with a message channel (see ``runtime.channel``).

        ``on_message(payload)`` fires once per inbound message, in order.
        Use ``handle.send(payload)`` to write to the child.
        """
        opts = LaunchOptions.coerce(options)
        if IS_WINDOWS:
            raise SpawnFailure(
                command,
                [command, *(args or [])],
                NotImplementedError("message channels require POSIX fd inheritance"),
            )

        parent_sock, child_sock = create_socket_pair()
        child_fd = child_sock.fileno()
        try:
            process, argv = await self._spawn(
                command,
                args,
                opts,
                LaunchMode.CHANNEL,
                extra_env={CHANNEL_FD_ENV: str(child_fd)},
                pass_fds=(child_fd,),
            )
        except BaseException:
            parent_sock.close()
            raise
        finally:
            # The child holds its own copy; ours must go so EOF is seen on exit
            child_sock.close()

        try:
            channel = await MessageChannel.open(parent_sock)
        except Exception as e:
            logger.warning(f"Message channel setup failed pid={process.pid}: {type(e).__name__}: {e}")
            parent_sock.close()
            await self._discard_unregistered(process)
            raise SpawnFailure(command, argv, e) from e

        handle = self._register(process, argv, LaunchMode.CHANNEL, opts, channel=channel)
        self._start_watcher(
            handle,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_message=on_message,
            build_result=_exit_only_result,
            notify=self._exit_notifier(handle, on_complete),
        )
        return handle

    async def execute(
        self,
        command_line: str,
        on_complete: BufferedCallback | None = None,
        options: OptionsArg = None,
    ) -> ChildHandle:
        """Run a shell command line in buffered mode."""
        if not command_line or not command_line.strip():
            raise ValueError("command_line must be a non-empty string")
        if IS_WINDOWS:
            return await self.launch_buffered("cmd", ["/c", command_line], options, on_complete)
        return await self.launch_buffered("/bin/sh", ["-c", command_line], options, on_complete)

    async def aclose(self, timeout: float | None = None) -> None:
        """Wait for outstanding watchers; cancel any still running after ``timeout``."""
        pending = [task for task in self._watchers if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} child watcher(s) on close")
            await asyncio.gather(*still_running, return_exceptions=True)

    # =========================================================================
    # Spawning
    # =========================================================================

    @staticmethod
    def _build_argv(command: str, args: Sequence[str] | None) -> list[str]:
        if not isinstance(command, str) or not command.strip():
            raise ValueError("command must be a non-empty string")
        if args is None:
            raise ValueError("args must be a sequence of strings (use [] for no arguments)")
        if isinstance(args, (str, bytes)):
            raise ValueError("args must be a sequence of strings, not a single string")
        return [command, *(str(arg) for arg in args)]

    def _build_subprocess_kwargs(
        self,
        options: LaunchOptions,
        pass_fds: Sequence[int] = (),
    ) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if pass_fds:
            kwargs["pass_fds"] = tuple(pass_fds)

        if options.new_session:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                kwargs["start_new_session"] = True

        return kwargs

    async def _spawn(
        self,
        command: str,
        args: Sequence[str],
        options: LaunchOptions,
        mode: LaunchMode,
        *,
        extra_env: Mapping[str, str] | None = None,
        pass_fds: Sequence[int] = (),
    ) -> tuple[asyncio.subprocess.Process, list[str]]:
        argv = self._build_argv(command, args)
        env = options.build_environment(extra_env)
        kwargs = self._build_subprocess_kwargs(options, pass_fds)

        logger.debug(
            f"Spawning child mode={mode.value} argv={argv} "
            f"cwd={options.working_directory} env_keys={sorted(env)}"
        )

        try:
            # stdin=None would hand the child our own stdin
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.working_directory,
                env=env,
                **kwargs,
            )
        except OSError as e:
            logger.warning(f"Spawn failed for {argv[0]!r}: {type(e).__name__}: {e}")
            raise SpawnFailure(command, argv, e) from e

        return process, argv

    def _register(
        self,
        process: asyncio.subprocess.Process,
        argv: list[str],
        mode: LaunchMode,
        options: LaunchOptions,
        channel: MessageChannel | None = None,
    ) -> ChildHandle:
        handle = ChildHandle(process, argv, mode, options, channel=channel)
        self.registry.add(handle)
        handle.state = HandleState.REGISTERED
        logger.info(f"Started child pid={handle.pid} mode={mode.value} cmd={argv[0]}")
        return handle

    # =========================================================================
    # Supervision
    # =========================================================================

    def _start_watcher(
        self,
        handle: ChildHandle,
        *,
        on_stdout: ChunkCallback | None,
        on_stderr: ChunkCallback | None,
        build_result: Callable[[BaseException | None, int | None], LaunchResult],
        notify: Callable[[LaunchResult], Awaitable[None]],
        on_message: MessageCallback | None = None,
    ) -> None:
        task = asyncio.create_task(
            self._watch(handle, on_stdout, on_stderr, on_message, build_result, notify),
            name=f"fox-child-{handle.pid}",
        )
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    def _exit_notifier(
        self,
        handle: ChildHandle,
        on_complete: CompleteCallback | None,
    ) -> Callable[[LaunchResult], Awaitable[None]]:
        async def notify(result: LaunchResult) -> None:
            await invoke_safely(
                on_complete,
                result.error,
                result.exit_code,
                description=f"on_complete (pid={handle.pid})",
            )

        return notify

    def _echo_enabled(self, options: LaunchOptions) -> bool:
        if options.show_echo is None:
            return self.config.show_echo
        return options.show_echo

    async def _watch(
        self,
        handle: ChildHandle,
        on_stdout: ChunkCallback | None,
        on_stderr: ChunkCallback | None,
        on_message: MessageCallback | None,
        build_result: Callable[[BaseException | None, int | None], LaunchResult],
        notify: Callable[[LaunchResult], Awaitable[None]],
    ) -> None:
        """Drain the child's streams, wait for exit, then close the handle.

        Close order: result stored and close event set, registry entry
        removed, caller's completion callback invoked.
        """
        process = handle.process
        echo = self._echo_enabled(handle.options)
        error: BaseException | None = None
        handle.state = HandleState.RUNNING

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._pump, handle, process.stdout, "stdout", on_stdout, echo)
                tg.start_soon(self._pump, handle, process.stderr, "stderr", on_stderr, echo)
                if handle.channel is not None:
                    tg.start_soon(self._pump_messages, handle, on_message)
            await process.wait()

        except asyncio.CancelledError as e:
            error = e
            raise

        except Exception as e:
            error = e
            logger.warning(f"Error supervising child pid={handle.pid}: {type(e).__name__}: {e}")

        finally:
            if process.returncode is None:
                await self._safe_reap(handle)
            if handle.channel is not None:
                await handle.channel.close()

            result = build_result(error, process.returncode)
            handle._mark_closed(result)
            logger.info(f"Child closed pid={handle.pid} returncode={process.returncode}")

            if self.registry.discard(handle):
                handle.state = HandleState.DEREGISTERED

            await notify(result)

    async def _pump(
        self,
        handle: ChildHandle,
        stream: asyncio.StreamReader | None,
        name: str,
        sink: ChunkCallback | None,
        echo: bool,
    ) -> None:
        """Read one output stream to EOF, delivering chunks in arrival order."""
        if stream is None:
            return

        decoder = codecs.getincrementaldecoder(handle.options.encoding)(errors="replace")
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            logger.debug(f"Child pid={handle.pid} {name}: {len(chunk)} byte(s)")

            if echo:
                target = getattr(sys, name)
                target.write(decoder.decode(chunk))
                target.flush()

            await invoke_safely(sink, chunk, description=f"{name} callback (pid={handle.pid})")

    async def _pump_messages(
        self,
        handle: ChildHandle,
        on_message: MessageCallback | None,
    ) -> None:
        assert handle.channel is not None
        async for message in handle.channel.messages():
            logger.debug(f"Child pid={handle.pid} message received")
            await invoke_safely(on_message, message, description=f"on_message (pid={handle.pid})")

    async def _safe_reap(self, handle: ChildHandle) -> None:
        """Kill and reap a child whose watcher is going away, shielded from cancellation."""
        try:
            await asyncio.shield(self._reap(handle))
        except asyncio.CancelledError:
            logger.warning(f"Reaping interrupted pid={handle.pid}")

    async def _reap(self, handle: ChildHandle) -> None:
        handle.kill()
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self.config.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Child did not exit after kill pid={handle.pid}")

    async def _discard_unregistered(self, process: asyncio.subprocess.Process) -> None:
        """Kill and reap a process that never got a handle."""
        try:
            process.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Unregistered child did not exit after kill pid={process.pid}")


def _exit_only_result(error: BaseException | None, exit_code: int | None) -> LaunchResult:
    return LaunchResult(exit_code=exit_code, error=error)
