"""Fan-out termination of registered children.

Termination strategy for ``kill_children``:
1. Snapshot the registry and select the handles from ``start_index`` on
2. Send the signal to every selected handle without waiting in between
3. Wait, concurrently, for each handle's close notification (bounded by
   ``timeout``)
4. Optionally escalate stragglers to SIGKILL and wait ``kill_timeout`` more
5. Invoke ``on_done`` once every selected handle has closed, or raise
   TerminationTimeout naming the handles that never did
"""

from __future__ import annotations

import logging
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Callable

import anyio

from ..config import Config, get_config, parse_signal
from ..errors import TerminationTimeout
from .callbacks import call_maybe_async
from .handle import ChildHandle
from .registry import ChildRegistry

__all__ = ["Terminator", "TerminationReport", "resolve_start_index"]

logger = logging.getLogger(__name__)

SignalArg = signal.Signals | int | str | None


def _exit_host() -> None:
    sys.exit(0)


def resolve_start_index(start_index: int | None, size: int) -> int:
    """Clamp a caller-supplied start index against a snapshot of ``size``.

    None and negative values select from the first handle. Values at or
    past the end select nothing.
    """
    if start_index is None or start_index < 0:
        return 0
    return min(start_index, size)


@dataclass
class TerminationReport:
    """Outcome of one termination batch.

    Attributes:
        signal: Signal that was sent
        start_index: Resolved start index into the snapshot
        selected: Handles chosen for termination, in registry order
        signalled: Pids the signal was delivered to
        already_closed: Handles that had closed before being signalled
        closed: Handles that confirmed closure
        escalated: Handles that only closed after SIGKILL
        timed_out: Handles that never confirmed closure
    """

    signal: signal.Signals
    start_index: int
    selected: list[ChildHandle] = field(default_factory=list)
    signalled: list[int] = field(default_factory=list)
    already_closed: list[ChildHandle] = field(default_factory=list)
    closed: list[ChildHandle] = field(default_factory=list)
    escalated: list[ChildHandle] = field(default_factory=list)
    timed_out: list[ChildHandle] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.timed_out and len(self.closed) == len(self.selected)


class Terminator:
    """Signals a subset of registered children and waits for them to close.

    Example:
        terminator = Terminator(registry, exit_callback=lambda: None)

        # Everything after the first child, SIGTERM, custom completion
        await terminator.kill_children(1, signal.SIGTERM, on_done=done)

        # Everything, default signal, then exit the host process
        await terminator.kill_children()
    """

    def __init__(
        self,
        registry: ChildRegistry,
        config: Config | None = None,
        *,
        exit_callback: Callable[[], Any] | None = None,
    ) -> None:
        self.registry = registry
        self.config = config if config is not None else get_config()
        self._exit_callback = exit_callback if exit_callback is not None else _exit_host

    async def kill_children(
        self,
        start_index: int | None = None,
        sig: SignalArg = None,
        on_done: Callable[[], Any] | None = None,
        *,
        timeout: float | None = None,
        escalate: bool | None = None,
    ) -> TerminationReport:
        """Terminate every registered child from ``start_index`` onwards.

        Args:
            start_index: Position in registry order to start from
            sig: Signal to send (default: configured kill signal, SIGINT)
            on_done: Called once all selected children have closed
                (default: exit the host process)
            timeout: Seconds to wait for each child (default: term_timeout)
            escalate: Send SIGKILL to children still running after timeout

        Returns:
            Report of the batch

        Raises:
            TerminationTimeout: a child did not close in time; ``on_done``
                is not called
        """
        resolved_sig = parse_signal(sig, self.config.kill_signal)
        if on_done is None:
            on_done = self._exit_callback
        wait_timeout = self.config.term_timeout if timeout is None else timeout
        do_escalate = self.config.kill_escalate if escalate is None else escalate

        snapshot = self.registry.snapshot()
        index = resolve_start_index(start_index, len(snapshot))
        report = TerminationReport(signal=resolved_sig, start_index=index)
        report.selected = snapshot[index:]

        if not report.selected:
            logger.debug(
                f"No child processes to terminate (registered={len(snapshot)}, "
                f"start_index={start_index})"
            )
            await call_maybe_async(on_done)
            return report

        logger.info(
            f"Terminating {len(report.selected)} child process(es) "
            f"with {resolved_sig.name} (start_index={index})"
        )

        async with anyio.create_task_group() as tg:
            for handle in report.selected:
                tg.start_soon(
                    self._terminate_one, handle, resolved_sig, wait_timeout, do_escalate, report
                )

        if report.timed_out:
            logger.warning(
                f"{len(report.timed_out)} child process(es) did not close within "
                f"{wait_timeout}s: pids={[h.pid for h in report.timed_out]}"
            )
            raise TerminationTimeout(report.timed_out, wait_timeout, report)

        logger.info(f"All {len(report.closed)} child process(es) closed")
        await call_maybe_async(on_done)
        return report

    async def kill_child(
        self,
        handle: ChildHandle,
        sig: SignalArg = None,
        *,
        timeout: float | None = None,
        escalate: bool | None = None,
    ) -> TerminationReport:
        """Terminate a single handle and wait for it to close.

        Raises:
            TerminationTimeout: the handle did not close in time
        """
        resolved_sig = parse_signal(sig, self.config.kill_signal)
        wait_timeout = self.config.term_timeout if timeout is None else timeout
        do_escalate = self.config.kill_escalate if escalate is None else escalate

        report = TerminationReport(signal=resolved_sig, start_index=0, selected=[handle])
        await self._terminate_one(handle, resolved_sig, wait_timeout, do_escalate, report)
        if report.timed_out:
            raise TerminationTimeout(report.timed_out, wait_timeout, report)
        return report

    async def _terminate_one(
        self,
        handle: ChildHandle,
        sig: signal.Signals,
        timeout: float,
        escalate: bool,
        report: TerminationReport,
    ) -> None:
        if handle.closed:
            logger.debug(f"Child already closed pid={handle.pid}")
            report.already_closed.append(handle)
            report.closed.append(handle)
            return

        if handle.send_signal(sig):
            report.signalled.append(handle.pid)
            logger.debug(f"Sent {sig.name} to child pid={handle.pid}")
        else:
            logger.debug(f"Child exited before {sig.name} pid={handle.pid}, waiting for close")

        with anyio.move_on_after(timeout):
            await handle.wait_closed()
        if handle.closed:
            report.closed.append(handle)
            return

        if escalate:
            logger.warning(f"Child ignored {sig.name} for {timeout}s, killing pid={handle.pid}")
            handle.kill()
            with anyio.move_on_after(self.config.kill_timeout):
                await handle.wait_closed()
            if handle.closed:
                report.escalated.append(handle)
                report.closed.append(handle)
                return

        report.timed_out.append(handle)
