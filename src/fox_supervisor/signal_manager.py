"""信号管理模块。

把宿主进程收到的 OS 信号转换为子进程终止流程：
- SIGINT / SIGTERM: 请求关闭（终止所有子进程后退出）
- 双击 SIGINT: 强制退出（子进程升级为 SIGKILL）

支持的配置：
- FOX_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间

信号处理器本身只设置标志和事件，实际的终止由主循环在
wait_for_shutdown() 返回后执行，避免在信号处理器中做异步工作。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import get_config
from .runtime.registry import ChildRegistry

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        supervisor = Supervisor()
        signal_manager = SignalManager(supervisor.registry)

        async def main():
            await signal_manager.start()
            try:
                await signal_manager.wait_for_shutdown()
                await supervisor.kill_children(
                    escalate=signal_manager.is_force_exit,
                )
            finally:
                await signal_manager.stop()

        asyncio.run(main())
        ```

    Attributes:
        registry: 子进程注册表（用于日志中报告待终止的子进程数量）
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        registry: ChildRegistry,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            registry: 子进程注册表
            double_tap_window: 双击退出窗口时间（默认从配置读取）
            on_shutdown: 请求关闭时的回调函数
        """
        self.registry = registry

        config = get_config()
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._received_signal: Optional[signal.Signals] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._force_event: Optional[asyncio.Event] = None
        self._original_sigint_handler: Optional[signal.Handlers] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    @property
    def received_signal(self) -> Optional[signal.Signals]:
        """最近一次触发关闭的信号。"""
        return self._received_signal

    async def start(self) -> None:
        """启动信号监听。

        设置 SIGINT 和 SIGTERM 的处理器。
        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._force_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 使用 signal.signal() 设置处理器
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    async def wait_for_force_exit(self) -> None:
        """等待强制退出（双击 SIGINT）。"""
        if self._force_event:
            await self._force_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 第一次：请求关闭
        - 在双击窗口内再次收到：强制退出
        """
        current_time = time.monotonic()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if self._shutdown_requested and time_since_last < self.double_tap_window:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        logger.info(
            f"SIGINT received, terminating {len(self.registry)} child process(es)"
        )
        self._request_shutdown(signal.SIGINT)

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：始终进入优雅退出流程。"""
        logger.info(
            f"SIGTERM received, terminating {len(self.registry)} child process(es)"
        )
        self._request_shutdown(signal.SIGTERM)

    def _request_shutdown(self, sig: signal.Signals) -> None:
        """请求关闭。"""
        already_requested = self._shutdown_requested
        self._shutdown_requested = True
        if self._received_signal is None:
            self._received_signal = sig

        if not already_requested and self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        self._set_shutdown_event()

    def _force_shutdown(self) -> None:
        """强制退出。

        设置 force_exit 标志并触发 shutdown event。
        实际的 SIGKILL 升级由主循环在终止子进程时执行。
        """
        self._force_exit = True
        self._shutdown_requested = True
        self._set_shutdown_event()
        if self._force_event and self._loop:
            self._loop.call_soon_threadsafe(self._force_event.set)

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        self._request_shutdown(signal.SIGTERM)

    def _set_shutdown_event(self) -> None:
        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
