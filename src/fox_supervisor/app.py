"""fox-supervisor 命令行入口。

包含启动器生命周期管理和主入口点：
启动服务器进程 -> 等待服务器退出或关闭信号 -> 终止所有子进程 -> 退出。

用法:
    fox-supervisor [--environment ENV] [--cwd DIR] -- node app/index.js
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from collections.abc import Coroutine, Sequence
from typing import Any

from .config import Config, get_config, parse_signal
from .errors import ServerStartError, SpawnFailure, TerminationTimeout
from .server import ServerLauncher
from .signal_manager import SignalManager
from .supervisor import Supervisor

__all__ = ["build_parser", "run_launcher", "main"]

logger = logging.getLogger(__name__)

# 128 + SIGINT(2)
FORCE_EXIT_CODE = 130


def build_parser() -> argparse.ArgumentParser:
    """构建命令行参数解析器。"""
    parser = argparse.ArgumentParser(
        prog="fox-supervisor",
        description="Launch a server process and terminate it (and its siblings) gracefully on exit.",
    )
    parser.add_argument("--environment", "-e", default=None, help="Runtime environment name (FOX_ENVIRONMENT)")
    parser.add_argument("--cwd", default=None, help="Working directory for the server process")
    parser.add_argument("--ready-pattern", default=None, help="Stdout text that marks the server as ready")
    parser.add_argument(
        "--no-wait-ready",
        action="store_true",
        help="Do not wait for the ready pattern before supervising",
    )
    parser.add_argument("--signal", default=None, help="Signal sent to children on shutdown (default SIGINT)")
    parser.add_argument("command", help="Server executable")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the server")
    return parser


def _apply_overrides(config: Config, ns: argparse.Namespace) -> Config:
    if ns.environment:
        config.environment = ns.environment
    if ns.ready_pattern:
        config.ready_pattern = ns.ready_pattern
    if ns.signal:
        config.kill_signal = parse_signal(ns.signal, config.kill_signal)
    return config


def _normalize_exit_code(code: int | None) -> int:
    """把子进程返回码转换为宿主进程退出码（被信号终止时为 128 + 信号编号）。"""
    if code is None:
        return 1
    if code < 0:
        return 128 - code
    return code


async def _until_shutdown(
    coro: Coroutine[Any, Any, Any], signal_manager: SignalManager, name: str
) -> asyncio.Task | None:
    """运行 coro，直到其完成或收到关闭请求。

    Returns:
        coro 先完成时返回其任务；关闭请求先到达时取消 coro 并返回 None
    """
    task = asyncio.create_task(coro, name=name)
    shutdown_task = asyncio.create_task(
        signal_manager.wait_for_shutdown(), name="shutdown-watcher"
    )
    try:
        await asyncio.wait({task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for pending in (task, shutdown_task):
            if not pending.done():
                pending.cancel()
        await asyncio.wait({task, shutdown_task})

    if task.cancelled():
        return None
    return task


async def run_launcher(ns: argparse.Namespace, config: Config) -> int:
    """运行启动器。

    关闭流程使用 kill_children 的默认完成动作：所有子进程确认关闭后退出宿主进程。

    Returns:
        服务器自行退出时的退出码；启动失败时为 1
    """
    signal_manager: SignalManager | None = None
    force_watcher: asyncio.Task | None = None

    def exit_host() -> None:
        code = FORCE_EXIT_CODE if signal_manager and signal_manager.is_force_exit else 0
        logger.info(f"All child processes closed, exiting with code {code}")
        sys.exit(code)

    supervisor = Supervisor(config, exit_callback=exit_host)
    signal_manager = SignalManager(supervisor.registry, config.sigint_double_tap_window)
    server = ServerLauncher(supervisor, config)

    async def _watch_force_exit() -> None:
        """双击 SIGINT 时对所有子进程发送 SIGKILL。"""
        await signal_manager.wait_for_force_exit()
        logger.warning("Force exit requested, killing all child processes")
        for child in supervisor.children:
            child.kill()

    async with supervisor:
        try:
            await signal_manager.start()

            # 等待就绪期间也响应关闭请求
            started = await _until_shutdown(
                server.start(
                    ns.command,
                    ns.args,
                    working_directory=ns.cwd,
                    wait_ready=not ns.no_wait_ready,
                ),
                signal_manager,
                "server-start",
            )
            if started is None:
                logger.info("Shutdown requested while waiting for the server to start")
            else:
                try:
                    started.result()
                except (SpawnFailure, ServerStartError) as e:
                    logger.error(f"Server failed to start: {e}")
                    return 1

                # 等待服务器退出或关闭信号
                waited = await _until_shutdown(server.wait(), signal_manager, "server-wait")
                if waited is not None and not signal_manager.is_shutdown_requested:
                    code = _normalize_exit_code(waited.result())
                    logger.info(f"Server exited on its own, exit code {code}")
                    return code

            force_watcher = asyncio.create_task(_watch_force_exit(), name="force-exit-watcher")
            try:
                # 默认完成动作：所有子进程关闭后退出宿主进程
                await supervisor.kill_children(0, config.kill_signal)
            except TerminationTimeout as e:
                logger.error(f"Shutdown incomplete: {e}")
                return 1
            return 0

        finally:
            logger.info("run_launcher: entering finally block")

            if force_watcher and not force_watcher.done():
                force_watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await force_watcher

            await signal_manager.stop()
            logger.info("run_launcher: cleanup completed")


def _configure_logging(config: Config) -> None:
    """配置日志输出。"""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if config.debug else logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 fox_supervisor 命名空间启用详细日志
    logging.getLogger("fox_supervisor").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    parser = build_parser()
    ns = parser.parse_args(argv)
    if ns.args and ns.args[0] == "--":
        ns.args = ns.args[1:]

    config = _apply_overrides(get_config(), ns)
    _configure_logging(config)
    logger.info(f"Starting fox-supervisor: {config}")

    sys.exit(asyncio.run(run_launcher(ns, config)))


if __name__ == "__main__":
    main()
