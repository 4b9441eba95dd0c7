"""CLI 入口测试。

测试覆盖：
- 参数解析与配置覆盖
- 服务器自行退出时返回其退出码
- 关闭请求：终止子进程后退出宿主进程
- 双击 SIGINT：强制杀死子进程，退出码 130
- 启动失败返回 1
- 等待就绪期间的关闭请求
"""

from __future__ import annotations

import asyncio
import signal
import time
from unittest import mock

import pytest

from fox_supervisor import app
from fox_supervisor.config import Config, reload_config
from fox_supervisor.runtime.handle import IS_WINDOWS
from fox_supervisor.signal_manager import SignalManager

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX signal semantics")


class CapturingSignalManager:
    """记录 run_launcher 创建的 SignalManager 实例。"""

    def __init__(self) -> None:
        self.instances: list[SignalManager] = []

    def __call__(self, *args, **kwargs) -> SignalManager:
        manager = SignalManager(*args, **kwargs)
        self.instances.append(manager)
        return manager

    async def running(self) -> SignalManager:
        while not (self.instances and self.instances[0]._running):
            await asyncio.sleep(0.01)
        return self.instances[0]


class TestParser:
    """参数解析测试。"""

    def test_command_and_args(self):
        ns = app.build_parser().parse_args(["node", "app/index.js", "--port", "3000"])
        assert ns.command == "node"
        assert ns.args == ["app/index.js", "--port", "3000"]
        assert ns.no_wait_ready is False

    def test_options(self):
        ns = app.build_parser().parse_args(
            ["--environment", "production", "--cwd", "/srv", "--signal", "TERM",
             "--no-wait-ready", "node", "server.js"]
        )
        assert ns.environment == "production"
        assert ns.cwd == "/srv"
        assert ns.signal == "TERM"
        assert ns.no_wait_ready is True

    def test_apply_overrides(self):
        ns = app.build_parser().parse_args(
            ["-e", "production", "--ready-pattern", "up", "--signal", "15", "node"]
        )
        config = app._apply_overrides(Config(), ns)
        assert config.environment == "production"
        assert config.ready_pattern == "up"
        assert config.kill_signal == signal.SIGTERM

    @pytest.mark.parametrize(
        "code,expected",
        [(0, 0), (3, 3), (-signal.SIGTERM, 128 + signal.SIGTERM), (None, 1)],
    )
    def test_normalize_exit_code(self, code, expected):
        assert app._normalize_exit_code(code) == expected


class TestRunLauncher:
    """run_launcher 集成测试。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_server_exits_on_its_own(self, config: Config, fake_server: list[str]):
        ns = app.build_parser().parse_args(
            [fake_server[0], fake_server[1], "--ready", "Listening on port 1", "--exit-code", "3"]
        )
        assert await app.run_launcher(ns, config) == 3

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_spawn_failure_returns_1(self, config: Config):
        ns = app.build_parser().parse_args(["/nonexistent/fox-server"])
        assert await app.run_launcher(ns, config) == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_not_ready_returns_1(self, config: Config, fake_server: list[str]):
        ns = app.build_parser().parse_args([fake_server[0], fake_server[1], "--exit-code", "0"])
        assert await app.run_launcher(ns, config) == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_shutdown_request_exits_host(self, config: Config, fake_server: list[str]):
        """关闭请求：子进程收到 SIGINT 并关闭后，宿主以 0 退出。"""
        capture = CapturingSignalManager()
        ns = app.build_parser().parse_args(
            [fake_server[0], fake_server[1], "--ready", "Listening on port 1", "--duration", "30"]
        )

        async def request_shutdown() -> None:
            manager = await capture.running()
            manager.request_graceful_shutdown()

        with mock.patch.object(app, "SignalManager", capture):
            trigger = asyncio.create_task(request_shutdown())
            with pytest.raises(SystemExit) as exc_info:
                await app.run_launcher(ns, config)
            await trigger

        assert exc_info.value.code == 0
        assert capture.instances[0]._running is False

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_shutdown_while_waiting_for_ready(
        self, config: Config, fake_server: list[str]
    ):
        """关闭请求在就绪等待期间到达：立即终止子进程，不等待 ready_timeout。"""
        config.ready_timeout = 10.0
        capture = CapturingSignalManager()
        ns = app.build_parser().parse_args([fake_server[0], fake_server[1], "--duration", "30"])
        children: list = []

        async def request_shutdown() -> None:
            manager = await capture.running()
            while len(manager.registry) == 0:
                await asyncio.sleep(0.01)
            children.extend(manager.registry.snapshot())
            manager.request_graceful_shutdown()

        with mock.patch.object(app, "SignalManager", capture):
            trigger = asyncio.create_task(request_shutdown())
            started = time.monotonic()
            with pytest.raises(SystemExit) as exc_info:
                await app.run_launcher(ns, config)
            elapsed = time.monotonic() - started
            await trigger

        assert exc_info.value.code == 0
        assert elapsed < 5.0
        (child,) = children
        assert child.closed
        assert child.returncode is not None
        assert capture.instances[0].registry.snapshot() == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_double_tap_kills_children(self, config: Config, fake_server: list[str]):
        """子进程忽略信号时，双击 SIGINT 强制杀死并以 130 退出。"""
        config.term_timeout = 10.0
        capture = CapturingSignalManager()
        ns = app.build_parser().parse_args(
            [
                fake_server[0], fake_server[1],
                "--ready", "Listening on port 1",
                "--duration", "30",
                "--ignore-signals",
            ]
        )

        async def double_tap() -> None:
            manager = await capture.running()
            manager.request_graceful_shutdown()
            await asyncio.sleep(0.5)
            manager._force_shutdown()

        with mock.patch.object(app, "SignalManager", capture):
            trigger = asyncio.create_task(double_tap())
            with pytest.raises(SystemExit) as exc_info:
                await app.run_launcher(ns, config)
            await trigger

        assert exc_info.value.code == app.FORCE_EXIT_CODE


class TestMain:
    """main 入口测试。"""

    def test_main_exits_with_launcher_code(self):
        with mock.patch.object(app, "run_launcher", mock.Mock(return_value="coro")) as run, \
                mock.patch.object(app.asyncio, "run", mock.Mock(return_value=7)) as arun, \
                mock.patch.object(app, "_configure_logging") as configure:
            with pytest.raises(SystemExit) as exc_info:
                app.main(["--environment", "test", "node", "server.js"])

        assert exc_info.value.code == 7
        arun.assert_called_once_with("coro")
        ns, config = run.call_args.args
        assert ns.command == "node"
        assert ns.args == ["server.js"]
        assert config.environment == "test"
        configure.assert_called_once_with(config)
        reload_config()
