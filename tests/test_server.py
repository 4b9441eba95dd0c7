"""ServerLauncher tests.

Test coverage:
- Ready pattern detection (including a marker split across chunks)
- Runtime environment variable passed to the server
- Startup failures: early exit, readiness timeout, spawn failure
"""

from __future__ import annotations

import signal
from unittest import mock

import pytest

from fox_supervisor.config import Config
from fox_supervisor.errors import ServerStartError, SpawnFailure
from fox_supervisor.runtime.handle import IS_WINDOWS
from fox_supervisor.server import ServerLauncher
from fox_supervisor.supervisor import Supervisor

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX process semantics")


@pytest.fixture
def supervisor(config: Config) -> Supervisor:
    return Supervisor(config, exit_callback=mock.Mock())


class TestServerStart:
    """Test server startup."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_ready(self, supervisor: Supervisor, fake_server: list[str], capsys):
        server = ServerLauncher(supervisor)
        handle = await server.start(
            fake_server[0],
            [fake_server[1], "--ready", "Listening on port 3000", "--duration", "30"],
        )

        assert server.ready
        assert handle in supervisor.registry
        # Server output is mirrored to our stdout
        assert "Listening on port 3000" in capsys.readouterr().out

        await supervisor.kill_children(0, signal.SIGTERM)
        assert await server.wait() == 128 + signal.SIGTERM
        assert server.exit_code == 128 + signal.SIGTERM
        await supervisor.aclose()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_environment_variable(
        self, supervisor: Supervisor, config: Config, fake_server: list[str], capsys
    ):
        config.environment = "staging"
        server = ServerLauncher(supervisor, config)
        await server.start(
            fake_server[0],
            [fake_server[1], "--print-env", "NODE_ENV", "--ready", "Listening on port 1"],
        )
        await server.wait()

        lines = capsys.readouterr().out.splitlines()
        assert lines[0] == "staging"
        await supervisor.aclose()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_inherits_parent_environment(
        self, supervisor: Supervisor, fake_server: list[str], monkeypatch, capsys
    ):
        monkeypatch.setenv("FOX_TEST_INHERITED", "yes")
        server = ServerLauncher(supervisor)
        await server.start(
            fake_server[0],
            [fake_server[1], "--print-env", "FOX_TEST_INHERITED"],
            environment={"EXTRA": "1"},
            wait_ready=False,
        )
        await server.wait()

        assert capsys.readouterr().out.splitlines()[0] == "yes"
        await supervisor.aclose()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_custom_pattern_split_across_chunks(
        self, supervisor: Supervisor, config: Config, fake_server: list[str]
    ):
        config.ready_pattern = "server-ready"
        server = ServerLauncher(supervisor, config)
        # "server-" and "ready" arrive as separate writes
        await server.start(
            fake_server[0],
            [
                fake_server[1],
                "--partial", "booting server-",
                "--emit-delay", "0.2",
                "--ready", "ready",
                "--duration", "30",
            ],
        )
        assert server.ready
        await supervisor.aclose()


class TestServerStartFailures:
    """Test startup failures."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_exit_before_ready(self, supervisor: Supervisor, fake_server: list[str]):
        server = ServerLauncher(supervisor)
        with pytest.raises(ServerStartError) as exc_info:
            await server.start(fake_server[0], [fake_server[1], "--exit-code", "4"])

        assert "exited with code 4" in str(exc_info.value)
        assert not server.ready
        await supervisor.aclose()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_ready_timeout(
        self, supervisor: Supervisor, config: Config, fake_server: list[str]
    ):
        config.ready_timeout = 0.5
        server = ServerLauncher(supervisor, config)
        with pytest.raises(ServerStartError) as exc_info:
            await server.start(fake_server[0], [fake_server[1], "--duration", "30"])

        assert "within 0.5s" in str(exc_info.value)
        assert server.handle is not None
        assert not server.handle.closed
        await supervisor.aclose()
        assert server.handle.closed

    @pytest.mark.asyncio
    async def test_spawn_failure(self, supervisor: Supervisor):
        server = ServerLauncher(supervisor)
        with pytest.raises(SpawnFailure):
            await server.start("/nonexistent/fox-server", [])
        assert len(supervisor.registry) == 0

    @pytest.mark.asyncio
    async def test_wait_before_start(self, supervisor: Supervisor):
        with pytest.raises(ServerStartError):
            await ServerLauncher(supervisor).wait()
