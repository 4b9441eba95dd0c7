"""Config 模块测试。

测试 FOX_* 环境变量解析和配置管理。
"""

from __future__ import annotations

import os
import signal
from unittest import mock

import pytest

from fox_supervisor.config import (
    Config,
    get_config,
    load_config,
    parse_signal,
    reload_config,
)

FOX_KEYS = (
    "FOX_TERM_TIMEOUT",
    "FOX_KILL_TIMEOUT",
    "FOX_KILL_ESCALATE",
    "FOX_KILL_SIGNAL",
    "FOX_SHOW_ECHO",
    "FOX_ENVIRONMENT",
    "FOX_ENV_VAR",
    "FOX_READY_PATTERN",
    "FOX_READY_TIMEOUT",
    "FOX_SIGINT_DOUBLE_TAP_WINDOW",
    "FOX_DEBUG",
    "FOX_LOG_DEBUG",
)


def _clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in FOX_KEYS}


class TestParseSignal:
    """测试信号解析。"""

    def test_none_returns_default(self):
        assert parse_signal(None) == signal.SIGINT
        assert parse_signal(None, signal.SIGTERM) == signal.SIGTERM

    def test_signal_passthrough(self):
        assert parse_signal(signal.SIGTERM) is signal.SIGTERM

    def test_int(self):
        assert parse_signal(15) == signal.SIGTERM

    def test_names(self):
        """支持 SIGTERM / term / 数字字符串。"""
        assert parse_signal("SIGTERM") == signal.SIGTERM
        assert parse_signal("term") == signal.SIGTERM
        assert parse_signal(" int ") == signal.SIGINT
        assert parse_signal("15") == signal.SIGTERM

    def test_invalid_returns_default(self):
        assert parse_signal("not-a-signal") == signal.SIGINT
        assert parse_signal("") == signal.SIGINT
        assert parse_signal(99999) == signal.SIGINT


class TestDefaults:
    """测试默认配置。"""

    def test_defaults(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            config = load_config()
            assert config.term_timeout == 5.0
            assert config.kill_timeout == 2.0
            assert config.kill_escalate is False
            assert config.kill_signal == signal.SIGINT
            assert config.show_echo is False
            assert config.environment == "local"
            assert config.environment_variable == "NODE_ENV"
            assert config.ready_pattern == "Listening on port"
            assert config.ready_timeout == 30.0
            assert config.sigint_double_tap_window == 1.0
            assert config.debug is False
            assert config.log_debug is False
            assert config.log_file is None

    def test_dataclass_defaults_match_env_defaults(self):
        with mock.patch.dict(os.environ, _clean_env(), clear=True):
            loaded = load_config()
        default = Config()
        assert loaded.term_timeout == default.term_timeout
        assert loaded.kill_signal == default.kill_signal
        assert loaded.environment == default.environment


class TestTimeouts:
    """测试超时解析。"""

    def test_term_timeout(self):
        with mock.patch.dict(os.environ, {"FOX_TERM_TIMEOUT": "12.5"}, clear=False):
            assert load_config().term_timeout == 12.5

    @pytest.mark.parametrize(
        "raw,expected",
        [("0", 0.1), ("-3", 0.1), ("9999", 300.0), ("abc", 5.0), ("", 5.0)],
    )
    def test_term_timeout_clamped(self, raw: str, expected: float):
        """超出范围的值被限制，无效值回退到默认值。"""
        with mock.patch.dict(os.environ, {"FOX_TERM_TIMEOUT": raw}, clear=False):
            assert load_config().term_timeout == expected

    def test_kill_timeout_clamped(self):
        with mock.patch.dict(os.environ, {"FOX_KILL_TIMEOUT": "600"}, clear=False):
            assert load_config().kill_timeout == 60.0

    def test_double_tap_window(self):
        with mock.patch.dict(os.environ, {"FOX_SIGINT_DOUBLE_TAP_WINDOW": "2"}, clear=False):
            assert load_config().sigint_double_tap_window == 2.0
        with mock.patch.dict(os.environ, {"FOX_SIGINT_DOUBLE_TAP_WINDOW": "50"}, clear=False):
            assert load_config().sigint_double_tap_window == 10.0


class TestFlags:
    """测试布尔开关。"""

    @pytest.mark.parametrize("raw", ["true", "1", "yes", "on", "TRUE"])
    def test_truthy(self, raw: str):
        with mock.patch.dict(
            os.environ,
            {"FOX_KILL_ESCALATE": raw, "FOX_SHOW_ECHO": raw, "FOX_DEBUG": raw},
            clear=False,
        ):
            config = load_config()
            assert config.kill_escalate is True
            assert config.show_echo is True
            assert config.debug is True

    @pytest.mark.parametrize("raw", ["false", "0", "no", "whatever"])
    def test_falsy(self, raw: str):
        with mock.patch.dict(os.environ, {"FOX_KILL_ESCALATE": raw}, clear=False):
            assert load_config().kill_escalate is False

    def test_log_debug_sets_log_file(self):
        with mock.patch.dict(os.environ, {"FOX_LOG_DEBUG": "1"}, clear=False):
            config = load_config()
            assert config.log_debug is True
            assert config.log_file is not None
            assert config.log_file.endswith(".log")
            assert "fox_debug_" in config.log_file


class TestServerSettings:
    """测试服务器相关配置。"""

    def test_environment(self):
        env = {
            "FOX_ENVIRONMENT": "production",
            "FOX_ENV_VAR": "APP_ENV",
            "FOX_READY_PATTERN": "ready!",
            "FOX_KILL_SIGNAL": "SIGTERM",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            config = load_config()
            assert config.environment == "production"
            assert config.environment_variable == "APP_ENV"
            assert config.ready_pattern == "ready!"
            assert config.kill_signal == signal.SIGTERM

    def test_empty_environment_uses_default(self):
        with mock.patch.dict(os.environ, {"FOX_ENVIRONMENT": ""}, clear=False):
            assert load_config().environment == "local"


class TestGlobalConfig:
    """测试全局配置实例。"""

    def test_get_config_cached(self):
        reload_config()
        assert get_config() is get_config()

    def test_reload_config(self):
        with mock.patch.dict(os.environ, {"FOX_ENVIRONMENT": "staging"}, clear=False):
            config = reload_config()
            assert config.environment == "staging"
            assert get_config() is config
        reload_config()

    def test_repr(self):
        text = repr(Config())
        assert "term_timeout=5.0" in text
        assert "kill_signal=SIGINT" in text
