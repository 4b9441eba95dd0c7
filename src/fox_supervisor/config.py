"""FOX 环境变量配置管理。

环境变量:
    FOX_TERM_TIMEOUT: 发送终止信号后等待子进程关闭的时间（秒）
        - 默认 5.0 秒，限制在 0.1-300 秒
        - 超时后 kill_children 抛出 TerminationTimeout

    FOX_KILL_TIMEOUT: 升级为 SIGKILL 后的额外等待时间（秒）
        - 默认 2.0 秒，限制在 0.1-60 秒

    FOX_KILL_ESCALATE: 超时后是否升级为 SIGKILL
        - true/1/yes = 升级
        - false/0/no = 不升级，直接报告超时 (默认)

    FOX_KILL_SIGNAL: kill_children 默认发送的信号
        - 默认 SIGINT
        - 支持 SIGTERM / term / 15 等写法

    FOX_SHOW_ECHO: 是否把子进程输出镜像到当前进程的 stdout/stderr
        - 默认 false

    FOX_ENVIRONMENT: 传递给服务器进程的运行环境名称
        - 默认 local

    FOX_ENV_VAR: 承载运行环境名称的环境变量名
        - 默认 NODE_ENV

    FOX_READY_PATTERN: 服务器启动完成的标志文本
        - 默认 "Listening on port"

    FOX_READY_TIMEOUT: 等待服务器就绪的时间（秒）
        - 默认 30.0 秒

    FOX_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出（SIGKILL 子进程）

    FOX_DEBUG: 调试模式
        - true/1/yes = 开启
        - false/0/no = 关闭 (默认)

    FOX_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import signal
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "parse_signal"]

DEFAULT_TERM_TIMEOUT = 5.0
DEFAULT_KILL_TIMEOUT = 2.0
DEFAULT_READY_TIMEOUT = 30.0
DEFAULT_ENVIRONMENT = "local"
DEFAULT_ENV_VAR = "NODE_ENV"
DEFAULT_READY_PATTERN = "Listening on port"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float,
) -> float:
    """解析秒数环境变量，无效值返回默认值。"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(minimum, min(seconds, maximum))


def parse_signal(value: str | int | signal.Signals | None, default: signal.Signals = signal.SIGINT) -> signal.Signals:
    """把信号名称或编号解析为 signal.Signals。

    Args:
        value: "SIGTERM"、"term"、"15"、15 或 signal.Signals

    Returns:
        对应的信号，无法识别时返回 default
    """
    if value is None:
        return default
    if isinstance(value, signal.Signals):
        return value
    if isinstance(value, int):
        try:
            return signal.Signals(value)
        except ValueError:
            return default

    text = value.strip().upper()
    if not text:
        return default
    if text.isdigit():
        return parse_signal(int(text), default)
    if not text.startswith("SIG"):
        text = f"SIG{text}"
    return getattr(signal.Signals, text, default)


@dataclass
class Config:
    """FOX 配置。

    Attributes:
        term_timeout: 终止信号发出后等待关闭的时间（秒）
        kill_timeout: SIGKILL 升级后的等待时间（秒）
        kill_escalate: 超时后是否升级为 SIGKILL
        kill_signal: kill_children 的默认信号
        show_echo: 是否镜像子进程输出
        environment: 服务器运行环境名称
        environment_variable: 承载运行环境名称的环境变量名
        ready_pattern: 服务器就绪标志文本
        ready_timeout: 等待服务器就绪的时间（秒）
        sigint_double_tap_window: 双击退出窗口时间（秒）
        debug: 调试模式
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    kill_escalate: bool = False
    kill_signal: signal.Signals = signal.SIGINT
    show_echo: bool = False
    environment: str = DEFAULT_ENVIRONMENT
    environment_variable: str = DEFAULT_ENV_VAR
    ready_pattern: str = DEFAULT_READY_PATTERN
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    sigint_double_tap_window: float = 1.0
    debug: bool = False
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"kill_escalate={self.kill_escalate}, "
            f"kill_signal={self.kill_signal.name}, "
            f"show_echo={self.show_echo}, "
            f"environment={self.environment}, "
            f"environment_variable={self.environment_variable}, "
            f"ready_pattern={self.ready_pattern!r}, "
            f"ready_timeout={self.ready_timeout}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window}, "
            f"debug={self.debug}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "fox-supervisor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"fox_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("FOX_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        term_timeout=_parse_seconds(
            os.environ.get("FOX_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.1, 300.0
        ),
        kill_timeout=_parse_seconds(
            os.environ.get("FOX_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.1, 60.0
        ),
        kill_escalate=_parse_bool(os.environ.get("FOX_KILL_ESCALATE"), default=False),
        kill_signal=parse_signal(os.environ.get("FOX_KILL_SIGNAL")),
        show_echo=_parse_bool(os.environ.get("FOX_SHOW_ECHO"), default=False),
        environment=os.environ.get("FOX_ENVIRONMENT") or DEFAULT_ENVIRONMENT,
        environment_variable=os.environ.get("FOX_ENV_VAR") or DEFAULT_ENV_VAR,
        ready_pattern=os.environ.get("FOX_READY_PATTERN") or DEFAULT_READY_PATTERN,
        ready_timeout=_parse_seconds(
            os.environ.get("FOX_READY_TIMEOUT"), DEFAULT_READY_TIMEOUT, 0.1, 3600.0
        ),
        sigint_double_tap_window=_parse_seconds(
            os.environ.get("FOX_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
        debug=_parse_bool(os.environ.get("FOX_DEBUG"), default=False),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
