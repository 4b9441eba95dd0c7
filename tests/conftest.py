"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from fox_supervisor.config import Config  # noqa: E402

# 测试用子进程脚本
FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_server.py"


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fake_server() -> list[str]:
    """启动 fake_server 的命令前缀：[python, script]。"""
    return [sys.executable, str(FAKE_SERVER)]


@pytest.fixture
def config() -> Config:
    """短超时配置，避免测试卡住。"""
    return Config(
        term_timeout=2.0,
        kill_timeout=1.0,
        ready_timeout=5.0,
        show_echo=False,
    )
