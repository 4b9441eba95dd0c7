"""fox-supervisor - 子进程启动与优雅终止。

环境变量:
    FOX_TERM_TIMEOUT: 终止信号后的等待时间 (默认 5 秒)
    FOX_KILL_SIGNAL: 默认终止信号 (默认 SIGINT)
    FOX_ENVIRONMENT: 服务器运行环境名称 (默认 local)

用法:
    fox-supervisor -- node app/index.js
"""

__version__ = "0.1.0"

from .app import main
from .errors import (
    EmptyRegistry,
    InvalidHandle,
    NotFound,
    ServerStartError,
    SpawnFailure,
    SupervisorError,
    TerminationTimeout,
)
from .runtime import (
    ChildHandle,
    ChildRegistry,
    LaunchMode,
    LaunchOptions,
    LaunchResult,
    TerminationReport,
)
from .supervisor import Supervisor

__all__ = [
    "__version__",
    "main",
    "Supervisor",
    "ChildHandle",
    "ChildRegistry",
    "LaunchMode",
    "LaunchOptions",
    "LaunchResult",
    "TerminationReport",
    "SupervisorError",
    "SpawnFailure",
    "InvalidHandle",
    "NotFound",
    "EmptyRegistry",
    "TerminationTimeout",
    "ServerStartError",
]
