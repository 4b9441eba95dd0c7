"""子进程注册表模块。

提供进程级别的子进程登记和管理，包括：
- ChildRegistry: 活动子进程的有序登记表
- 快照：终止流程在快照上工作，不在信号发送期间持有锁

这是终止流程（Terminator）和启动流程（Launcher）共享的唯一可变状态。
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from ..errors import EmptyRegistry, InvalidHandle, NotFound

if TYPE_CHECKING:
    from .handle import ChildHandle

__all__ = ["ChildRegistry"]

logger = logging.getLogger(__name__)


class ChildRegistry:
    """活动子进程的注册表。

    按登记顺序保存所有活动的子进程句柄，提供：
    - 登记和注销（按对象身份比较）
    - 快照（供终止流程使用）
    - 变空回调

    线程安全：每个变更操作都在锁内一步完成，
    终止流程看到的快照里不会出现"登记了一半"的句柄。

    Example:
        ```python
        registry = ChildRegistry()

        registry.add(handle)
        print(f"Tracking {len(registry)} child process(es)")

        for child in registry.snapshot():
            child.send_signal(signal.SIGTERM)

        # 通常由句柄自己的关闭回调调用
        registry.discard(handle)
        ```
    """

    def __init__(self) -> None:
        """初始化注册表。"""
        self._handles: list["ChildHandle"] = []
        self._lock = threading.Lock()
        self._on_empty_callbacks: list[Callable[[], None]] = []

    def add(self, handle: "ChildHandle") -> None:
        """登记新句柄（追加到末尾）。

        Args:
            handle: 子进程句柄

        Raises:
            InvalidHandle: handle 为 None 或已登记
        """
        if handle is None:
            logger.error("Cannot add a missing handle to the registry")
            raise InvalidHandle("Cannot add a missing handle to the registry")

        with self._lock:
            if any(existing is handle for existing in self._handles):
                raise InvalidHandle(f"Handle {handle!r} already registered")
            self._handles.append(handle)
            count = len(self._handles)

        logger.debug(f"Registered child: {handle} (total={count})")

    def remove(self, handle: "ChildHandle") -> None:
        """注销句柄（按身份移除第一次出现）。

        Args:
            handle: 子进程句柄

        Raises:
            InvalidHandle: handle 为 None
            EmptyRegistry: 注册表为空
            NotFound: 句柄未登记
        """
        if handle is None:
            logger.error("Cannot remove a missing handle from the registry")
            raise InvalidHandle("Cannot remove a missing handle from the registry")

        with self._lock:
            if not self._handles:
                raise EmptyRegistry(handle)
            for index, existing in enumerate(self._handles):
                if existing is handle:
                    del self._handles[index]
                    break
            else:
                raise NotFound(handle)
            now_empty = not self._handles

        logger.debug(f"Unregistered child: {handle}")

        # 如果注册表变空，触发回调
        if now_empty and self._on_empty_callbacks:
            for callback in list(self._on_empty_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.warning(f"Error in on_empty callback: {e}")

    def discard(self, handle: "ChildHandle") -> bool:
        """注销句柄，异常情况只记录日志。

        子进程关闭时使用：注册表异常（NotFound/EmptyRegistry/InvalidHandle）
        不会传播给调用方。

        Returns:
            是否成功注销
        """
        try:
            self.remove(handle)
        except (InvalidHandle, NotFound) as e:
            logger.warning(f"Registry anomaly ({type(e).__name__}): {e}")
            return False
        return True

    def snapshot(self) -> list["ChildHandle"]:
        """返回当前句柄列表的副本（保持登记顺序）。"""
        with self._lock:
            return list(self._handles)

    def get(self, pid: int) -> Optional["ChildHandle"]:
        """按进程 ID 查找句柄。

        Returns:
            句柄，如果不存在则返回 None
        """
        with self._lock:
            for handle in self._handles:
                if handle.pid == pid:
                    return handle
        return None

    def pids(self) -> list[int]:
        """返回所有登记句柄的进程 ID（按登记顺序）。"""
        return [handle.pid for handle in self.snapshot()]

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """添加注册表变空时的回调。

        当最后一个句柄被注销后，会调用这些回调。

        Args:
            callback: 无参数的回调函数
        """
        self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """移除注册表变空时的回调。"""
        if callback in self._on_empty_callbacks:
            self._on_empty_callbacks.remove(callback)

    def __len__(self) -> int:
        """返回注册表中的句柄数量。"""
        with self._lock:
            return len(self._handles)

    def __contains__(self, handle: object) -> bool:
        """检查句柄是否在注册表中（按身份比较）。"""
        with self._lock:
            return any(existing is handle for existing in self._handles)

    def __iter__(self) -> Iterator["ChildHandle"]:
        """遍历当前快照。"""
        return iter(self.snapshot())
