"""Run 失败的异常类。

所有异常都是终态：协调器本身不会重试，调用方可以再次调用 run。
失败结果从不进入缓存，所以重试总是安全的。
"""

from __future__ import annotations

import subprocess
from typing import Any

__all__ = [
    "RunError",
    "AbortedBeforeStart",
    "AbortedDuringExecution",
    "ProcessError",
]


class RunError(Exception):
    """Run 失败的基础异常。

    Attributes:
        coordinator_id: 发起 run 的协调器标识
    """

    def __init__(self, coordinator_id: Any, message: str) -> None:
        self.coordinator_id = coordinator_id
        super().__init__(message)


class AbortedBeforeStart(RunError):
    """调用 run 时取消信号已触发（没有启动进程，没有修改缓存）。"""

    def __init__(self, coordinator_id: Any, reason: Any = None) -> None:
        self.reason = reason
        super().__init__(
            coordinator_id,
            f"Signal already triggered before run started (coordinator={coordinator_id})",
        )


class AbortedDuringExecution(RunError):
    """进程启动后、退出前收到取消。"""

    def __init__(self, coordinator_id: Any, reason: Any = None) -> None:
        self.reason = reason
        super().__init__(
            coordinator_id,
            f"Run aborted during execution (coordinator={coordinator_id}, reason={reason!r})",
        )


class ProcessError(RunError):
    """进程失败：启动失败、运行时错误或非零退出码。

    Attributes:
        cause: 原始异常（同时作为 __cause__ 链接）
    """

    def __init__(self, coordinator_id: Any, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(coordinator_id, f"Process failed: {cause}")
        self.__cause__ = cause

    @property
    def returncode(self) -> int | None:
        """非零退出时的退出码，其他情况为 None。"""
        if isinstance(self.cause, subprocess.CalledProcessError):
            return self.cause.returncode
        return None
