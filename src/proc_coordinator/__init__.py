"""Proc Coordinator - 可取消、可记忆化的子进程执行。

环境变量:
    PCO_TERM_TIMEOUT: SIGTERM 后的等待时间 (默认 2.0s)
    PCO_KILL_TIMEOUT: SIGKILL 后的等待时间 (默认 1.0s)
    PCO_LISTENER_WINDOW: 取消监听器安全窗口 (默认关闭)
    PCO_LOG_DEBUG: 日志输出到临时文件 (默认 false)

用法:
    proc-coordinator "sleep 5; echo done"
"""

__version__ = "0.1.0"

from .cancellation import CancellationSignal, SupportsCancellation
from .coordinator import CacheKey, KeyKind, RecordState, RunCoordinator
from .errors import AbortedBeforeStart, AbortedDuringExecution, ProcessError, RunError

__all__ = [
    "__version__",
    "AbortedBeforeStart",
    "AbortedDuringExecution",
    "CacheKey",
    "CancellationSignal",
    "KeyKind",
    "ProcessError",
    "RecordState",
    "RunCoordinator",
    "RunError",
    "SupportsCancellation",
]
