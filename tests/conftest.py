"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from unittest import mock

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from proc_coordinator.config import reload_config  # noqa: E402
from proc_coordinator.runtime import ProcessHandle, ProcessRunner, ProcessSpec  # noqa: E402

IS_WINDOWS = sys.platform == "win32"


@dataclass
class CountingRunner(ProcessRunner):
    """记录每次 spawn 的 ProcessRunner。"""

    handles: list[ProcessHandle] = field(default_factory=list)

    async def spawn(self, spec: ProcessSpec) -> ProcessHandle:
        handle = await super().spawn(spec)
        self.handles.append(handle)
        return handle

    @property
    def spawn_count(self) -> int:
        return len(self.handles)


class BrokenProcess:
    """wait() 失败的假进程，用于触发 ProcessHandle 的 error 事件。"""

    # 超过 Linux pid_max 上限，不对应任何真实进程
    pid = 2**22 + 1
    returncode = None

    def __init__(self, delay: float = 0.05, before_raise: Callable[[], None] | None = None):
        self.delay = delay
        self.before_raise = before_raise
        self.wait_calls = 0

    async def wait(self) -> int:
        self.wait_calls += 1
        await asyncio.sleep(self.delay)
        if self.before_raise is not None:
            self.before_raise()
        raise RuntimeError("wait failed")


@dataclass
class BrokenWaitRunner(CountingRunner):
    """返回包装 BrokenProcess 的句柄，不启动真实进程。"""

    before_raise: Callable[[], None] | None = None

    async def spawn(self, spec: ProcessSpec) -> ProcessHandle:
        process = BrokenProcess(before_raise=self.before_raise)
        handle = ProcessHandle(
            process,  # type: ignore[arg-type]
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )
        self.handles.append(handle)
        return handle


@dataclass
class FailingSpawnRunner(CountingRunner):
    """让出一次事件循环后 spawn 抛出给定异常。"""

    error: Exception = field(default_factory=lambda: ValueError("embedded null byte"))
    attempts: int = 0

    async def spawn(self, spec: ProcessSpec) -> ProcessHandle:
        self.attempts += 1
        await asyncio.sleep(0.05)
        raise self.error


@pytest.fixture(autouse=True)
def clean_env():
    """移除 PCO_* 环境变量并重新加载配置。"""
    env = {k: v for k, v in os.environ.items() if not k.startswith("PCO_")}
    with mock.patch.dict(os.environ, env, clear=True):
        reload_config()
        yield
    reload_config()


@pytest.fixture
def runner() -> CountingRunner:
    """短超时的计数 runner。"""
    return CountingRunner(term_timeout=0.5, kill_timeout=0.3)
