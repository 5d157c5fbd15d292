"""PCO 环境变量配置管理。

环境变量:
    PCO_TERM_TIMEOUT: 发送 SIGTERM 后等待进程退出的时间（秒）
        - 默认 2.0

    PCO_KILL_TIMEOUT: 发送 SIGKILL 后等待进程退出的时间（秒）
        - 默认 1.0

    PCO_LISTENER_WINDOW: 取消信号监听器的安全窗口（秒）
        - 空/未设置/0/off = 关闭 (默认，监听器在 run 结束时移除)
        - 正数 = 超过该时间后移除监听器（不改变 run 的结果）

    PCO_SHELL: 解释命令的 shell 可执行文件
        - 空/未设置 = 系统默认 (POSIX 为 /bin/sh)

    PCO_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    PCO_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_DOUBLE_TAP_WINDOW = 1.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(value: str | None, default: float) -> float:
    """解析正数秒数，无效值返回默认值。"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return seconds if seconds > 0 else default


def _parse_listener_window(value: str | None) -> float | None:
    """解析监听器安全窗口。

    Returns:
        窗口秒数，关闭时返回 None
    """
    if not value or value.strip().lower() in ("off", "none", "false"):
        return None
    try:
        window = float(value)
    except ValueError:
        return None
    return window if window > 0 else None


def _parse_double_tap_window(value: str | None) -> float:
    """解析双击窗口时间环境变量。"""
    if not value:
        return DEFAULT_DOUBLE_TAP_WINDOW
    try:
        window = float(value)
        return max(0.1, min(window, 10.0))  # 限制在 0.1-10 秒范围
    except ValueError:
        return DEFAULT_DOUBLE_TAP_WINDOW


@dataclass
class Config:
    """PCO 配置。

    Attributes:
        term_timeout: SIGTERM 后的等待时间（秒）
        kill_timeout: SIGKILL 后的等待时间（秒）
        listener_window: 取消监听器安全窗口（秒），None 表示关闭
        shell: 解释命令的 shell，None 表示系统默认
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    listener_window: float | None = None
    shell: str | None = None
    log_debug: bool = False
    log_file: str | None = None
    sigint_double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW

    def __repr__(self) -> str:
        return (
            f"Config(term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"listener_window={self.listener_window}, "
            f"shell={self.shell or 'default'}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "proc-coordinator"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"pco_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PCO_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        term_timeout=_parse_seconds(
            os.environ.get("PCO_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        kill_timeout=_parse_seconds(
            os.environ.get("PCO_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT
        ),
        listener_window=_parse_listener_window(os.environ.get("PCO_LISTENER_WINDOW")),
        shell=os.environ.get("PCO_SHELL") or None,
        log_debug=log_debug,
        log_file=log_file,
        sigint_double_tap_window=_parse_double_tap_window(
            os.environ.get("PCO_SIGINT_DOUBLE_TAP_WINDOW")
        ),
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
