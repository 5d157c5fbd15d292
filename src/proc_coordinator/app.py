"""Command-line entry point.

用法:
    proc-coordinator [--id ID] [--timeout SECONDS] [--repeat N] [--memoize] COMMAND

退出码:
    0   成功
    N   命令以非零退出码 N 结束
    128+N 命令被信号 N 杀死
    1   其他进程错误（如无法启动）
    130 被取消（Ctrl+C / SIGTERM / 超时）
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from .cancellation import CancellationSignal
from .config import Config, get_config
from .coordinator import RunCoordinator
from .errors import AbortedBeforeStart, AbortedDuringExecution, ProcessError
from .signal_manager import SignalManager

__all__ = ["configure_logging", "exit_code_for", "main", "run_command"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
EXIT_ABORTED = 130  # 128 + SIGINT(2)


def configure_logging(config: Config) -> None:
    """配置日志输出。

    LOG_DEBUG 模式输出到临时文件（DEBUG 级别），默认输出到 stderr（INFO 级别）。
    """
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    # 只对 proc_coordinator 命名空间启用详细日志
    logging.getLogger("proc_coordinator").setLevel(log_level)


def exit_code_for(returncode: int | None) -> int:
    """将子进程返回码映射为本进程退出码。

    被信号 N 杀死的子进程返回码为 -N，按 shell 约定映射为 128 + N。
    """
    if returncode is None or returncode == 0:
        return 1
    if returncode < 0:
        return 128 + abs(returncode)
    return returncode


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proc-coordinator",
        description="Run a command as a managed, cancellable child process.",
    )
    parser.add_argument("command", help="command line, interpreted by the shell")
    parser.add_argument("--id", default="cli", help="coordinator identity")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="cancel the run after SECONDS",
    )
    parser.add_argument(
        "--repeat",
        type=int,
        default=1,
        help="number of run requests to issue (default: 1)",
    )
    parser.add_argument(
        "--memoize",
        action="store_true",
        help="run without a signal on the memoized coordinator",
    )
    return parser


async def run_command(
    coordinator: RunCoordinator,
    *,
    repeat: int = 1,
    timeout: float | None = None,
    memoize: bool = False,
) -> int:
    """Issue ``repeat`` run requests and map the outcome to an exit code.

    Without ``memoize`` every request passes the same cancellation signal,
    so only the first one spawns. With ``memoize`` the requests go to the
    memoized variant without a signal and cancellation cancels the task.
    A second Ctrl+C within the double-tap window cancels the task again,
    which skips graceful termination and kills the child.
    """
    cancellation = CancellationSignal()
    current: asyncio.Task | None = None

    def on_shutdown() -> None:
        # 双击 Ctrl+C：再次取消任务，清理阶段改为直接 SIGKILL
        if signal_manager.is_force_exit and current is not None and not current.done():
            logger.warning("Force exit requested, killing the running command")
            current.cancel()

    signal_manager = SignalManager(cancellation, on_shutdown=on_shutdown)
    if timeout is not None:
        cancellation.cancel_after(timeout)

    target = coordinator.memoize() if memoize else coordinator
    run_signal = None if memoize else cancellation

    await signal_manager.start()
    try:
        for attempt in range(1, repeat + 1):
            task = asyncio.create_task(target.run(run_signal), name=f"run-{attempt}")
            current = task

            def cancel_task(_reason: object, task: asyncio.Task = task) -> None:
                task.cancel()

            if memoize:
                if cancellation.is_triggered:
                    task.cancel()
                cancellation.on_trigger(cancel_task)
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                logger.info(f"Run {attempt}/{repeat} cancelled")
                return EXIT_ABORTED
            finally:
                cancellation.remove_on_trigger(cancel_task)
            logger.info(f"Run {attempt}/{repeat} succeeded")
    except (AbortedBeforeStart, AbortedDuringExecution) as e:
        logger.info(f"Run aborted: {e!r}")
        return EXIT_ABORTED
    except ProcessError as e:
        logger.error(str(e))
        return exit_code_for(e.returncode)
    finally:
        await signal_manager.stop()

    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    args = _build_parser().parse_args(argv)
    config = get_config()
    configure_logging(config)
    logger.debug(f"Loaded {config!r}")

    coordinator = RunCoordinator(args.id, args.command)
    exit_code = asyncio.run(
        run_command(
            coordinator,
            repeat=args.repeat,
            timeout=args.timeout,
            memoize=args.memoize,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
