"""Runtime module for subprocess management.

This module provides isolated process execution with once-only exit/error
notification and reliable termination of the child process group.
"""

from __future__ import annotations

from .process_runner import ProcessHandle, ProcessRunner, ProcessSpec

__all__ = [
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
]
