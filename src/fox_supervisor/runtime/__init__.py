"""Runtime module for child process supervision.

This module provides launching, tracking and terminating OS child processes:
the handle, the shared registry, the launcher and the terminator.
"""

from __future__ import annotations

from .handle import ChildHandle, HandleState, LaunchMode, LaunchOptions, LaunchResult
from .launcher import Launcher
from .registry import ChildRegistry
from .terminator import TerminationReport, Terminator

__all__ = [
    "ChildHandle",
    "ChildRegistry",
    "HandleState",
    "LaunchMode",
    "LaunchOptions",
    "LaunchResult",
    "Launcher",
    "TerminationReport",
    "Terminator",
]
