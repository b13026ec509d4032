"""Runtime module for launching and supervising a server artifact process.

This module provides the launch specification, command line rendering,
output draining and lifecycle supervision (readiness, liveness, two-phase
shutdown) for a single child process.
"""

from __future__ import annotations

from .aio import AsyncProcessSupervisor, launch_async
from .command import CommandLine, CommandLineBuilder, resolve_runtime
from .launcher import ProcessLauncher, launch, render
from .relay import OutputRelay
from .spec import (
    DEFAULT_MAIN_ENTRY_POINT,
    ClasspathEntry,
    EntryPoint,
    ExecutableArtifact,
    LaunchSpec,
    MainEntryPoint,
)
from .supervisor import ProcessSupervisor
from .types import (
    OutputSink,
    ReadinessMatcher,
    SinkMode,
    SupervisorSnapshot,
    SupervisorState,
)

__all__ = [
    "AsyncProcessSupervisor",
    "ClasspathEntry",
    "CommandLine",
    "CommandLineBuilder",
    "DEFAULT_MAIN_ENTRY_POINT",
    "EntryPoint",
    "ExecutableArtifact",
    "LaunchSpec",
    "MainEntryPoint",
    "OutputRelay",
    "OutputSink",
    "ProcessLauncher",
    "ProcessSupervisor",
    "ReadinessMatcher",
    "SinkMode",
    "SupervisorSnapshot",
    "SupervisorState",
    "launch",
    "launch_async",
    "render",
    "resolve_runtime",
]
