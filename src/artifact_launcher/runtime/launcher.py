"""Process launcher: turns a LaunchSpec into a supervised child process.

artifact-launcher runtime module v0.1.0

Key design points:
- POSIX: start_new_session=True so stop() can signal the whole group
- Windows: CREATE_NEW_PROCESS_GROUP for CTRL_BREAK_EVENT delivery
- stdin is DEVNULL unless the spec keeps it open, so the child never blocks
  waiting for input that will not come
- the OutputRelay is running before launch() returns; output produced in
  between waits in the pipe, nothing is lost
"""

from __future__ import annotations

import logging
import subprocess
import sys
from collections.abc import Mapping
from typing import Any

from ..errors import LaunchError
from .command import CommandLine, CommandLineBuilder
from .relay import OutputRelay
from .spec import LaunchSpec
from .supervisor import ProcessObservation, ProcessSupervisor

__all__ = [
    "ProcessLauncher",
    "launch",
    "render",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class ProcessLauncher:
    """Starts child processes from launch specifications.

    Example:
        launcher = ProcessLauncher(stop_timeout=5.0)
        supervisor = launcher.launch(spec)
    """

    def __init__(
        self,
        builder: CommandLineBuilder | None = None,
        *,
        console: Mapping[str, Any] | None = None,
        stop_timeout: float | None = None,
        kill_grace: float | None = None,
    ) -> None:
        """Initialize the launcher.

        Args:
            builder: Command line builder (default: CommandLineBuilder())
            console: Console streams for INHERIT sinks (default: sys.stdout / sys.stderr)
            stop_timeout: Default graceful stop timeout for supervisors
            kill_grace: Wait after forced kill for supervisors
        """
        self._builder = builder or CommandLineBuilder()
        self._console = console
        self._stop_timeout = stop_timeout
        self._kill_grace = kill_grace

    def launch(self, spec: LaunchSpec) -> ProcessSupervisor:
        """Start the child described by ``spec``.

        Raises:
            ConfigurationError: If the spec is invalid
            RuntimeNotFoundError: If the runtime binary cannot be located
            LaunchError: If a capture file cannot be opened or the OS refuses
                to start the process
        """
        command = self._builder.render(spec)

        observation = ProcessObservation(spec.ready_matcher)
        try:
            relay = OutputRelay(
                {"stdout": spec.stdout_sink, "stderr": spec.stderr_sink},
                on_output=observation.on_output,
                console=self._console,
            )
        except OSError as e:
            raise LaunchError(f"Unable to open output capture file: {e}", list(command.argv)) from e

        try:
            process = subprocess.Popen(
                list(command.argv),
                stdin=subprocess.PIPE if spec.keep_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(command.cwd),
                env=command.merged_environment(),
                **self._build_subprocess_kwargs(),
            )
        except (OSError, ValueError) as e:
            relay.close()
            raise LaunchError(
                f"Unable to start {command.argv[0]} in {command.cwd}: {e}",
                list(command.argv),
            ) from e

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={command.argv[0]} cwd={command.cwd}"
        )

        relay.start(
            {"stdout": process.stdout, "stderr": process.stderr},
            label=str(process.pid),
        )

        return ProcessSupervisor(
            process,
            command,
            relay,
            observation,
            stop_timeout=self._stop_timeout,
            kill_grace=self._kill_grace,
        )

    @staticmethod
    def _build_subprocess_kwargs() -> dict[str, Any]:
        """Build platform-specific Popen kwargs."""
        kwargs: dict[str, Any] = {}

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs


def launch(spec: LaunchSpec, **kwargs: Any) -> ProcessSupervisor:
    """Launch ``spec`` with a default ProcessLauncher.

    Keyword arguments are passed to ProcessLauncher.
    """
    return ProcessLauncher(**kwargs).launch(spec)


def render(spec: LaunchSpec) -> CommandLine:
    """Render ``spec`` without starting anything."""
    return CommandLineBuilder().render(spec)
