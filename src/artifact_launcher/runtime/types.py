"""Shared runtime types: supervisor states, output sinks, readiness matching.

artifact-launcher runtime module v0.1.0
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..config import Config, get_config
from ..errors import ConfigurationError

__all__ = [
    "SupervisorState",
    "SinkMode",
    "OutputSink",
    "ReadinessMatcher",
    "SupervisorSnapshot",
]


class SupervisorState(str, Enum):
    """Lifecycle states of a supervised child process.

    - STARTING: launched, waiting for the readiness marker
    - RUNNING: launched with readiness detection disabled
    - DEPLOYED: readiness marker observed
    - FAILED: boot timeout or unexpected exit (terminal)
    - STOPPING: stop requested
    - STOPPED: child confirmed gone (terminal)
    """

    STARTING = "starting"
    RUNNING = "running"
    DEPLOYED = "deployed"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (SupervisorState.FAILED, SupervisorState.STOPPED)


class SinkMode(str, Enum):
    """Where a child output stream goes."""

    DISCARD = "discard"
    INHERIT = "inherit"
    CAPTURE = "capture"
    BOTH = "both"


@dataclass(frozen=True)
class OutputSink:
    """Destination of one child output stream.

    Attributes:
        mode: Sink mode
        path: Capture file (required for CAPTURE and BOTH)
    """

    mode: SinkMode = SinkMode.INHERIT
    path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.mode in (SinkMode.CAPTURE, SinkMode.BOTH) and self.path is None:
            raise ConfigurationError(f"Output sink mode '{self.mode.value}' requires a file path")
        if self.mode in (SinkMode.DISCARD, SinkMode.INHERIT) and self.path is not None:
            raise ConfigurationError(f"Output sink mode '{self.mode.value}' does not take a file path")

    @classmethod
    def discard(cls) -> "OutputSink":
        return cls(SinkMode.DISCARD)

    @classmethod
    def inherit(cls) -> "OutputSink":
        return cls(SinkMode.INHERIT)

    @classmethod
    def capture(cls, path: str | Path) -> "OutputSink":
        return cls(SinkMode.CAPTURE, Path(path))

    @classmethod
    def both(cls, path: str | Path) -> "OutputSink":
        return cls(SinkMode.BOTH, Path(path))

    @property
    def writes_console(self) -> bool:
        return self.mode in (SinkMode.INHERIT, SinkMode.BOTH)

    @property
    def writes_file(self) -> bool:
        return self.mode in (SinkMode.CAPTURE, SinkMode.BOTH)


@dataclass(frozen=True)
class ReadinessMatcher:
    """Recognizes the startup-complete line in child output.

    The marker text is configuration: different runnables print different
    markers. Matching is a substring test by default, or ``re.search`` when
    ``is_regex`` is set.

    Example:
        ReadinessMatcher("WFSWARM99999")
        ReadinessMatcher.regex(r"Started .* in \\d+ms")
    """

    pattern: str
    is_regex: bool = False
    _compiled: Optional[re.Pattern[str]] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.pattern:
            raise ConfigurationError("Readiness marker must not be empty")
        if self.is_regex:
            try:
                compiled = re.compile(self.pattern)
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid readiness pattern {self.pattern!r}: {e}"
                ) from e
            object.__setattr__(self, "_compiled", compiled)

    @classmethod
    def substring(cls, text: str) -> "ReadinessMatcher":
        return cls(text)

    @classmethod
    def regex(cls, pattern: str) -> "ReadinessMatcher":
        return cls(pattern, is_regex=True)

    @classmethod
    def from_config(cls, config: Config | None = None) -> "ReadinessMatcher":
        config = config or get_config()
        return cls(config.ready_marker, is_regex=config.ready_regex)

    def matches(self, text: str) -> bool:
        if self._compiled is not None:
            return self._compiled.search(text) is not None
        return self.pattern in text


class SupervisorSnapshot(BaseModel):
    """Point-in-time view of a supervisor, for reporting and logs.

    Attributes:
        pid: Child PID (None if launch never produced a process)
        state: Current lifecycle state
        exit_code: Exit code once the child has exited
        last_error: Text of the recorded failure, if any
        argv: Command line the child was started with
        started_at: Unix timestamp of launch
        uptime: Seconds since launch (frozen once the child exits)
        stdout_tail: Last captured stdout text
        stderr_tail: Last captured stderr text
    """

    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
    )

    pid: int | None = None
    state: SupervisorState
    exit_code: int | None = None
    last_error: str | None = None
    argv: list[str] = Field(default_factory=list)
    started_at: float = Field(default_factory=time.time)
    uptime: float = 0.0
    stdout_tail: str = ""
    stderr_tail: str = ""
