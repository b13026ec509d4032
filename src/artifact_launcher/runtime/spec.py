"""Launch specification for a runnable server artifact.

artifact-launcher runtime module v0.1.0

A LaunchSpec accumulates everything needed to start the child process:
runtime binary, system properties, environment, entry point, arguments,
working directory, debug port and output sinks. Conflicting entry-point
setters fail at the offending call, not at launch time.

The entry point is one of three variants, chosen once:
- ExecutableArtifact: a self-contained runnable archive (``-jar <path>``)
- MainEntryPoint: a named entry point, optionally on a classpath
- ClasspathEntry: a classpath with the conventional default entry point
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..config import get_config
from ..errors import ConfigurationError
from .types import OutputSink, ReadinessMatcher

__all__ = [
    "DEFAULT_MAIN_ENTRY_POINT",
    "ClasspathEntry",
    "EntryPoint",
    "ExecutableArtifact",
    "LaunchSpec",
    "MainEntryPoint",
]

logger = logging.getLogger(__name__)

DEFAULT_MAIN_ENTRY_POINT = "org.wildfly.swarm.Swarm"

# Remote debugging attach flag, suspended until a debugger connects
DEBUG_FLAG_TEMPLATE = "-agentlib:jdwp=transport=dt_socket,server=y,suspend=y,address={port}"


@dataclass(frozen=True)
class ExecutableArtifact:
    """Self-contained runnable artifact."""

    path: Path

    def to_arguments(self) -> list[str]:
        return ["-jar", str(self.path)]


@dataclass(frozen=True)
class MainEntryPoint:
    """Fully-qualified launchable entry point name."""

    name: str

    def to_arguments(self) -> list[str]:
        return [self.name]


@dataclass(frozen=True)
class ClasspathEntry:
    """Classpath without an explicit entry point."""

    entries: tuple[Path, ...]

    def to_arguments(self) -> list[str]:
        return [DEFAULT_MAIN_ENTRY_POINT]


EntryPoint = Union[ExecutableArtifact, MainEntryPoint, ClasspathEntry]


class LaunchSpec:
    """Mutable, fluent description of how to start the child process.

    Every ``with_*`` method returns the spec itself so calls can be chained.

    Example:
        spec = (
            LaunchSpec()
            .with_executable_artifact("app.jar")
            .with_property("swarm.http.port", "8181")
            .with_stdout(OutputSink.both("stdout.log"))
        )
        supervisor = launch(spec)
    """

    def __init__(self) -> None:
        self.runtime_path: Optional[Path] = None
        self.properties: dict[str, str] = {}
        self.environment: dict[str, str] = {}
        self.classpath: list[Path] = []
        self.executable_artifact: Optional[Path] = None
        self.main_entry_point: Optional[str] = None
        self.arguments: list[str] = []
        self.working_directory: Path = Path(os.getcwd())
        self.debug_port: Optional[int] = None
        self.stdout_sink: OutputSink = OutputSink.inherit()
        self.stderr_sink: OutputSink = OutputSink.inherit()
        self.keep_stdin: bool = False
        self.ready_matcher: Optional[ReadinessMatcher] = ReadinessMatcher.from_config()

    def __repr__(self) -> str:
        return (
            f"LaunchSpec(entry_point={self._describe_entry_point()}, "
            f"properties={len(self.properties)}, "
            f"environment={len(self.environment)}, "
            f"arguments={self.arguments}, "
            f"cwd={self.working_directory}, "
            f"debug_port={self.debug_port})"
        )

    # =========================================================================
    # Runtime
    # =========================================================================

    def with_runtime(self, path: str | Path) -> "LaunchSpec":
        self.runtime_path = Path(path)
        return self

    # =========================================================================
    # Properties and environment
    # =========================================================================

    def with_property(self, name: str, value: str) -> "LaunchSpec":
        if not name:
            raise ConfigurationError("Property name must not be empty")
        self.properties[name] = str(value)
        return self

    def with_properties(self, props: Mapping[str, str]) -> "LaunchSpec":
        for name, value in props.items():
            self.with_property(name, value)
        return self

    def with_default_properties(
        self,
        source: Mapping[str, str] | None = None,
        prefixes: Iterable[str] | None = None,
    ) -> "LaunchSpec":
        """Forward host settings whose names start with a known prefix.

        Args:
            source: Settings to scan (default: the supervising process's environment)
            prefixes: Name prefixes to forward (default: AL_PROPERTY_PREFIXES)
        """
        source = os.environ if source is None else source
        prefixes = tuple(prefixes) if prefixes is not None else get_config().property_prefixes

        forwarded = 0
        for name, value in source.items():
            if name.startswith(prefixes):
                self.properties[name] = value
                forwarded += 1

        logger.debug(f"Forwarded {forwarded} default properties (prefixes={prefixes})")
        return self

    def with_environment(self, name: str, value: str) -> "LaunchSpec":
        if not name or "=" in name:
            raise ConfigurationError(f"Invalid environment variable name: {name!r}")
        self.environment[name] = str(value)
        return self

    def with_environment_map(self, env: Mapping[str, str]) -> "LaunchSpec":
        for name, value in env.items():
            self.with_environment(name, value)
        return self

    # =========================================================================
    # Entry point selection
    # =========================================================================

    def with_classpath_entry(self, entry: str | Path) -> "LaunchSpec":
        return self.with_classpath_entries([entry])

    def with_classpath_entries(self, entries: Iterable[str | Path]) -> "LaunchSpec":
        if self.executable_artifact is not None:
            raise ConfigurationError("Cannot use a classpath with an executable artifact")
        self.classpath.extend(Path(e) for e in entries)
        return self

    def with_executable_artifact(self, path: str | Path) -> "LaunchSpec":
        if self.executable_artifact is not None or self.main_entry_point is not None:
            raise ConfigurationError(
                f"Entry point already specified: {self._describe_entry_point()}"
            )
        if self.classpath:
            raise ConfigurationError("Cannot use an executable artifact with a classpath")
        self.executable_artifact = Path(path)
        return self

    def with_main_entry_point(self, name: str) -> "LaunchSpec":
        if self.executable_artifact is not None or self.main_entry_point is not None:
            raise ConfigurationError(
                f"Entry point already specified: {self._describe_entry_point()}"
            )
        if not name:
            raise ConfigurationError("Main entry point name must not be empty")
        self.main_entry_point = name
        return self

    def with_default_main_entry_point(self) -> "LaunchSpec":
        return self.with_main_entry_point(DEFAULT_MAIN_ENTRY_POINT)

    @property
    def entry_point(self) -> EntryPoint:
        """The selected entry-point variant.

        Raises:
            ConfigurationError: If no artifact, entry point or classpath is set
        """
        if self.executable_artifact is not None:
            return ExecutableArtifact(self.executable_artifact)
        if self.main_entry_point is not None:
            return MainEntryPoint(self.main_entry_point)
        if self.classpath:
            return ClasspathEntry(tuple(self.classpath))
        raise ConfigurationError(
            "An executable artifact, a main entry point or a classpath must be specified"
        )

    # =========================================================================
    # Process settings
    # =========================================================================

    def with_argument(self, arg: str) -> "LaunchSpec":
        self.arguments.append(str(arg))
        return self

    def with_arguments(self, args: Iterable[str]) -> "LaunchSpec":
        self.arguments.extend(str(a) for a in args)
        return self

    def with_working_directory(self, path: str | Path) -> "LaunchSpec":
        self.working_directory = Path(path)
        return self

    def with_debug(self, port: int | None) -> "LaunchSpec":
        if port is not None and not 0 < int(port) < 65536:
            raise ConfigurationError(f"Debug port out of range: {port}")
        self.debug_port = None if port is None else int(port)
        return self

    def with_stdout(self, sink: OutputSink) -> "LaunchSpec":
        self.stdout_sink = sink
        return self

    def with_stderr(self, sink: OutputSink) -> "LaunchSpec":
        self.stderr_sink = sink
        return self

    def with_stdout_file(self, path: str | Path) -> "LaunchSpec":
        return self.with_stdout(OutputSink.capture(path))

    def with_stderr_file(self, path: str | Path) -> "LaunchSpec":
        return self.with_stderr(OutputSink.capture(path))

    def with_stdin(self, keep_open: bool = True) -> "LaunchSpec":
        self.keep_stdin = keep_open
        return self

    def with_ready_marker(self, pattern: str, regex: bool = False) -> "LaunchSpec":
        self.ready_matcher = ReadinessMatcher(pattern, is_regex=regex)
        return self

    def with_ready_matcher(self, matcher: ReadinessMatcher | None) -> "LaunchSpec":
        """Set the readiness matcher; None disables readiness detection."""
        self.ready_matcher = matcher
        return self

    def _describe_entry_point(self) -> str:
        if self.executable_artifact is not None:
            return f"artifact {self.executable_artifact}"
        if self.main_entry_point is not None:
            return f"main {self.main_entry_point}"
        if self.classpath:
            return f"classpath ({len(self.classpath)} entries)"
        return "none"
