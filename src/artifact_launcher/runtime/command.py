"""Command line rendering for a LaunchSpec.

artifact-launcher runtime module v0.1.0

Rendering is a pure transformation: the same spec always produces the same
argument vector and environment overlay. The only filesystem access is the
runtime lookup done by ``resolve_runtime`` when no runtime path is set.

Argument vector layout:
    [runtime, debug flag?, -Dname=value..., -classpath <entries>?,
     entry selector..., arguments...]
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..config import Config, get_config
from ..errors import RuntimeNotFoundError
from .spec import DEBUG_FLAG_TEMPLATE, LaunchSpec

__all__ = [
    "CommandLine",
    "CommandLineBuilder",
    "resolve_runtime",
]

logger = logging.getLogger(__name__)


def resolve_runtime(spec: LaunchSpec, config: Config | None = None) -> Path:
    """Locate the runtime binary for a spec.

    Search order:
    1. ``spec.runtime_path`` if set (not checked for existence)
    2. ``$<runtime_home_var>/bin/<name>.exe``
    3. ``$<runtime_home_var>/bin/<name>``

    Args:
        spec: Launch specification
        config: Configuration (default: global config)

    Returns:
        Path to the runtime binary

    Raises:
        RuntimeNotFoundError: If no runtime binary exists on disk
    """
    if spec.runtime_path is not None:
        return spec.runtime_path

    config = config or get_config()
    home = os.environ.get(config.runtime_home_var)
    if not home:
        raise RuntimeNotFoundError(
            f"Unable to locate {config.runtime_name} binary: "
            f"{config.runtime_home_var} is not set"
        )

    bin_dir = Path(home) / "bin"
    candidates = [
        bin_dir / f"{config.runtime_name}.exe",
        bin_dir / config.runtime_name,
    ]
    for candidate in candidates:
        if candidate.is_file():
            logger.debug(f"Resolved runtime {candidate}")
            return candidate

    raise RuntimeNotFoundError(
        f"Unable to locate {config.runtime_name} binary under {bin_dir}",
        searched=[str(c) for c in candidates],
    )


@dataclass(frozen=True)
class CommandLine:
    """Rendered command line.

    Attributes:
        argv: Argument vector (first element is the runtime binary)
        environment: Variables overlaid on the inherited environment
        cwd: Working directory
    """

    argv: tuple[str, ...]
    environment: Mapping[str, str] = field(default_factory=dict)
    cwd: Path = field(default_factory=Path.cwd)

    def merged_environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Overlay the spec environment on ``base`` (default: os.environ)."""
        merged = dict(os.environ if base is None else base)
        merged.update(self.environment)
        return merged


class CommandLineBuilder:
    """Renders a LaunchSpec into a CommandLine."""

    def __init__(self, config: Config | None = None) -> None:
        self._config = config

    def render(self, spec: LaunchSpec) -> CommandLine:
        """Render the spec.

        Raises:
            ConfigurationError: If no entry point can be selected
            RuntimeNotFoundError: If the runtime binary cannot be located
        """
        # Selector first so an invalid spec never reaches runtime probing
        entry_point = spec.entry_point

        argv: list[str] = [str(resolve_runtime(spec, self._config))]

        if spec.debug_port is not None:
            argv.append(DEBUG_FLAG_TEMPLATE.format(port=spec.debug_port))

        for name, value in spec.properties.items():
            argv.append(f"-D{name}={value}")

        if spec.classpath:
            argv.append("-classpath")
            argv.append(os.pathsep.join(str(e) for e in spec.classpath))

        argv.extend(entry_point.to_arguments())
        argv.extend(spec.arguments)

        return CommandLine(
            argv=tuple(argv),
            environment=dict(spec.environment),
            cwd=spec.working_directory,
        )
